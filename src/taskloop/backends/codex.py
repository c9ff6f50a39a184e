from __future__ import annotations

from pathlib import Path

from taskloop.backends.base import CliAgentBackend


class CodexBackend(CliAgentBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", *, model: str | None = None, **kwargs) -> None:
        super().__init__(binary, **kwargs)
        self.model = model

    def build_command(self, prompt: str, prompt_path: Path) -> list[str]:
        command = [self.binary, "exec", "--full-auto"]
        if self.model:
            command.extend(["-m", self.model])
        command.extend(self.extra_args)
        command.append(prompt)
        return command
