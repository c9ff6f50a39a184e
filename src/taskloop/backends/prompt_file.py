from __future__ import annotations

from pathlib import Path

from taskloop.backends.base import CliAgentBackend


class PromptFileBackend(CliAgentBackend):
    """Agents that read their instructions from a file instead of argv."""

    def __init__(self, name: str, binary: str, *, flag: str | None = None, **kwargs) -> None:
        super().__init__(binary, **kwargs)
        self.name = name
        self.flag = flag

    def build_command(self, prompt: str, prompt_path: Path) -> list[str]:
        command = [self.binary, *self.extra_args]
        if self.flag:
            command.append(self.flag)
        command.append(str(prompt_path))
        return command
