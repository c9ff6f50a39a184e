from __future__ import annotations

from pathlib import Path

from taskloop.backends.base import CliAgentBackend


class ClaudeCodeBackend(CliAgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", **kwargs) -> None:
        super().__init__(binary, **kwargs)

    def build_command(self, prompt: str, prompt_path: Path) -> list[str]:
        return [self.binary, "-p", prompt, "--dangerously-skip-permissions", *self.extra_args]
