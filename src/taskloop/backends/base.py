from __future__ import annotations

import asyncio
import logging
import os
import signal
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from taskloop.errors import AgentInvocationError

logger = logging.getLogger(__name__)

OutputHook = Callable[[str], None]
OUTPUT_TAIL_LINES = 200
STREAM_LIMIT_BYTES = 16 * 1024 * 1024


@dataclass(slots=True)
class AgentResult:
    tool: str
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def execute(self, prompt: str, *, cwd: Path) -> AgentResult:
        """Run one implementation attempt against the working tree in ``cwd``."""


class CliAgentBackend(AgentBackend):
    """Runs an agent CLI as a subprocess, streaming its combined output."""

    stream_limit = STREAM_LIMIT_BYTES

    def __init__(
        self,
        binary: str,
        *,
        output_hook: OutputHook | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        self.binary = binary
        self.output_hook = output_hook
        self.extra_args = list(extra_args or [])

    @abstractmethod
    def build_command(self, prompt: str, prompt_path: Path) -> list[str]:
        """Return the argv for one invocation."""

    def _emit(self, line: str) -> None:
        logger.debug("[%s] %s", self.name, line)
        if self.output_hook is not None:
            self.output_hook(line)

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    async def execute(self, prompt: str, *, cwd: Path) -> AgentResult:
        with tempfile.NamedTemporaryFile(
            mode="w", prefix="taskloop-prompt-", suffix=".md", encoding="utf-8"
        ) as prompt_file:
            prompt_file.write(prompt)
            prompt_file.flush()
            command = self.build_command(prompt, Path(prompt_file.name))
            try:
                # Own session: a terminal Ctrl-C stops the loop, not the edit in flight.
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(cwd),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                    limit=self.stream_limit,
                )
            except FileNotFoundError as exc:
                raise AgentInvocationError(
                    f"Agent binary not found: {self.binary}",
                    tool=self.name,
                    retriable=False,
                ) from exc
            except OSError as exc:
                raise AgentInvocationError(
                    f"Could not start {self.binary}: {exc}",
                    tool=self.name,
                    retriable=False,
                ) from exc

            if process.stdout is None:
                await self._terminate(process)
                raise AgentInvocationError(
                    f"{self.name} backend did not expose stdout.", tool=self.name
                )

            lines: list[str] = []
            try:
                async for raw_line in process.stdout:
                    line = raw_line.decode("utf-8", errors="replace").rstrip()
                    if not line:
                        continue
                    lines.append(line)
                    if len(lines) > OUTPUT_TAIL_LINES:
                        del lines[0]
                    self._emit(line)
                return_code = await process.wait()
            except asyncio.CancelledError:
                await self._terminate(process)
                raise
            except (ValueError, OSError) as exc:
                # ValueError: a single line overran the stream limit.
                await self._terminate(process)
                raise AgentInvocationError(
                    f"Could not read {self.name} output: {exc}", tool=self.name
                ) from exc

        return AgentResult(tool=self.name, exit_code=return_code, output="\n".join(lines))
