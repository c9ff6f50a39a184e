from __future__ import annotations

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from taskloop.errors import QualityCheckFailed

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`*?~]|[$]\(|[$]\{?\w)")
OUTPUT_TAIL_CHARS = 4000


@dataclass(slots=True)
class CheckResult:
    command: str
    exit_code: int
    output: str
    timed_out: bool = False
    used_shell: bool = False

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass(slots=True)
class QualityResult:
    passed: bool
    failed_command: str | None = None
    output: str = ""
    results: list[CheckResult] = field(default_factory=list)


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    text = text.strip()
    return text[-limit:] if len(text) > limit else text


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class QualityGate:
    """Runs the configured check commands against the working tree, fail-fast."""

    def __init__(self, repo_root: Path, timeout_seconds: float = 600.0) -> None:
        self.repo_root = repo_root.resolve()
        self.timeout_seconds = timeout_seconds

    def run_command(self, command: str) -> CheckResult:
        command_text = command.strip()
        if not command_text:
            return CheckResult(command=command, exit_code=1, output="Command is empty.")

        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
                command_payload = command_text

        try:
            proc = subprocess.run(
                command_payload,
                cwd=self.repo_root,
                shell=used_shell,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            output = _as_text(exc.stdout) + _as_text(exc.stderr)
            return CheckResult(
                command=command,
                exit_code=-1,
                output=_tail(f"{output}\nTimed out after {self.timeout_seconds:.0f}s"),
                timed_out=True,
                used_shell=used_shell,
            )
        except (FileNotFoundError, PermissionError) as exc:
            return CheckResult(
                command=command,
                exit_code=127,
                output=f"Cannot execute command: {exc}",
                used_shell=used_shell,
            )

        output = "\n".join(part for part in (proc.stdout.strip(), proc.stderr.strip()) if part)
        return CheckResult(
            command=command,
            exit_code=proc.returncode,
            output=_tail(output),
            used_shell=used_shell,
        )

    def run(self, commands: list[str]) -> QualityResult:
        results: list[CheckResult] = []
        for command in commands:
            logger.info("Running quality check: %s", command)
            result = self.run_command(command)
            results.append(result)
            if not result.passed:
                logger.warning(
                    "Quality check failed (exit %s%s): %s",
                    result.exit_code,
                    ", timed out" if result.timed_out else "",
                    command,
                )
                return QualityResult(
                    passed=False,
                    failed_command=command,
                    output=result.output,
                    results=results,
                )
        combined = "\n".join(f"$ {r.command}\n{r.output}".rstrip() for r in results)
        return QualityResult(passed=True, output=_tail(combined), results=results)

    def enforce(self, commands: list[str]) -> QualityResult:
        result = self.run(commands)
        if not result.passed:
            raise QualityCheckFailed(result)
        return result
