import asyncio
from pathlib import Path
from typing import Any

import pytest

from taskloop.backends import (
    AgentBackend,
    AgentInvoker,
    AgentResult,
    ClaudeCodeBackend,
    CliAgentBackend,
    CodexBackend,
    PromptFileBackend,
    build_backend,
)
from taskloop.config import AgentsConfig
from taskloop.errors import AgentInvocationError
from taskloop.models import Task


class ShellBackend(CliAgentBackend):
    name = "shell"

    def __init__(self, script: str, **kwargs) -> None:
        super().__init__("sh", **kwargs)
        self.script = script

    def build_command(self, prompt: str, prompt_path: Path) -> list[str]:
        return [self.binary, "-c", self.script, "agent", str(prompt_path)]


class StaticBackend(AgentBackend):
    name = "static"

    def __init__(self, exit_code: int = 0, output: str = "done") -> None:
        self.exit_code = exit_code
        self.output = output
        self.prompts: list[str] = []

    async def execute(self, prompt: str, *, cwd: Path) -> AgentResult:
        _ = cwd
        self.prompts.append(prompt)
        return AgentResult(tool=self.name, exit_code=self.exit_code, output=self.output)


def _prompt(task: Task, context: dict[str, Any]) -> str:
    return f"implement {task.id} at iteration {context['iteration']}"


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend("claude")

    command = backend.build_command("do it", Path("/tmp/prompt.md"))

    assert command == ["claude", "-p", "do it", "--dangerously-skip-permissions"]


def test_codex_build_command_shape() -> None:
    backend = CodexBackend("codex", model="o4-mini")

    command = backend.build_command("do it", Path("/tmp/prompt.md"))

    assert command == ["codex", "exec", "--full-auto", "-m", "o4-mini", "do it"]


def test_prompt_file_backends_pass_the_file_path() -> None:
    amp = build_backend("amp")
    cursor = build_backend("Cursor", AgentsConfig(cursor="/usr/local/bin/cursor-agent"))

    assert isinstance(amp, PromptFileBackend)
    assert amp.build_command("x", Path("/tmp/p.md")) == ["amp", "--prompt-file", "/tmp/p.md"]
    assert cursor.build_command("x", Path("/tmp/p.md")) == [
        "/usr/local/bin/cursor-agent",
        "/tmp/p.md",
    ]


def test_build_backend_refuses_tools_outside_allow_list() -> None:
    with pytest.raises(AgentInvocationError) as excinfo:
        build_backend("rm -rf /")

    assert excinfo.value.retriable is False


def test_cli_backend_streams_output_to_hook(tmp_path: Path) -> None:
    seen: list[str] = []
    backend = ShellBackend('echo "first"; echo; echo "read $(cat "$1")"', output_hook=seen.append)

    result = asyncio.run(backend.execute("prompt body", cwd=tmp_path))

    assert result.ok
    assert seen == ["first", "read prompt body"]
    assert result.output == "first\nread prompt body"


def test_cli_backend_reports_exit_code(tmp_path: Path) -> None:
    backend = ShellBackend("echo broken >&2; exit 3")

    result = asyncio.run(backend.execute("p", cwd=tmp_path))

    assert result.exit_code == 3
    assert result.output == "broken"


def test_missing_agent_binary_is_not_retriable(tmp_path: Path) -> None:
    backend = ClaudeCodeBackend("definitely-not-installed-agent")

    with pytest.raises(AgentInvocationError) as excinfo:
        asyncio.run(backend.execute("p", cwd=tmp_path))

    assert excinfo.value.retriable is False


def test_invoker_returns_successful_result(tmp_path: Path) -> None:
    backend = StaticBackend()
    invoker = AgentInvoker(backend, _prompt, repo_root=tmp_path)

    result = asyncio.run(invoker.implement(Task(id="1.0", title="A"), {"iteration": 2}))

    assert result.ok
    assert backend.prompts == ["implement 1.0 at iteration 2"]


def test_invoker_raises_on_non_zero_exit(tmp_path: Path) -> None:
    invoker = AgentInvoker(
        StaticBackend(exit_code=1, output="line one\nfatal: gave up"),
        _prompt,
        repo_root=tmp_path,
    )

    with pytest.raises(AgentInvocationError) as excinfo:
        asyncio.run(invoker.implement(Task(id="1.0", title="A"), {"iteration": 1}))

    assert excinfo.value.exit_code == 1
    assert "fatal: gave up" in str(excinfo.value)
    assert excinfo.value.timed_out is False


def test_invoker_timeout_kills_the_agent(tmp_path: Path) -> None:
    marker = tmp_path / "finished.txt"
    backend = ShellBackend(f"sleep 5; touch {marker}")
    invoker = AgentInvoker(backend, _prompt, repo_root=tmp_path, timeout_seconds=0.3)

    with pytest.raises(AgentInvocationError) as excinfo:
        asyncio.run(invoker.implement(Task(id="1.0", title="A"), {"iteration": 1}))

    assert excinfo.value.timed_out is True
    assert not marker.exists()


def test_agent_binary_without_execute_permission_is_not_retriable(tmp_path: Path) -> None:
    binary = tmp_path / "agent"
    binary.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
    binary.chmod(0o644)
    backend = ClaudeCodeBackend(str(binary))

    with pytest.raises(AgentInvocationError) as excinfo:
        asyncio.run(backend.execute("p", cwd=tmp_path))

    assert excinfo.value.retriable is False
    assert "Could not start" in str(excinfo.value)
