from __future__ import annotations

from taskloop.backends.base import AgentBackend, AgentResult, CliAgentBackend, OutputHook
from taskloop.backends.claude import ClaudeCodeBackend
from taskloop.backends.codex import CodexBackend
from taskloop.backends.invoker import AgentInvoker
from taskloop.backends.prompt_file import PromptFileBackend
from taskloop.config import AgentsConfig
from taskloop.errors import AgentInvocationError
from taskloop.models import AI_TOOLS


def build_backend(
    tool: str,
    agents: AgentsConfig | None = None,
    *,
    output_hook: OutputHook | None = None,
) -> AgentBackend:
    """Build the backend for ``tool``, refusing anything outside the allow-list."""
    normalized = tool.strip().lower()
    if normalized not in AI_TOOLS:
        raise AgentInvocationError(
            f"Refused to invoke unsupported AI tool {tool!r} (allowed: {', '.join(AI_TOOLS)})",
            tool=tool,
            retriable=False,
        )
    agents = agents or AgentsConfig()
    binary = agents.binary_for(normalized)
    if normalized == "claude":
        return ClaudeCodeBackend(binary, output_hook=output_hook)
    if normalized == "codex":
        return CodexBackend(binary, output_hook=output_hook)
    if normalized == "amp":
        return PromptFileBackend("amp", binary, flag="--prompt-file", output_hook=output_hook)
    return PromptFileBackend("cursor", binary, output_hook=output_hook)


__all__ = [
    "AgentBackend",
    "AgentInvoker",
    "AgentResult",
    "ClaudeCodeBackend",
    "CliAgentBackend",
    "CodexBackend",
    "PromptFileBackend",
    "build_backend",
]
