from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from taskloop.backends.base import AgentBackend, AgentResult
from taskloop.errors import AgentInvocationError
from taskloop.models import Task

logger = logging.getLogger(__name__)

PromptBuilder = Callable[[Task, dict[str, Any]], str]


class AgentInvoker:
    """Hands one task to the external agent and waits for it, with a timeout."""

    def __init__(
        self,
        backend: AgentBackend,
        prompt_builder: PromptBuilder,
        *,
        repo_root: Path,
        timeout_seconds: float = 1800.0,
    ) -> None:
        self.backend = backend
        self.prompt_builder = prompt_builder
        self.repo_root = repo_root.resolve()
        self.timeout_seconds = timeout_seconds

    async def implement(self, task: Task, context: dict[str, Any]) -> AgentResult:
        prompt = self.prompt_builder(task, context)
        tool = getattr(self.backend, "name", "agent")
        logger.info("Invoking %s for task %s", tool, task.id)
        try:
            result = await asyncio.wait_for(
                self.backend.execute(prompt, cwd=self.repo_root),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as exc:
            raise AgentInvocationError(
                f"{tool} timed out after {self.timeout_seconds:.0f}s on task {task.id}",
                tool=tool,
                timed_out=True,
            ) from exc

        if not result.ok:
            tail = result.output.strip().splitlines()[-5:]
            detail = f": {' | '.join(tail)}" if tail else ""
            raise AgentInvocationError(
                f"{tool} exited with code {result.exit_code} on task {task.id}{detail}",
                tool=tool,
                exit_code=result.exit_code,
            )
        return result
