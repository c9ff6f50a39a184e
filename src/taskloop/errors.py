from __future__ import annotations

from typing import Any


class TaskLoopError(RuntimeError):
    """Base class for every error raised by the iteration engine."""


class CorruptState(TaskLoopError):
    """Raised when the task store cannot be parsed or violates an invariant."""


class DependencyCycle(CorruptState):
    """Raised when task dependencies form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class ConcurrentWriteConflict(TaskLoopError):
    """Raised when the store changed on disk since it was loaded."""


class ConcurrentLockError(TaskLoopError):
    """Raised when another run already holds the run lock."""


class InvalidTransition(TaskLoopError):
    """Raised for a task status change the lifecycle does not allow."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"Task {task_id}: cannot move from '{current}' to '{target}'.")
        self.task_id = task_id
        self.current = current
        self.target = target


class TaskNotFound(TaskLoopError):
    """Raised when a task id is not present in the store."""


class DuplicateTask(TaskLoopError):
    """Raised when adding a task whose id already exists."""


class AgentInvocationError(TaskLoopError):
    """Raised when the external agent fails, times out, or cannot be started."""

    def __init__(
        self,
        message: str,
        *,
        tool: str | None = None,
        exit_code: int | None = None,
        timed_out: bool = False,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.tool = tool
        self.exit_code = exit_code
        self.timed_out = timed_out
        self.retriable = retriable


class QualityCheckFailed(TaskLoopError):
    """Raised when a quality-gate command fails."""

    def __init__(self, result: Any) -> None:
        super().__init__(f"Quality check failed: {result.failed_command}")
        self.result = result


class CommitError(TaskLoopError):
    """Raised when git refuses to create the task commit."""


class NothingToCommit(CommitError):
    """Raised when the working tree holds no changes to commit."""


class ConversionError(TaskLoopError):
    """Raised when a requirements or task-list document cannot be imported."""
