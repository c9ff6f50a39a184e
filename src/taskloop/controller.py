from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskloop.backends.invoker import AgentInvoker
from taskloop.config import EngineConfig
from taskloop.errors import (
    AgentInvocationError,
    CommitError,
    NothingToCommit,
    QualityCheckFailed,
    TaskLoopError,
)
from taskloop.models import (
    IN_PROGRESS,
    LOOP_COMPLETED,
    LOOP_FAILED,
    LOOP_PAUSED,
    LOOP_RUNNING,
    Task,
    utcnow_iso,
)
from taskloop.quality import QualityGate
from taskloop.scheduler import UnresolvedTask, select_next, unresolved_tasks
from taskloop.state.commits import CommitManager
from taskloop.state.lock import RunLock
from taskloop.state.progress import ProgressLog
from taskloop.state.store import StoreSnapshot, TaskStore

logger = logging.getLogger(__name__)

RUN_COMPLETE = "complete"
RUN_PARTIAL = "partial"
RUN_LIMIT_REACHED = "limit_reached"
RUN_STALLED = "stalled"
RUN_ABORTED = "aborted"
RUN_STOPPED = "stopped"

EXIT_CODES = {
    RUN_COMPLETE: 0,
    RUN_LIMIT_REACHED: 0,
    RUN_STOPPED: 0,
    RUN_PARTIAL: 2,
    RUN_STALLED: 2,
    RUN_ABORTED: 2,
}

PROGRESS_TAIL_FOR_PROMPT = 20


@dataclass(slots=True)
class IterationOutcome:
    iteration: int
    task_id: str
    succeeded: bool
    commit_sha: str | None = None
    error: str | None = None


@dataclass(slots=True)
class RunSummary:
    status: str
    iterations_run: int = 0
    completed_task_ids: list[str] = field(default_factory=list)
    failed_task_ids: list[str] = field(default_factory=list)
    unresolved: list[UnresolvedTask] = field(default_factory=list)
    started_at: str = field(default_factory=utcnow_iso)
    ended_at: str | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.status, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "iterations_run": self.iterations_run,
            "completed_task_ids": list(self.completed_task_ids),
            "failed_task_ids": list(self.failed_task_ids),
            "unresolved": [
                {"task_id": item.task_id, "status": item.status, "reason": item.reason}
                for item in self.unresolved
            ],
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


def _find_task(tasks: list[Task], task_id: str) -> Task | None:
    for task in tasks:
        if task.id == task_id:
            return task
    return None


class IterationController:
    """Drives the select, implement, verify, commit, record cycle.

    Only one iteration runs at a time and at most one task is ``in_progress``.
    Agent failures, failed checks and empty commits are recorded in the
    progress log and the loop moves on; store corruption and concurrent
    writers propagate to the caller.
    """

    def __init__(
        self,
        *,
        repo_root: Path,
        store: TaskStore,
        progress_log: ProgressLog,
        invoker: AgentInvoker,
        quality_gate: QualityGate,
        commit_manager: CommitManager,
        run_lock: RunLock,
        engine: EngineConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.store = store
        self.progress_log = progress_log
        self.invoker = invoker
        self.quality_gate = quality_gate
        self.commit_manager = commit_manager
        self.run_lock = run_lock
        self.engine = engine or EngineConfig()
        self._sleep = sleep
        self._stop_requested = False

    def request_stop(self) -> None:
        """Stop at the next iteration boundary; an in-flight attempt is never interrupted."""
        if not self._stop_requested:
            logger.warning("Stop requested; finishing the current iteration first.")
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def _set_loop_status(self, status: str) -> None:
        snapshot = self.store.load_snapshot()
        snapshot.progress.status = status
        self.store.save(snapshot.project, snapshot.config, snapshot.tasks, snapshot.progress)

    async def run(self, max_iterations: int | None = None) -> RunSummary:
        with self.run_lock:
            return await self._run_locked(max_iterations)

    async def _run_locked(self, max_iterations: int | None) -> RunSummary:
        summary = RunSummary(status=RUN_COMPLETE)
        consecutive_failures = 0
        try:
            self._set_loop_status(LOOP_RUNNING)
            while True:
                snapshot = self.store.load_snapshot()
                limit = snapshot.config.max_iterations
                if max_iterations is not None:
                    limit = max_iterations
                next_iteration = snapshot.progress.total_iterations_run + 1

                stuck = [task for task in snapshot.tasks if task.status == IN_PROGRESS]
                if stuck:
                    for task in stuck:
                        self.progress_log.record(
                            snapshot.progress.current_iteration,
                            "ERROR",
                            "Task is still in_progress from an earlier attempt; "
                            "reset it to pending or mark it blocked to continue.",
                            task_id=task.id,
                        )
                    summary.status = RUN_STALLED
                    break

                task = select_next(snapshot.tasks)
                if task is None:
                    summary.status = (
                        RUN_PARTIAL if unresolved_tasks(snapshot.tasks) else RUN_COMPLETE
                    )
                    break
                if summary.iterations_run >= limit:
                    summary.status = RUN_LIMIT_REACHED
                    break
                if self._stop_requested:
                    summary.status = RUN_STOPPED
                    break

                outcome = await self.run_iteration(snapshot, task, next_iteration)
                summary.iterations_run += 1
                if outcome.succeeded:
                    consecutive_failures = 0
                    summary.completed_task_ids.append(outcome.task_id)
                else:
                    consecutive_failures += 1
                    summary.failed_task_ids.append(outcome.task_id)

                max_failures = int(self.engine.max_consecutive_failures)
                if max_failures > 0 and consecutive_failures >= max_failures:
                    logger.error("%d consecutive failures; aborting the run.", consecutive_failures)
                    summary.status = RUN_ABORTED
                    break

                if (
                    self.engine.pause_seconds > 0
                    and summary.iterations_run < limit
                    and not self._stop_requested
                ):
                    await self._sleep(float(self.engine.pause_seconds))
        except TaskLoopError as exc:
            self.progress_log.record(0, "ERROR", f"Run halted: {exc}")
            try:
                self._set_loop_status(LOOP_FAILED)
            except TaskLoopError as status_exc:
                logger.error("Could not record failed loop status: %s", status_exc)
            raise

        snapshot = self.store.load_snapshot()
        summary.unresolved = unresolved_tasks(snapshot.tasks)
        summary.ended_at = utcnow_iso()
        self._set_loop_status(LOOP_COMPLETED if summary.status == RUN_COMPLETE else LOOP_PAUSED)
        logger.info(
            "Run finished: %s after %d iteration(s)", summary.status, summary.iterations_run
        )
        return summary

    async def run_iteration(
        self, snapshot: StoreSnapshot, task: Task, iteration: int
    ) -> IterationOutcome:
        task.transition(IN_PROGRESS)
        task.iteration = iteration
        progress = snapshot.progress
        progress.status = LOOP_RUNNING
        progress.current_iteration = iteration
        progress.total_iterations_run = iteration
        progress.last_iteration_at = utcnow_iso()
        # Persist before the agent starts so a crash leaves an accurate record.
        self.store.save(snapshot.project, snapshot.config, snapshot.tasks, progress)
        self.progress_log.record(iteration, "STARTED", task.title, task_id=task.id)

        context: dict[str, Any] = {
            "iteration": iteration,
            "repo_root": str(self.repo_root),
            "config": snapshot.config,
            "progress_tail": self.progress_log.tail(PROGRESS_TAIL_FOR_PROMPT),
        }
        try:
            await self.invoker.implement(task, context)
        except AgentInvocationError as exc:
            self.progress_log.record(iteration, "ERROR", f"Agent invocation failed: {exc}", task.id)
            return self._record_failure(task.id, iteration, str(exc))

        try:
            quality = self.quality_gate.enforce(snapshot.config.quality_checks)
        except QualityCheckFailed as exc:
            failed = exc.result
            message = f"FAILED `{failed.failed_command}`"
            tail = " | ".join(failed.output.strip().splitlines()[-5:])
            if tail:
                message = f"{message}: {tail}"
            self.progress_log.record(iteration, "QUALITY_CHECK", message, task.id)
            return self._record_failure(task.id, iteration, str(exc))
        passed = len(quality.results)
        self.progress_log.record(
            iteration, "QUALITY_CHECK", f"PASSED ({passed} check(s))", task.id
        )

        try:
            commit_sha = self.commit_manager.commit(task)
        except NothingToCommit as exc:
            self.progress_log.record(
                iteration,
                "ERROR",
                f"{exc} The agent may have reported success without changing anything.",
                task.id,
            )
            return self._record_failure(task.id, iteration, str(exc))
        except CommitError as exc:
            self.progress_log.record(iteration, "ERROR", f"Commit failed: {exc}", task.id)
            return self._record_failure(task.id, iteration, str(exc))

        fresh = self.store.load_snapshot()
        current = _find_task(fresh.tasks, task.id)
        if current is None or current.status != IN_PROGRESS:
            state = "removed" if current is None else current.status
            self.progress_log.record(
                iteration,
                "ERROR",
                f"Committed {commit_sha[:10]} but the task was {state} by an operator "
                "during the iteration; its status was left untouched.",
                task.id,
            )
            return IterationOutcome(iteration, task.id, False, commit_sha, "task changed")
        current.mark_completed(commit_sha, iteration)
        self.store.save(fresh.project, fresh.config, fresh.tasks)
        self.progress_log.record(
            iteration,
            "COMMIT",
            f"{commit_sha[:10]} {self.commit_manager.message_for(task)}",
            task.id,
        )
        self.progress_log.record(iteration, "COMPLETED", task.title, task.id)
        return IterationOutcome(iteration, task.id, True, commit_sha=commit_sha)

    def _record_failure(self, task_id: str, iteration: int, reason: str) -> IterationOutcome:
        if self.engine.revert_on_failure:
            fresh = self.store.load_snapshot()
            current = _find_task(fresh.tasks, task_id)
            if current is not None and current.status == IN_PROGRESS:
                current.reset()
                self.store.save(fresh.project, fresh.config, fresh.tasks)
            self.progress_log.record(
                iteration,
                "LEARNING",
                "Attempt failed; task returned to pending for the next iteration.",
                task_id,
            )
        else:
            self.progress_log.record(
                iteration,
                "LEARNING",
                "Attempt failed; task left in_progress. Reset it to retry or block it.",
                task_id,
            )
        return IterationOutcome(iteration, task_id, False, error=reason)
