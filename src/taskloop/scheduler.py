"""Task selection.

Everything here is a pure function of the task list: nothing reads or writes
the store, so the ordering rules can be exercised directly in tests.
"""

from __future__ import annotations

from dataclasses import dataclass

from taskloop.models import (
    BLOCKED,
    IN_PROGRESS,
    PENDING,
    SATISFIED_STATUSES,
    Task,
    priority_rank,
)


@dataclass(slots=True, frozen=True)
class UnresolvedTask:
    task_id: str
    status: str
    reason: str


def _sort_key(task: Task) -> tuple[int, str]:
    return priority_rank(task.priority), task.id


def _dependencies_satisfied(task: Task, status_by_id: dict[str, str]) -> bool:
    return all(status_by_id.get(dep) in SATISFIED_STATUSES for dep in task.depends_on)


def eligible_tasks(tasks: list[Task]) -> list[Task]:
    """Pending tasks whose dependencies are all completed or skipped, best first."""
    status_by_id = {task.id: task.status for task in tasks}
    ready = [
        task
        for task in tasks
        if task.status == PENDING and _dependencies_satisfied(task, status_by_id)
    ]
    return sorted(ready, key=_sort_key)


def select_next(tasks: list[Task]) -> Task | None:
    ready = eligible_tasks(tasks)
    if not ready:
        return None
    return ready[0]


def unresolved_tasks(tasks: list[Task]) -> list[UnresolvedTask]:
    """Explain every task that keeps the graph from finishing once nothing is eligible."""
    by_id = {task.id: task for task in tasks}
    report: list[UnresolvedTask] = []
    for task in sorted(tasks, key=_sort_key):
        if task.status == BLOCKED:
            report.append(UnresolvedTask(task.id, task.status, "blocked; needs manual action"))
        elif task.status == IN_PROGRESS:
            report.append(
                UnresolvedTask(
                    task.id,
                    task.status,
                    "left in_progress by a failed attempt; reset or block it",
                )
            )
        elif task.status == PENDING:
            waiting = [
                f"{dep} ({by_id[dep].status if dep in by_id else 'missing'})"
                for dep in task.depends_on
                if dep not in by_id or by_id[dep].status not in SATISFIED_STATUSES
            ]
            if waiting:
                report.append(
                    UnresolvedTask(task.id, task.status, "waiting on " + ", ".join(waiting))
                )
    return report
