from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from taskloop.errors import ConcurrentWriteConflict, CorruptState, DependencyCycle
from taskloop.models import (
    COMPLETED,
    SCHEMA_VERSION,
    TASK_PRIORITIES,
    TASK_STATUSES,
    LoopProgress,
    Project,
    StoreConfig,
    Task,
)

logger = logging.getLogger(__name__)

_DOCUMENT_KEYS = frozenset({"version", "project", "config", "tasks", "progress"})


@dataclass(slots=True)
class StoreSnapshot:
    project: Project
    config: StoreConfig
    tasks: list[Task]
    progress: LoopProgress = field(default_factory=LoopProgress)
    version: str = SCHEMA_VERSION
    extra: dict[str, Any] = field(default_factory=dict)


def find_dependency_cycle(tasks: list[Task]) -> list[str] | None:
    """Return the first dependency cycle as a closed path of ids, or None."""
    graph = {task.id: task.depends_on for task in tasks}
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def _visit(task_id: str) -> list[str] | None:
        visiting.append(task_id)
        on_path.add(task_id)
        for dep in graph.get(task_id, []):
            if dep in on_path:
                return visiting[visiting.index(dep) :] + [dep]
            if dep in done or dep not in graph:
                continue
            cycle = _visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        on_path.discard(task_id)
        done.add(task_id)
        return None

    for task in tasks:
        if task.id not in done:
            cycle = _visit(task.id)
            if cycle:
                return cycle
    return None


def validate_tasks(tasks: list[Task]) -> list[str]:
    errors: list[str] = []
    ids: set[str] = set()
    for task in tasks:
        if not task.id:
            errors.append("task missing id")
            continue
        if task.id in ids:
            errors.append(f"duplicate task id: {task.id}")
        ids.add(task.id)
        if not task.title:
            errors.append(f"task {task.id} missing title")
        if task.status not in TASK_STATUSES:
            errors.append(f"task {task.id} has invalid status: {task.status}")
        if task.priority not in TASK_PRIORITIES:
            errors.append(f"task {task.id} has invalid priority: {task.priority}")
        if task.status == COMPLETED and not task.commit_sha:
            errors.append(f"task {task.id} is completed without a commit_sha")
        if task.status != COMPLETED and task.commit_sha:
            errors.append(f"task {task.id} has commit_sha but status is {task.status}")

    for task in tasks:
        for dep in task.depends_on:
            if dep not in ids:
                errors.append(f"task {task.id} depends on unknown task: {dep}")
    return errors


def _next_timestamp(previous: str | None) -> str:
    now = datetime.now(UTC)
    if previous:
        try:
            prior = datetime.fromisoformat(previous)
        except ValueError:
            prior = None
        if prior is not None and prior.tzinfo is not None and now <= prior:
            now = prior + timedelta(microseconds=1)
    return now.isoformat(timespec="microseconds")


class TaskStore:
    """Owns the persisted task document (``prd.json``)."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_file = path.with_name(f".{path.name}.lock")

    def exists(self) -> bool:
        return self.path.exists()

    @contextmanager
    def _store_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise ConcurrentWriteConflict("Timed out waiting for task store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self) -> dict[str, Any]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise CorruptState(f"Task store not found: {self.path}") from exc
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise CorruptState(f"Task store is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise CorruptState("Task store must be a JSON object.")
        return payload

    @staticmethod
    def _parse(payload: dict[str, Any]) -> StoreSnapshot:
        version = payload.get("version")
        if not version:
            raise CorruptState("Task store is missing 'version'.")
        project_raw = payload.get("project")
        config_raw = payload.get("config") or {}
        tasks_raw = payload.get("tasks") or []
        if not isinstance(project_raw, dict) or not project_raw.get("name"):
            raise CorruptState("Task store is missing 'project.name'.")
        if not isinstance(config_raw, dict) or not isinstance(tasks_raw, list):
            raise CorruptState("Task store 'config' or 'tasks' has the wrong shape.")

        try:
            config = StoreConfig.from_dict(config_raw)
            tasks = [Task.from_dict(item) for item in tasks_raw if isinstance(item, dict)]
            progress = LoopProgress.from_dict(payload.get("progress") or {})
        except (TypeError, ValueError) as exc:
            raise CorruptState(f"Task store has malformed fields: {exc}") from exc
        if len(tasks) != len(tasks_raw):
            raise CorruptState("Every task entry must be a JSON object.")

        errors = validate_tasks(tasks)
        if errors:
            raise CorruptState("Task store failed validation: " + "; ".join(errors))
        cycle = find_dependency_cycle(tasks)
        if cycle:
            raise DependencyCycle(cycle)

        return StoreSnapshot(
            project=Project.from_dict(project_raw),
            config=config,
            tasks=tasks,
            progress=progress,
            version=str(version),
            extra={key: value for key, value in payload.items() if key not in _DOCUMENT_KEYS},
        )

    def load_snapshot(self) -> StoreSnapshot:
        return self._parse(self._read_raw())

    def load(self) -> tuple[Project, StoreConfig, list[Task]]:
        snapshot = self.load_snapshot()
        return snapshot.project, snapshot.config, snapshot.tasks

    def read_progress(self) -> LoopProgress:
        return self.load_snapshot().progress

    @staticmethod
    def render(snapshot: StoreSnapshot) -> str:
        document = {
            "version": snapshot.version,
            "project": snapshot.project.to_dict(),
            "config": snapshot.config.to_dict(),
            "tasks": [task.to_dict() for task in snapshot.tasks],
            "progress": snapshot.progress.to_dict(),
        }
        for key, value in snapshot.extra.items():
            document.setdefault(key, value)
        return json.dumps(document, ensure_ascii=False, indent=2) + "\n"

    def _write_atomic(self, serialized: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    def save(
        self,
        project: Project,
        config: StoreConfig,
        tasks: list[Task],
        progress: LoopProgress | None = None,
    ) -> None:
        """Persist the document, refusing to clobber a newer on-disk version.

        ``project.updated_at`` must still hold the value read by ``load``; it
        is replaced with the new timestamp once the write succeeds.
        """
        errors = validate_tasks(tasks)
        if errors:
            raise CorruptState("Refusing to save invalid tasks: " + "; ".join(errors))
        cycle = find_dependency_cycle(tasks)
        if cycle:
            raise DependencyCycle(cycle)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._store_lock():
            on_disk: StoreSnapshot | None = None
            if self.path.exists():
                on_disk = self._parse(self._read_raw())
                if on_disk.project.updated_at != project.updated_at:
                    raise ConcurrentWriteConflict(
                        "Task store was modified by another writer "
                        f"(on disk {on_disk.project.updated_at}, loaded {project.updated_at})."
                    )
            if progress is None:
                progress = on_disk.progress if on_disk is not None else LoopProgress()
            progress.recalculate(tasks)

            updated_at = _next_timestamp(project.updated_at)
            snapshot = StoreSnapshot(
                project=Project(
                    name=project.name,
                    description=project.description,
                    source_prd=project.source_prd,
                    created_at=project.created_at,
                    updated_at=updated_at,
                    extra=dict(project.extra),
                ),
                config=config,
                tasks=tasks,
                progress=progress,
                extra=dict(on_disk.extra) if on_disk is not None else {},
            )
            self._write_atomic(self.render(snapshot))
            project.updated_at = updated_at
        logger.debug("Saved task store %s (%d tasks)", self.path, len(tasks))

    def create(
        self,
        project: Project,
        config: StoreConfig,
        tasks: list[Task],
        *,
        force: bool = False,
    ) -> None:
        if self.path.exists() and not force:
            raise ConcurrentWriteConflict(f"Task store already exists: {self.path}")
        errors = validate_tasks(tasks)
        if errors:
            raise CorruptState("Refusing to create invalid tasks: " + "; ".join(errors))
        cycle = find_dependency_cycle(tasks)
        if cycle:
            raise DependencyCycle(cycle)
        progress = LoopProgress()
        progress.recalculate(tasks)
        project.updated_at = _next_timestamp(project.updated_at)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._store_lock():
            self._write_atomic(
                self.render(
                    StoreSnapshot(project=project, config=config, tasks=tasks, progress=progress)
                )
            )
        logger.info("Created task store %s with %d tasks", self.path, len(tasks))
