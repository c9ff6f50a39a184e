from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from taskloop.errors import InvalidTransition

SCHEMA_VERSION = "1.0"

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
SKIPPED = "skipped"
BLOCKED = "blocked"

TASK_STATUSES = (PENDING, IN_PROGRESS, COMPLETED, SKIPPED, BLOCKED)
TASK_PRIORITIES = ("critical", "high", "medium", "low")
TASK_COMPLEXITIES = ("simple", "medium", "complex")
ENTRY_KINDS = ("STARTED", "COMPLETED", "ERROR", "LEARNING", "QUALITY_CHECK", "COMMIT")
AI_TOOLS = ("claude", "codex", "amp", "cursor")
SANDBOX_MODES = ("none", "docker", "docker-sandbox")

LOOP_NOT_STARTED = "not_started"
LOOP_RUNNING = "running"
LOOP_PAUSED = "paused"
LOOP_COMPLETED = "completed"
LOOP_FAILED = "failed"

# Statuses that let dependents proceed. Blocked tasks never do.
SATISFIED_STATUSES = frozenset({COMPLETED, SKIPPED})

# Keys modelled explicitly; anything else in the document is carried through untouched.
_PROJECT_KEYS = frozenset({"name", "description", "source_prd", "created_at", "updated_at"})
_CONFIG_KEYS = frozenset(
    {"max_iterations", "quality_checks", "ai_tool", "ai_prompt_file", "sandbox"}
)
_TASK_KEYS = frozenset(
    {
        "id",
        "title",
        "status",
        "priority",
        "complexity",
        "depends_on",
        "files_to_create",
        "files_to_modify",
        "guardrails",
        "commit_sha",
        "iteration",
        "description",
        "parent_id",
        "completed_at",
        "source",
    }
)

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({IN_PROGRESS}),
    IN_PROGRESS: frozenset({COMPLETED, BLOCKED, SKIPPED}),
    COMPLETED: frozenset(),
    SKIPPED: frozenset(),
    BLOCKED: frozenset(),
}


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _unknown_keys(data: dict[str, Any], known: frozenset[str]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if key not in known}


def _str_list(raw: Any) -> list[str]:
    return [str(item) for item in raw or []]


def priority_rank(priority: str) -> int:
    """Lower rank sorts first; unknown priorities rank as medium."""
    try:
        return TASK_PRIORITIES.index(priority)
    except ValueError:
        return TASK_PRIORITIES.index("medium")


@dataclass(slots=True)
class Project:
    name: str
    description: str = ""
    source_prd: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Project:
        return cls(
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            source_prd=data.get("source_prd") or None,
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or ""),
            extra=_unknown_keys(data, _PROJECT_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "description": self.description}
        if self.source_prd:
            payload["source_prd"] = self.source_prd
        payload["created_at"] = self.created_at
        payload["updated_at"] = self.updated_at
        for key, value in self.extra.items():
            payload.setdefault(key, value)
        return payload


@dataclass(slots=True)
class StoreConfig:
    max_iterations: int = 50
    quality_checks: list[str] = field(default_factory=list)
    ai_tool: str = "claude"
    ai_prompt_file: str = ".claude/auto/prompt.md"
    sandbox: str = "none"
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoreConfig:
        checks = data.get("quality_checks") or []
        return cls(
            max_iterations=int(data.get("max_iterations", 50)),
            quality_checks=[str(item) for item in checks],
            ai_tool=str(data.get("ai_tool") or "claude"),
            ai_prompt_file=str(data.get("ai_prompt_file") or ".claude/auto/prompt.md"),
            sandbox=str(data.get("sandbox") or "none"),
            extra=_unknown_keys(data, _CONFIG_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "max_iterations": self.max_iterations,
            "quality_checks": list(self.quality_checks),
            "ai_tool": self.ai_tool,
            "ai_prompt_file": self.ai_prompt_file,
            "sandbox": self.sandbox,
        }
        for key, value in self.extra.items():
            payload.setdefault(key, value)
        return payload


@dataclass(slots=True)
class Task:
    id: str
    title: str
    status: str = PENDING
    priority: str = "medium"
    complexity: str = "medium"
    depends_on: list[str] = field(default_factory=list)
    files_to_create: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    guardrails: list[str] = field(default_factory=list)
    commit_sha: str | None = None
    iteration: int | None = None
    description: str = ""
    parent_id: str | None = None
    completed_at: str | None = None
    source: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def _coerce_id(raw: Any) -> str:
        # Agents sometimes write "id": 1 instead of "id": "1".
        if isinstance(raw, bool) or raw is None:
            return ""
        if isinstance(raw, float) and raw.is_integer():
            return str(int(raw))
        return str(raw)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        iteration = data.get("iteration")
        return cls(
            id=cls._coerce_id(data.get("id")),
            title=str(data.get("title") or ""),
            status=str(data.get("status") or PENDING),
            priority=str(data.get("priority") or "medium"),
            complexity=str(data.get("complexity") or "medium"),
            depends_on=[cls._coerce_id(dep) for dep in data.get("depends_on") or []],
            files_to_create=_str_list(data.get("files_to_create")),
            files_to_modify=_str_list(data.get("files_to_modify")),
            guardrails=_str_list(data.get("guardrails")),
            commit_sha=data.get("commit_sha") or None,
            iteration=int(iteration) if iteration else None,
            description=str(data.get("description") or ""),
            parent_id=cls._coerce_id(data["parent_id"]) if data.get("parent_id") else None,
            completed_at=data.get("completed_at") or None,
            source=data.get("source") or None,
            extra=_unknown_keys(data, _TASK_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "title": self.title}
        if self.description:
            payload["description"] = self.description
        payload["status"] = self.status
        payload["priority"] = self.priority
        payload["complexity"] = self.complexity
        if self.parent_id:
            payload["parent_id"] = self.parent_id
        payload["depends_on"] = list(self.depends_on)
        for key in ("files_to_create", "files_to_modify", "guardrails"):
            values = getattr(self, key)
            if values:
                payload[key] = list(values)
        if self.completed_at:
            payload["completed_at"] = self.completed_at
        if self.commit_sha:
            payload["commit_sha"] = self.commit_sha
        if self.iteration:
            payload["iteration"] = self.iteration
        if self.source:
            payload["source"] = self.source
        for key, value in self.extra.items():
            payload.setdefault(key, value)
        return payload

    def transition(self, target: str) -> None:
        """Apply a lifecycle transition made by the iteration loop."""
        if target not in _ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransition(self.id, self.status, target)
        self.status = target
        if target != COMPLETED:
            self.commit_sha = None
            self.completed_at = None

    def mark_completed(self, commit_sha: str, iteration: int | None) -> None:
        if not commit_sha:
            raise InvalidTransition(self.id, self.status, COMPLETED)
        self.transition(COMPLETED)
        self.commit_sha = commit_sha
        self.iteration = iteration
        self.completed_at = utcnow_iso()

    # Administrative operations. These bypass the loop's transition table.

    def reset(self) -> None:
        self.status = PENDING
        self.commit_sha = None
        self.iteration = None
        self.completed_at = None

    def skip(self) -> None:
        if self.status not in {PENDING, IN_PROGRESS, BLOCKED}:
            raise InvalidTransition(self.id, self.status, SKIPPED)
        self.status = SKIPPED
        self.commit_sha = None
        self.completed_at = None

    def block(self) -> None:
        if self.status not in {PENDING, IN_PROGRESS}:
            raise InvalidTransition(self.id, self.status, BLOCKED)
        self.status = BLOCKED

    def complete(self, commit_sha: str) -> None:
        if self.status not in {PENDING, IN_PROGRESS, BLOCKED} or not commit_sha:
            raise InvalidTransition(self.id, self.status, COMPLETED)
        self.status = COMPLETED
        self.commit_sha = commit_sha
        self.completed_at = utcnow_iso()


@dataclass(slots=True)
class LoopProgress:
    total_tasks: int = 0
    completed_tasks: int = 0
    status: str = LOOP_NOT_STARTED
    current_iteration: int = 0
    total_iterations_run: int = 0
    last_iteration_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoopProgress:
        return cls(
            total_tasks=int(data.get("total_tasks", 0)),
            completed_tasks=int(data.get("completed_tasks", 0)),
            status=str(data.get("status") or LOOP_NOT_STARTED),
            current_iteration=int(data.get("current_iteration", 0)),
            total_iterations_run=int(data.get("total_iterations_run", 0)),
            last_iteration_at=data.get("last_iteration_at") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "status": self.status,
            "current_iteration": self.current_iteration,
            "total_iterations_run": self.total_iterations_run,
        }
        if self.last_iteration_at:
            payload["last_iteration_at"] = self.last_iteration_at
        return payload

    def recalculate(self, tasks: list[Task]) -> None:
        self.total_tasks = len(tasks)
        self.completed_tasks = sum(1 for task in tasks if task.status == COMPLETED)
        if self.total_tasks and self.completed_tasks == self.total_tasks:
            self.status = LOOP_COMPLETED


@dataclass(slots=True, frozen=True)
class ProgressEntry:
    iteration: int
    kind: str
    message: str
    task_id: str | None = None
    timestamp: str = field(default_factory=utcnow_iso)


def count_by_status(tasks: list[Task]) -> dict[str, int]:
    counts = {status: 0 for status in TASK_STATUSES}
    for task in tasks:
        counts[task.status] = counts.get(task.status, 0) + 1
    return counts
