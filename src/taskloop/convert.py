"""Import a requirements document and its generated task checklist.

Only the structured checklist format is understood::

    - [ ] 1.0 Parent task title
      - [ ] 1.1 Sub-task title [~2,000 tokens - Simple]

Indented lines become children of the last top-level task and depend on it.
"""

from __future__ import annotations

import re
from pathlib import Path

from taskloop.errors import ConversionError
from taskloop.models import (
    COMPLETED,
    PENDING,
    TASK_COMPLEXITIES,
    Project,
    StoreConfig,
    Task,
)
from taskloop.state.commits import slugify

TASK_LINE_PATTERN = re.compile(
    r"^(?P<indent>\s*)- \[(?P<check>[ xX])\]\s*(?P<id>\d+(?:\.\d+)+)\s+(?P<title>.+?)"
    r"(?:\s*\[~[\d,]+\s+tokens?\s*-\s*(?P<complexity>\w+)\])?\s*$"
)
TITLE_PATTERN = re.compile(r"^#\s+(.+)$")

# Commit id recorded for tasks that were already checked off before import.
IMPORTED_COMMIT = "imported"


def extract_prd_metadata(content: str) -> tuple[str, str]:
    for line in content.splitlines():
        match = TITLE_PATTERN.match(line.strip())
        if match:
            title = match.group(1).strip()
            return slugify(title) or "unnamed-project", title
    return "unnamed-project", "Converted from PRD"


def parse_task_markdown(content: str) -> list[Task]:
    tasks: list[Task] = []
    parent_id: str | None = None
    for line in content.splitlines():
        match = TASK_LINE_PATTERN.match(line)
        if match is None:
            continue
        complexity = (match.group("complexity") or "").lower()
        if complexity not in TASK_COMPLEXITIES:
            complexity = "medium"
        done = match.group("check") in {"x", "X"}
        task = Task(
            id=match.group("id"),
            title=match.group("title").strip(),
            status=COMPLETED if done else PENDING,
            complexity=complexity,
            commit_sha=IMPORTED_COMMIT if done else None,
            source="prd",
        )
        if match.group("indent"):
            task.parent_id = parent_id
            if parent_id:
                task.depends_on = [parent_id]
        else:
            parent_id = task.id
        tasks.append(task)

    if not tasks:
        raise ConversionError("No valid tasks found in markdown.")
    return tasks


def find_tasks_file(prd_path: Path) -> Path | None:
    """``0001-prd-feature.md`` pairs with ``tasks-0001-prd-feature.md``."""
    candidate = prd_path.with_name(f"tasks-{prd_path.name}")
    return candidate if candidate.is_file() else None


def convert_markdown(
    prd_path: Path,
    tasks_path: Path | None = None,
    *,
    config: StoreConfig | None = None,
) -> tuple[Project, StoreConfig, list[Task]]:
    try:
        prd_content = prd_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConversionError(f"Failed to read PRD {prd_path}: {exc}") from exc
    name, description = extract_prd_metadata(prd_content)
    project = Project(name=name, description=description, source_prd=str(prd_path))

    tasks: list[Task] = []
    if tasks_path is not None:
        try:
            tasks_content = tasks_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConversionError(f"Failed to read tasks file {tasks_path}: {exc}") from exc
        tasks = parse_task_markdown(tasks_content)
    return project, config or StoreConfig(), tasks
