from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

from taskloop.errors import CommitError, NothingToCommit
from taskloop.models import Task

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 72

_COMMIT_TYPE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("fix", ("fix", "bug", "repair", "resolve")),
    ("test", ("test", "tests", "coverage")),
    ("docs", ("doc", "docs", "document", "readme")),
    ("refactor", ("refactor", "cleanup", "clean up", "simplify")),
    ("chore", ("chore", "bump", "upgrade", "ci")),
]


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.strip().lower())
    return slug.strip("-")


def infer_commit_type(title: str) -> str:
    words = set(re.findall(r"[a-z]+", title.lower()))
    lowered = title.lower()
    for commit_type, keywords in _COMMIT_TYPE_KEYWORDS:
        for keyword in keywords:
            if (" " in keyword and keyword in lowered) or keyword in words:
                return commit_type
    return "feat"


def short_description(title: str, limit: int = MAX_DESCRIPTION_LENGTH) -> str:
    text = " ".join(title.split()).rstrip(".")
    if text[:1].isupper() and not text[1:2].isupper():
        text = text[:1].lower() + text[1:]
    if len(text) > limit:
        text = text[: limit - 3].rstrip() + "..."
    return text


def build_commit_message(task: Task, scope: str, commit_type: str = "") -> str:
    kind = commit_type or infer_commit_type(task.title)
    scope_part = f"({scope})" if scope else ""
    return f"{kind}{scope_part}: {task.id} - {short_description(task.title)}"


class CommitManager:
    """Creates one git commit per completed task."""

    def __init__(
        self,
        repo_root: Path,
        *,
        scope: str = "",
        commit_type: str = "",
        exclude_paths: list[str] | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.scope = slugify(scope)
        self.commit_type = commit_type
        self.exclude_paths = list(exclude_paths or [])

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise CommitError("git executable not found.") from exc
        if check and proc.returncode != 0:
            raise CommitError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _pathspec(self) -> list[str]:
        return ["--", ".", *(f":(exclude){path}" for path in self.exclude_paths)]

    def is_git_repo(self) -> bool:
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def changed_files(self) -> list[str]:
        proc = self._run_git(["status", "--porcelain", *self._pathspec()])
        files: list[str] = []
        for line in proc.stdout.splitlines():
            path = line[3:].strip()
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            if path:
                files.append(path.strip('"'))
        return files

    def head_revision(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def message_for(self, task: Task) -> str:
        return build_commit_message(task, self.scope, self.commit_type)

    def commit(self, task: Task) -> str:
        if not self.is_git_repo():
            raise CommitError(f"Not a git repository: {self.repo_root}")
        self._run_git(["add", "-A", *self._pathspec()])
        staged = self._run_git(["diff", "--cached", "--name-only"]).stdout.split()
        if not staged:
            raise NothingToCommit(
                f"Task {task.id} produced no working-tree changes to commit."
            )
        message = self.message_for(task)
        body = f"Task: {task.id}\n\n{task.description}".strip()
        self._run_git(["commit", "-m", message, "-m", body])
        revision = self.head_revision()
        logger.info("Committed %s as %s (%d files)", task.id, revision[:10], len(staged))
        return revision
