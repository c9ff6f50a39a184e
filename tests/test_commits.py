import subprocess
from pathlib import Path

import pytest

from taskloop.errors import CommitError, NothingToCommit
from taskloop.models import Task
from taskloop.state.commits import (
    CommitManager,
    build_commit_message,
    infer_commit_type,
    short_description,
)


def _git(repo_path: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=repo_path, check=True, text=True, capture_output=True
    )
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    _git(repo_path, "init")
    _git(repo_path, "config", "user.email", "test@example.com")
    _git(repo_path, "config", "user.name", "Test User")
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _git(repo_path, "add", "README.md")
    _git(repo_path, "commit", "-m", "seed")


def test_commit_type_is_inferred_from_title() -> None:
    assert infer_commit_type("Fix login redirect") == "fix"
    assert infer_commit_type("Add tests for parser") == "test"
    assert infer_commit_type("Update README badges") == "docs"
    assert infer_commit_type("Refactor storage layer") == "refactor"
    assert infer_commit_type("Create user model") == "feat"


def test_short_description_lowercases_and_truncates() -> None:
    assert short_description("Create user model.") == "create user model"
    assert short_description("API client") == "API client"
    assert len(short_description("x" * 120)) == 72


def test_commit_message_format() -> None:
    task = Task(id="2.1", title="Add login form")

    assert build_commit_message(task, "web-app") == "feat(web-app): 2.1 - add login form"
    assert build_commit_message(task, "", "chore") == "chore: 2.1 - add login form"


def test_commit_creates_one_commit_with_task_message(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "app.py").write_text("print('hi')\n", encoding="utf-8")
    manager = CommitManager(tmp_path, scope="Demo App")

    sha = manager.commit(Task(id="1.0", title="Create app entry point"))

    assert sha == _git(tmp_path, "rev-parse", "HEAD")
    assert _git(tmp_path, "log", "-1", "--format=%s") == (
        "feat(demo-app): 1.0 - create app entry point"
    )
    assert "Task: 1.0" in _git(tmp_path, "log", "-1", "--format=%b")
    assert manager.changed_files() == []


def test_commit_without_changes_raises(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    before = _git(tmp_path, "rev-parse", "HEAD")

    with pytest.raises(NothingToCommit):
        CommitManager(tmp_path).commit(Task(id="1", title="Nothing"))

    assert _git(tmp_path, "rev-parse", "HEAD") == before


def test_excluded_state_dir_is_not_committed(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    state_dir = tmp_path / ".claude" / "auto"
    state_dir.mkdir(parents=True)
    (state_dir / "prd.json").write_text("{}\n", encoding="utf-8")
    manager = CommitManager(tmp_path, exclude_paths=[".claude/auto"])

    with pytest.raises(NothingToCommit):
        manager.commit(Task(id="1", title="State only"))

    (tmp_path / "feature.py").write_text("x = 1\n", encoding="utf-8")
    manager.commit(Task(id="1", title="Feature"))

    committed = _git(tmp_path, "show", "--name-only", "--format=", "HEAD").splitlines()
    assert committed == ["feature.py"]


def test_commit_outside_git_repo_fails(tmp_path: Path) -> None:
    (tmp_path / "file.txt").write_text("x\n", encoding="utf-8")

    with pytest.raises(CommitError):
        CommitManager(tmp_path).commit(Task(id="1", title="Anything"))
