import json
from pathlib import Path

import pytest

from taskloop.errors import ConcurrentWriteConflict, CorruptState, DependencyCycle
from taskloop.models import COMPLETED, IN_PROGRESS, Project, StoreConfig, Task
from taskloop.state.store import TaskStore, find_dependency_cycle


def _store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / ".claude" / "auto" / "prd.json")


def _write_raw(store: TaskStore, payload: dict) -> None:
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.path.write_text(json.dumps(payload), encoding="utf-8")


def _payload(tasks: list[dict]) -> dict:
    return {
        "version": "1.0",
        "project": {"name": "demo", "updated_at": "2026-01-01T00:00:00+00:00"},
        "config": {"quality_checks": ["true"]},
        "tasks": tasks,
    }


def test_create_and_load_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    tasks = [
        Task(id="1.0", title="Setup", priority="high"),
        Task(id="2.0", title="Build", depends_on=["1.0"], description="Do the build"),
    ]

    store.create(Project(name="demo"), StoreConfig(quality_checks=["pytest -q"]), tasks)
    project, config, loaded = store.load()

    assert project.name == "demo"
    assert config.quality_checks == ["pytest -q"]
    assert config.max_iterations == 50
    assert [task.id for task in loaded] == ["1.0", "2.0"]
    assert loaded[1].depends_on == ["1.0"]
    assert loaded[1].description == "Do the build"
    assert store.read_progress().total_tasks == 2


def test_rendered_document_is_indented_json(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(Project(name="demo"), StoreConfig(), [Task(id="1", title="One")])

    content = store.path.read_text(encoding="utf-8")

    assert content.endswith("\n")
    assert '\n  "version": "1.0"' in content
    assert not store.path.with_name("prd.json.tmp").exists()
    assert not store.lock_file.exists()


def test_create_refuses_to_overwrite_without_force(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(Project(name="demo"), StoreConfig(), [])

    with pytest.raises(ConcurrentWriteConflict):
        store.create(Project(name="demo"), StoreConfig(), [])

    store.create(Project(name="other"), StoreConfig(), [], force=True)
    assert store.load()[0].name == "other"


def test_dependency_cycle_is_reported_with_path(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _write_raw(
        store,
        _payload(
            [
                {"id": "1.0", "title": "A", "status": "pending", "depends_on": ["2.0"]},
                {"id": "2.0", "title": "B", "status": "pending", "depends_on": ["1.0"]},
            ]
        ),
    )

    with pytest.raises(DependencyCycle) as excinfo:
        store.load()

    assert excinfo.value.cycle == ["1.0", "2.0", "1.0"]
    assert "1.0 -> 2.0 -> 1.0" in str(excinfo.value)
    assert isinstance(excinfo.value, CorruptState)


def test_find_dependency_cycle_ignores_acyclic_graphs() -> None:
    tasks = [
        Task(id="1", title="A"),
        Task(id="2", title="B", depends_on=["1"]),
        Task(id="3", title="C", depends_on=["1", "2"]),
    ]

    assert find_dependency_cycle(tasks) is None


def test_duplicate_ids_are_corrupt(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _write_raw(
        store,
        _payload(
            [
                {"id": "1", "title": "A", "status": "pending"},
                {"id": "1", "title": "B", "status": "pending"},
            ]
        ),
    )

    with pytest.raises(CorruptState, match="duplicate task id: 1"):
        store.load()


def test_unknown_dependency_is_corrupt(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _write_raw(store, _payload([{"id": "1", "title": "A", "depends_on": ["9"]}]))

    with pytest.raises(CorruptState, match="unknown task: 9"):
        store.load()


def test_completed_task_needs_commit(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _write_raw(store, _payload([{"id": "1", "title": "A", "status": "completed"}]))

    with pytest.raises(CorruptState, match="without a commit_sha"):
        store.load()


def test_invalid_json_and_missing_fields_are_corrupt(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{not json", encoding="utf-8")

    with pytest.raises(CorruptState, match="not valid JSON"):
        store.load()

    _write_raw(store, {"project": {"name": "demo"}, "tasks": []})
    with pytest.raises(CorruptState, match="version"):
        store.load()

    _write_raw(store, {"version": "1.0", "project": {}, "tasks": []})
    with pytest.raises(CorruptState, match="project.name"):
        store.load()


def test_missing_store_is_corrupt(tmp_path: Path) -> None:
    with pytest.raises(CorruptState, match="not found"):
        _store(tmp_path).load()


def test_numeric_ids_load_as_strings(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _write_raw(
        store,
        _payload(
            [
                {"id": 1, "title": "A", "status": "pending"},
                {"id": 2, "title": "B", "status": "pending", "depends_on": [1]},
            ]
        ),
    )

    _, _, tasks = store.load()

    assert [task.id for task in tasks] == ["1", "2"]
    assert tasks[1].depends_on == ["1"]


def test_save_detects_concurrent_writer(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(Project(name="demo"), StoreConfig(), [Task(id="1", title="A")])

    first_project, first_config, first_tasks = store.load()
    second_project, second_config, second_tasks = store.load()

    second_tasks[0].status = IN_PROGRESS
    store.save(second_project, second_config, second_tasks)

    first_tasks[0].title = "Renamed"
    with pytest.raises(ConcurrentWriteConflict):
        store.save(first_project, first_config, first_tasks)

    assert store.load()[2][0].status == IN_PROGRESS


def test_save_advances_updated_at_strictly(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(Project(name="demo"), StoreConfig(), [Task(id="1", title="A")])
    project, config, tasks = store.load()
    before = project.updated_at

    store.save(project, config, tasks)
    store.save(project, config, tasks)

    assert project.updated_at > before
    assert store.load()[0].updated_at == project.updated_at


def test_save_rejects_invalid_tasks_without_touching_disk(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(Project(name="demo"), StoreConfig(), [Task(id="1", title="A")])
    original = store.path.read_text(encoding="utf-8")
    project, config, tasks = store.load()
    tasks[0].status = COMPLETED

    with pytest.raises(CorruptState):
        store.save(project, config, tasks)

    assert store.path.read_text(encoding="utf-8") == original


def test_save_recalculates_progress_counts(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(
        Project(name="demo"),
        StoreConfig(),
        [Task(id="1", title="A"), Task(id="2", title="B")],
    )
    project, config, tasks = store.load()
    tasks[0].status = COMPLETED
    tasks[0].commit_sha = "abc"

    store.save(project, config, tasks)
    progress = store.read_progress()

    assert progress.total_tasks == 2
    assert progress.completed_tasks == 1


def test_save_keeps_task_file_lists_and_unknown_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)
    payload = _payload(
        [
            {
                "id": "1",
                "title": "Add parser",
                "status": "pending",
                "files_to_create": ["src/parser.py"],
                "files_to_modify": ["src/cli.py"],
                "guardrails": ["Keep the public API unchanged"],
                "estimate": {"tokens": 1200},
            }
        ]
    )
    payload["config"].update(
        {
            "sandbox_image": "python:3.12",
            "pilot_mode": True,
            "pilot_config": {"discover_interval": 5, "max_discovery_tasks": 3},
        }
    )
    payload["project"]["owner"] = "platform"
    payload["discovery"] = {"last_run": "2026-01-01"}
    _write_raw(store, payload)

    store.save(*store.load())
    saved = json.loads(store.path.read_text(encoding="utf-8"))

    task = saved["tasks"][0]
    assert task["files_to_create"] == ["src/parser.py"]
    assert task["files_to_modify"] == ["src/cli.py"]
    assert task["guardrails"] == ["Keep the public API unchanged"]
    assert task["estimate"] == {"tokens": 1200}
    assert saved["config"]["sandbox_image"] == "python:3.12"
    assert saved["config"]["pilot_mode"] is True
    assert saved["config"]["pilot_config"]["max_discovery_tasks"] == 3
    assert saved["project"]["owner"] == "platform"
    assert saved["discovery"] == {"last_run": "2026-01-01"}

    _, _, tasks = store.load()
    assert tasks[0].guardrails == ["Keep the public API unchanged"]
    assert "estimate" not in Task(id="2", title="B").to_dict()
