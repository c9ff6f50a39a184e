from taskloop.models import BLOCKED, COMPLETED, IN_PROGRESS, SKIPPED, Task
from taskloop.scheduler import eligible_tasks, select_next, unresolved_tasks


def test_dependent_task_waits_for_its_dependency() -> None:
    tasks = [
        Task(id="1.0", title="Setup", priority="low"),
        Task(id="2.0", title="Build", priority="critical", depends_on=["1.0"]),
    ]

    assert select_next(tasks).id == "1.0"

    tasks[0].status = COMPLETED
    tasks[0].commit_sha = "abc"
    assert select_next(tasks).id == "2.0"


def test_priority_then_id_ordering() -> None:
    tasks = [
        Task(id="3", title="C", priority="medium"),
        Task(id="2", title="B", priority="high"),
        Task(id="1", title="A", priority="medium"),
        Task(id="4", title="D", priority="critical"),
    ]

    assert [task.id for task in eligible_tasks(tasks)] == ["4", "2", "1", "3"]


def test_skipped_dependency_satisfies_but_blocked_does_not() -> None:
    tasks = [
        Task(id="1", title="Skipped", status=SKIPPED),
        Task(id="2", title="Blocked", status=BLOCKED),
        Task(id="3", title="After skip", depends_on=["1"]),
        Task(id="4", title="After block", depends_on=["2"]),
    ]

    assert [task.id for task in eligible_tasks(tasks)] == ["3"]


def test_nothing_eligible_when_all_done() -> None:
    tasks = [Task(id="1", title="A", status=COMPLETED, commit_sha="abc")]

    assert select_next(tasks) is None
    assert unresolved_tasks(tasks) == []


def test_unresolved_explains_blocked_graph() -> None:
    tasks = [
        Task(id="1", title="Blocked", status=BLOCKED),
        Task(id="2", title="Waiting", depends_on=["1"]),
        Task(id="3", title="Stuck", status=IN_PROGRESS),
    ]

    report = {item.task_id: item for item in unresolved_tasks(tasks)}

    assert select_next(tasks) is None
    assert report["1"].reason.startswith("blocked")
    assert report["2"].reason == "waiting on 1 (blocked)"
    assert report["3"].status == IN_PROGRESS
