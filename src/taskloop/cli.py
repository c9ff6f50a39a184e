from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskloop import __version__
from taskloop.backends import AgentBackend, AgentInvoker, build_backend
from taskloop.config import CONFIG_FILENAME, TaskLoopConfig, load_config, save_config
from taskloop.controller import IterationController, RunSummary
from taskloop.convert import convert_markdown, find_tasks_file
from taskloop.errors import DuplicateTask, TaskLoopError, TaskNotFound
from taskloop.models import (
    AI_TOOLS,
    SANDBOX_MODES,
    TASK_COMPLEXITIES,
    TASK_PRIORITIES,
    Project,
    StoreConfig,
    Task,
    count_by_status,
)
from taskloop.prompt import build_task_prompt, load_base_prompt, render_prompt_file
from taskloop.quality import QualityGate
from taskloop.scheduler import select_next, unresolved_tasks
from taskloop.state import CommitManager, ProgressLog, RunLock, TaskStore

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    "completed": "[x]",
    "skipped": "[-]",
    "blocked": "[!]",
    "in_progress": "[>]",
    "pending": "[ ]",
}


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    settings: TaskLoopConfig
    store: TaskStore
    progress_log: ProgressLog

    @property
    def state_dir(self) -> Path:
        return self.settings.state_dir(self.repo_root)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _commit_exclusions(runtime: Runtime) -> list[str]:
    excluded = [runtime.settings.paths.state_dir]
    if runtime.config_path.is_relative_to(runtime.repo_root):
        excluded.append(runtime.config_path.relative_to(runtime.repo_root).as_posix())
    return excluded


def _load_runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    settings = load_config(config_path)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        settings=settings,
        store=TaskStore(settings.store_path(repo_root)),
        progress_log=ProgressLog(settings.progress_path(repo_root)),
    )


def _require_store(runtime: Runtime) -> None:
    if not runtime.store.exists():
        raise click.ClickException("No task store found. Run 'taskloop init' first.")


def _build_backend(runtime: Runtime, ai_tool: str) -> AgentBackend:
    return build_backend(
        ai_tool,
        runtime.settings.agents,
        output_hook=lambda line: click.echo(f"  | {line}"),
    )


def _build_controller(runtime: Runtime) -> IterationController:
    snapshot = runtime.store.load_snapshot()
    repo_root = runtime.repo_root
    engine = runtime.settings.engine

    def _prompt_builder(task: Task, context: dict[str, Any]) -> str:
        config: StoreConfig = context["config"]
        return build_task_prompt(
            load_base_prompt(repo_root, config),
            task,
            iteration=int(context["iteration"]),
            quality_checks=config.quality_checks,
            progress_tail=context.get("progress_tail"),
        )

    invoker = AgentInvoker(
        _build_backend(runtime, snapshot.config.ai_tool),
        _prompt_builder,
        repo_root=repo_root,
        timeout_seconds=float(engine.agent_timeout_seconds),
    )
    return IterationController(
        repo_root=repo_root,
        store=runtime.store,
        progress_log=runtime.progress_log,
        invoker=invoker,
        quality_gate=QualityGate(repo_root, timeout_seconds=float(engine.check_timeout_seconds)),
        commit_manager=CommitManager(
            repo_root,
            scope=snapshot.project.name,
            commit_type=engine.commit_type,
            exclude_paths=_commit_exclusions(runtime),
        ),
        run_lock=RunLock(runtime.state_dir / "run.lock"),
        engine=engine,
    )


async def _run_with_signals(controller: IterationController, iterations: int | None) -> RunSummary:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, controller.request_stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            continue
    try:
        return await controller.run(max_iterations=iterations)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _echo_summary(summary: RunSummary) -> None:
    click.echo(f"Run status: {summary.status}")
    click.echo(f"Iterations: {summary.iterations_run}")
    if summary.completed_task_ids:
        click.echo(f"Completed: {', '.join(summary.completed_task_ids)}")
    if summary.failed_task_ids:
        click.echo(f"Failed attempts: {', '.join(summary.failed_task_ids)}")
    for item in summary.unresolved:
        click.echo(f"Unresolved {item.task_id} ({item.status}): {item.reason}")


@click.group()
@click.version_option(version=__version__, prog_name="taskloop")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Autonomous coding loop: task scheduler and iteration engine."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--prd", "prd_path", type=click.Path(path_type=Path, exists=True), default=None)
@click.option("--tasks", "tasks_path", type=click.Path(path_type=Path, exists=True), default=None)
@click.option("--name", default=None, help="Project name (defaults to the directory name).")
@click.option("--description", default="", help="Project description.")
@click.option("--ai-tool", type=click.Choice(AI_TOOLS), default="claude", show_default=True)
@click.option("--check", "checks", multiple=True, help="Quality-check command. Repeatable.")
@click.option("--max-iterations", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("--sandbox", type=click.Choice(SANDBOX_MODES), default="none", show_default=True)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing task store.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(
    prd_path: Path | None,
    tasks_path: Path | None,
    name: str | None,
    description: str,
    ai_tool: str,
    checks: tuple[str, ...],
    max_iterations: int,
    sandbox: str,
    force: bool,
    config_value: str,
) -> None:
    """Create the task store, prompt file and engine settings."""
    runtime = _load_runtime(config_value)
    if not runtime.config_path.exists():
        save_config(runtime.config_path, runtime.settings)

    paths = runtime.settings.paths
    store_config = StoreConfig(
        max_iterations=max_iterations,
        quality_checks=list(checks),
        ai_tool=ai_tool,
        ai_prompt_file=f"{paths.state_dir}/prompt.md",
        sandbox=sandbox,
    )
    tasks: list[Task] = []
    if prd_path is not None:
        tasks_path = tasks_path or find_tasks_file(prd_path)
        try:
            project, store_config, tasks = convert_markdown(
                prd_path, tasks_path, config=store_config
            )
        except TaskLoopError as exc:
            raise click.ClickException(str(exc)) from exc
        if name:
            project.name = name
    else:
        project = Project(name=name or runtime.repo_root.name, description=description)

    try:
        runtime.store.create(project, store_config, tasks, force=force)
    except TaskLoopError as exc:
        raise click.ClickException(str(exc)) from exc

    prompt_path = runtime.repo_root / store_config.ai_prompt_file
    if not prompt_path.exists():
        prompt_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_path.write_text(
            render_prompt_file(
                store_config,
                store_file=f"{paths.state_dir}/{paths.store_file}",
                progress_file=f"{paths.state_dir}/{paths.progress_file}",
            ),
            encoding="utf-8",
        )

    click.echo(f"Initialized task loop in {runtime.repo_root}")
    click.echo(f"Task store: {runtime.store.path}")
    click.echo(f"Tasks: {len(tasks)}")
    click.echo(f"AI tool: {store_config.ai_tool}")
    if not store_config.quality_checks:
        click.echo("No quality checks configured; add them with 'taskloop config set'.")


@cli.command("run")
@click.option("-n", "--iterations", type=click.IntRange(min=1), default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context, iterations: int | None, as_json: bool, config_value: str
) -> None:
    """Start or resume the loop for up to N iterations."""
    runtime = _load_runtime(config_value)
    _require_store(runtime)
    try:
        controller = _build_controller(runtime)
        summary = asyncio.run(_run_with_signals(controller, iterations))
    except TaskLoopError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        click.echo(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
    else:
        _echo_summary(summary)
    ctx.exit(summary.exit_code)


cli.add_command(run_command, name="start")


@cli.command("status")
@click.option("--tail", "tail_lines", type=click.IntRange(min=0), default=10, show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(tail_lines: int, as_json: bool, config_value: str) -> None:
    """Report task counts, loop progress and the latest log entries."""
    runtime = _load_runtime(config_value)
    _require_store(runtime)
    try:
        snapshot = runtime.store.load_snapshot()
    except TaskLoopError as exc:
        raise click.ClickException(str(exc)) from exc

    counts = count_by_status(snapshot.tasks)
    next_task = select_next(snapshot.tasks)
    unresolved = unresolved_tasks(snapshot.tasks)
    log_tail = runtime.progress_log.tail(tail_lines) if tail_lines else []
    if as_json:
        payload = {
            "project": snapshot.project.to_dict(),
            "counts": counts,
            "progress": snapshot.progress.to_dict(),
            "next_task": next_task.id if next_task else None,
            "unresolved": [
                {"task_id": item.task_id, "status": item.status, "reason": item.reason}
                for item in unresolved
            ],
            "log_tail": log_tail,
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    progress = snapshot.progress
    click.echo(f"Project: {snapshot.project.name}")
    click.echo(f"Loop status: {progress.status} (iterations run: {progress.total_iterations_run})")
    click.echo("  ".join(f"{status}: {count}" for status, count in counts.items()))
    click.echo(f"Next task: {next_task.id + ' ' + next_task.title if next_task else '-'}")
    for item in unresolved:
        click.echo(f"Unresolved {item.task_id} ({item.status}): {item.reason}")
    if log_tail:
        click.echo("")
        for line in log_tail:
            click.echo(line)


@cli.group("task")
def task_group() -> None:
    """Inspect and administer individual tasks."""


def _mutate_task(config_value: str, task_id: str, action, label: str) -> None:
    runtime = _load_runtime(config_value)
    _require_store(runtime)
    try:
        project, store_config, tasks = runtime.store.load()
        task = next((item for item in tasks if item.id == task_id), None)
        if task is None:
            raise TaskNotFound(f"Task not found: {task_id}")
        action(runtime, task)
        runtime.store.save(project, store_config, tasks)
    except TaskLoopError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {task_id} {label}")


@task_group.command("list")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def task_list_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _require_store(runtime)
    try:
        _, _, tasks = runtime.store.load()
    except TaskLoopError as exc:
        raise click.ClickException(str(exc)) from exc
    for task in tasks:
        indent = "  " if task.parent_id else ""
        icon = STATUS_ICONS.get(task.status, "[?]")
        click.echo(f"{indent}{icon} {task.id} {task.title} ({task.priority})")
    counts = count_by_status(tasks)
    click.echo(
        f"Total: {len(tasks)}  Completed: {counts['completed']}  "
        f"Pending: {counts['pending']}  Blocked: {counts['blocked']}"
    )


@task_group.command("add")
@click.argument("task_id")
@click.argument("title")
@click.option("--priority", type=click.Choice(TASK_PRIORITIES), default="medium")
@click.option("--complexity", type=click.Choice(TASK_COMPLEXITIES), default="medium")
@click.option("--depends-on", "depends_on", multiple=True)
@click.option("--description", default="")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def task_add_command(
    task_id: str,
    title: str,
    priority: str,
    complexity: str,
    depends_on: tuple[str, ...],
    description: str,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    _require_store(runtime)
    try:
        project, store_config, tasks = runtime.store.load()
        if any(task.id == task_id for task in tasks):
            raise DuplicateTask(f"Task with ID {task_id} already exists")
        tasks.append(
            Task(
                id=task_id,
                title=title,
                priority=priority,
                complexity=complexity,
                depends_on=list(depends_on),
                description=description,
                source="manual",
            )
        )
        runtime.store.save(project, store_config, tasks)
    except TaskLoopError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {task_id} added: {title}")


@task_group.command("complete")
@click.argument("task_id")
@click.option("--commit", "commit_sha", default=None, help="Commit id (defaults to HEAD).")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def task_complete_command(task_id: str, commit_sha: str | None, config_value: str) -> None:
    def _complete(runtime: Runtime, task: Task) -> None:
        sha = commit_sha or CommitManager(runtime.repo_root).head_revision()
        task.complete(sha)

    _mutate_task(config_value, task_id, _complete, "completed")


@task_group.command("skip")
@click.argument("task_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def task_skip_command(task_id: str, config_value: str) -> None:
    _mutate_task(config_value, task_id, lambda runtime, task: task.skip(), "skipped")


@task_group.command("reset")
@click.argument("task_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def task_reset_command(task_id: str, config_value: str) -> None:
    _mutate_task(config_value, task_id, lambda runtime, task: task.reset(), "reset to pending")


@task_group.command("block")
@click.argument("task_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def task_block_command(task_id: str, config_value: str) -> None:
    _mutate_task(config_value, task_id, lambda runtime, task: task.block(), "blocked")


@cli.group("config")
def config_group() -> None:
    """Show or change the loop configuration stored with the tasks."""


@config_group.command("show")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def config_show_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _require_store(runtime)
    try:
        _, store_config, _ = runtime.store.load()
    except TaskLoopError as exc:
        raise click.ClickException(str(exc)) from exc
    payload = {"store": store_config.to_dict(), **runtime.settings.to_dict()}
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _apply_config_value(store_config: StoreConfig, key: str, values: tuple[str, ...]) -> None:
    if key == "quality_checks":
        store_config.quality_checks = [value for value in values if value.strip()]
        return
    if len(values) != 1:
        raise click.BadParameter(f"'{key}' takes exactly one value.")
    value = values[0]
    if key == "max_iterations":
        try:
            parsed = int(value)
        except ValueError as exc:
            raise click.BadParameter("max_iterations must be an integer.") from exc
        if parsed < 1:
            raise click.BadParameter("max_iterations must be at least 1.")
        store_config.max_iterations = parsed
    elif key == "ai_tool":
        if value.lower() not in AI_TOOLS:
            raise click.BadParameter(f"ai_tool must be one of: {', '.join(AI_TOOLS)}")
        store_config.ai_tool = value.lower()
    elif key == "sandbox":
        if value not in SANDBOX_MODES:
            raise click.BadParameter(f"sandbox must be one of: {', '.join(SANDBOX_MODES)}")
        store_config.sandbox = value
    else:
        store_config.ai_prompt_file = value


@config_group.command("set")
@click.argument(
    "key",
    type=click.Choice(["max_iterations", "quality_checks", "ai_tool", "ai_prompt_file", "sandbox"]),
)
@click.argument("values", nargs=-1)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def config_set_command(key: str, values: tuple[str, ...], config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _require_store(runtime)
    try:
        project, store_config, tasks = runtime.store.load()
        _apply_config_value(store_config, key, values)
        runtime.store.save(project, store_config, tasks)
    except TaskLoopError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Set {key} = {getattr(store_config, key)}")
