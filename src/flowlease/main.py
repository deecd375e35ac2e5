"""CLI entrypoint for flowlease."""

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import rich_click as click

from flowlease import __version__
from flowlease.controllers import (
    AgentRunCommand,
    FlowleaseCliController,
    ProjectPushCommand,
    SessionStartCommand,
    TaskEnqueueCommand,
    TaskListCommand,
    TaskMutateCommand,
)
from flowlease.core.models import TaskStatus
from flowlease.errors import FlowleaseError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = FlowleaseCliController()

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="flowlease")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for flowlease modules.",
)
def flowlease(log_level: str) -> None:
    """Task-attempt lease/retry orchestration with idempotent SQL operators."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@flowlease.group()
def project() -> None:
    """Project commands."""


@project.command("push")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Project name; pushing again replaces it.")
@click.option(
    "--project-dir",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    default=None,
    help="Directory packed into the project archive (query files, etc.).",
)
@click.option(
    "--workflows",
    "workflows_file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help='JSON file: `{"<workflow>": [{"name", "type", "config"}]}`.',
)
def project_push(
    db_path: Path | None,
    name: str,
    project_dir: Path | None,
    workflows_file: Path,
) -> None:
    """Upload a project archive and its workflow task definitions."""

    _emit(
        lambda: CONTROLLER.push_project(
            ProjectPushCommand(
                db_path=db_path,
                name=name,
                project_dir=project_dir,
                workflows_file=workflows_file,
            ),
        ),
    )


@flowlease.group()
def session() -> None:
    """Session commands."""


@session.command("start")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", type=int, required=True, help="Project id from `project push`.")
@click.option("--workflow", "workflow_name", required=True, help="Workflow name.")
@click.option(
    "--session-time",
    type=click.DateTime(),
    default=None,
    help="Logical session time (UTC). Defaults to now.",
)
@click.option(
    "--retry-attempt-name",
    default=None,
    help="Name for a deliberate re-run of an existing session.",
)
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Override param `key=value` (value parsed as JSON when possible). Can be repeated.",
)
def session_start(  # noqa: PLR0913
    db_path: Path | None,
    project_id: int,
    workflow_name: str,
    session_time: datetime | None,
    retry_attempt_name: str | None,
    params: tuple[str, ...],
) -> None:
    """Start (or look up) a session attempt and enqueue its tasks."""

    _emit(
        lambda: CONTROLLER.start_session(
            SessionStartCommand(
                db_path=db_path,
                project_id=project_id,
                workflow_name=workflow_name,
                session_time=session_time,
                retry_attempt_name=retry_attempt_name,
                params=params,
            ),
        ),
    )


@flowlease.group()
def task() -> None:
    """Task attempt commands."""


@task.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Task name.")
@click.option("--type", "operator_type", required=True, help="Operator type, e.g. sql.")
@click.option("--config", "config_json", default="{}", show_default=True, help="Task config JSON.")
def task_enqueue(db_path: Path | None, name: str, operator_type: str, config_json: str) -> None:
    """Enqueue a standalone task attempt."""

    _emit(
        lambda: CONTROLLER.enqueue_task(
            TaskEnqueueCommand(
                db_path=db_path,
                name=name,
                operator_type=operator_type,
                config_json=config_json,
            ),
        ),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Filter by status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum rows.",
)
def task_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List task attempts, newest first."""

    _emit(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@task.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id", type=int)
def task_inspect(db_path: Path | None, task_id: int) -> None:
    """Show one task attempt with its event trail."""

    _emit(lambda: CONTROLLER.inspect_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@task.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id", type=int)
def task_cancel(db_path: Path | None, task_id: int) -> None:
    """Cancel a queued or running task attempt."""

    _emit(lambda: CONTROLLER.cancel_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@flowlease.group()
def agent() -> None:
    """Agent commands."""


@agent.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Lease and run one batch, or keep polling.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many attempts.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many consecutive empty polls (default: never).",
)
def agent_run(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the agent executor against the local task queue."""

    _emit(
        lambda: CONTROLLER.run_agent(
            AgentRunCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


def _emit(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (FlowleaseError, RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    flowlease()
