"""Controllers for flowlease CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from flowlease.agent.executor import AgentExecutor
from flowlease.agent.workdir import TaskWorkdirManager, build_archive
from flowlease.config import Settings
from flowlease.core.callback import TaskCallbackService
from flowlease.core.models import TaskCreate, TaskStatus, WorkflowTaskDefinition
from flowlease.core.repository import TaskRepository
from flowlease.errors import ConfigError
from flowlease.operators.registry import default_registry
from flowlease.operators.secrets import SecretProvider, load_secrets_file
from flowlease.storage.common import to_utc_aware_datetime, utc_now


@dataclass(slots=True)
class ProjectPushCommand:
    """CLI input for project upload."""

    db_path: Path | None
    name: str
    project_dir: Path | None
    workflows_file: Path


@dataclass(slots=True)
class SessionStartCommand:
    """CLI input for starting a session attempt."""

    db_path: Path | None
    project_id: int
    workflow_name: str
    session_time: datetime | None
    retry_attempt_name: str | None
    params: tuple[str, ...]


@dataclass(slots=True)
class TaskEnqueueCommand:
    """CLI input for enqueueing a standalone task attempt."""

    db_path: Path | None
    name: str
    operator_type: str
    config_json: str


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskMutateCommand:
    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class AgentRunCommand:
    """CLI input for agent execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1


class FlowleaseCliController:
    """Coordinates project, session, task and agent CLI operations."""

    def push_project(self, command: ProjectPushCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        workflows = _read_workflows(command.workflows_file)
        archive = build_archive(command.project_dir) if command.project_dir is not None else None
        with _repository(settings) as repository:
            project = repository.register_project(
                site_id=settings.core.site_id,
                name=command.name,
                archive=archive,
                workflows=workflows,
            )
        return [
            f"Project pushed: project_id={project.project_id} name={project.name}",
            f"Workflows: {', '.join(sorted(project.workflows)) or '-'}",
            f"Archive sha256: {project.archive_sha256 or '-'}",
        ]

    def start_session(self, command: SessionStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        session_time = (
            to_utc_aware_datetime(command.session_time)
            if command.session_time is not None
            else utc_now()
        )
        with _repository(settings) as repository:
            service = TaskCallbackService(
                repository=repository,
                max_active_attempts=settings.core.max_active_attempts,
            )
            attempt = service.start_session(
                settings.core.site_id,
                command.project_id,
                command.workflow_name,
                session_time,
                command.retry_attempt_name,
                _parse_params(command.params),
            )
        state = "already exists" if attempt.already_exists else "started"
        return [
            f"Session attempt {state}: attempt_id={attempt.attempt_id} "
            f"workflow={attempt.workflow_name} session_time={attempt.session_time.isoformat()}",
            f"Tasks: {', '.join(str(task_id) for task_id in attempt.task_ids) or '-'}",
        ]

    def enqueue_task(self, command: TaskEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        config = _parse_json_object(command.config_json, label="--config")
        with _repository(settings) as repository:
            task = repository.enqueue_task(
                TaskCreate(name=command.name, operator_type=command.operator_type, config=config),
                site_id=settings.core.site_id,
            )
        return [
            f"Task enqueued: task_id={task.task_id} type={task.operator_type} "
            f"status={task.status.value}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                site_id=settings.core.site_id,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} name={task.name} type={task.operator_type} "
                f"status={task.status.value} retries={task.retry_count} "
                f"run_after={task.run_after.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(
                site_id=settings.core.site_id,
                task_id=command.task_id,
            )
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Name: {task.name}",
            f"Type: {task.operator_type}",
            f"Status: {task.status.value}",
            f"Retries: {task.retry_count}",
            f"Agent: {task.agent_id or '-'}",
            f"Lease expires: {task.lock_expire_at.isoformat() if task.lock_expire_at else '-'}",
            f"State params: {task.state_params.to_json()}",
            f"Error: {json.dumps(task.last_error) if task.last_error else '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.cancel_task(site_id=settings.core.site_id, task_id=command.task_id)
        return [f"Task canceled: {command.task_id}"]

    def run_agent(self, command: AgentRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        secrets = (
            load_secrets_file(settings.secrets_file)
            if settings.secrets_file is not None
            else SecretProvider()
        )
        with _repository(settings) as repository:
            executor = AgentExecutor(
                callback=TaskCallbackService(
                    repository=repository,
                    max_active_attempts=settings.core.max_active_attempts,
                ),
                registry=default_registry(),
                agent_id=settings.agent.agent_id,
                site_id=settings.core.site_id,
                secrets=secrets,
                workdir=TaskWorkdirManager(settings.agent.workdir_root),
                output_root=settings.agent.output_root,
                lock_seconds=settings.agent.lock_seconds,
                heartbeat_interval_seconds=settings.agent.heartbeat_interval_seconds,
                poll_interval_seconds=settings.agent.poll_interval_seconds,
                max_tasks_per_lease=settings.agent.max_tasks_per_lease,
            )
            summary = (
                executor.run_once()
                if command.once
                else executor.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Agent summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"rejected={summary.rejected} idle_polls={summary.idle_polls}",
        ]


def _read_workflows(path: Path) -> dict[str, list[WorkflowTaskDefinition]]:
    payload = _parse_json_object(path.read_text("utf-8"), label=str(path))
    workflows: dict[str, list[WorkflowTaskDefinition]] = {}
    for workflow_name, tasks in payload.items():
        if not isinstance(tasks, list):
            raise ConfigError(f"Workflow {workflow_name!r} must be a list of task definitions.")
        workflows[workflow_name] = [WorkflowTaskDefinition.from_dict(task) for task in tasks]
    return workflows


def _parse_params(values: tuple[str, ...]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for value in values:
        key, separator, raw = value.partition("=")
        if not separator or not key.strip():
            raise ConfigError(f"Invalid --param {value!r}; expected key=value")
        try:
            params[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            params[key.strip()] = raw
    return params


def _parse_json_object(text: str, *, label: str) -> dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise ConfigError(f"{label} is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ConfigError(f"{label} must be a JSON object.")
    return payload


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        db_path=settings.db_path,
        site_id=settings.core.site_id,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
