from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import text

from flowlease.core.models import TaskCreate, TaskResult, TaskStatus, WorkflowTaskDefinition
from flowlease.core.repository import TaskRepository
from flowlease.core.state_params import StateParams
from flowlease.errors import ResourceLimitExceededError, ResourceNotFoundError

pytestmark = [
    allure.epic("Task Attempts"),
    allure.feature("Persistence"),
]

SESSION_TIME = datetime(2026, 3, 1, tzinfo=UTC)


def _lease(repository: TaskRepository, task_id: int, agent_id: str = "agent-a"):
    leased = repository.lease_task(site_id=0, task_id=task_id, agent_id=agent_id, lock_seconds=60)
    assert leased is not None
    return leased


def test_init_schema_runs_migrations_to_head(repository: TaskRepository) -> None:
    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = {
            row[0]
            for row in connection.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'table'"),
            )
        }

    assert version == "20261019_0001"
    assert {"sites", "projects", "session_attempts", "tasks", "task_events"} <= tables


def test_init_schema_is_idempotent(tmp_path: Path, clock) -> None:
    for _ in range(2):
        repo = TaskRepository(tmp_path / "twice.db", clock=clock)
        repo.init_schema()
        repo.close()


def test_enqueue_creates_queued_attempt_with_empty_state(repository: TaskRepository, clock) -> None:
    task = repository.enqueue_task(TaskCreate(name="load", operator_type="sql", config={"a": 1}))

    assert task.status is TaskStatus.QUEUED
    assert task.retry_count == 0
    assert task.state_params == {}
    assert task.config == {"a": 1}
    assert task.run_after == clock()


def test_lease_is_conditional_on_queued_and_due(repository: TaskRepository, clock) -> None:
    later = repository.enqueue_task(
        TaskCreate(
            name="later",
            operator_type="sql",
            config={},
            run_after=clock() + timedelta(seconds=30),
        ),
    )

    assert (
        repository.lease_task(site_id=0, task_id=later.task_id, agent_id="a", lock_seconds=60)
        is None
    )

    clock.advance(30)
    leased = _lease(repository, later.task_id)
    assert leased.lock_expire_at == clock() + timedelta(seconds=60)
    assert (
        repository.lease_task(site_id=0, task_id=later.task_id, agent_id="b", lock_seconds=60)
        is None
    )


def test_each_lease_gets_a_fresh_lock_id(repository: TaskRepository, clock) -> None:
    task = repository.enqueue_task(TaskCreate(name="t", operator_type="sql", config={}))
    first = _lease(repository, task.task_id)

    clock.advance(61)
    repository.reclaim_expired_leases(site_id=0)
    second = _lease(repository, task.task_id, agent_id="agent-b")

    assert first.lock_id != second.lock_id


def test_schedule_retry_replaces_state_and_counts_retries(
    repository: TaskRepository,
    clock,
) -> None:
    task = repository.enqueue_task(TaskCreate(name="t", operator_type="sql", config={}))
    leased = _lease(repository, task.task_id)

    run_after = repository.schedule_retry(
        site_id=0,
        task_id=task.task_id,
        lock_id=leased.lock_id,
        agent_id="agent-a",
        retry_interval_seconds=5,
        state_params=StateParams({"idempotency_key": "k"}),
        error={"kind": "lock_conflict", "message": "busy"},
    )

    stored = repository.get_task(site_id=0, task_id=task.task_id)
    assert stored is not None
    assert run_after == clock() + timedelta(seconds=5)
    assert stored.status is TaskStatus.QUEUED
    assert stored.retry_count == 1
    assert stored.state_params == {"idempotency_key": "k"}
    assert stored.lock_id is None
    assert stored.last_error == {"kind": "lock_conflict", "message": "busy"}


def test_callbacks_with_wrong_owner_change_nothing(repository: TaskRepository) -> None:
    task = repository.enqueue_task(TaskCreate(name="t", operator_type="sql", config={}))
    leased = _lease(repository, task.task_id)
    before = repository.get_task_details(site_id=0, task_id=task.task_id)

    assert not repository.complete_task(
        site_id=0,
        task_id=task.task_id,
        lock_id="not-the-lock",
        agent_id="agent-a",
        result=TaskResult(),
    )
    assert not repository.fail_task(
        site_id=0,
        task_id=task.task_id,
        lock_id=leased.lock_id,
        agent_id="agent-b",
        error={"message": "x"},
    )

    after = repository.get_task_details(site_id=0, task_id=task.task_id)
    assert before is not None and after is not None
    assert after.task == before.task
    assert len(after.events) == len(before.events)


def test_complete_task_records_result_and_event_trail(repository: TaskRepository) -> None:
    task = repository.enqueue_task(TaskCreate(name="t", operator_type="sql", config={}))
    leased = _lease(repository, task.task_id)

    assert repository.complete_task(
        site_id=0,
        task_id=task.task_id,
        lock_id=leased.lock_id,
        agent_id="agent-a",
        result=TaskResult(store_params={"rows": 3}),
    )

    details = repository.get_task_details(site_id=0, task_id=task.task_id)
    assert details is not None
    assert details.task.status is TaskStatus.SUCCEEDED
    assert details.task.result == {"store_params": {"rows": 3}}
    assert details.task.finished_at is not None
    assert [event.event_type for event in details.events] == ["enqueued", "leased", "succeeded"]


def test_cancel_rejects_terminal_task(repository: TaskRepository) -> None:
    task = repository.enqueue_task(TaskCreate(name="t", operator_type="sql", config={}))
    repository.cancel_task(site_id=0, task_id=task.task_id)

    with pytest.raises(RuntimeError, match="cannot be canceled"):
        repository.cancel_task(site_id=0, task_id=task.task_id)

    with pytest.raises(ResourceNotFoundError):
        repository.cancel_task(site_id=0, task_id=9999)


def test_list_tasks_filters_by_status(repository: TaskRepository) -> None:
    first = repository.enqueue_task(TaskCreate(name="a", operator_type="sql", config={}))
    repository.enqueue_task(TaskCreate(name="b", operator_type="sql", config={}))
    repository.cancel_task(site_id=0, task_id=first.task_id)

    queued = repository.list_tasks(site_id=0, status=TaskStatus.QUEUED)
    canceled = repository.list_tasks(site_id=0, status=TaskStatus.CANCELED)

    assert [task.name for task in queued] == ["b"]
    assert [task.task_id for task in canceled] == [first.task_id]


def test_session_attempt_enqueues_workflow_tasks_with_overrides(repository: TaskRepository) -> None:
    project = repository.register_project(
        site_id=0,
        name="etl",
        archive=b"archive-bytes",
        workflows={
            "daily": [
                WorkflowTaskDefinition("extract", "sql", {"query": "SELECT 1", "strict": True}),
                WorkflowTaskDefinition("load", "sql_load", {"source": "s3://bucket/a"}),
            ],
        },
    )

    attempt = repository.start_session_attempt(
        site_id=0,
        project_id=project.project_id,
        workflow_name="daily",
        session_time=SESSION_TIME,
        retry_attempt_name=None,
        override_params={"strict": False},
        max_active_attempts=10,
    )

    assert not attempt.already_exists
    assert len(attempt.task_ids) == 2
    extract = repository.get_task(site_id=0, task_id=attempt.task_ids[0])
    assert extract is not None
    assert extract.config == {"query": "SELECT 1", "strict": False}
    assert extract.attempt_id == attempt.attempt_id
    archive = repository.get_project_archive(site_id=0, project_id=project.project_id)
    assert archive == b"archive-bytes"


def test_session_attempt_is_idempotent_by_identity(repository: TaskRepository) -> None:
    project = repository.register_project(
        site_id=0,
        name="etl",
        archive=None,
        workflows={"daily": [WorkflowTaskDefinition("extract", "sql", {})]},
    )
    kwargs = {
        "site_id": 0,
        "project_id": project.project_id,
        "workflow_name": "daily",
        "session_time": SESSION_TIME,
        "override_params": {},
        "max_active_attempts": 10,
    }

    first = repository.start_session_attempt(retry_attempt_name=None, **kwargs)
    again = repository.start_session_attempt(retry_attempt_name=None, **kwargs)
    rerun = repository.start_session_attempt(retry_attempt_name="rerun-1", **kwargs)

    assert again.already_exists
    assert again.attempt_id == first.attempt_id
    assert again.task_ids == first.task_ids
    assert rerun.attempt_id != first.attempt_id
    assert len(repository.list_tasks(site_id=0)) == 2


def test_session_attempt_limits_and_missing_resources(repository: TaskRepository) -> None:
    project = repository.register_project(
        site_id=0,
        name="etl",
        archive=None,
        workflows={"daily": [WorkflowTaskDefinition("extract", "sql", {})]},
    )

    def start(
        session_time: datetime,
        *,
        project_id: int = project.project_id,
        workflow: str = "daily",
    ):
        return repository.start_session_attempt(
            site_id=0,
            project_id=project_id,
            workflow_name=workflow,
            session_time=session_time,
            retry_attempt_name=None,
            override_params={},
            max_active_attempts=1,
        )

    start(SESSION_TIME)
    with pytest.raises(ResourceLimitExceededError):
        start(SESSION_TIME + timedelta(days=1))
    with pytest.raises(ResourceNotFoundError, match="Project not found"):
        start(SESSION_TIME, project_id=404)
    with pytest.raises(ResourceNotFoundError, match="Workflow not found"):
        start(SESSION_TIME, workflow="weekly")
