from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from flowlease.core.callback import TaskCallbackService
from flowlease.core.models import TaskCreate, TaskResult, TaskStatus, WorkflowTaskDefinition
from flowlease.core.repository import TaskRepository
from flowlease.core.state_params import StateParams
from flowlease.errors import ResourceLimitExceededError

pytestmark = [
    allure.epic("Task Attempts"),
    allure.feature("Lease Protocol"),
]


def _enqueue(repository: TaskRepository, name: str = "t") -> int:
    return repository.enqueue_task(TaskCreate(name=name, operator_type="sql", config={})).task_id


def test_stale_lock_callbacks_are_rejected_after_release(
    repository: TaskRepository,
    service: TaskCallbackService,
    clock,
) -> None:
    task_id = _enqueue(repository)
    [stale] = service.lease_tasks(0, "agent-a", 60, 1)

    clock.advance(61)
    [current] = service.lease_tasks(0, "agent-b", 60, 1)
    assert current.task_id == task_id
    assert current.lock_id != stale.lock_id
    before = repository.get_task(site_id=0, task_id=task_id)

    assert not service.succeeded(0, task_id, stale.lock_id, "agent-a", TaskResult())
    assert not service.failed(0, task_id, stale.lock_id, "agent-a", {"message": "late"})
    assert not service.retry(0, task_id, stale.lock_id, "agent-a", 0, StateParams({"x": 1}))

    after = repository.get_task(site_id=0, task_id=task_id)
    assert after == before
    assert after is not None
    assert after.status is TaskStatus.RUNNING
    assert after.agent_id == "agent-b"
    assert after.retry_count == 0
    assert after.state_params == {}


def test_expired_lease_is_reclaimed_and_leased_to_another_agent(
    repository: TaskRepository,
    service: TaskCallbackService,
    clock,
) -> None:
    task_id = _enqueue(repository)
    service.lease_tasks(0, "agent-a", 60, 1)

    clock.advance(30)
    assert service.lease_tasks(0, "agent-b", 60, 1) == []

    clock.advance(31)
    [leased] = service.lease_tasks(0, "agent-b", 60, 1)
    assert leased.task_id == task_id
    assert leased.agent_id == "agent-b"

    details = repository.get_task_details(site_id=0, task_id=task_id)
    assert details is not None
    assert "lease_expired" in [event.event_type for event in details.events]


def test_heartbeat_renews_only_live_leases_of_the_caller(
    repository: TaskRepository,
    service: TaskCallbackService,
    clock,
) -> None:
    _enqueue(repository, "a")
    _enqueue(repository, "b")
    first, second = service.lease_tasks(0, "agent-a", 60, 2)

    clock.advance(50)
    renewed = service.heartbeat(0, [first.lock_id, "unknown"], "agent-a", 60)
    assert renewed == {first.lock_id: clock() + timedelta(seconds=60)}
    assert service.heartbeat(0, [second.lock_id], "agent-b", 60) == {}

    clock.advance(20)
    assert service.heartbeat(0, [first.lock_id, second.lock_id], "agent-a", 60) == {
        first.lock_id: clock() + timedelta(seconds=60),
    }


def test_retry_requeues_with_new_state_after_interval(
    repository: TaskRepository,
    service: TaskCallbackService,
    clock,
) -> None:
    task_id = _enqueue(repository)
    [leased] = service.lease_tasks(0, "agent-a", 60, 1)

    assert service.retry(
        0,
        task_id,
        leased.lock_id,
        "agent-a",
        10,
        StateParams({"idempotency_key": "k", "__poll_interval": 2}),
    )

    assert service.lease_tasks(0, "agent-a", 60, 1) == []
    clock.advance(10)
    [again] = service.lease_tasks(0, "agent-a", 60, 1)
    assert again.task_id == task_id
    assert again.retry_count == 1
    assert again.state_params == {"idempotency_key": "k", "__poll_interval": 2}


def test_retry_zero_is_leasable_immediately(
    repository: TaskRepository,
    service: TaskCallbackService,
) -> None:
    task_id = _enqueue(repository)
    [leased] = service.lease_tasks(0, "agent-a", 60, 1)

    service.retry(0, task_id, leased.lock_id, "agent-a", 0, StateParams({"idempotency_key": "k"}))

    [again] = service.lease_tasks(0, "agent-a", 60, 1)
    assert again.state_params == {"idempotency_key": "k"}


def test_failed_records_error_document(
    repository: TaskRepository,
    service: TaskCallbackService,
) -> None:
    task_id = _enqueue(repository)
    [leased] = service.lease_tasks(0, "agent-a", 60, 1)
    error = {"kind": "external_system", "message": "boom [cause]"}

    assert service.failed(0, task_id, leased.lock_id, "agent-a", error)

    stored = repository.get_task(site_id=0, task_id=task_id)
    assert stored is not None
    assert stored.status is TaskStatus.FAILED
    assert stored.last_error == error


def test_start_session_schedules_tasks_and_exposes_archive(
    repository: TaskRepository,
    service: TaskCallbackService,
) -> None:
    project = repository.register_project(
        site_id=0,
        name="etl",
        archive=b"tarball",
        workflows={"daily": [WorkflowTaskDefinition("extract", "sql", {"query": "SELECT 1"})]},
    )
    session_time = datetime(2026, 3, 1, tzinfo=UTC)

    attempt = service.start_session(0, project.project_id, "daily", session_time)
    [leased] = service.lease_tasks(0, "agent-a", 60, 1)

    assert leased.task_id == attempt.task_ids[0]
    assert leased.project_id == project.project_id
    assert service.open_archive(leased) == b"tarball"


def test_start_session_enforces_active_attempt_limit(
    repository: TaskRepository,
    service: TaskCallbackService,
) -> None:
    project = repository.register_project(
        site_id=0,
        name="etl",
        archive=None,
        workflows={"daily": [WorkflowTaskDefinition("extract", "sql", {})]},
    )
    base = datetime(2026, 3, 1, tzinfo=UTC)

    service.start_session(0, project.project_id, "daily", base)
    service.start_session(0, project.project_id, "daily", base + timedelta(days=1))
    with pytest.raises(ResourceLimitExceededError):
        service.start_session(0, project.project_id, "daily", base + timedelta(days=2))


def test_open_archive_is_none_for_standalone_task(
    repository: TaskRepository,
    service: TaskCallbackService,
) -> None:
    _enqueue(repository)
    [leased] = service.lease_tasks(0, "agent-a", 60, 1)

    assert service.open_archive(leased) is None
