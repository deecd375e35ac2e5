"""Domain models for task attempts, leases and sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from flowlease.core.state_params import StateParams


class TaskStatus(str, Enum):
    """Durable task attempt lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELED})


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing one task attempt."""

    name: str
    operator_type: str
    config: dict[str, Any] = field(default_factory=dict)
    attempt_id: int | None = None
    run_after: datetime | None = None


@dataclass(slots=True)
class TaskResult:
    """Successful operator result stored with the terminal attempt."""

    store_params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"store_params": dict(self.store_params)}


@dataclass(slots=True)
class TaskAttemptView:
    """Readable task attempt view for the callback service and CLI."""

    task_id: int
    site_id: int
    attempt_id: int | None
    name: str
    operator_type: str
    config: dict[str, Any]
    state_params: StateParams
    status: TaskStatus
    retry_count: int
    lock_id: str | None
    agent_id: str | None
    lock_expire_at: datetime | None
    run_after: datetime
    result: dict[str, Any] | None
    last_error: dict[str, Any] | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class LeasedTask:
    """A task attempt handed to one agent together with its lease token."""

    site_id: int
    task_id: int
    lock_id: str
    agent_id: str
    lock_expire_at: datetime
    name: str
    operator_type: str
    config: dict[str, Any]
    state_params: StateParams
    retry_count: int
    attempt_id: int | None
    project_id: int | None = None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: int
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskAttemptView
    events: list[TaskEventView]


@dataclass(slots=True)
class WorkflowTaskDefinition:
    """One task of a registered workflow; tasks of a workflow are unordered."""

    name: str
    operator_type: str
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.operator_type, "config": dict(self.config)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowTaskDefinition:
        name = payload.get("name")
        operator_type = payload.get("type")
        config = payload.get("config", {})
        if not isinstance(name, str) or not name:
            raise ValueError(f"Workflow task is missing a name: {payload!r}")
        if not isinstance(operator_type, str) or not operator_type:
            raise ValueError(f"Workflow task {name!r} is missing an operator type.")
        if not isinstance(config, dict):
            raise ValueError(f"Workflow task {name!r} config must be an object.")
        return cls(name=name, operator_type=operator_type, config=config)


@dataclass(slots=True)
class ProjectView:
    """Stored project with its workflow task definitions."""

    project_id: int
    site_id: int
    name: str
    archive_sha256: str | None
    workflows: dict[str, list[WorkflowTaskDefinition]]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class SessionAttemptView:
    """Result of starting (or re-starting) a session attempt."""

    attempt_id: int
    site_id: int
    project_id: int
    workflow_name: str
    session_time: datetime
    retry_attempt_name: str | None
    params: dict[str, Any]
    task_ids: list[int]
    already_exists: bool
    created_at: datetime
