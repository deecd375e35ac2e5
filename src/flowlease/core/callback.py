"""Agent-facing task callback boundary of the orchestration core."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

from flowlease.core.models import LeasedTask, SessionAttemptView, TaskResult
from flowlease.core.repository import TaskRepository
from flowlease.core.scheduler import PollingScheduler
from flowlease.core.state_params import StateParams
from flowlease.errors import ResourceNotFoundError

logger = logging.getLogger(__name__)


class TaskCallbackApi(Protocol):
    """Operations an agent may call on the core."""

    def lease_tasks(
        self,
        site_id: int,
        agent_id: str,
        lock_seconds: int,
        max_tasks: int,
    ) -> list[LeasedTask]: ...

    def heartbeat(
        self,
        site_id: int,
        locked_ids: Sequence[str],
        agent_id: str,
        lock_seconds: int,
    ) -> dict[str, datetime]: ...

    def open_archive(self, task: LeasedTask) -> bytes | None: ...

    def succeeded(
        self,
        site_id: int,
        task_id: int,
        lock_id: str,
        agent_id: str,
        result: TaskResult,
    ) -> bool: ...

    def failed(
        self,
        site_id: int,
        task_id: int,
        lock_id: str,
        agent_id: str,
        error: dict[str, Any],
    ) -> bool: ...

    def retry(  # noqa: PLR0913
        self,
        site_id: int,
        task_id: int,
        lock_id: str,
        agent_id: str,
        retry_interval: int,
        state_params: StateParams,
        error: dict[str, Any] | None = None,
    ) -> bool: ...

    def start_session(  # noqa: PLR0913
        self,
        site_id: int,
        project_id: int,
        workflow_name: str,
        session_time: datetime,
        retry_attempt_name: str | None = None,
        override_params: dict[str, Any] | None = None,
    ) -> SessionAttemptView: ...


class TaskCallbackService:
    """In-process implementation of :class:`TaskCallbackApi`.

    Lease ownership is decided here and nowhere else: ``succeeded``,
    ``failed`` and ``retry`` only take effect when ``lock_id`` and
    ``agent_id`` match the current lease. A mismatch means the lease was
    reclaimed; the call returns ``False`` and the attempt is left untouched.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        scheduler: PollingScheduler | None = None,
        max_active_attempts: int = 100,
    ) -> None:
        self.repository = repository
        self.scheduler = scheduler or PollingScheduler(repository=repository)
        self.max_active_attempts = max_active_attempts

    def lease_tasks(
        self,
        site_id: int,
        agent_id: str,
        lock_seconds: int,
        max_tasks: int = 1,
    ) -> list[LeasedTask]:
        leased = self.scheduler.dispatch(
            site_id=site_id,
            agent_id=agent_id,
            lock_seconds=lock_seconds,
            max_tasks=max_tasks,
        )
        for task in leased:
            logger.info(
                "Leased task %s (%s) to agent %s, retry_count=%d",
                task.task_id,
                task.operator_type,
                agent_id,
                task.retry_count,
            )
        return leased

    def heartbeat(
        self,
        site_id: int,
        locked_ids: Sequence[str],
        agent_id: str,
        lock_seconds: int,
    ) -> dict[str, datetime]:
        renewed = self.repository.heartbeat(
            site_id=site_id,
            lock_ids=locked_ids,
            agent_id=agent_id,
            lock_seconds=lock_seconds,
        )
        lost = [lock_id for lock_id in locked_ids if lock_id not in renewed]
        if lost:
            logger.debug("Heartbeat from %s skipped %d lost lease(s)", agent_id, len(lost))
        return renewed

    def open_archive(self, task: LeasedTask) -> bytes | None:
        if task.project_id is None:
            return None
        try:
            return self.repository.get_project_archive(
                site_id=task.site_id,
                project_id=task.project_id,
            )
        except ResourceNotFoundError:
            logger.warning("Project %s of task %s no longer exists", task.project_id, task.task_id)
            return None

    def succeeded(
        self,
        site_id: int,
        task_id: int,
        lock_id: str,
        agent_id: str,
        result: TaskResult,
    ) -> bool:
        accepted = self.repository.complete_task(
            site_id=site_id,
            task_id=task_id,
            lock_id=lock_id,
            agent_id=agent_id,
            result=result,
        )
        if not accepted:
            _log_lease_conflict("succeeded", task_id=task_id, agent_id=agent_id)
        return accepted

    def failed(
        self,
        site_id: int,
        task_id: int,
        lock_id: str,
        agent_id: str,
        error: dict[str, Any],
    ) -> bool:
        accepted = self.repository.fail_task(
            site_id=site_id,
            task_id=task_id,
            lock_id=lock_id,
            agent_id=agent_id,
            error=error,
        )
        if not accepted:
            _log_lease_conflict("failed", task_id=task_id, agent_id=agent_id)
        return accepted

    def retry(  # noqa: PLR0913
        self,
        site_id: int,
        task_id: int,
        lock_id: str,
        agent_id: str,
        retry_interval: int,
        state_params: StateParams,
        error: dict[str, Any] | None = None,
    ) -> bool:
        not_before = self.repository.schedule_retry(
            site_id=site_id,
            task_id=task_id,
            lock_id=lock_id,
            agent_id=agent_id,
            retry_interval_seconds=retry_interval,
            state_params=state_params,
            error=error,
        )
        if not_before is None:
            _log_lease_conflict("retry", task_id=task_id, agent_id=agent_id)
            return False
        self.scheduler.schedule(site_id=site_id, task_id=task_id, not_before=not_before)
        logger.debug("Task %s will be retried after %s", task_id, not_before.isoformat())
        return True

    def start_session(  # noqa: PLR0913
        self,
        site_id: int,
        project_id: int,
        workflow_name: str,
        session_time: datetime,
        retry_attempt_name: str | None = None,
        override_params: dict[str, Any] | None = None,
    ) -> SessionAttemptView:
        attempt = self.repository.start_session_attempt(
            site_id=site_id,
            project_id=project_id,
            workflow_name=workflow_name,
            session_time=session_time,
            retry_attempt_name=retry_attempt_name,
            override_params=dict(override_params or {}),
            max_active_attempts=self.max_active_attempts,
        )
        if not attempt.already_exists:
            now = self.repository.now()
            for task_id in attempt.task_ids:
                self.scheduler.schedule(site_id=site_id, task_id=task_id, not_before=now)
        return attempt


def _log_lease_conflict(operation: str, *, task_id: int, agent_id: str) -> None:
    logger.warning(
        "Rejected %s callback for task %s from agent %s: lease is no longer held",
        operation,
        task_id,
        agent_id,
    )
