"""Persistent task-attempt repository: leases, callbacks and sessions."""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from flowlease.core.models import (
    LeasedTask,
    ProjectView,
    SessionAttemptView,
    TaskAttemptView,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskResult,
    TaskStatus,
    WorkflowTaskDefinition,
)
from flowlease.core.state_params import StateParams
from flowlease.errors import ResourceLimitExceededError, ResourceNotFoundError
from flowlease.storage.alembic_runner import upgrade_head
from flowlease.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from flowlease.storage.sqlmodel_models import (
    DEFAULT_SITE_ID,
    Project,
    SessionAttempt,
    Site,
    TaskAttempt,
    TaskEvent,
)

logger = logging.getLogger(__name__)


class TaskRepository:
    """Task attempt persistence facade backed by SQLModel + SQLite.

    Every state transition is a conditional UPDATE whose ``WHERE`` clause
    encodes the expected current state (status, and for agent callbacks the
    exact ``lock_id`` and ``agent_id``). A ``rowcount`` other than one means
    the caller lost a race and nothing was written.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        site_id: int = DEFAULT_SITE_ID,
        site_name: str = "default",
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.site_id = site_id
        self.site_name = site_name
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self._clock = clock
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure the default site exists."""

        upgrade_head(self.db_path)
        self.ensure_site(site_id=self.site_id, name=self.site_name)

    def now(self) -> datetime:
        return self._clock()

    def ensure_site(self, *, site_id: int, name: str | None = None) -> None:
        with Session(self.engine) as session:
            site = session.exec(select(Site).where(Site.site_id == site_id)).one_or_none()
            if site is not None:
                return
            session.add(
                Site(
                    site_id=site_id,
                    name=name or f"site-{site_id}",
                    created_at=self.now(),
                ),
            )
            session.commit()

    # -- projects and sessions ------------------------------------------------

    def register_project(
        self,
        *,
        site_id: int,
        name: str,
        archive: bytes | None,
        workflows: dict[str, list[WorkflowTaskDefinition]],
    ) -> ProjectView:
        """Create or replace a project archive and its workflow task definitions."""

        now = self.now()
        workflows_json = json.dumps(
            {
                workflow: [definition.to_dict() for definition in definitions]
                for workflow, definitions in workflows.items()
            },
            ensure_ascii=False,
            sort_keys=True,
        )
        archive_sha256 = hashlib.sha256(archive).hexdigest() if archive is not None else None
        with Session(self.engine) as session:
            row = session.exec(
                select(Project).where(Project.site_id == site_id, Project.name == name),
            ).one_or_none()
            if row is None:
                row = Project(
                    site_id=site_id,
                    name=name,
                    archive=archive,
                    archive_sha256=archive_sha256,
                    workflows_json=workflows_json,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.archive = archive
                row.archive_sha256 = archive_sha256
                row.workflows_json = workflows_json
                row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_project_view(row)

    def get_project(self, *, site_id: int, project_id: int) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Project).where(
                    Project.project_id == project_id,
                    Project.site_id == site_id,
                ),
            ).one_or_none()
            return _to_project_view(row) if row is not None else None

    def get_project_archive(self, *, site_id: int, project_id: int) -> bytes | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Project).where(
                    Project.project_id == project_id,
                    Project.site_id == site_id,
                ),
            ).one_or_none()
            if row is None:
                raise ResourceNotFoundError(f"Project not found: site={site_id} id={project_id}")
            return row.archive

    def start_session_attempt(  # noqa: PLR0913
        self,
        *,
        site_id: int,
        project_id: int,
        workflow_name: str,
        session_time: datetime,
        retry_attempt_name: str | None,
        override_params: dict[str, Any],
        max_active_attempts: int,
    ) -> SessionAttemptView:
        """Create a session attempt and enqueue its workflow tasks."""

        project = self.get_project(site_id=site_id, project_id=project_id)
        if project is None:
            raise ResourceNotFoundError(f"Project not found: site={site_id} id={project_id}")
        definitions = project.workflows.get(workflow_name)
        if definitions is None:
            raise ResourceNotFoundError(
                f"Workflow not found: project={project.name} workflow={workflow_name}",
            )

        existing = self._find_session_attempt(
            site_id=site_id,
            project_id=project_id,
            workflow_name=workflow_name,
            session_time=session_time,
            retry_attempt_name=retry_attempt_name,
        )
        if existing is not None:
            return existing

        active = self.count_active_attempts(site_id=site_id)
        if active >= max_active_attempts:
            raise ResourceLimitExceededError(
                f"Too many active session attempts for site {site_id}: "
                f"{active} >= {max_active_attempts}",
            )

        now = self.now()
        with Session(self.engine) as session:
            attempt = SessionAttempt(
                site_id=site_id,
                project_id=project_id,
                workflow_name=workflow_name,
                session_time=to_db_datetime(session_time),
                retry_attempt_name=retry_attempt_name or "",
                params_json=json.dumps(override_params, ensure_ascii=False, sort_keys=True),
                created_at=now,
            )
            session.add(attempt)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                concurrent = self._find_session_attempt(
                    site_id=site_id,
                    project_id=project_id,
                    workflow_name=workflow_name,
                    session_time=session_time,
                    retry_attempt_name=retry_attempt_name,
                )
                if concurrent is None:
                    raise
                return concurrent

            task_ids: list[int] = []
            for definition in definitions:
                row = self._add_task_row(
                    session=session,
                    site_id=site_id,
                    payload=TaskCreate(
                        name=definition.name,
                        operator_type=definition.operator_type,
                        config={**definition.config, **override_params},
                        attempt_id=attempt.attempt_id,
                    ),
                    now=now,
                )
                task_ids.append(_require_id(row.task_id))
            session.commit()
            session.refresh(attempt)
            return _to_session_attempt_view(attempt, task_ids=task_ids, already_exists=False)

    def count_active_attempts(self, *, site_id: int) -> int:
        """Count session attempts that still have non-terminal tasks."""

        with Session(self.engine) as session:
            value = session.exec(
                select(func.count(func.distinct(TaskAttempt.attempt_id))).where(
                    TaskAttempt.site_id == site_id,
                    col(TaskAttempt.attempt_id).is_not(None),
                    col(TaskAttempt.status).in_(
                        [TaskStatus.QUEUED.value, TaskStatus.RUNNING.value],
                    ),
                ),
            ).one()
        return int(value or 0)

    def _find_session_attempt(
        self,
        *,
        site_id: int,
        project_id: int,
        workflow_name: str,
        session_time: datetime,
        retry_attempt_name: str | None,
    ) -> SessionAttemptView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SessionAttempt).where(
                    SessionAttempt.site_id == site_id,
                    SessionAttempt.project_id == project_id,
                    SessionAttempt.workflow_name == workflow_name,
                    SessionAttempt.session_time == to_db_datetime(session_time),
                    SessionAttempt.retry_attempt_name == (retry_attempt_name or ""),
                ),
            ).one_or_none()
            if row is None:
                return None
            task_ids = session.exec(
                select(TaskAttempt.task_id)
                .where(TaskAttempt.attempt_id == row.attempt_id)
                .order_by(col(TaskAttempt.task_id).asc()),
            ).all()
            return _to_session_attempt_view(
                row,
                task_ids=[int(task_id) for task_id in task_ids if task_id is not None],
                already_exists=True,
            )

    # -- task attempts ----------------------------------------------------------

    def enqueue_task(self, payload: TaskCreate, *, site_id: int | None = None) -> TaskAttemptView:
        """Create a queued task attempt."""

        now = self.now()
        with Session(self.engine) as session:
            row = self._add_task_row(
                session=session,
                site_id=self.site_id if site_id is None else site_id,
                payload=payload,
                now=now,
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def _add_task_row(
        self,
        *,
        session: Session,
        site_id: int,
        payload: TaskCreate,
        now: datetime,
    ) -> TaskAttempt:
        row = TaskAttempt(
            site_id=site_id,
            attempt_id=payload.attempt_id,
            name=payload.name,
            operator_type=payload.operator_type,
            config_json=json.dumps(payload.config, ensure_ascii=False, sort_keys=True),
            state_params_json=StateParams.empty().to_json(),
            status=TaskStatus.QUEUED.value,
            retry_count=0,
            run_after=to_db_datetime(payload.run_after or now),
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        self._add_event(
            session=session,
            site_id=site_id,
            task_id=_require_id(row.task_id),
            event_type="enqueued",
            status_from=None,
            status_to=TaskStatus.QUEUED,
            details={"name": payload.name, "operator_type": payload.operator_type},
        )
        return row

    def list_queued(self, *, site_id: int) -> list[tuple[int, datetime]]:
        """Return ``(task_id, run_after)`` for every queued attempt of a site."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskAttempt.task_id, TaskAttempt.run_after).where(
                    TaskAttempt.site_id == site_id,
                    TaskAttempt.status == TaskStatus.QUEUED.value,
                ),
            ).all()
        return [
            (int(task_id), to_utc_aware_datetime(run_after))
            for task_id, run_after in rows
            if task_id is not None
        ]

    def lease_task(
        self,
        *,
        site_id: int,
        task_id: int,
        agent_id: str,
        lock_seconds: int,
    ) -> LeasedTask | None:
        """Atomically lease one queued, due attempt to ``agent_id``."""

        now = self.now()
        lock_id = uuid4().hex
        lock_expire_at = now + timedelta(seconds=lock_seconds)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskAttempt)
                .where(
                    col(TaskAttempt.task_id) == task_id,
                    col(TaskAttempt.site_id) == site_id,
                    col(TaskAttempt.status) == TaskStatus.QUEUED.value,
                    col(TaskAttempt.run_after) <= to_db_datetime(now),
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    lock_id=lock_id,
                    agent_id=agent_id,
                    lock_expire_at=to_db_datetime(lock_expire_at),
                    started_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            row = session.exec(select(TaskAttempt).where(TaskAttempt.task_id == task_id)).one()
            project_id: int | None = None
            if row.attempt_id is not None:
                project_id = session.exec(
                    select(SessionAttempt.project_id).where(
                        SessionAttempt.attempt_id == row.attempt_id,
                    ),
                ).one_or_none()
            self._add_event(
                session=session,
                site_id=site_id,
                task_id=task_id,
                event_type="leased",
                status_from=TaskStatus.QUEUED,
                status_to=TaskStatus.RUNNING,
                details={
                    "agent_id": agent_id,
                    "lock_id": lock_id,
                    "retry_count": row.retry_count,
                },
            )
            session.commit()
            return LeasedTask(
                site_id=site_id,
                task_id=task_id,
                lock_id=lock_id,
                agent_id=agent_id,
                lock_expire_at=to_utc_aware_datetime(lock_expire_at),
                name=row.name,
                operator_type=row.operator_type,
                config=_load_json_object(row.config_json),
                state_params=StateParams.from_json(row.state_params_json),
                retry_count=row.retry_count,
                attempt_id=row.attempt_id,
                project_id=project_id,
            )

    def heartbeat(
        self,
        *,
        site_id: int,
        lock_ids: Sequence[str],
        agent_id: str,
        lock_seconds: int,
    ) -> dict[str, datetime]:
        """Extend live leases still owned by ``agent_id``; skip all others."""

        now = self.now()
        deadline = now + timedelta(seconds=lock_seconds)
        renewed: dict[str, datetime] = {}
        with Session(self.engine) as session:
            for lock_id in lock_ids:
                result = session.exec(
                    sa_update(TaskAttempt)
                    .where(
                        col(TaskAttempt.site_id) == site_id,
                        col(TaskAttempt.lock_id) == lock_id,
                        col(TaskAttempt.agent_id) == agent_id,
                        col(TaskAttempt.status) == TaskStatus.RUNNING.value,
                        col(TaskAttempt.lock_expire_at) > to_db_datetime(now),
                    )
                    .values(
                        lock_expire_at=to_db_datetime(deadline),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount == 1:
                    renewed[lock_id] = deadline
            session.commit()
        return renewed

    def complete_task(
        self,
        *,
        site_id: int,
        task_id: int,
        lock_id: str,
        agent_id: str,
        result: TaskResult,
    ) -> bool:
        """Mark a leased attempt as succeeded and release its lease."""

        now = self.now()
        with Session(self.engine) as session:
            update_result = session.exec(
                _owned_by(
                    site_id=site_id,
                    task_id=task_id,
                    lock_id=lock_id,
                    agent_id=agent_id,
                ).values(
                    status=TaskStatus.SUCCEEDED.value,
                    result_json=json.dumps(result.to_dict(), ensure_ascii=False, sort_keys=True),
                    lock_id=None,
                    lock_expire_at=None,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                site_id=site_id,
                task_id=task_id,
                event_type="succeeded",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.SUCCEEDED,
                details={"agent_id": agent_id},
            )
            session.commit()
            return True

    def fail_task(
        self,
        *,
        site_id: int,
        task_id: int,
        lock_id: str,
        agent_id: str,
        error: dict[str, Any],
    ) -> bool:
        """Mark a leased attempt as permanently failed and release its lease."""

        now = self.now()
        with Session(self.engine) as session:
            update_result = session.exec(
                _owned_by(
                    site_id=site_id,
                    task_id=task_id,
                    lock_id=lock_id,
                    agent_id=agent_id,
                ).values(
                    status=TaskStatus.FAILED.value,
                    last_error_json=json.dumps(error, ensure_ascii=False, sort_keys=True),
                    lock_id=None,
                    lock_expire_at=None,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                site_id=site_id,
                task_id=task_id,
                event_type="failed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.FAILED,
                details={"agent_id": agent_id, "error": error},
            )
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        site_id: int,
        task_id: int,
        lock_id: str,
        agent_id: str,
        retry_interval_seconds: int,
        state_params: StateParams,
        error: dict[str, Any] | None,
    ) -> datetime | None:
        """Requeue a leased attempt with replaced state params.

        Returns the new not-before time, or ``None`` when the lease was lost.
        """

        now = self.now()
        run_after = now + timedelta(seconds=max(0, retry_interval_seconds))
        values: dict[str, Any] = {
            "status": TaskStatus.QUEUED.value,
            "state_params_json": state_params.to_json(),
            "retry_count": col(TaskAttempt.retry_count) + 1,
            "run_after": to_db_datetime(run_after),
            "lock_id": None,
            "agent_id": None,
            "lock_expire_at": None,
            "started_at": None,
            "updated_at": to_db_datetime(now),
        }
        if error is not None:
            values["last_error_json"] = json.dumps(error, ensure_ascii=False, sort_keys=True)
        with Session(self.engine) as session:
            update_result = session.exec(
                _owned_by(
                    site_id=site_id,
                    task_id=task_id,
                    lock_id=lock_id,
                    agent_id=agent_id,
                ).values(**values),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                site_id=site_id,
                task_id=task_id,
                event_type="retry_scheduled",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.QUEUED,
                details={
                    "agent_id": agent_id,
                    "retry_interval_seconds": retry_interval_seconds,
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "has_error": error is not None,
                },
            )
            session.commit()
            return to_utc_aware_datetime(run_after)

    def reclaim_expired_leases(self, *, site_id: int) -> list[tuple[int, datetime]]:
        """Requeue running attempts whose lease deadline has passed."""

        now = self.now()
        reclaimed: list[tuple[int, datetime]] = []
        with Session(self.engine) as session:
            expired = session.exec(
                select(TaskAttempt).where(
                    TaskAttempt.site_id == site_id,
                    TaskAttempt.status == TaskStatus.RUNNING.value,
                    col(TaskAttempt.lock_expire_at) < to_db_datetime(now),
                ),
            ).all()
            candidates = [(row.task_id, row.lock_id, row.agent_id) for row in expired]

        for task_id, lock_id, agent_id in candidates:
            if task_id is None:
                continue
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(TaskAttempt)
                    .where(
                        col(TaskAttempt.task_id) == task_id,
                        col(TaskAttempt.status) == TaskStatus.RUNNING.value,
                        col(TaskAttempt.lock_id) == lock_id,
                        col(TaskAttempt.lock_expire_at) < to_db_datetime(now),
                    )
                    .values(
                        status=TaskStatus.QUEUED.value,
                        run_after=to_db_datetime(now),
                        lock_id=None,
                        agent_id=None,
                        lock_expire_at=None,
                        started_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    site_id=site_id,
                    task_id=task_id,
                    event_type="lease_expired",
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.QUEUED,
                    details={"agent_id": agent_id, "lock_id": lock_id},
                )
                session.commit()
            logger.warning(
                "Lease expired for task %s (agent=%s); requeued",
                task_id,
                agent_id,
            )
            reclaimed.append((task_id, now))
        return reclaimed

    def cancel_task(self, *, site_id: int, task_id: int) -> None:
        """Cancel a queued/running attempt; a running holder's callbacks get rejected."""

        now = self.now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, site_id=site_id, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.QUEUED, TaskStatus.RUNNING}:
                raise RuntimeError(f"Task cannot be canceled from status={row.status}")

            result = session.exec(
                sa_update(TaskAttempt)
                .where(
                    col(TaskAttempt.task_id) == task_id,
                    col(TaskAttempt.site_id) == site_id,
                    col(TaskAttempt.status) == previous.value,
                )
                .values(
                    status=TaskStatus.CANCELED.value,
                    lock_id=None,
                    lock_expire_at=None,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while canceling; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                site_id=site_id,
                task_id=task_id,
                event_type="canceled",
                status_from=previous,
                status_to=TaskStatus.CANCELED,
                details={},
            )
            session.commit()

    def get_task(self, *, site_id: int, task_id: int) -> TaskAttemptView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskAttempt).where(
                    TaskAttempt.task_id == task_id,
                    TaskAttempt.site_id == site_id,
                ),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        site_id: int,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskAttemptView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(TaskAttempt)
                .where(TaskAttempt.site_id == site_id)
                .order_by(col(TaskAttempt.created_at).desc(), col(TaskAttempt.task_id).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(TaskAttempt.status == status.value)
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, site_id: int, task_id: int) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(
                select(TaskAttempt).where(
                    TaskAttempt.task_id == task_id,
                    TaskAttempt.site_id == site_id,
                ),
            ).one_or_none()
            if task is None:
                return None
            task_view = _to_task_view(task)

            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id, TaskEvent.site_id == site_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
            events = [
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=(
                        TaskStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=_load_json_object(row.details_json),
                )
                for row in event_rows
            ]
        return TaskDetails(task=task_view, events=events)

    def _get_task_row(self, *, session: Session, site_id: int, task_id: int) -> TaskAttempt:
        row = session.exec(
            select(TaskAttempt).where(
                TaskAttempt.task_id == task_id,
                TaskAttempt.site_id == site_id,
            ),
        ).one_or_none()
        if row is None:
            raise ResourceNotFoundError(f"Task not found: {task_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        site_id: int,
        task_id: int,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                site_id=site_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=self.now(),
            ),
        )


def _owned_by(*, site_id: int, task_id: int, lock_id: str, agent_id: str):
    return sa_update(TaskAttempt).where(
        col(TaskAttempt.task_id) == task_id,
        col(TaskAttempt.site_id) == site_id,
        col(TaskAttempt.status) == TaskStatus.RUNNING.value,
        col(TaskAttempt.lock_id) == lock_id,
        col(TaskAttempt.agent_id) == agent_id,
    )


def _require_id(value: int | None) -> int:
    if value is None:
        raise RuntimeError("Row was not assigned a primary key.")
    return value


def _load_json_object(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    parsed = json.loads(value)
    if isinstance(parsed, dict):
        return parsed
    return {}


def _to_task_view(row: TaskAttempt) -> TaskAttemptView:
    return TaskAttemptView(
        task_id=_require_id(row.task_id),
        site_id=row.site_id,
        attempt_id=row.attempt_id,
        name=row.name,
        operator_type=row.operator_type,
        config=_load_json_object(row.config_json),
        state_params=StateParams.from_json(row.state_params_json),
        status=TaskStatus(row.status),
        retry_count=row.retry_count,
        lock_id=row.lock_id,
        agent_id=row.agent_id,
        lock_expire_at=(
            to_utc_aware_datetime(row.lock_expire_at) if row.lock_expire_at is not None else None
        ),
        run_after=to_utc_aware_datetime(row.run_after),
        result=_load_json_object(row.result_json) if row.result_json else None,
        last_error=_load_json_object(row.last_error_json) if row.last_error_json else None,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_project_view(row: Project) -> ProjectView:
    raw = _load_json_object(row.workflows_json)
    workflows = {
        name: [WorkflowTaskDefinition.from_dict(item) for item in definitions]
        for name, definitions in raw.items()
        if isinstance(definitions, list)
    }
    return ProjectView(
        project_id=_require_id(row.project_id),
        site_id=row.site_id,
        name=row.name,
        archive_sha256=row.archive_sha256,
        workflows=workflows,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_session_attempt_view(
    row: SessionAttempt,
    *,
    task_ids: list[int],
    already_exists: bool,
) -> SessionAttemptView:
    return SessionAttemptView(
        attempt_id=_require_id(row.attempt_id),
        site_id=row.site_id,
        project_id=row.project_id,
        workflow_name=row.workflow_name,
        session_time=to_utc_aware_datetime(row.session_time),
        retry_attempt_name=row.retry_attempt_name or None,
        params=_load_json_object(row.params_json),
        task_ids=task_ids,
        already_exists=already_exists,
        created_at=to_utc_aware_datetime(row.created_at),
    )
