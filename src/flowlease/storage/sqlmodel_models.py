"""SQLModel ORM tables for the orchestration core."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel

DEFAULT_SITE_ID = 0


class Site(SQLModel, table=True):
    __tablename__ = "sites"  # type: ignore[bad-override]

    site_id: int = Field(primary_key=True)
    name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("site_id", "name", name="uq_projects_site_name"),)

    project_id: int | None = Field(default=None, primary_key=True)
    site_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("sites.site_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    name: str
    archive: bytes | None = Field(default=None, sa_column=Column(LargeBinary))
    archive_sha256: str | None = None
    workflows_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SessionAttempt(SQLModel, table=True):
    __tablename__ = "session_attempts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "site_id",
            "project_id",
            "workflow_name",
            "session_time",
            "retry_attempt_name",
            name="uq_session_attempts_identity",
        ),
    )

    attempt_id: int | None = Field(default=None, primary_key=True)
    site_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("sites.site_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    project_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    workflow_name: str
    session_time: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    retry_attempt_name: str = ""
    params_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskAttempt(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_queue", "site_id", "status", "run_after"),
        Index("idx_tasks_lease", "status", "lock_expire_at"),
    )

    task_id: int | None = Field(default=None, primary_key=True)
    site_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("sites.site_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("session_attempts.attempt_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    name: str
    operator_type: str = Field(index=True)
    config_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    state_params_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    retry_count: int = Field(default=0)
    lock_id: str | None = Field(default=None, index=True)
    agent_id: str | None = Field(default=None, index=True)
    lock_expire_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    last_error_json: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    site_id: int = Field(index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
