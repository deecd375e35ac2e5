"""Runtime configuration for the orchestration core and agents."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path


def default_agent_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class CoreSettings:
    """Orchestration core settings."""

    site_id: int = 0
    max_active_attempts: int = 100


@dataclass(slots=True)
class AgentSettings:
    """Agent executor settings."""

    agent_id: str = field(default_factory=default_agent_id)
    lock_seconds: int = 60
    heartbeat_interval_seconds: float = 20.0
    poll_interval_seconds: float = 2.0
    max_tasks_per_lease: int = 1
    workdir_root: Path = Path(".flowlease/workdir")
    output_root: Path = Path(".flowlease/output")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".flowlease.db")
    sqlite_busy_timeout_ms: int = 5_000
    secrets_file: Path | None = None
    core: CoreSettings = field(default_factory=CoreSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        secrets_file = os.getenv("FLOWLEASE_SECRETS_FILE", "").strip()
        settings = cls(
            db_path=db_path or Path(os.getenv("FLOWLEASE_DB_PATH", ".flowlease.db")),
            sqlite_busy_timeout_ms=int(os.getenv("FLOWLEASE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            secrets_file=Path(secrets_file) if secrets_file else None,
            core=CoreSettings(
                site_id=int(os.getenv("FLOWLEASE_SITE_ID", "0")),
                max_active_attempts=int(os.getenv("FLOWLEASE_MAX_ACTIVE_ATTEMPTS", "100")),
            ),
            agent=AgentSettings(
                agent_id=os.getenv("FLOWLEASE_AGENT_ID", "").strip() or default_agent_id(),
                lock_seconds=int(os.getenv("FLOWLEASE_LOCK_SECONDS", "60")),
                heartbeat_interval_seconds=float(
                    os.getenv("FLOWLEASE_HEARTBEAT_INTERVAL_SECONDS", "20"),
                ),
                poll_interval_seconds=float(os.getenv("FLOWLEASE_POLL_INTERVAL_SECONDS", "2.0")),
                max_tasks_per_lease=int(os.getenv("FLOWLEASE_MAX_TASKS_PER_LEASE", "1")),
                workdir_root=Path(os.getenv("FLOWLEASE_WORKDIR_ROOT", ".flowlease/workdir")),
                output_root=Path(os.getenv("FLOWLEASE_OUTPUT_ROOT", ".flowlease/output")),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("FLOWLEASE_SQLITE_BUSY_TIMEOUT_MS must be >= 0")
        if self.core.max_active_attempts <= 0:
            raise ValueError("FLOWLEASE_MAX_ACTIVE_ATTEMPTS must be > 0")
        if self.agent.lock_seconds <= 0:
            raise ValueError("FLOWLEASE_LOCK_SECONDS must be > 0")
        if self.agent.max_tasks_per_lease <= 0:
            raise ValueError("FLOWLEASE_MAX_TASKS_PER_LEASE must be > 0")
        if self.agent.poll_interval_seconds < 0:
            raise ValueError("FLOWLEASE_POLL_INTERVAL_SECONDS must be >= 0")
        if not 0 < self.agent.heartbeat_interval_seconds < self.agent.lock_seconds:
            raise ValueError(
                "FLOWLEASE_HEARTBEAT_INTERVAL_SECONDS must be > 0 and shorter than "
                f"FLOWLEASE_LOCK_SECONDS ({self.agent.lock_seconds})",
            )
