"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from flowlease.core.callback import TaskCallbackService
from flowlease.core.repository import TaskRepository


class FakeClock:
    """Controllable UTC clock for lease expiry and retry scheduling."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path, clock: FakeClock):
    repo = TaskRepository(tmp_path / "flowlease.db", clock=clock)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def service(repository: TaskRepository) -> TaskCallbackService:
    return TaskCallbackService(repository=repository, max_active_attempts=2)


@pytest.fixture()
def target_url(tmp_path: Path) -> str:
    """SQLite database standing in for the external SQL system."""

    return f"sqlite:///{tmp_path / 'target.db'}"
