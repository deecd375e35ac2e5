"""At-most-once execution of a side effect, keyed by an idempotency key.

``StatusTableTransactionHelper`` keeps one row per key in a status table on
the target database. The side effect and the "completed" mark commit in the
same transaction, so after a crash either both happened or neither did.

Locking is a conditional UPDATE on the row (``locked_by IS NULL`` or the
previous holder went stale) rather than ``SELECT ... FOR UPDATE NOWAIT``,
which keeps it portable to SQLite. A holder that loses its lock to a stale
takeover cannot mark completion, and its effect is rolled back.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    delete,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from flowlease.errors import DatabaseError, LockConflictError
from flowlease.storage.common import to_db_datetime, utc_now

logger = logging.getLogger(__name__)

SideEffect = Callable[[Connection], None]


class TransactionHelper(Protocol):
    def prepare(self) -> None:
        """Create whatever bookkeeping the helper needs on the target."""

    def locked_transaction(self, query_id: str, effect: SideEffect) -> bool:
        """Run ``effect`` unless ``query_id`` already completed.

        Returns ``True`` when the effect ran now and ``False`` when it had
        completed in an earlier invocation. Raises ``LockConflictError``
        when another execution holds the lock for ``query_id``.
        """

    def cleanup(self) -> None:
        """Drop bookkeeping that is no longer needed."""


class NoTransactionHelper:
    """Non-strict mode: run the effect every time, no status table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def prepare(self) -> None:
        return None

    def locked_transaction(self, query_id: str, effect: SideEffect) -> bool:
        try:
            with self._engine.begin() as connection:
                effect(connection)
        except SQLAlchemyError as error:
            raise database_error(error) from error
        logger.debug("Ran statement without status table for %s", query_id)
        return True

    def cleanup(self) -> None:
        return None


class StatusTableTransactionHelper:
    """Strict mode: status-table row per idempotency key."""

    def __init__(  # noqa: PLR0913
        self,
        engine: Engine,
        *,
        status_table: str,
        cleanup_after: timedelta,
        lock_timeout: timedelta,
        holder_id: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._clock = clock
        self.cleanup_after = cleanup_after
        self.lock_timeout = lock_timeout
        self.holder_id = holder_id or uuid.uuid4().hex
        self.table = Table(
            status_table,
            MetaData(),
            Column("query_id", String(64), primary_key=True),
            Column("created_at", DateTime, nullable=False),
            Column("locked_by", String(64), nullable=True),
            Column("locked_at", DateTime, nullable=True),
            Column("completed_at", DateTime, nullable=True),
        )

    def _now(self) -> datetime:
        return to_db_datetime(self._clock())

    def prepare(self) -> None:
        try:
            self.table.create(self._engine, checkfirst=True)
        except SQLAlchemyError as error:
            raise database_error(error) from error

    def locked_transaction(self, query_id: str, effect: SideEffect) -> bool:
        try:
            self._ensure_row(query_id)
            if not self._acquire(query_id):
                return False
        except SQLAlchemyError as error:
            raise database_error(error) from error

        try:
            with self._engine.begin() as connection:
                effect(connection)
                marked = connection.execute(
                    update(self.table)
                    .where(
                        self.table.c.query_id == query_id,
                        self.table.c.locked_by == self.holder_id,
                    )
                    .values(completed_at=self._now(), locked_by=None, locked_at=None),
                )
                if marked.rowcount != 1:
                    # Lock was taken over as stale; roll the effect back.
                    raise LockConflictError(query_id)
        except LockConflictError:
            raise
        except SQLAlchemyError as error:
            self._release(query_id)
            raise database_error(error) from error
        except Exception:
            self._release(query_id)
            raise
        logger.info("Statement for %s committed with status row", query_id)
        return True

    def cleanup(self) -> None:
        threshold = self._now() - self.cleanup_after
        try:
            with self._engine.begin() as connection:
                removed = connection.execute(
                    delete(self.table).where(
                        self.table.c.completed_at.is_not(None),
                        self.table.c.completed_at < threshold,
                    ),
                ).rowcount
        except SQLAlchemyError as error:
            raise database_error(error) from error
        if removed:
            logger.debug("Removed %d completed status row(s) from %s", removed, self.table.name)

    def _ensure_row(self, query_id: str) -> None:
        try:
            with self._engine.begin() as connection:
                existing = connection.execute(
                    select(self.table.c.query_id).where(self.table.c.query_id == query_id),
                ).first()
                if existing is None:
                    connection.execute(
                        insert(self.table).values(query_id=query_id, created_at=self._now()),
                    )
        except IntegrityError:
            logger.debug("Status row for %s was inserted concurrently", query_id)

    def _acquire(self, query_id: str) -> bool:
        now = self._now()
        stale_before = now - self.lock_timeout
        with self._engine.begin() as connection:
            taken = connection.execute(
                update(self.table)
                .where(
                    self.table.c.query_id == query_id,
                    self.table.c.completed_at.is_(None),
                    or_(
                        self.table.c.locked_by.is_(None),
                        self.table.c.locked_at < stale_before,
                    ),
                )
                .values(locked_by=self.holder_id, locked_at=now),
            ).rowcount
            if taken == 1:
                return True
            completed_at = connection.execute(
                select(self.table.c.completed_at).where(self.table.c.query_id == query_id),
            ).scalar_one_or_none()
        if completed_at is not None:
            logger.info(
                "Statement for %s already completed at %s; skipping",
                query_id,
                completed_at,
            )
            return False
        raise LockConflictError(query_id)

    def _release(self, query_id: str) -> None:
        try:
            with self._engine.begin() as connection:
                connection.execute(
                    update(self.table)
                    .where(
                        self.table.c.query_id == query_id,
                        self.table.c.locked_by == self.holder_id,
                    )
                    .values(locked_by=None, locked_at=None),
                )
        except SQLAlchemyError:
            logger.warning("Failed to release status row lock for %s", query_id, exc_info=True)


def database_error(error: SQLAlchemyError) -> DatabaseError:
    """Wrap a driver error; callers chain it with ``raise ... from error``."""

    original = getattr(error, "orig", None)
    message = str(original) if original is not None else str(error)
    return DatabaseError(message.strip() or type(error).__name__)
