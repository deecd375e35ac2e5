"""Run one SQL side effect at most once across repeated operator invocations."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from flowlease.core.state_params import POLL_INTERVAL_KEY, StateParams
from flowlease.errors import (
    ConfigError,
    DatabaseError,
    ErrorKind,
    LockConflictError,
    TaskExecutionError,
    build_error_doc,
)
from flowlease.operators.base import RetryAfter, Success, TaskOutcome
from flowlease.sql.connection import SqlConnection
from flowlease.sql.transaction import SideEffect, TransactionHelper

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY = "idempotency_key"
INITIAL_POLL_INTERVAL = 1
MAX_POLL_INTERVAL = 1200
DEFAULT_STATUS_TABLE = "__flowlease_status"
DEFAULT_STATUS_TABLE_CLEANUP = timedelta(hours=24)
DEFAULT_LOCK_TIMEOUT = timedelta(hours=1)


@dataclass(frozen=True, slots=True)
class IdempotencyOptions:
    strict_transaction: bool = True
    status_table: str = DEFAULT_STATUS_TABLE
    status_table_cleanup: timedelta = DEFAULT_STATUS_TABLE_CLEANUP
    lock_timeout: timedelta = DEFAULT_LOCK_TIMEOUT

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> IdempotencyOptions:
        strict = params.get("strict_transaction", True)
        if not isinstance(strict, bool):
            raise ConfigError(f"'strict_transaction' must be a boolean, got {strict!r}")
        status_table = params.get("status_table", DEFAULT_STATUS_TABLE)
        if not isinstance(status_table, str) or not status_table.strip():
            raise ConfigError("'status_table' must be a non-empty string.")
        return cls(
            strict_transaction=strict,
            status_table=status_table,
            status_table_cleanup=_seconds_param(
                params,
                "status_table_cleanup",
                default=DEFAULT_STATUS_TABLE_CLEANUP,
            ),
            lock_timeout=_seconds_param(
                params,
                "status_table_lock_timeout",
                default=DEFAULT_LOCK_TIMEOUT,
            ),
        )


def run_once(
    *,
    state: StateParams,
    statement: str,
    effect: SideEffect,
    options: IdempotencyOptions,
    connection_factory: Callable[[], SqlConnection],
) -> TaskOutcome:
    """Drive one invocation of the idempotent statement protocol.

    The first invocation only generates the idempotency key and asks to be
    retried immediately, so the key is durable before anything touches the
    target database. Later invocations reuse it.
    """

    query_id = state.get(IDEMPOTENCY_KEY)
    if not query_id:
        query_id = str(uuid.uuid4())
        logger.debug("Generated idempotency key %s", query_id)
        return RetryAfter(0, state.with_values(**{IDEMPOTENCY_KEY: query_id}))

    try:
        with connection_factory() as connection:
            invalid = connection.validate_statement(statement)
            if invalid is not None:
                raise ConfigError("Given query is invalid") from invalid
            helper = _transaction_helper(connection, options)
            helper.prepare()
            executed = helper.locked_transaction(query_id, effect)
            if executed:
                logger.info("Statement for %s executed", query_id)
            else:
                logger.info("Statement for %s already executed; skipped", query_id)
            _cleanup(helper)
    except LockConflictError:
        interval = int(state.get(POLL_INTERVAL_KEY, INITIAL_POLL_INTERVAL))
        next_interval = min(interval * 2, MAX_POLL_INTERVAL)
        logger.info("Status row for %s is locked; polling again in %ds", query_id, interval)
        return RetryAfter(interval, state.with_values(**{POLL_INTERVAL_KEY: next_interval}))
    except DatabaseError as error:
        raise external_failure(error) from error
    return Success()


def external_failure(error: DatabaseError) -> TaskExecutionError:
    """Permanent failure for an external SQL error, ``"<message> [<cause>]"``."""

    cause = error.__cause__
    message = f"{error} [{cause}]" if cause is not None else str(error)
    return TaskExecutionError(
        message,
        error=build_error_doc(error, kind=ErrorKind.EXTERNAL_SYSTEM, message=message),
    )


def _transaction_helper(
    connection: SqlConnection,
    options: IdempotencyOptions,
) -> TransactionHelper:
    if not options.strict_transaction:
        return connection.no_transaction_helper()
    return connection.strict_transaction_helper(
        status_table=options.status_table,
        cleanup_after=options.status_table_cleanup,
        lock_timeout=options.lock_timeout,
    )


def _cleanup(helper: TransactionHelper) -> None:
    try:
        helper.cleanup()
    except DatabaseError:
        logger.warning("Failed to clean up status table; ignoring", exc_info=True)


def _seconds_param(params: Mapping[str, Any], key: str, *, default: timedelta) -> timedelta:
    value = params.get(key)
    if value is None:
        return default
    try:
        seconds = int(value)
    except (TypeError, ValueError) as error:
        raise ConfigError(f"'{key}' must be a number of seconds, got {value!r}") from error
    if seconds <= 0:
        raise ConfigError(f"'{key}' must be > 0, got {seconds}")
    return timedelta(seconds=seconds)
