"""SQLAlchemy-backed connection to the external SQL system an operator targets."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection, CursorResult, Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.pool import NullPool

from flowlease.errors import ConfigError, NotReadOnlyError
from flowlease.operators.secrets import SecretProvider
from flowlease.sql.transaction import (
    NoTransactionHelper,
    StatusTableTransactionHelper,
    database_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_READ_ONLY_KEYWORDS = frozenset({"select", "with", "values", "show", "explain", "table"})
_UNPREPARABLE_KEYWORDS = frozenset({"copy"})


@dataclass(frozen=True, slots=True)
class SqlConnectionConfig:
    """Connection settings resolved from task params and secrets."""

    url: URL
    connect_timeout_seconds: int = 30

    @classmethod
    def configure(cls, secrets: SecretProvider, params: Mapping[str, Any]) -> SqlConnectionConfig:
        """Build from ``url`` or ``driver``/``host``/``port``/``database``/``user``.

        ``password`` and, when absent from params, ``user`` are read from
        ``secrets`` (the operator's own namespace).
        """

        connect_timeout = _positive_int(params, "connect_timeout", default=30)
        raw_url = params.get("url")
        password = secrets.get_secret_optional("password")
        if raw_url is not None:
            try:
                url = make_url(str(raw_url))
            except ArgumentError as error:
                raise ConfigError(f"Invalid connection url: {error}") from error
            if password is not None and url.password is None:
                url = url.set(password=password)
            return cls(url=url, connect_timeout_seconds=connect_timeout)

        driver = params.get("driver")
        if not driver:
            raise ConfigError("Either 'url' or 'driver' is required for a SQL connection.")
        port = params.get("port")
        url = URL.create(
            drivername=str(driver),
            username=params.get("user") or secrets.get_secret_optional("user"),
            password=password,
            host=params.get("host"),
            port=int(port) if port is not None else None,
            database=params.get("database"),
        )
        return cls(url=url, connect_timeout_seconds=connect_timeout)


class RowCursor:
    """Typed row cursor over a read-only query result."""

    def __init__(self, result: CursorResult[Any]) -> None:
        self._result = result
        self.column_names: list[str] = list(result.keys())

    def next(self) -> list[Any] | None:
        row = self._result.fetchone()
        if row is None:
            return None
        return list(row)

    def __iter__(self) -> Iterator[tuple[Any, ...]]:
        for row in self._result:
            yield tuple(row)


class SqlConnection:
    """One operator invocation's handle on the target database.

    Use as a context manager so the engine is disposed on every exit path.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def open(cls, config: SqlConnectionConfig) -> SqlConnection:
        if config.url.get_backend_name() == "sqlite":
            connect_args: dict[str, Any] = {
                "timeout": float(config.connect_timeout_seconds),
                "check_same_thread": False,
            }
        else:
            connect_args = {"connect_timeout": config.connect_timeout_seconds}
        try:
            engine = create_engine(config.url, poolclass=NullPool, connect_args=connect_args)
        except (ArgumentError, ImportError) as error:
            raise ConfigError(f"Cannot create connection for {config.url!r}: {error}") from error
        return cls(engine)

    def __enter__(self) -> SqlConnection:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def close(self) -> None:
        self.engine.dispose()

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def quote_identifier(self, name: str) -> str:
        return self.engine.dialect.identifier_preparer.quote(name)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside a transaction committed on success."""

        try:
            with self.engine.begin() as connection:
                yield connection
        except SQLAlchemyError as error:
            raise database_error(error) from error

    def validate_statement(self, sql: str) -> Exception | None:
        """Return the reason ``sql`` is unusable, or ``None`` when it looks valid.

        Checks for exactly one statement. On SQLite the statement is also
        compiled with ``EXPLAIN``, which prepares it without executing;
        ``COPY`` is left to the target.
        """

        statements = split_statements(sql)
        if not statements:
            return ValueError("Statement is empty.")
        if len(statements) > 1:
            return ValueError(f"Expected one statement, found {len(statements)}.")
        if self.dialect_name != "sqlite":
            return None
        if _first_keyword(statements[0]) in _UNPREPARABLE_KEYWORDS:
            # SQLite cannot prepare COPY; the target reports it on execution.
            return None
        statement = text(f"EXPLAIN {statements[0]}")
        placeholders = {name: None for name in statement.compile().params}
        try:
            with self.engine.connect() as connection:
                connection.execute(statement, placeholders)
                connection.rollback()
        except SQLAlchemyError as error:
            return database_error(error)
        return None

    def execute_update(self, sql: str, params: Mapping[str, Any] | None = None) -> int:
        """Run one modifying statement in its own transaction."""

        with self.transaction() as connection:
            result = connection.execute(text(sql), dict(params or {}))
            return result.rowcount

    def execute_read_only_query(
        self,
        sql: str,
        handler: Callable[[RowCursor], T],
        params: Mapping[str, Any] | None = None,
    ) -> T:
        """Run a query that must not modify data and pass its rows to ``handler``."""

        statements = split_statements(sql)
        if len(statements) != 1:
            raise NotReadOnlyError("Read-only query must be exactly one statement.")
        keyword = _first_keyword(statements[0])
        if keyword not in _READ_ONLY_KEYWORDS:
            raise NotReadOnlyError(f"Statement starting with {keyword.upper()} is not read-only.")
        try:
            with self.engine.connect() as connection:
                if self.dialect_name == "postgresql":
                    connection.execute(text("SET TRANSACTION READ ONLY"))
                result = connection.execute(text(statements[0]), dict(params or {}))
                try:
                    return handler(RowCursor(result))
                finally:
                    result.close()
                    connection.rollback()
        except SQLAlchemyError as error:
            raise database_error(error) from error

    def strict_transaction_helper(
        self,
        *,
        status_table: str,
        cleanup_after: timedelta,
        lock_timeout: timedelta,
    ) -> StatusTableTransactionHelper:
        return StatusTableTransactionHelper(
            self.engine,
            status_table=status_table,
            cleanup_after=cleanup_after,
            lock_timeout=lock_timeout,
        )

    def no_transaction_helper(self) -> NoTransactionHelper:
        return NoTransactionHelper(self.engine)


def split_statements(sql: str) -> list[str]:
    """Split on top-level ``;`` outside quotes, ``--`` and ``/* */`` comments.

    Comments are dropped and empty parts are skipped.
    """

    statements: list[str] = []
    current: list[str] = []
    quote: str | None = None
    index = 0
    length = len(sql)
    while index < length:
        char = sql[index]
        if quote is not None:
            current.append(char)
            if char == quote:
                quote = None
        elif char in {"'", '"'}:
            quote = char
            current.append(char)
        elif sql.startswith("--", index):
            newline = sql.find("\n", index)
            index = length if newline == -1 else newline
            continue
        elif sql.startswith("/*", index):
            end = sql.find("*/", index + 2)
            index = length if end == -1 else end + 2
            current.append(" ")
            continue
        elif char == ";":
            statements.append("".join(current))
            current = []
        else:
            current.append(char)
        index += 1
    statements.append("".join(current))
    return [statement.strip() for statement in statements if statement.strip()]


def _first_keyword(statement: str) -> str:
    return statement.split(None, 1)[0].lower()


def _positive_int(params: Mapping[str, Any], key: str, *, default: int) -> int:
    value = params.get(key, default)
    try:
        parsed = int(value)
    except (TypeError, ValueError) as error:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}") from error
    if parsed <= 0:
        raise ConfigError(f"'{key}' must be > 0, got {parsed}")
    return parsed
