"""``sql`` operator: run one statement against an external database."""

from __future__ import annotations

import csv
import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Connection

from flowlease.core.models import TaskResult
from flowlease.core.state_params import StateParams
from flowlease.errors import ConfigError, DatabaseError
from flowlease.operators.base import OperatorContext, Success, TaskOutcome, TaskRequest
from flowlease.operators.idempotent import IdempotencyOptions, external_failure, run_once
from flowlease.operators.secrets import SecretProvider
from flowlease.sql.connection import RowCursor, SqlConnection, SqlConnectionConfig

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[SqlConnectionConfig], SqlConnection]


class SqlOperator:
    """Runs ``query`` (or the ``_command`` file) once per task attempt.

    Strict mode (default) guards the statement with a status table on the
    target so it commits at most once. With ``download_file`` the query must
    be read-only and its rows are written as CSV under the invocation's
    output directory (the project directory when there is none).
    """

    OPERATOR_TYPE = "sql"

    def __init__(
        self,
        request: TaskRequest,
        *,
        connection_factory: ConnectionFactory = SqlConnection.open,
    ) -> None:
        self.request = request
        self._connection_factory = connection_factory

    def secret_selectors(self) -> list[str]:
        return [f"{self.OPERATOR_TYPE}.*"]

    def configure(self, secrets: SecretProvider, params: Mapping[str, Any]) -> SqlConnectionConfig:
        return SqlConnectionConfig.configure(secrets.get_secrets(self.OPERATOR_TYPE), params)

    def run(
        self,
        context: OperatorContext,
        params: Mapping[str, Any],
        state: StateParams,
        config: SqlConnectionConfig,
    ) -> TaskOutcome:
        query = load_query(params, context.project_path)
        bind_params = _bind_params(params)
        download_file = params.get("download_file")
        if download_file:
            return self._download(context, query, bind_params, str(download_file), config)

        def effect(connection: Connection) -> None:
            result = connection.execute(text(query), bind_params)
            logger.debug("Statement affected %s row(s)", result.rowcount)

        return run_once(
            state=state,
            statement=query,
            effect=effect,
            options=IdempotencyOptions.from_params(params),
            connection_factory=lambda: self._connection_factory(config),
        )

    def _download(  # noqa: PLR0913
        self,
        context: OperatorContext,
        query: str,
        bind_params: dict[str, Any],
        download_file: str,
        config: SqlConnectionConfig,
    ) -> TaskOutcome:
        root = context.output_path or context.project_path
        target = _resolve_inside(root, download_file, param="download_file")
        target.parent.mkdir(parents=True, exist_ok=True)

        def write_csv(cursor: RowCursor) -> int:
            count = 0
            with target.open("w", encoding="utf-8", newline="") as handle:
                writer = csv.writer(handle)
                writer.writerow(cursor.column_names)
                for row in cursor:
                    writer.writerow(row)
                    count += 1
            return count

        try:
            with self._connection_factory(config) as connection:
                invalid = connection.validate_statement(query)
                if invalid is not None:
                    raise ConfigError("Given query is invalid") from invalid
                rows = connection.execute_read_only_query(query, write_csv, bind_params)
        except DatabaseError as error:
            raise external_failure(error) from error
        logger.info("Downloaded %d row(s) to %s", rows, target)
        store = {"sql": {"download_file": str(target), "rows": rows}}
        return Success(TaskResult(store_params=store))


def load_query(params: Mapping[str, Any], project_path: Path | None) -> str:
    """Statement from ``query``, or from the file named by ``_command``."""

    query = params.get("query")
    if query is not None:
        if not isinstance(query, str) or not query.strip():
            raise ConfigError("'query' must be a non-empty string.")
        return query
    command = params.get("_command")
    if not command:
        raise ConfigError("Either 'query' or '_command' is required.")
    path = _resolve_inside(project_path, str(command), param="_command")
    if not path.is_file():
        raise ConfigError(f"Query file does not exist: {command}")
    return path.read_text("utf-8")


def _bind_params(params: Mapping[str, Any]) -> dict[str, Any]:
    raw = params.get("parameters", {})
    if not isinstance(raw, Mapping):
        raise ConfigError("'parameters' must be an object.")
    return dict(raw)


def _resolve_inside(project_path: Path | None, relative: str, *, param: str) -> Path:
    if project_path is None:
        raise ConfigError(f"'{param}' needs a project directory but the task has none.")
    root = project_path.resolve()
    path = (root / relative).resolve()
    if not path.is_relative_to(root):
        raise ConfigError(f"'{param}' must stay inside the project directory: {relative}")
    return path
