"""``sql_load`` operator: bulk-load object storage files with ``COPY``."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from sqlalchemy.engine import Connection

from flowlease.core.state_params import StateParams
from flowlease.errors import ConfigError
from flowlease.operators.base import OperatorContext, TaskOutcome, TaskRequest
from flowlease.operators.idempotent import IdempotencyOptions, run_once
from flowlease.operators.secrets import SecretProvider
from flowlease.sql.connection import SqlConnection, SqlConnectionConfig

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[SqlConnectionConfig], SqlConnection]

ACCESS_KEY_ID = "access-key-id"
SECRET_ACCESS_KEY = "secret-access-key"
SESSION_TOKEN = "session-token"

FORMATS = frozenset({"CSV", "DELIMITER", "FIXEDWIDTH", "AVRO", "JSON", "PARQUET", "ORC"})
COMPRESSIONS = frozenset({"GZIP", "LZOP", "BZIP2", "ZSTD"})


class SqlLoadOperator:
    """Loads ``source`` into the ``_command`` table; always strict.

    AWS credentials come from ``aws.sql_load``, then ``aws.sql``, then
    ``aws``, first match wins per key.
    """

    OPERATOR_TYPE = "sql_load"
    CREDENTIAL_NAMESPACES = ("sql_load", "sql", "")

    def __init__(
        self,
        request: TaskRequest,
        *,
        connection_factory: ConnectionFactory = SqlConnection.open,
    ) -> None:
        self.request = request
        self._connection_factory = connection_factory
        self._secrets: SecretProvider | None = None

    def secret_selectors(self) -> list[str]:
        return [f"{self.OPERATOR_TYPE}.*", "aws.*"]

    def configure(self, secrets: SecretProvider, params: Mapping[str, Any]) -> SqlConnectionConfig:
        self._secrets = secrets
        return SqlConnectionConfig.configure(secrets.get_secrets(self.OPERATOR_TYPE), params)

    def run(
        self,
        context: OperatorContext,
        params: Mapping[str, Any],
        state: StateParams,
        config: SqlConnectionConfig,
    ) -> TaskOutcome:
        statement = build_copy_statement(params, self._secrets or context.secrets)
        options = IdempotencyOptions.from_params(params)
        if not options.strict_transaction:
            logger.warning(
                "%s always runs with a status table; ignoring strict_transaction=false",
                self.OPERATOR_TYPE,
            )
            options = IdempotencyOptions(
                strict_transaction=True,
                status_table=options.status_table,
                status_table_cleanup=options.status_table_cleanup,
                lock_timeout=options.lock_timeout,
            )

        def effect(connection: Connection) -> None:
            connection.exec_driver_sql(statement)

        return run_once(
            state=state,
            statement=statement,
            effect=effect,
            options=options,
            connection_factory=lambda: self._connection_factory(config),
        )


def build_copy_statement(
    params: Mapping[str, Any],
    secrets: SecretProvider,
    *,
    quote_identifier: Callable[[str], str] | None = None,
) -> str:
    """Render a ``COPY`` statement with every value inlined as a literal.

    ``COPY`` does not accept bind parameters, so values go through
    :func:`quote_literal` and the table name through ``quote_identifier``.
    """

    quote = quote_identifier or _quote_identifier
    table = _required_str(params, "_command")
    source = _required_str(params, "source")
    file_format = _required_str(params, "format").upper()
    if file_format not in FORMATS:
        raise ConfigError(f"Unsupported format {file_format!r}; expected one of {sorted(FORMATS)}")

    aws = secrets.get_secrets("aws")
    access_key = _credential(aws, ACCESS_KEY_ID)
    secret_key = _credential(aws, SECRET_ACCESS_KEY)
    credentials = f"aws_access_key_id={access_key};aws_secret_access_key={secret_key}"
    session_token = aws.first_secret(SESSION_TOKEN, SqlLoadOperator.CREDENTIAL_NAMESPACES)
    if session_token is not None:
        credentials += f";token={session_token}"

    lines = [
        f"COPY {'.'.join(quote(part) for part in table.split('.'))} FROM {quote_literal(source)}",
        f"CREDENTIALS {quote_literal(credentials)}",
    ]
    if params.get("manifest", False):
        lines.append("MANIFEST")
    lines.append(_format_clause(params, file_format))

    compression = params.get("compression")
    if compression is not None:
        compression = str(compression).upper()
        if compression not in COMPRESSIONS:
            raise ConfigError(f"Unsupported compression {compression!r}")
        lines.append(compression)
    if params.get("read_ratio") is not None:
        lines.append(f"READRATIO {_int_param(params, 'read_ratio')}")
    if params.get("remove_quotes", False):
        lines.append("REMOVEQUOTES")
    if params.get("empty_as_null", False):
        lines.append("EMPTYASNULL")
    if params.get("blank_as_null", False):
        lines.append("BLANKSASNULL")
    if params.get("max_error") is not None:
        lines.append(f"MAXERROR {_int_param(params, 'max_error')}")
    if params.get("time_format") is not None:
        lines.append(f"TIMEFORMAT {quote_literal(str(params['time_format']))}")
    if params.get("explicit_ids", False):
        lines.append("EXPLICIT_IDS")
    return "\n".join(lines)


def quote_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


def _format_clause(params: Mapping[str, Any], file_format: str) -> str:
    match file_format:
        case "CSV":
            quote_char = params.get("quote_char")
            if quote_char is not None:
                return f"CSV QUOTE {quote_literal(_single_char(quote_char, 'quote_char'))}"
        case "DELIMITER":
            delimiter = params.get("delimiter_char")
            if delimiter is not None:
                return f"DELIMITER {quote_literal(_single_char(delimiter, 'delimiter_char'))}"
        case "FIXEDWIDTH":
            return f"FIXEDWIDTH {quote_literal(_required_str(params, 'fixedwidth_spec'))}"
        case "AVRO" | "JSON":
            jsonpaths = params.get("jsonpaths_file")
            if jsonpaths is not None:
                return f"{file_format} {quote_literal(str(jsonpaths))}"
            return f"{file_format} 'auto'"
    return file_format


def _credential(aws: SecretProvider, key: str) -> str:
    value = aws.first_secret(key, SqlLoadOperator.CREDENTIAL_NAMESPACES)
    if value is None:
        raise ConfigError(f"'{key}' secrets doesn't exist")
    return value


def _required_str(params: Mapping[str, Any], key: str) -> str:
    value = params.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"'{key}' is required")
    return value


def _single_char(value: Any, key: str) -> str:
    text_value = str(value)
    if len(text_value) != 1:
        raise ConfigError(f"'{key}' must be a single character, got {text_value!r}")
    return text_value


def _int_param(params: Mapping[str, Any], key: str) -> int:
    value = params[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    return value


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'
