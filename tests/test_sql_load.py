from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from sqlalchemy import create_engine, insert, select
from sqlalchemy.pool import NullPool

from flowlease.core.state_params import POLL_INTERVAL_KEY, StateParams
from flowlease.errors import ConfigError, TaskExecutionError
from flowlease.operators.base import OperatorContext, RetryAfter, Success, TaskRequest
from flowlease.operators.idempotent import IDEMPOTENCY_KEY
from flowlease.operators.secrets import SecretProvider
from flowlease.operators.sql_load import SqlLoadOperator, build_copy_statement, quote_literal
from flowlease.sql.transaction import StatusTableTransactionHelper
from flowlease.storage.common import to_db_datetime, utc_now

pytestmark = [
    allure.epic("Idempotent Side Effects"),
    allure.feature("SQL Load Operator"),
]


def _secrets(**aws: object) -> SecretProvider:
    credentials = aws or {"access-key-id": "AK", "secret-access-key": "SK"}
    return SecretProvider.from_nested({"aws": credentials})


def test_copy_statement_for_csv_with_options() -> None:
    statement = build_copy_statement(
        {
            "_command": "analytics.events",
            "source": "s3://bucket/events/",
            "format": "csv",
            "quote_char": "'",
            "compression": "gzip",
            "empty_as_null": True,
            "max_error": 5,
            "time_format": "auto",
        },
        _secrets(),
    )

    assert statement.splitlines() == [
        "COPY \"analytics\".\"events\" FROM 's3://bucket/events/'",
        "CREDENTIALS 'aws_access_key_id=AK;aws_secret_access_key=SK'",
        "CSV QUOTE ''''",
        "GZIP",
        "EMPTYASNULL",
        "MAXERROR 5",
        "TIMEFORMAT 'auto'",
    ]


def test_copy_statement_for_json_and_fixedwidth() -> None:
    json_auto = build_copy_statement(
        {"_command": "t", "source": "s3://b/k", "format": "json", "manifest": True},
        _secrets(),
    )
    fixed = build_copy_statement(
        {"_command": "t", "source": "s3://b/k", "format": "FIXEDWIDTH", "fixedwidth_spec": "a:3"},
        _secrets(),
    )

    assert json_auto.splitlines()[2:] == ["MANIFEST", "JSON 'auto'"]
    assert fixed.splitlines()[2:] == ["FIXEDWIDTH 'a:3'"]


def test_credentials_prefer_operator_namespace_and_include_session_token() -> None:
    secrets = _secrets(
        **{
            "access-key-id": "generic",
            "secret-access-key": "generic-secret",
            "sql": {"access-key-id": "sql-key", "session-token": "sql-token"},
            "sql_load": {"access-key-id": "load-key"},
        },
    )

    statement = build_copy_statement(
        {"_command": "t", "source": "s3://b/k", "format": "PARQUET"},
        secrets,
    )

    assert (
        "CREDENTIALS 'aws_access_key_id=load-key;aws_secret_access_key=generic-secret;"
        "token=sql-token'"
    ) in statement


def test_missing_credential_is_config_error() -> None:
    with pytest.raises(ConfigError, match="'secret-access-key' secrets doesn't exist"):
        build_copy_statement(
            {"_command": "t", "source": "s3://b/k", "format": "CSV"},
            _secrets(**{"access-key-id": "AK"}),
        )


@pytest.mark.parametrize(
    ("params", "message"),
    [
        ({"source": "s3://b/k", "format": "CSV"}, "'_command' is required"),
        ({"_command": "t", "source": "s3://b/k", "format": "XML"}, "Unsupported format"),
        (
            {"_command": "t", "source": "s3://b/k", "format": "CSV", "compression": "rar"},
            "Unsupported compression",
        ),
        (
            {"_command": "t", "source": "s3://b/k", "format": "DELIMITER", "delimiter_char": "||"},
            "single character",
        ),
    ],
)
def test_invalid_load_params(params: dict[str, object], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        build_copy_statement(params, _secrets())


def test_quote_literal_escapes_quotes_and_backslashes() -> None:
    assert quote_literal("it's a \\path") == "'it''s a \\\\path'"


def test_first_invocation_generates_key_without_connecting() -> None:
    params = {
        "url": "sqlite://",
        "_command": "events",
        "source": "s3://bucket/events/",
        "format": "CSV",
    }
    request = TaskRequest(0, 7, "load", SqlLoadOperator.OPERATOR_TYPE, params, StateParams(), 0)

    def refuse_connection(_config: object) -> None:
        raise AssertionError("first invocation must not connect")

    operator = SqlLoadOperator(request, connection_factory=refuse_connection)
    secrets = _secrets().restricted(operator.secret_selectors())
    config = operator.configure(secrets, params)
    outcome = operator.run(
        OperatorContext(request=request, secrets=secrets),
        params,
        StateParams(),
        config,
    )

    assert isinstance(outcome, RetryAfter)
    assert outcome.delay_seconds == 0
    assert outcome.state[IDEMPOTENCY_KEY]


def test_selectors_cover_aws_credentials() -> None:
    request = TaskRequest(0, 7, "load", SqlLoadOperator.OPERATOR_TYPE, {}, StateParams(), 0)

    assert SqlLoadOperator(request).secret_selectors() == ["sql_load.*", "aws.*"]


LOAD_PARAMS = {
    "_command": "events",
    "source": "s3://bucket/events/",
    "format": "CSV",
}


@pytest.fixture()
def target_engine(target_url: str):
    engine = create_engine(target_url, poolclass=NullPool)
    yield engine
    engine.dispose()


@pytest.fixture()
def status_helper(target_engine) -> StatusTableTransactionHelper:
    helper = StatusTableTransactionHelper(
        target_engine,
        status_table="__flowlease_status",
        cleanup_after=timedelta(hours=24),
        lock_timeout=timedelta(hours=1),
    )
    helper.prepare()
    return helper


def _run_load(target_url: str, state: StateParams):
    params = {"url": target_url, **LOAD_PARAMS}
    request = TaskRequest(0, 7, "load", SqlLoadOperator.OPERATOR_TYPE, params, state, 1)
    operator = SqlLoadOperator(request)
    secrets = _secrets().restricted(operator.secret_selectors())
    config = operator.configure(secrets, params)
    return operator.run(OperatorContext(request=request, secrets=secrets), params, state, config)


def _status_row(engine, helper: StatusTableTransactionHelper, query_id: str):
    with engine.connect() as connection:
        return connection.execute(
            select(helper.table).where(helper.table.c.query_id == query_id),
        ).one_or_none()


def test_completed_load_is_skipped(
    target_engine,
    status_helper: StatusTableTransactionHelper,
    target_url: str,
) -> None:
    now = to_db_datetime(utc_now())
    with target_engine.begin() as connection:
        connection.execute(
            insert(status_helper.table).values(query_id="K", created_at=now, completed_at=now),
        )

    outcome = _run_load(target_url, StateParams({IDEMPOTENCY_KEY: "K"}))

    assert isinstance(outcome, Success)


def test_load_waits_for_concurrent_holder(
    target_engine,
    status_helper: StatusTableTransactionHelper,
    target_url: str,
) -> None:
    now = to_db_datetime(utc_now())
    with target_engine.begin() as connection:
        connection.execute(
            insert(status_helper.table).values(
                query_id="K",
                created_at=now,
                locked_by="concurrent-holder",
                locked_at=now,
            ),
        )

    outcome = _run_load(target_url, StateParams({IDEMPOTENCY_KEY: "K"}))

    assert isinstance(outcome, RetryAfter)
    assert outcome.delay_seconds == 1
    assert outcome.state[POLL_INTERVAL_KEY] == 2


def test_rejected_copy_fails_and_releases_status_lock(
    target_engine,
    status_helper: StatusTableTransactionHelper,
    target_url: str,
) -> None:
    with pytest.raises(TaskExecutionError) as raised:
        _run_load(target_url, StateParams({IDEMPOTENCY_KEY: "K"}))

    assert raised.value.error["kind"] == "external_system"
    row = _status_row(target_engine, status_helper, "K")
    assert row is not None
    assert row.locked_by is None
    assert row.completed_at is None
