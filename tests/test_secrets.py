from __future__ import annotations

from pathlib import Path

import allure
import pytest

from flowlease.errors import ConfigError, SecretAccessDeniedError
from flowlease.operators.secrets import SecretProvider, load_secrets_file

pytestmark = [
    allure.epic("Operators"),
    allure.feature("Secrets"),
]


def _provider() -> SecretProvider:
    return SecretProvider.from_nested(
        {
            "aws": {
                "access-key-id": "generic-key",
                "sql": {"access-key-id": "sql-key"},
                "sql_load": {"secret-access-key": "load-secret"},
            },
            "sql": {"password": "pw"},
        },
    )


def test_namespaces_scope_lookups() -> None:
    provider = _provider()

    assert provider.get_secrets("sql").get_secret("password") == "pw"
    assert provider.get_secrets("aws").get_secrets("sql").get_secret("access-key-id") == "sql-key"
    assert provider.get_secrets("sql").get_secret_optional("user") is None


def test_first_secret_searches_most_specific_namespace_first() -> None:
    aws = _provider().get_secrets("aws")
    namespaces = ("sql_load", "sql", "")

    assert aws.first_secret("access-key-id", namespaces) == "sql-key"
    assert aws.first_secret("secret-access-key", namespaces) == "load-secret"
    assert aws.first_secret("session-token", namespaces) is None


def test_restricted_provider_denies_keys_outside_selectors() -> None:
    restricted = _provider().restricted(["sql.*"])

    assert restricted.get_secrets("sql").get_secret("password") == "pw"
    with pytest.raises(SecretAccessDeniedError):
        restricted.get_secrets("aws").get_secret_optional("access-key-id")


def test_missing_required_secret_is_config_error() -> None:
    with pytest.raises(ConfigError, match="doesn't exist"):
        _provider().get_secrets("sql").get_secret("user")


def test_load_secrets_file_reads_prefixed_lines(tmp_path: Path) -> None:
    path = tmp_path / "secrets.properties"
    path.write_text(
        "# local secrets\n"
        "secrets.sql.password = s3cret\n"
        "secrets.aws.access-key-id=AKIA\n"
        "database.url=ignored\n",
        encoding="utf-8",
    )

    provider = load_secrets_file(path)

    assert provider.get_secrets("sql").get_secret("password") == "s3cret"
    assert provider.get_secrets("aws").get_secret("access-key-id") == "AKIA"
    assert provider.get_secret_optional("database.url") is None


def test_load_secrets_file_rejects_malformed_line(tmp_path: Path) -> None:
    path = tmp_path / "secrets.properties"
    path.write_text("secrets.sql.password\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="line 1"):
        load_secrets_file(path)
