from __future__ import annotations

from pathlib import Path

import allure
import pytest

from flowlease.config import AgentSettings, Settings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_from_env_reads_prefixed_variables(monkeypatch) -> None:
    monkeypatch.setenv("FLOWLEASE_DB_PATH", "/tmp/flowlease-test.db")
    monkeypatch.setenv("FLOWLEASE_SITE_ID", "7")
    monkeypatch.setenv("FLOWLEASE_AGENT_ID", "agent-a")
    monkeypatch.setenv("FLOWLEASE_LOCK_SECONDS", "120")
    monkeypatch.setenv("FLOWLEASE_HEARTBEAT_INTERVAL_SECONDS", "30")
    monkeypatch.setenv("FLOWLEASE_MAX_TASKS_PER_LEASE", "4")
    monkeypatch.setenv("FLOWLEASE_SECRETS_FILE", "/etc/flowlease/secrets.properties")
    monkeypatch.setenv("FLOWLEASE_OUTPUT_ROOT", "/var/lib/flowlease/output")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/flowlease-test.db")
    assert settings.core.site_id == 7
    assert settings.agent.agent_id == "agent-a"
    assert settings.agent.lock_seconds == 120
    assert settings.agent.heartbeat_interval_seconds == 30.0
    assert settings.agent.max_tasks_per_lease == 4
    assert settings.secrets_file == Path("/etc/flowlease/secrets.properties")
    assert settings.agent.output_root == Path("/var/lib/flowlease/output")


def test_explicit_db_path_overrides_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("FLOWLEASE_DB_PATH", "/tmp/ignored.db")

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_defaults_without_environment(monkeypatch) -> None:
    for name in ("FLOWLEASE_AGENT_ID", "FLOWLEASE_SECRETS_FILE", "FLOWLEASE_LOCK_SECONDS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.agent.lock_seconds == 60
    assert settings.core.max_active_attempts == 100
    assert settings.secrets_file is None
    assert settings.agent.agent_id


def test_validate_rejects_heartbeat_not_shorter_than_lock_window() -> None:
    settings = Settings(agent=AgentSettings(lock_seconds=20, heartbeat_interval_seconds=20))

    with pytest.raises(ValueError, match="HEARTBEAT_INTERVAL"):
        settings.validate()


def test_from_env_rejects_invalid_lock_seconds(monkeypatch) -> None:
    monkeypatch.setenv("FLOWLEASE_LOCK_SECONDS", "0")

    with pytest.raises(ValueError, match="LOCK_SECONDS"):
        Settings.from_env()
