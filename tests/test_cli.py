from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from sqlalchemy import create_engine, text
from sqlalchemy.pool import NullPool

from flowlease.main import flowlease

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Project, Session, Task & Agent Commands"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("FLOWLEASE_WORKDIR_ROOT", str(tmp_path / "workdir"))
    monkeypatch.setenv("FLOWLEASE_OUTPUT_ROOT", str(tmp_path / "output"))
    monkeypatch.setenv("FLOWLEASE_AGENT_ID", "cli-agent")
    return tmp_path / "flowlease.db"


def _invoke(*args: str):
    return CliRunner().invoke(flowlease, list(args))


def _prepare_project(tmp_path: Path, target_url: str) -> tuple[Path, Path]:
    project_dir = tmp_path / "project"
    (project_dir / "queries").mkdir(parents=True)
    (project_dir / "queries" / "load.sql").write_text(
        "INSERT INTO events (id, note) VALUES (1, 'cli')",
        encoding="utf-8",
    )
    workflows_file = tmp_path / "workflows.json"
    workflows_file.write_text(
        json.dumps(
            {
                "daily": [
                    {
                        "name": "load",
                        "type": "sql",
                        "config": {"url": target_url, "_command": "queries/load.sql"},
                    },
                ],
            },
        ),
        encoding="utf-8",
    )
    return project_dir, workflows_file


def test_cli_push_start_run_and_inspect(tmp_path: Path, cli_env: Path, target_url: str) -> None:
    target = create_engine(target_url, poolclass=NullPool)
    with target.begin() as connection:
        connection.execute(text("CREATE TABLE events (id INTEGER PRIMARY KEY, note TEXT)"))
    project_dir, workflows_file = _prepare_project(tmp_path, target_url)
    db_path = str(cli_env)

    push = _invoke(
        "project",
        "push",
        "--db-path",
        db_path,
        "--name",
        "warehouse",
        "--project-dir",
        str(project_dir),
        "--workflows",
        str(workflows_file),
    )
    assert push.exit_code == 0, push.output
    assert "Workflows: daily" in push.output
    project_match = re.search(r"project_id=(\d+)", push.output)
    assert project_match is not None
    project_id = project_match.group(1)

    session_args = (
        "session",
        "start",
        "--db-path",
        db_path,
        "--project-id",
        project_id,
        "--workflow",
        "daily",
        "--session-time",
        "2026-03-01 00:00:00",
    )
    started = _invoke(*session_args)
    assert started.exit_code == 0, started.output
    assert "Session attempt started" in started.output
    again = _invoke(*session_args)
    assert "Session attempt already exists" in again.output
    task_match = re.search(r"Tasks: (\d+)", started.output)
    assert task_match is not None
    task_id = task_match.group(1)

    run = _invoke("agent", "run", "--db-path", db_path, "--loop", "--max-idle-polls", "1")
    assert run.exit_code == 0, run.output
    assert "processed=2 succeeded=1 failed=0 retried=1 rejected=0" in run.output

    listed = _invoke("task", "list", "--db-path", db_path, "--status", "succeeded")
    assert "Tasks: 1" in listed.output
    assert f"{task_id} name=load type=sql status=succeeded retries=1" in listed.output

    inspected = _invoke("task", "inspect", "--db-path", db_path, task_id)
    assert "Status: succeeded" in inspected.output
    assert "idempotency_key" in inspected.output
    assert "retry_scheduled running -> queued" in inspected.output

    with target.connect() as connection:
        assert connection.execute(text("SELECT COUNT(*) FROM events")).scalar_one() == 1
    target.dispose()


def test_cli_enqueue_and_cancel(cli_env: Path) -> None:
    db_path = str(cli_env)

    enqueued = _invoke(
        "task",
        "enqueue",
        "--db-path",
        db_path,
        "--name",
        "adhoc",
        "--type",
        "sql",
        "--config",
        '{"query": "SELECT 1"}',
    )
    assert enqueued.exit_code == 0, enqueued.output
    task_match = re.search(r"task_id=(\d+)", enqueued.output)
    assert task_match is not None
    task_id = task_match.group(1)

    canceled = _invoke("task", "cancel", "--db-path", db_path, task_id)
    assert canceled.exit_code == 0, canceled.output
    assert f"Task canceled: {task_id}" in canceled.output

    listed = _invoke("task", "list", "--db-path", db_path)
    assert "status=canceled" in listed.output


def test_cli_reports_errors_without_traceback(cli_env: Path) -> None:
    db_path = str(cli_env)

    bad_config = _invoke(
        "task",
        "enqueue",
        "--db-path",
        db_path,
        "--name",
        "adhoc",
        "--type",
        "sql",
        "--config",
        "[1, 2]",
    )
    assert bad_config.exit_code != 0
    assert "--config must be a JSON object" in bad_config.output

    missing = _invoke("task", "inspect", "--db-path", db_path, "999")
    assert missing.exit_code == 0
    assert "Task not found: 999" in missing.output

    no_project = _invoke(
        "session",
        "start",
        "--db-path",
        db_path,
        "--project-id",
        "42",
        "--workflow",
        "daily",
    )
    assert no_project.exit_code != 0
    assert "Project not found" in no_project.output


def test_cli_agent_once_with_empty_queue(cli_env: Path) -> None:
    result = _invoke("agent", "run", "--db-path", str(cli_env), "--once")

    assert result.exit_code == 0, result.output
    assert "processed=0" in result.output
    assert "idle_polls=1" in result.output
