import re
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from conftest import SCOPE, ScriptedGateway
from pykocron.__main__ import main
from pykocron.config import settings
from pykocron.db import get_trigger, init_db, list_invocations
from pykocron.errors import ExecutionError


@pytest.fixture(autouse=True)
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setattr(settings, "data", tmp_path)
    return tmp_path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _scope_args() -> list[str]:
    return ["--tenant", SCOPE.tenant_id, "--project", SCOPE.project_id, "--agent", SCOPE.agent_id]


def _add(runner: CliRunner, *args: str) -> str:
    result = runner.invoke(main, ["add-trigger", *_scope_args(), *args])
    assert result.exit_code == 0, result.output
    match = re.search(r"Created trigger (\w+)", result.output)
    assert match is not None
    return match.group(1)


def test_help_without_command(runner: CliRunner) -> None:
    result = runner.invoke(main, [])
    assert result.exit_code == 0
    assert "add-trigger" in result.output
    assert "run-now" in result.output


def test_add_and_list_triggers(runner: CliRunner, data_dir: Path) -> None:
    trigger_id = _add(
        runner, "--name", "daily", "--cron", "0 9 * * *", "--timezone", "Europe/Helsinki"
    )

    result = runner.invoke(main, ["triggers"])

    assert result.exit_code == 0
    assert trigger_id in result.output
    assert "0 9 * * * Europe/Helsinki" in result.output

    trigger = get_trigger(init_db(settings.db_path), SCOPE, trigger_id)
    assert trigger is not None
    assert trigger.max_retries == settings.default_max_retries
    assert trigger.timeout_seconds == settings.default_timeout_seconds


def test_triggers_empty(runner: CliRunner) -> None:
    result = runner.invoke(main, ["triggers"])
    assert result.exit_code == 0
    assert "No scheduled triggers." in result.output


def test_add_trigger_rejects_two_schedules(runner: CliRunner) -> None:
    result = runner.invoke(
        main, ["add-trigger", "--cron", "* * * * *", "--run-at", "2025-01-01T00:00:00Z"]
    )
    assert result.exit_code == 1
    assert "both" in result.output


def test_add_trigger_rejects_zero_timeout(runner: CliRunner) -> None:
    result = runner.invoke(main, ["add-trigger", "--cron", "* * * * *", "--timeout", "0"])
    assert result.exit_code == 1
    assert "timeout_seconds must be > 0" in result.output

    result = runner.invoke(main, ["triggers"])
    assert result.exit_code == 0
    assert "No scheduled triggers." in result.output


def test_add_trigger_rejects_bad_payload(runner: CliRunner) -> None:
    result = runner.invoke(
        main, ["add-trigger", "--cron", "* * * * *", "--payload", "[1, 2]"]
    )
    assert result.exit_code == 2
    assert "JSON object" in result.output


def test_enable_disable_delete(runner: CliRunner) -> None:
    trigger_id = _add(runner, "--cron", "*/5 * * * *")
    db = init_db(settings.db_path)

    result = runner.invoke(main, ["disable", *_scope_args(), trigger_id])
    assert result.exit_code == 0
    trigger = get_trigger(db, SCOPE, trigger_id)
    assert trigger is not None and not trigger.enabled

    result = runner.invoke(main, ["enable", *_scope_args(), trigger_id])
    assert result.exit_code == 0
    trigger = get_trigger(db, SCOPE, trigger_id)
    assert trigger is not None and trigger.enabled

    result = runner.invoke(main, ["delete", *_scope_args(), trigger_id])
    assert result.exit_code == 0
    assert "0 invocation(s) cancelled" in result.output
    assert get_trigger(db, SCOPE, trigger_id) is None


def test_unknown_trigger_is_an_error(runner: CliRunner) -> None:
    result = runner.invoke(main, ["disable", "missing"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_run_now_rerun_and_cancel(runner: CliRunner) -> None:
    trigger_id = _add(
        runner, "--run-at", "2030-01-01T00:00:00Z", "--max-retries", "0",
        "--payload", '{"topic": "news"}',
    )
    gateway = ScriptedGateway([ExecutionError("agent crashed")])

    with patch("pykocron.__main__._gateway", return_value=gateway):
        result = runner.invoke(main, ["run-now", *_scope_args(), trigger_id])
        assert result.exit_code == 0, result.output
        assert "failed" in result.output
        assert "agent crashed" in result.output

        [failed] = list_invocations(init_db(settings.db_path), SCOPE, trigger_id)
        result = runner.invoke(main, ["rerun", *_scope_args(), trigger_id, failed.id])
        assert result.exit_code == 0, result.output
        assert "completed" in result.output

    result = runner.invoke(main, ["invocations", *_scope_args(), trigger_id])
    assert result.exit_code == 0
    assert result.output.count(" | ") >= 6

    result = runner.invoke(main, ["cancel", *_scope_args(), trigger_id, failed.id])
    assert result.exit_code == 1
    assert "Cannot cancel invocation with status: failed" in result.output
