import json

import pytest
from loguru import logger
from pydantic import ValidationError
from typer.testing import CliRunner

from focus_guard.cli import app
from focus_guard.engine import Decision, evaluate
from focus_guard.settings import Settings, settings
from focus_guard.store import LocalBlockStore
from focus_guard.temporal import DAY_MILLIS as DAY
from focus_guard.temporal import HOUR_MILLIS as HOUR

runner = CliRunner()

FAR_FUTURE = 4_102_444_800_000  # 2100-01-01


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "data_dir", tmp_path)
    monkeypatch.setattr(settings, "log_dir", tmp_path / "logs")
    yield tmp_path
    logger.remove()


def write_rules(tmp_path, rules):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps(rules))
    return path


def test_add_daily_and_list_rules():
    result = runner.invoke(
        app, ["add-daily", "9am", "5pm", "--apps", "firefox,discord", "--id", "work", "--utc"]
    )
    assert result.exit_code == 0, result.output
    assert "work" in result.output

    result = runner.invoke(app, ["rules"])
    assert result.exit_code == 0
    assert "work" in result.output
    assert "daily" in result.output


def test_add_requires_apps():
    result = runner.invoke(app, ["add-daily", "9am", "5pm"])
    assert result.exit_code == 1


def test_add_weekday_rejects_unknown_day():
    result = runner.invoke(app, ["add-weekday", "9am", "5pm", "--days", "mon,funday", "-a", "x"])
    assert result.exit_code == 1
    assert "funday" in result.output


def test_add_duplicate_id_fails():
    args = ["add-once", "8pm", "9pm", "-a", "steam", "--id", "evening"]
    assert runner.invoke(app, args).exit_code == 0
    assert runner.invoke(app, args).exit_code == 1


def test_load_rules_check_and_locked_changes(tmp_path):
    path = write_rules(
        tmp_path,
        [{"id": "always", "targetApps": ["slack"], "type": "ONE_TIME",
          "startTimeMillis": 0, "endTimeMillis": FAR_FUTURE}],
    )
    result = runner.invoke(app, ["load-rules", str(path)])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["check", "slack"])
    assert result.exit_code == 0
    assert "BLOCK" in result.output
    assert "always" in result.output

    result = runner.invoke(app, ["check", "vim"])
    assert "ALLOW" in result.output

    assert runner.invoke(app, ["load-rules", str(path)]).exit_code == 1
    assert runner.invoke(app, ["remove", "always"]).exit_code == 1


def test_remove_unknown_rule_fails():
    assert runner.invoke(app, ["remove", "nope"]).exit_code == 1


def test_timer_and_timers(tmp_path):
    result = runner.invoke(app, ["timer", "25", "--apps", "steam"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["timers"])
    assert result.exit_code == 0
    assert "Active Timers" in result.output

    stored = json.loads((tmp_path / "block_store.json").read_text())
    assert stored["activeTimers"][0]["blockedPackages"] == ["steam"]

    assert runner.invoke(app, ["timer", "0", "-a", "steam"]).exit_code == 1


def test_pomodoro_and_bypass():
    assert runner.invoke(app, ["pomodoro", "25"]).exit_code == 0
    assert runner.invoke(app, ["pomodoro", "5", "--break"]).exit_code == 0

    assert runner.invoke(app, ["bypass", "*"]).exit_code == 0
    assert runner.invoke(app, ["bypass", "steam"]).exit_code == 1


def test_status_without_daemon():
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "Stopped" in result.output
    assert "No block currently active" in result.output


def test_corrupted_store_is_reported(tmp_path):
    (tmp_path / "block_store.json").write_text("{oops")
    result = runner.invoke(app, ["rules"])
    assert result.exit_code == 1
    assert "unreadable" in result.output


@pytest.mark.parametrize("args", [["--cooldown=-5"], ["--overlay-timeout=0"]])
def test_config_rejects_out_of_range_values(tmp_path, monkeypatch, args):
    monkeypatch.setattr(
        "focus_guard.cli.load_settings", lambda: Settings(data_dir=tmp_path, log_dir=tmp_path)
    )
    result = runner.invoke(app, ["config", *args])
    assert result.exit_code == 1
    assert not (tmp_path / "config.json").exists()


def test_config_saves_valid_values(tmp_path, monkeypatch):
    monkeypatch.setattr(
        "focus_guard.cli.load_settings", lambda: Settings(data_dir=tmp_path, log_dir=tmp_path)
    )
    result = runner.invoke(app, ["config", "--cooldown", "800"])
    assert result.exit_code == 0, result.output
    saved = json.loads((tmp_path / "config.json").read_text())
    assert saved["cooldown_ms"] == 800
    assert "data_dir" not in saved


def test_settings_validate_assignment(tmp_path):
    current = Settings(data_dir=tmp_path, log_dir=tmp_path)
    with pytest.raises(ValidationError):
        current.min_kill_interval_ms = -1


def test_add_weekday_follows_local_days_away_from_utc(tmp_path, monkeypatch):
    # UTC+10
    monkeypatch.setattr("focus_guard.cli.local_tz_offset_millis", lambda *args: -10 * HOUR)
    result = runner.invoke(
        app, ["add-weekday", "9am", "5pm", "--days", "mon", "-a", "slack", "--id", "work"]
    )
    assert result.exit_code == 0, result.output

    rules = LocalBlockStore(tmp_path / "block_store.json").read().block_rules
    assert sorted(r.id for r in rules) == ["work", "work-2"]

    def blocked(local_ms):
        now = local_ms - 10 * HOUR
        return evaluate("slack", now, rules, ()).decision is Decision.BLOCK

    monday = 4 * DAY + 7 * DAY  # 1970-01-12
    assert blocked(monday + 9 * HOUR + 30 * 60_000)
    assert blocked(monday + 9 * HOUR)
    assert blocked(monday + 17 * HOUR - 1)
    assert not blocked(monday + 17 * HOUR)
    assert not blocked(monday + 9 * HOUR - 1)
    assert not blocked(monday + DAY + 9 * HOUR + 30 * 60_000)
    assert not blocked(monday - DAY + 9 * HOUR + 30 * 60_000)


def test_add_weekday_in_utc_keeps_a_single_rule(tmp_path):
    result = runner.invoke(
        app, ["add-weekday", "9am", "5pm", "-d", "mon,tue", "-a", "x", "--id", "w", "--utc"]
    )
    assert result.exit_code == 0, result.output
    [rule] = LocalBlockStore(tmp_path / "block_store.json").read().block_rules
    assert rule.window.start_hour == 9
    assert rule.window.end_hour == 17
