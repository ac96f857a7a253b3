import pytest
from pydantic import ValidationError

from focus_guard.schema import (
    ActiveTimer,
    BlockRule,
    BypassRule,
    DailyWindow,
    OneTimeWindow,
    TimerMode,
    WeekdayWindow,
)

DAILY = {"start_hour": 9, "start_minute": 0, "end_hour": 17, "end_minute": 0}


def make_rule(**overrides):
    data = {"id": "r1", "target_apps": {"app.a"}, "window": DailyWindow(**DAILY)}
    data.update(overrides)
    return BlockRule(**data)


@pytest.mark.parametrize(
    "overrides",
    [
        {"id": ""},
        {"id": "   "},
        {"target_apps": set()},
        {"priority": -1},
    ],
)
def test_block_rule_rejects_invalid_fields(overrides):
    with pytest.raises(ValidationError):
        make_rule(**overrides)


@pytest.mark.parametrize(
    "factory",
    [
        lambda: DailyWindow(**{**DAILY, "start_hour": 24}),
        lambda: DailyWindow(**{**DAILY, "end_minute": 60}),
        lambda: DailyWindow(**{**DAILY, "start_minute": -1}),
        lambda: WeekdayWindow(weekday_mask=0, **DAILY),
        lambda: WeekdayWindow(weekday_mask=128, **DAILY),
        lambda: OneTimeWindow(start_time_millis=200, end_time_millis=100),
        lambda: OneTimeWindow(start_time_millis=100, end_time_millis=100),
    ],
)
def test_windows_reject_out_of_range_values(factory):
    with pytest.raises(ValidationError):
        factory()


@pytest.mark.parametrize(
    "overrides",
    [
        {"id": ""},
        {"resource_id": " "},
        {"duration_millis": 0},
        {"duration_millis": 24 * 60 * 60 * 1000 + 1},
        {"granted_at_millis": -5},
    ],
)
def test_bypass_rejects_invalid_fields(overrides):
    data = {"id": "b1", "resource_id": "app.a", "granted_at_millis": 0, "duration_millis": 1000}
    data.update(overrides)
    with pytest.raises(ValidationError):
        BypassRule(**data)


def test_models_are_immutable():
    rule = make_rule()
    with pytest.raises(ValidationError):
        rule.priority = 3


def test_rule_only_blocks_targets():
    rule = make_rule(window=OneTimeWindow(start_time_millis=0, end_time_millis=1000))
    assert rule.is_blocked("app.a", 500)
    assert not rule.is_blocked("app.b", 500)
    assert not rule.is_blocked("app.a", 1000)


def test_rule_wire_form_is_flat_camel_case():
    rule = make_rule(priority=2)
    wire = rule.to_wire()
    assert wire == {
        "id": "r1",
        "targetApps": ["app.a"],
        "priority": 2,
        "type": "DAILY",
        "startHour": 9,
        "startMinute": 0,
        "endHour": 17,
        "endMinute": 0,
        "timezoneOffsetMillis": 0,
    }
    assert BlockRule.from_wire(wire) == rule


def test_rule_from_wire_rejects_unknown_type():
    with pytest.raises(ValidationError):
        BlockRule.from_wire({"id": "x", "targetApps": ["a"], "type": "HOURLY"})


def test_bypass_lifetime():
    bypass = BypassRule(id="b1", resource_id="app.a", granted_at_millis=1000)
    assert bypass.duration_millis == 120_000
    assert bypass.expires_at_millis == 121_000
    assert not bypass.is_active(999)
    assert bypass.is_active(1000)
    assert not bypass.is_active(121_000)
    assert bypass.is_expired(121_000)


def test_timer_remaining_seconds_floors_and_clamps():
    timer = ActiveTimer(id="t1", start_time_millis=0, duration_minutes=1)
    assert timer.end_time_millis == 60_000
    assert timer.get_remaining_seconds(500) == 59
    assert timer.get_remaining_seconds(60_000) == 0
    assert timer.get_remaining_seconds(90_000) == 0


def test_timer_pause_keeps_end_time():
    timer = ActiveTimer(id="t1", start_time_millis=0, duration_minutes=10, blocked_packages=("a",))
    paused = timer.paused_until(120_000)

    assert timer.paused_until_millis is None
    assert paused.end_time_millis == timer.end_time_millis
    assert not paused.is_active(60_000)
    assert paused.is_paused(60_000)
    assert paused.is_active(120_000)


def test_timer_rejects_non_positive_duration():
    with pytest.raises(ValidationError):
        ActiveTimer(id="t1", start_time_millis=0, duration_minutes=0)


@pytest.mark.parametrize("raw", ["POMODORO_BREAK", TimerMode.POMODORO_BREAK])
def test_timer_mode_parses(raw):
    assert ActiveTimer(id="t", start_time_millis=0, duration_minutes=5, mode=raw).mode is (
        TimerMode.POMODORO_BREAK
    )


@pytest.mark.parametrize("raw", ["LONG_BREAK", "", None, 7])
def test_unknown_timer_mode_falls_back_to_focus(raw):
    timer = ActiveTimer.model_validate(
        {"id": "t", "startTimeMillis": 0, "durationMinutes": 5, "mode": raw}
    )
    assert timer.mode is TimerMode.FOCUS
