import json
import threading

import pytest

from focus_guard.schema import (
    ActiveTimer,
    BlockRule,
    BlockSnapshot,
    BypassRule,
    DailyWindow,
    OneTimeWindow,
    TimerMode,
    WeekdayWindow,
)
from focus_guard.store import LocalBlockStore, StorageCorruptedError


@pytest.fixture
def store(tmp_path):
    return LocalBlockStore(tmp_path / "block_store.json")


def sample_snapshot():
    return BlockSnapshot(
        block_rules=(
            BlockRule(
                id="daily",
                target_apps={"firefox", "discord"},
                window=DailyWindow(
                    start_hour=22, start_minute=30, end_hour=6, end_minute=0,
                    timezone_offset_millis=-7_200_000,
                ),
                priority=3,
            ),
            BlockRule(
                id="weekday",
                target_apps={"steam"},
                window=WeekdayWindow(
                    weekday_mask=0b0110000, start_hour=9, start_minute=0, end_hour=17, end_minute=0
                ),
            ),
            BlockRule(
                id="once",
                target_apps={"slack"},
                window=OneTimeWindow(start_time_millis=1_000, end_time_millis=5_000),
            ),
        ),
        bypasses=(BypassRule(id="b1", resource_id="firefox", granted_at_millis=10_000),),
        active_timers=(
            ActiveTimer(
                id="t1",
                start_time_millis=0,
                duration_minutes=25,
                blocked_packages=("discord",),
                paused_until_millis=60_000,
            ),
            ActiveTimer(id="t2", start_time_millis=0, duration_minutes=5, mode=TimerMode.POMODORO_BREAK),
        ),
    )


def test_missing_file_reads_as_empty(store):
    assert store.read() == BlockSnapshot()


def test_round_trip(store):
    snapshot = sample_snapshot()
    store.write(snapshot)
    assert store.read() == snapshot
    assert not store.path.with_suffix(".json.tmp").exists()


def test_document_layout(store):
    store.write(sample_snapshot())
    with open(store.path) as f:
        document = json.load(f)

    assert set(document) == {"blockRules", "bypasses", "activeTimers"}
    daily = document["blockRules"][0]
    assert daily["type"] == "DAILY"
    assert daily["targetApps"] == ["discord", "firefox"]
    assert daily["startHour"] == 22
    assert daily["timezoneOffsetMillis"] == -7_200_000
    assert document["bypasses"][0] == {
        "id": "b1",
        "resourceId": "firefox",
        "grantedAtMillis": 10_000,
        "durationMillis": 120_000,
    }
    assert document["activeTimers"][0]["pausedUntilMillis"] == 60_000
    assert "pausedUntilMillis" not in document["activeTimers"][1]


def test_missing_active_timers_reads_as_empty(store):
    store.path.write_text(json.dumps({"blockRules": [], "bypasses": []}))
    assert store.read().active_timers == ()


def test_unknown_timer_mode_reads_as_focus(store):
    store.path.write_text(
        json.dumps(
            {
                "blockRules": [],
                "bypasses": [],
                "activeTimers": [
                    {
                        "id": "t",
                        "startTimeMillis": 0,
                        "durationMinutes": 5,
                        "blockedPackages": ["a"],
                        "mode": "DEEP_WORK",
                    }
                ],
            }
        )
    )
    assert store.read().active_timers[0].mode is TimerMode.FOCUS


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        "[]",
        json.dumps({"bypasses": []}),
        json.dumps({"blockRules": [{"id": "x", "targetApps": [], "type": "DAILY"}], "bypasses": []}),
        json.dumps({"blockRules": ["oops"], "bypasses": []}),
    ],
)
def test_corrupted_document_raises(store, content):
    store.path.write_text(content)
    with pytest.raises(StorageCorruptedError):
        store.read()


def test_update_applies_function_and_persists(store):
    store.write(sample_snapshot())
    store.update(lambda snap: snap.replace(bypasses=()))
    assert store.read().bypasses == ()
    assert len(store.read().block_rules) == 3


def test_clear_removes_document(store):
    store.write(sample_snapshot())
    assert store.mtime() is not None
    store.clear()
    assert not store.path.exists()
    assert store.mtime() is None


def test_second_store_on_same_file_waits_for_transaction(store):
    other = LocalBlockStore(store.path)
    timer = ActiveTimer(id="t1", start_time_millis=0, duration_minutes=5, blocked_packages=("a",))

    def add_timer():
        other.update(lambda snap: snap.replace(active_timers=snap.active_timers + (timer,)))

    with store.transaction() as snap:
        writer = threading.Thread(target=add_timer)
        writer.start()
        writer.join(timeout=0.2)
        assert writer.is_alive()
        store.write(snap.replace(bypasses=(BypassRule(id="b", resource_id="a", granted_at_millis=0),)))

    writer.join(timeout=5)
    assert not writer.is_alive()
    result = store.read()
    assert [t.id for t in result.active_timers] == ["t1"]
    assert [b.id for b in result.bypasses] == ["b"]


def test_lock_is_reentrant_within_a_thread(store):
    with store.locked():
        with store.transaction():
            store.write(sample_snapshot())
    assert len(store.read().block_rules) == 3
