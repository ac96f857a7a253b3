import pytest

from focus_guard.daemon import WAKE, Daemon
from focus_guard.enforcement import Outcome
from focus_guard.schema import BlockRule, OneTimeWindow
from focus_guard.settings import Settings


class RecordingOverlay:
    def __init__(self):
        self.messages = []
        self.showing = False

    def show(self, message):
        self.messages.append(message)
        self.showing = True

    def update(self, message):
        self.messages.append(message)

    def hide(self):
        self.showing = False

    def is_showing(self):
        return self.showing


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def daemon(tmp_path):
    settings = Settings(data_dir=tmp_path, log_dir=tmp_path)
    d = Daemon(settings, clock=Clock(1_000))
    d.enforcer.overlay = RecordingOverlay()
    yield d
    d.scheduler.stop()


def test_refresh_arms_next_boundary(daemon):
    daemon.repository.save_block_rules(
        [BlockRule(id="soon", target_apps={"slack"},
                   window=OneTimeWindow(start_time_millis=60_000, end_time_millis=120_000))]
    )
    daemon.refresh()
    assert daemon.scheduler.armed_at == 60_000
    assert daemon._store_mtime == daemon.store.mtime()


def test_wake_reevaluates_foreground_app(daemon):
    daemon.handle(("slack", 1_000))
    assert daemon.foreground == "slack"
    assert daemon.enforcer.overlay.messages == []

    daemon.repository.save_block_rules(
        [BlockRule(id="now", target_apps={"slack"},
                   window=OneTimeWindow(start_time_millis=0, end_time_millis=120_000))]
    )
    daemon.clock.now = 2_000
    daemon.handle(WAKE)

    assert daemon.enforcer.overlay.messages == [daemon.settings.overlay_message]
    assert daemon._blocked == ["slack"]
    assert daemon.scheduler.armed_at == 120_000
    assert daemon.enforcer.handle_foreground("slack", 2_100) is Outcome.COOLDOWN


def test_store_change_rechecks_app_already_in_front(daemon, monkeypatch):
    monkeypatch.setattr("focus_guard.daemon.write_state", lambda *args, **kwargs: None)
    daemon.handle(("slack", 1_000))
    assert daemon.enforcer.overlay.messages == []

    assert daemon.service.start_focus_timer(25, ["slack"])
    daemon.step()

    assert daemon.enforcer.overlay.messages == [daemon.settings.overlay_message]
    assert daemon.repository.get_all_timers() == ()


def test_store_change_without_foreground_only_refreshes(daemon, monkeypatch):
    monkeypatch.setattr("focus_guard.daemon.write_state", lambda *args, **kwargs: None)
    daemon.repository.save_block_rules(
        [BlockRule(id="now", target_apps={"slack"},
                   window=OneTimeWindow(start_time_millis=0, end_time_millis=120_000))]
    )
    daemon.step()

    assert daemon._blocked == ["slack"]
    assert daemon.enforcer.overlay.messages == []
