import pytest

from focus_guard.repository import BlockRepository
from focus_guard.schema import ActiveTimer, BlockRule, BypassRule, OneTimeWindow
from focus_guard.store import LocalBlockStore

MINUTE = 60_000


@pytest.fixture
def repo(tmp_path):
    return BlockRepository(LocalBlockStore(tmp_path / "block_store.json"), clock=lambda: 0)


def timer(timer_id, minutes=10, packages=("app.a",), start=0):
    return ActiveTimer(
        id=timer_id, start_time_millis=start, duration_minutes=minutes, blocked_packages=packages
    )


def test_save_and_read_rules(repo):
    rule = BlockRule(
        id="r1",
        target_apps={"app.a"},
        window=OneTimeWindow(start_time_millis=0, end_time_millis=1000),
    )
    repo.save_block_rules([rule])
    assert repo.get_all_block_rules() == (rule,)


def test_clear_expired_bypasses(repo):
    repo.save_bypasses(
        [
            BypassRule(id="old", resource_id="a", granted_at_millis=0, duration_millis=1000),
            BypassRule(id="new", resource_id="b", granted_at_millis=0, duration_millis=5000),
        ]
    )
    assert repo.clear_expired_bypasses(now_ms=2000) == 1
    assert [b.id for b in repo.get_all_bypasses()] == ["new"]
    assert repo.clear_expired_bypasses(now_ms=2000) == 0


def test_get_active_timers_purges_expired_and_hides_paused(repo):
    assert repo.save_active_timer(timer("short", minutes=1), now_ms=0)
    assert repo.save_active_timer(timer("long", minutes=10), now_ms=0)
    assert repo.save_active_timer(timer("paused", minutes=10).paused_until(5 * MINUTE), now_ms=0)

    active = repo.get_active_timers(now_ms=2 * MINUTE)

    assert [t.id for t in active] == ["long"]
    assert [t.id for t in repo.get_all_timers()] == ["long", "paused"]


def test_save_active_timer_refuses_duplicate_id(repo):
    assert repo.save_active_timer(timer("t1"), now_ms=0)
    assert not repo.save_active_timer(timer("t1", minutes=3), now_ms=0)
    assert repo.get_all_timers()[0].duration_minutes == 10


def test_duplicate_id_of_expired_timer_is_allowed(repo):
    assert repo.save_active_timer(timer("t1", minutes=1), now_ms=0)
    assert repo.save_active_timer(timer("t1", start=2 * MINUTE), now_ms=2 * MINUTE)
    assert [t.start_time_millis for t in repo.get_all_timers()] == [2 * MINUTE]


def test_update_and_clear_timer(repo):
    repo.save_active_timer(timer("t1"), now_ms=0)
    assert repo.update_active_timer(timer("t1").paused_until(MINUTE), now_ms=0)
    assert repo.get_all_timers()[0].paused_until_millis == MINUTE
    assert not repo.update_active_timer(timer("missing"), now_ms=0)

    assert repo.clear_active_timer("t1")
    assert not repo.clear_active_timer("t1")
    assert repo.get_all_timers() == ()


def test_clear_expired_and_all_timers(repo):
    repo.save_active_timer(timer("a", minutes=1), now_ms=0)
    repo.save_active_timer(timer("b", minutes=10), now_ms=0)
    assert repo.clear_expired_timers(now_ms=5 * MINUTE) == 1
    repo.clear_all_active_timers()
    assert repo.get_all_timers() == ()


def test_pause_timers_for_resource(repo):
    repo.save_active_timer(timer("a", packages=("app.a",)), now_ms=0)
    repo.save_active_timer(timer("b", packages=("app.b",)), now_ms=0)

    assert repo.pause_timers_for("app.a", until_ms=2 * MINUTE, now_ms=0) == 1

    by_id = {t.id: t for t in repo.get_all_timers()}
    assert by_id["a"].paused_until_millis == 2 * MINUTE
    assert by_id["b"].paused_until_millis is None
    assert by_id["a"].end_time_millis == 10 * MINUTE


def test_pause_timers_wildcard_pauses_everything(repo):
    repo.save_active_timer(timer("a", packages=("app.a",)), now_ms=0)
    repo.save_active_timer(timer("pomo", packages=()), now_ms=0)

    assert repo.pause_timers_for("*", until_ms=MINUTE, now_ms=0) == 2
    assert repo.get_active_timers(now_ms=MINUTE - 1) == []
    assert len(repo.get_active_timers(now_ms=MINUTE)) == 2


def test_methods_default_to_repository_clock(tmp_path):
    now = {"ms": 0}
    repo = BlockRepository(LocalBlockStore(tmp_path / "s.json"), clock=lambda: now["ms"])
    repo.save_active_timer(timer("t1", minutes=1))
    now["ms"] = 2 * MINUTE
    assert repo.get_active_timers() == []
    assert repo.get_all_timers() == ()
