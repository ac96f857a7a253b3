from collections.abc import Iterable

from loguru import logger

from focus_guard.schema import ActiveTimer, BlockRule, BlockSnapshot, BypassRule
from focus_guard.store import LocalBlockStore
from focus_guard.utils.time import Clock, now_millis

WILDCARD_RESOURCE = "*"


class BlockRepository:
    """
    Typed read-modify-write helpers over the block store.

    Each method is atomic with respect to the others: it runs entirely under
    the store lock. Methods that depend on the current instant accept
    `now_ms` and fall back to the repository clock when it is omitted.
    """

    def __init__(self, store: LocalBlockStore, clock: Clock = now_millis):
        self.store = store
        self.clock = clock

    def _now(self, now_ms: int | None) -> int:
        return self.clock() if now_ms is None else now_ms

    def locked(self):
        """Groups several repository calls into one section under the store lock."""
        return self.store.locked()

    def snapshot(self) -> BlockSnapshot:
        return self.store.read()

    # Block rules

    def get_all_block_rules(self) -> tuple[BlockRule, ...]:
        return self.store.read().block_rules

    def save_block_rules(self, rules: Iterable[BlockRule]) -> None:
        """Replaces the whole rule set."""
        rules = tuple(rules)
        self.store.update(lambda snap: snap.replace(block_rules=rules))
        logger.info(f"Saved {len(rules)} block rules")

    # Bypasses

    def get_all_bypasses(self) -> tuple[BypassRule, ...]:
        return self.store.read().bypasses

    def save_bypasses(self, bypasses: Iterable[BypassRule]) -> None:
        bypasses = tuple(bypasses)
        self.store.update(lambda snap: snap.replace(bypasses=bypasses))

    def add_bypass(self, bypass: BypassRule) -> None:
        self.store.update(lambda snap: snap.replace(bypasses=snap.bypasses + (bypass,)))

    def clear_expired_bypasses(self, now_ms: int | None = None) -> int:
        """Drops every bypass whose expiry has passed. Returns how many went."""
        now_ms = self._now(now_ms)
        with self.store.transaction() as snap:
            kept = tuple(b for b in snap.bypasses if not b.is_expired(now_ms))
            removed = len(snap.bypasses) - len(kept)
            if removed:
                self.store.write(snap.replace(bypasses=kept))
                logger.debug(f"Cleared {removed} expired bypasses")
            return removed

    # Timers

    def get_all_timers(self) -> tuple[ActiveTimer, ...]:
        """Every stored timer, including paused ones and ones not yet purged."""
        return self.store.read().active_timers

    def get_active_timers(self, now_ms: int | None = None) -> list[ActiveTimer]:
        """
        Timers currently blocking.

        Expired timers are removed from storage as a side effect; paused
        timers stay stored but are not returned.
        """
        now_ms = self._now(now_ms)
        with self.store.transaction() as snap:
            live = tuple(t for t in snap.active_timers if not t.is_expired(now_ms))
            if len(live) != len(snap.active_timers):
                self.store.write(snap.replace(active_timers=live))
            return [t for t in live if t.is_active(now_ms)]

    def save_active_timer(self, timer: ActiveTimer, now_ms: int | None = None) -> bool:
        """Stores a new timer. Returns False if a live timer with the same id exists."""
        now_ms = self._now(now_ms)
        with self.store.transaction() as snap:
            live = tuple(t for t in snap.active_timers if not t.is_expired(now_ms))
            if any(t.id == timer.id for t in live):
                logger.warning(f"Timer {timer.id} already exists")
                return False
            self.store.write(snap.replace(active_timers=live + (timer,)))
            return True

    def update_active_timer(self, timer: ActiveTimer, now_ms: int | None = None) -> bool:
        """Replaces the stored timer with the same id. Returns False if none exists."""
        now_ms = self._now(now_ms)
        with self.store.transaction() as snap:
            if not any(t.id == timer.id for t in snap.active_timers):
                return False
            timers = tuple(
                timer if t.id == timer.id else t
                for t in snap.active_timers
                if t.id == timer.id or not t.is_expired(now_ms)
            )
            self.store.write(snap.replace(active_timers=timers))
            return True

    def clear_active_timer(self, timer_id: str) -> bool:
        with self.store.transaction() as snap:
            timers = tuple(t for t in snap.active_timers if t.id != timer_id)
            if len(timers) == len(snap.active_timers):
                return False
            self.store.write(snap.replace(active_timers=timers))
            logger.debug(f"Cleared timer {timer_id}")
            return True

    def clear_expired_timers(self, now_ms: int | None = None) -> int:
        now_ms = self._now(now_ms)
        with self.store.transaction() as snap:
            live = tuple(t for t in snap.active_timers if not t.is_expired(now_ms))
            removed = len(snap.active_timers) - len(live)
            if removed:
                self.store.write(snap.replace(active_timers=live))
                logger.debug(f"Cleared {removed} expired timers")
            return removed

    def clear_all_active_timers(self) -> None:
        self.store.update(lambda snap: snap.replace(active_timers=()))

    def pause_timers_for(
        self, resource_id: str, until_ms: int, now_ms: int | None = None
    ) -> int:
        """
        Pauses every live timer that blocks `resource_id` until `until_ms`.

        The wildcard resource pauses all timers. The end time of a paused
        timer does not move, so a pause eats into its remaining time.
        Returns the number of timers paused.
        """
        now_ms = self._now(now_ms)
        with self.store.transaction() as snap:
            paused = 0
            timers = []
            for timer in snap.active_timers:
                if timer.is_expired(now_ms):
                    continue
                if resource_id == WILDCARD_RESOURCE or resource_id in timer.blocked_packages:
                    timer = timer.paused_until(until_ms)
                    paused += 1
                timers.append(timer)
            if paused or len(timers) != len(snap.active_timers):
                self.store.write(snap.replace(active_timers=tuple(timers)))
            if paused:
                logger.info(f"Paused {paused} timers for {resource_id} until {until_ms}")
            return paused
