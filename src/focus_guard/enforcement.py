"""
Enforcement state machine.

Turns a stream of "resource R came to the foreground at T" events into
debounced, rate-limited side effects: an overlay, a trip back to the home
screen and a queued process termination. Everything in here is driven from
a single event loop thread; delayed work goes through `ActionScheduler`,
which that same loop runs.
"""

import heapq
import itertools
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from loguru import logger

from focus_guard import engine
from focus_guard.repository import BlockRepository
from focus_guard.schema import POMODORO_MODES, ActiveTimer
from focus_guard.utils.time import Clock


class OverlayPresenter(Protocol):
    def show(self, message: str) -> None: ...

    def update(self, message: str) -> None: ...

    def hide(self) -> None: ...

    def is_showing(self) -> bool: ...


class Navigator(Protocol):
    def go_home(self) -> None: ...


class Terminator(Protocol):
    def terminate(self, resource_id: str) -> None: ...


class Outcome(str, Enum):
    IGNORED = "IGNORED"
    HOME = "HOME"
    SUPPRESSED = "SUPPRESSED"
    COOLDOWN = "COOLDOWN"
    BYPASS = "BYPASS"
    TIMER_BLOCK = "TIMER_BLOCK"
    RULE_BLOCK = "RULE_BLOCK"
    ALLOW = "ALLOW"


class ScheduledAction:
    """Handle returned by `ActionScheduler.call_at`; pass it to `cancel`."""

    __slots__ = ("due_ms", "callback", "name", "cancelled")

    def __init__(self, due_ms: int, callback: Callable[[], None], name: str):
        self.due_ms = due_ms
        self.callback = callback
        self.name = name
        self.cancelled = False

    def __repr__(self):
        return f"ScheduledAction({self.name!r}, due={self.due_ms})"


class ActionScheduler:
    """
    Fire-and-forget delayed callbacks, run cooperatively by the event loop.

    Nothing runs on its own: the owner calls `run_due()` and sleeps until
    `next_due()`. Tests drive it with a fake clock.
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._heap: list[tuple[int, int, ScheduledAction]] = []
        self._counter = itertools.count()

    def call_at(self, due_ms: int, callback: Callable[[], None], name: str = "") -> ScheduledAction:
        action = ScheduledAction(due_ms, callback, name or getattr(callback, "__name__", "action"))
        heapq.heappush(self._heap, (due_ms, next(self._counter), action))
        return action

    def call_later(
        self, delay_ms: int, callback: Callable[[], None], name: str = ""
    ) -> ScheduledAction:
        return self.call_at(self.clock() + delay_ms, callback, name)

    def cancel(self, action: ScheduledAction | None) -> None:
        if action is not None:
            action.cancelled = True

    def next_due(self) -> int | None:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def pending(self) -> int:
        return sum(1 for _, _, action in self._heap if not action.cancelled)

    def run_due(self, now_ms: int | None = None) -> int:
        """Runs every action due at or before `now_ms`, oldest first. Returns how many ran."""
        now_ms = self.clock() if now_ms is None else now_ms
        ran = 0
        while self._heap and self._heap[0][0] <= now_ms:
            _, _, action = heapq.heappop(self._heap)
            if action.cancelled:
                continue
            ran += 1
            try:
                action.callback()
            except Exception:
                logger.exception(f"Scheduled action {action.name} failed")
        return ran


class KillQueue:
    """
    Serial process-termination queue.

    Requests drain one at a time with `kill_delay_ms` between terminations.
    A request for a resource that was already queued within
    `min_kill_interval_ms` is dropped; nothing else is.
    """

    def __init__(
        self,
        terminator: Terminator,
        actions: ActionScheduler,
        kill_delay_ms: int = 500,
        min_kill_interval_ms: int = 2000,
    ):
        self.terminator = terminator
        self.actions = actions
        self.kill_delay_ms = kill_delay_ms
        self.min_kill_interval_ms = min_kill_interval_ms
        self._queue: deque[str] = deque()
        self._last_kill_ms: dict[str, int] = {}
        self._draining = False

    def __len__(self):
        return len(self._queue)

    @property
    def draining(self) -> bool:
        return self._draining

    def request(self, resource_id: str, now_ms: int) -> bool:
        """Queues a termination. Returns False when deduplicated."""
        last = self._last_kill_ms.get(resource_id)
        if last is not None and now_ms - last < self.min_kill_interval_ms:
            logger.debug(f"Skipping kill for {resource_id}: requested {now_ms - last}ms ago")
            return False

        self._queue.append(resource_id)
        self._last_kill_ms[resource_id] = now_ms
        if not self._draining:
            self._draining = True
            self._drain()
        return True

    def _drain(self) -> None:
        if not self._queue:
            self._draining = False
            return
        resource_id = self._queue.popleft()
        try:
            self.terminator.terminate(resource_id)
        except Exception as e:
            logger.warning(f"Terminating {resource_id} failed: {e}")
        self.actions.call_later(self.kill_delay_ms, self._drain, name="kill-drain")


@dataclass
class EnforcementState:
    """Per-stream session state. Owned and mutated by the event loop only."""

    suppressed: bool = False
    enforced_since_home: bool = False
    last_enforced_resource: str | None = None
    last_enforce_ms: int | None = None
    last_blocked_resource: str | None = None
    blocking_overlay_showing: bool = False
    pomodoro_indicator_showing: bool = False
    pending_hide: ScheduledAction | None = field(default=None, repr=False)


class Enforcer:
    """
    Applies the foreground-event rules in a fixed order:

    1. Ignored resources (this app, desktop panels) do nothing.
    2. A home resource enters the suppressed state and clears the
       enforced-this-session flag.
    3. While suppressed, once something has been enforced, all further
       events are dropped until home is seen again.
    4. The same resource inside the cooldown is dropped.
    5. Verdict: active bypass allows, an active timer hard-blocks and is
       consumed, otherwise the decision engine decides.
    """

    def __init__(
        self,
        repository: BlockRepository,
        overlay: OverlayPresenter,
        navigator: Navigator,
        terminator: Terminator,
        actions: ActionScheduler,
        clock: Clock,
        cooldown_ms: int = 500,
        home_delay_ms: int = 200,
        overlay_timeout_ms: int = 2000,
        kill_delay_ms: int = 500,
        min_kill_interval_ms: int = 2000,
        home_resources: Iterable[str] = (),
        ignored_resources: Iterable[str] = (),
        overlay_message: str = "This app is blocked",
        pomodoro_message: str = "Pomodoro timer is running",
    ):
        self.repository = repository
        self.overlay = overlay
        self.navigator = navigator
        self.actions = actions
        self.clock = clock
        self.cooldown_ms = cooldown_ms
        self.home_delay_ms = home_delay_ms
        self.overlay_timeout_ms = overlay_timeout_ms
        self.home_resources = frozenset(home_resources)
        self.ignored_resources = frozenset(ignored_resources)
        self.overlay_message = overlay_message
        self.pomodoro_message = pomodoro_message
        self.kill_queue = KillQueue(terminator, actions, kill_delay_ms, min_kill_interval_ms)
        self.state = EnforcementState()

    @classmethod
    def from_settings(cls, settings, repository, overlay, navigator, terminator, actions, clock):
        return cls(
            repository,
            overlay,
            navigator,
            terminator,
            actions,
            clock,
            cooldown_ms=settings.cooldown_ms,
            home_delay_ms=settings.home_delay_ms,
            overlay_timeout_ms=settings.overlay_timeout_ms,
            kill_delay_ms=settings.kill_delay_ms,
            min_kill_interval_ms=settings.min_kill_interval_ms,
            home_resources=settings.home_resources,
            ignored_resources=settings.ignored_resources,
            overlay_message=settings.overlay_message,
            pomodoro_message=settings.pomodoro_message,
        )

    def handle_foreground(self, resource_id: str, now_ms: int | None = None) -> Outcome:
        now_ms = self.clock() if now_ms is None else now_ms
        state = self.state

        if not resource_id or resource_id in self.ignored_resources:
            return Outcome.IGNORED

        if resource_id in self.home_resources:
            state.suppressed = True
            state.enforced_since_home = False
            logger.debug(f"Home resource {resource_id} seen, suppression reset")
            return Outcome.HOME

        if state.suppressed and state.enforced_since_home:
            logger.debug(f"Suppressed, skipping {resource_id}")
            return Outcome.SUPPRESSED

        outcome = self._resolve(resource_id, now_ms)
        self._refresh_pomodoro_indicator(now_ms)
        return outcome

    def _resolve(self, resource_id: str, now_ms: int) -> Outcome:
        state = self.state
        if (
            resource_id == state.last_enforced_resource
            and state.last_enforce_ms is not None
            and now_ms - state.last_enforce_ms < self.cooldown_ms
        ):
            logger.debug(f"Cooldown active, skipping {resource_id}")
            return Outcome.COOLDOWN

        snapshot = self.repository.snapshot()

        bypass = engine.find_active_bypass(resource_id, now_ms, snapshot.bypasses)
        if bypass is not None:
            logger.debug(f"Bypass {bypass.id} active for {resource_id}, allowing")
            state.last_blocked_resource = None
            return Outcome.BYPASS

        timer = self._blocking_timer(resource_id, now_ms)
        if timer is not None:
            logger.info(f"Timer {timer.id} blocks {resource_id}, consuming it")
            self.repository.clear_active_timer(timer.id)
            self._enforce_block(resource_id, now_ms)
            return Outcome.TIMER_BLOCK

        result = engine.evaluate(resource_id, now_ms, snapshot.block_rules, snapshot.bypasses)
        if result.is_blocked:
            logger.info(f"Rule {result.reason.rule_id} blocks {resource_id}")
            self._enforce_block(resource_id, now_ms)
            return Outcome.RULE_BLOCK

        state.last_blocked_resource = None
        return Outcome.ALLOW

    def _blocking_timer(self, resource_id: str, now_ms: int) -> ActiveTimer | None:
        return next(
            (
                t
                for t in self.repository.get_active_timers(now_ms)
                if resource_id in t.blocked_packages
            ),
            None,
        )

    def _enforce_block(self, resource_id: str, now_ms: int) -> None:
        state = self.state
        state.last_blocked_resource = resource_id
        state.last_enforced_resource = resource_id
        state.last_enforce_ms = now_ms
        state.enforced_since_home = True

        self._show_blocking_overlay()

        def go_home_and_kill():
            try:
                self.navigator.go_home()
            except Exception as e:
                logger.warning(f"Returning home failed: {e}")
            self.kill_queue.request(resource_id, self.clock())

        self.actions.call_later(self.home_delay_ms, go_home_and_kill, name=f"home:{resource_id}")

    def _show_blocking_overlay(self) -> None:
        state = self.state
        try:
            if state.blocking_overlay_showing and self.overlay.is_showing():
                self.overlay.update(self.overlay_message)
            else:
                self.overlay.show(self.overlay_message)
            state.blocking_overlay_showing = True
            state.pomodoro_indicator_showing = False
        except Exception as e:
            logger.warning(f"Showing the block overlay failed: {e}")
            state.blocking_overlay_showing = False
            return

        # Re-arming pushes the deadline out; nothing hides it before then.
        self.actions.cancel(state.pending_hide)
        state.pending_hide = self.actions.call_later(
            self.overlay_timeout_ms, self._hide_blocking_overlay, name="overlay-hide"
        )

    def _hide_blocking_overlay(self) -> None:
        state = self.state
        state.pending_hide = None
        try:
            self.overlay.hide()
        except Exception as e:
            logger.warning(f"Hiding the block overlay failed: {e}")
        state.blocking_overlay_showing = False

    def _refresh_pomodoro_indicator(self, now_ms: int) -> None:
        state = self.state
        if state.blocking_overlay_showing:
            return

        running = any(
            t.mode in POMODORO_MODES for t in self.repository.get_active_timers(now_ms)
        )
        try:
            if running and not self.overlay.is_showing():
                self.overlay.show(self.pomodoro_message)
                state.pomodoro_indicator_showing = True
            elif not running and state.pomodoro_indicator_showing:
                self.overlay.hide()
                state.pomodoro_indicator_showing = False
        except Exception as e:
            logger.warning(f"Updating the pomodoro indicator failed: {e}")
