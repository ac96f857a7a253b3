import threading
from collections.abc import Callable
from typing import Protocol

from loguru import logger

from focus_guard import engine
from focus_guard.repository import BlockRepository
from focus_guard.utils.time import Clock, format_instant, now_millis


class WakeupTimer(Protocol):
    def arm(self, at_ms: int) -> None: ...

    def cancel(self) -> None: ...


class ThreadingWakeup:
    """
    One-shot wake-up backed by a single `threading.Timer`.

    Arming always cancels the previously pending timer first, so at most one
    wake-up is ever outstanding.
    """

    def __init__(self, callback: Callable[[], None], clock: Clock = now_millis):
        self.callback = callback
        self.clock = clock
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    def arm(self, at_ms: int) -> None:
        with self._lock:
            self._cancel_locked()
            delay_seconds = max(0, at_ms - self.clock()) / 1000
            self._timer = threading.Timer(delay_seconds, self.callback)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class EvaluationScheduler:
    """Keeps exactly one wake-up armed at the next snapshot-wide state change."""

    def __init__(self, repository: BlockRepository, wakeup: WakeupTimer, clock: Clock = now_millis):
        self.repository = repository
        self.wakeup = wakeup
        self.clock = clock
        self.armed_at: int | None = None

    def next_evaluation_time(self, now_ms: int | None = None) -> int | None:
        now_ms = self.clock() if now_ms is None else now_ms
        snapshot = self.repository.snapshot()
        return engine.next_snapshot_evaluation(snapshot.block_rules, snapshot.bypasses, now_ms)

    def reschedule(self, now_ms: int | None = None) -> int | None:
        """
        Re-derives the next evaluation instant and arms the wake-up for it.

        Returns the armed instant, or None when nothing is armed.
        """
        now_ms = self.clock() if now_ms is None else now_ms
        next_time = self.next_evaluation_time(now_ms)

        self.wakeup.cancel()
        self.armed_at = None
        if next_time is not None and next_time > now_ms:
            self.wakeup.arm(next_time)
            self.armed_at = next_time
            logger.debug(f"Next evaluation armed for {format_instant(next_time)}")
        else:
            logger.debug("No future rule or bypass boundary, wake-up not armed")
        return self.armed_at

    def on_wake(self, now_ms: int | None = None) -> int | None:
        now_ms = self.clock() if now_ms is None else now_ms
        logger.info(f"Evaluation wake-up at {format_instant(now_ms)}")
        return self.reschedule(now_ms)

    def stop(self) -> None:
        self.wakeup.cancel()
        self.armed_at = None


class LivenessMonitor:
    """Periodic housekeeping: purges expired bypasses and timers, logs a heartbeat."""

    def __init__(
        self, repository: BlockRepository, clock: Clock = now_millis, interval_seconds: int = 30
    ):
        self.repository = repository
        self.clock = clock
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self, now_ms: int | None = None) -> int:
        """One housekeeping pass. Returns the number of timers still running."""
        now_ms = self.clock() if now_ms is None else now_ms
        self.repository.clear_expired_bypasses(now_ms)
        self.repository.clear_expired_timers(now_ms)
        active = len(self.repository.get_active_timers(now_ms))
        logger.debug(f"Heartbeat: {active} active timers")
        return active

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning("LivenessMonitor is already running.")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="liveness", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Liveness check failed")
            if self._stop_event.wait(timeout=self.interval_seconds):
                break
