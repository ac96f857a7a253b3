import queue
import threading

from loguru import logger
from rich.console import Console

from focus_guard.enforcement import ActionScheduler, Enforcer
from focus_guard.repository import BlockRepository
from focus_guard.scheduler import EvaluationScheduler, LivenessMonitor, ThreadingWakeup
from focus_guard.service import BlockerService
from focus_guard.settings import load_settings
from focus_guard.store import LocalBlockStore, StorageCorruptedError
from focus_guard.utils.notifications import NotificationOverlay
from focus_guard.utils.processes import DesktopNavigator, ProcessTerminator, active_window_app
from focus_guard.utils.state import cleanup_state, write_state
from focus_guard.utils.time import format_instant, now_millis

console = Console()

# Queue sentinel posted by the wake-up timer thread.
WAKE = object()


def poll_foreground(
    events: queue.Queue,
    stop_event: threading.Event,
    interval_seconds: float,
    home_resource: str | None,
):
    """
    Pushes (resource, timestamp) onto `events` whenever the focused app changes.

    An unfocused desktop is reported as `home_resource`.
    """
    last: str | None = None
    while not stop_event.is_set():
        try:
            app = active_window_app() or home_resource
        except FileNotFoundError:
            logger.error("xdotool not found; foreground tracking is disabled.")
            return
        if app and app != last:
            events.put((app, now_millis()))
            last = app
        stop_event.wait(timeout=interval_seconds)


class Daemon:
    """Single-consumer event loop tying the poller, the enforcer and the scheduler together."""

    def __init__(self, settings, clock=now_millis):
        self.settings = settings
        self.clock = clock
        self.events: queue.Queue = queue.Queue()
        self.store = LocalBlockStore(settings.store_file)
        self.repository = BlockRepository(self.store, clock)
        self.service = BlockerService.from_settings(settings, self.repository, clock)
        self.actions = ActionScheduler(clock)
        self.enforcer = Enforcer.from_settings(
            settings,
            self.repository,
            NotificationOverlay(title=settings.app_name, popup=settings.show_popup),
            DesktopNavigator(),
            ProcessTerminator(),
            self.actions,
            clock,
        )
        self.scheduler = EvaluationScheduler(
            self.repository, ThreadingWakeup(lambda: self.events.put(WAKE), clock), clock
        )
        self.monitor = LivenessMonitor(
            self.repository, clock, settings.monitor_interval_seconds
        )
        self.foreground: str | None = None
        self._blocked: list[str] = []
        self._active_timers = 0
        self._store_mtime: float | None = None
        self._stop_event = threading.Event()

    def refresh(self) -> None:
        """Re-arms the wake-up and logs the snapshot-wide verdict when it changes."""
        self.scheduler.reschedule()
        status = self.service.get_block_status()
        self._active_timers = len(self.repository.get_active_timers())
        # Taken last so the purges above do not count as an outside change.
        self._store_mtime = self.store.mtime()
        if status["blockedApps"] != self._blocked:
            logger.info(f"Blocked apps now: {', '.join(status['blockedApps']) or 'none'}")
            self._blocked = status["blockedApps"]

    def recheck_foreground(self) -> None:
        """Re-evaluates the app already in front, which sends no new focus event."""
        if self.foreground:
            outcome = self.enforcer.handle_foreground(self.foreground, self.clock())
            logger.debug(f"{self.foreground} (recheck): {outcome.value}")

    def handle(self, item) -> None:
        if item is WAKE:
            self.scheduler.on_wake()
            self.refresh()
            self.recheck_foreground()
            return

        resource_id, ts = item
        self.foreground = resource_id
        outcome = self.enforcer.handle_foreground(resource_id, ts)
        logger.debug(f"{resource_id}: {outcome.value}")

    def _wait_seconds(self) -> float:
        wait = self.settings.poll_interval_ms / 1000
        next_due = self.actions.next_due()
        if next_due is not None:
            wait = min(wait, max(0, next_due - self.clock()) / 1000)
        return wait

    def step(self) -> None:
        try:
            item = self.events.get(timeout=self._wait_seconds())
        except queue.Empty:
            item = None

        try:
            if item is not None:
                self.handle(item)
            self.actions.run_due()
            if self.store.mtime() != self._store_mtime:
                # A new timer or rule may already cover the app in front.
                self.refresh()
                self.recheck_foreground()
        except StorageCorruptedError as e:
            logger.error(f"{e}. Fix or remove the file; enforcement is paused.")
            self._stop_event.wait(timeout=5)
            return

        write_state(self.scheduler.armed_at, self._active_timers, self.foreground)

    def run(self) -> None:
        home = self.settings.home_resources[0] if self.settings.home_resources else None
        poller = threading.Thread(
            target=poll_foreground,
            args=(self.events, self._stop_event, self.settings.poll_interval_ms / 1000, home),
            name="foreground-poller",
            daemon=True,
        )

        try:
            self.refresh()
        except StorageCorruptedError as e:
            logger.error(f"{e}. Fix or remove the file before starting the daemon.")
            raise

        self.monitor.start()
        poller.start()
        logger.info(f"Next evaluation: {format_instant(self.scheduler.armed_at)}")

        try:
            while not self._stop_event.is_set():
                self.step()
        finally:
            self.stop()
            poller.join(timeout=2.0)

    def stop(self) -> None:
        self._stop_event.set()
        self.monitor.stop()
        self.scheduler.stop()
        cleanup_state()


def run_daemon():
    """Main loop for the focus guard daemon."""
    settings = load_settings()
    console.print("[bold green]Focus Guard daemon started...[/bold green]")
    console.print(f"Block store: [cyan]{settings.store_file}[/cyan]")
    console.print("Watching the focused window. Press Ctrl+C to stop.")

    daemon = Daemon(settings)
    try:
        daemon.run()
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping daemon...[/yellow]")
