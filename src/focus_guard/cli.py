import os
import subprocess
import uuid
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from focus_guard.engine import BlockReason, BypassReason
from focus_guard.repository import BlockRepository
from focus_guard.schema import BlockRule, DailyWindow, OneTimeWindow, WeekdayWindow
from focus_guard.service import BlockerService
from focus_guard.settings import load_settings, settings
from focus_guard.store import LocalBlockStore, StorageCorruptedError
from focus_guard.temporal import (
    MINUTE_MILLIS,
    clock_millis,
    utc_weekday_windows,
    weekday_mask,
    weekday_names,
)
from focus_guard.utils.logging import setup_logging
from focus_guard.utils.state import read_state
from focus_guard.utils.time import (
    format_duration_seconds,
    format_instant,
    local_tz_offset_millis,
    one_time_range_millis,
    parse_clock,
)

app = typer.Typer(help="Focus Guard - schedule-based app blocker")
console = Console()

SERVICE_NAME = "focus-guard.service"


def get_service() -> BlockerService:
    repository = BlockRepository(LocalBlockStore(settings.store_file))
    return BlockerService.from_settings(settings, repository)


def is_daemon_running() -> bool:
    """Checks if the daemon is running via state file and PID."""
    state = read_state()
    if not state or not state.get("pid"):
        return False
    try:
        os.kill(state["pid"], 0)
        return True
    except OSError:
        return False


def process_apps_list(apps: list[str] | None) -> list[str]:
    """Processes a list of strings potentially containing commas into a clean list of app names."""
    if not apps:
        return []
    processed = []
    for a in apps:
        parts = [x.strip() for x in a.split(",") if x.strip()]
        processed.extend(parts)
    return processed


def _fail(message: str):
    console.print(f"[red]Error:[/red] {escape(message)}")
    raise typer.Exit(1)


def _require_apps(apps: list[str] | None) -> list[str]:
    processed = process_apps_list(apps)
    if not processed:
        _fail("At least one app is required (--apps).")
    return processed


def _add_rule(rule_id: str | None, apps: list[str], priority: int, window) -> None:
    try:
        rule = BlockRule(
            id=rule_id or str(uuid.uuid4()),
            target_apps=frozenset(apps),
            window=window,
            priority=priority,
        )
        added = get_service().add_rule(rule)
    except ValidationError as e:
        _fail(str(e))
    except StorageCorruptedError as e:
        _fail(str(e))

    if not added:
        _fail(f"A rule with id {rule.id} already exists.")
    console.print(f"[green]Added rule[/green] [cyan]{rule.id}[/cyan]: {describe_window(rule.window)}")
    console.print(f"Blocking apps: [magenta]{', '.join(sorted(rule.target_apps))}[/magenta]")


def describe_window(window) -> str:
    if isinstance(window, OneTimeWindow):
        return f"once, {format_instant(window.start_time_millis)} - {format_instant(window.end_time_millis)}"
    span = (
        f"{window.start_hour:02d}:{window.start_minute:02d} - "
        f"{window.end_hour:02d}:{window.end_minute:02d}"
    )
    if isinstance(window, WeekdayWindow):
        return f"{','.join(weekday_names(window.weekday_mask))} {span}"
    return f"daily {span}"


def _clock_window(start_time: str, end_time: str, utc: bool) -> dict:
    try:
        start_hour, start_minute = parse_clock(start_time)
        end_hour, end_minute = parse_clock(end_time)
    except ValueError as e:
        _fail(str(e))
    return {
        "start_hour": start_hour,
        "start_minute": start_minute,
        "end_hour": end_hour,
        "end_minute": end_minute,
        "timezone_offset_millis": 0 if utc else local_tz_offset_millis(),
    }


@app.command(name="add-daily")
def add_daily(
    start_time: str = typer.Argument(..., help="Start time (e.g. 9am, 09:00)"),
    end_time: str = typer.Argument(..., help="End time; earlier than start wraps past midnight"),
    apps: list[str] | None = typer.Option(
        None, "--apps", "-a", help="Apps to block (comma separated process names)"
    ),
    priority: int = typer.Option(0, "--priority", "-p", help="Higher wins on overlap"),
    rule_id: str | None = typer.Option(None, "--id", help="Rule id (default: random)"),
    utc: bool = typer.Option(False, "--utc", help="Interpret times as UTC"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Block apps every day between two times."""
    setup_logging(verbose=verbose)
    blocked_apps = _require_apps(apps)
    fields = _clock_window(start_time, end_time, utc)
    try:
        window = DailyWindow(**fields)
    except ValidationError as e:
        _fail(str(e))
    _add_rule(rule_id, blocked_apps, priority, window)


@app.command(name="add-weekday")
def add_weekday(
    start_time: str = typer.Argument(..., help="Start time (e.g. 9am, 09:00)"),
    end_time: str = typer.Argument(..., help="End time; earlier than start runs into the next day"),
    days: str = typer.Option(..., "--days", "-d", help="Days, e.g. mon,tue,wed"),
    apps: list[str] | None = typer.Option(
        None, "--apps", "-a", help="Apps to block (comma separated process names)"
    ),
    priority: int = typer.Option(0, "--priority", "-p", help="Higher wins on overlap"),
    rule_id: str | None = typer.Option(None, "--id", help="Rule id (default: random)"),
    utc: bool = typer.Option(False, "--utc", help="Interpret days and times as UTC"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Block apps between two times on selected days.

    Weekday rules are stored against UTC days, so a local window that
    straddles UTC midnight is saved as two rules (the second gets a `-2` id).
    """
    setup_logging(verbose=verbose)
    blocked_apps = _require_apps(apps)
    fields = _clock_window(start_time, end_time, utc)
    try:
        mask = weekday_mask(d for d in days.split(",") if d.strip())
    except ValueError as e:
        _fail(str(e))
    if not mask:
        _fail("At least one day is required (--days).")

    spans = utc_weekday_windows(
        mask,
        clock_millis(fields["start_hour"], fields["start_minute"]),
        clock_millis(fields["end_hour"], fields["end_minute"]),
        fields["timezone_offset_millis"],
    )
    if not spans:
        _fail("Start and end time must differ.")

    base_id = rule_id or str(uuid.uuid4())
    for index, (span_mask, start, end) in enumerate(spans):
        start_hour, start_minute = divmod(start // MINUTE_MILLIS, 60)
        end_hour, end_minute = divmod(end // MINUTE_MILLIS, 60)
        try:
            window = WeekdayWindow(
                weekday_mask=span_mask,
                start_hour=start_hour,
                start_minute=start_minute,
                end_hour=end_hour,
                end_minute=end_minute,
            )
        except ValidationError as e:
            _fail(str(e))
        _add_rule(base_id if index == 0 else f"{base_id}-{index + 1}", blocked_apps, priority, window)

    if fields["timezone_offset_millis"]:
        console.print("[dim]Days and times above are in UTC.[/dim]")


@app.command(name="add-once")
def add_once(
    start_time: str = typer.Argument(..., help="Start time (e.g. 8pm, 20:00)"),
    end_time: str = typer.Argument(..., help="End time (e.g. 10pm, 22:00)"),
    apps: list[str] | None = typer.Option(
        None, "--apps", "-a", help="Apps to block (comma separated process names)"
    ),
    priority: int = typer.Option(0, "--priority", "-p", help="Higher wins on overlap"),
    rule_id: str | None = typer.Option(None, "--id", help="Rule id (default: random)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Block apps once, over the next occurrence of a time range."""
    setup_logging(verbose=verbose)
    blocked_apps = _require_apps(apps)
    try:
        start_ms, end_ms = one_time_range_millis(start_time, end_time)
        window = OneTimeWindow(start_time_millis=start_ms, end_time_millis=end_ms)
    except ValueError as e:
        _fail(str(e))
    _add_rule(rule_id, blocked_apps, priority, window)


@app.command(name="rules")
def list_rules(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List block rules, highest priority first."""
    setup_logging(verbose=verbose)
    service = get_service()
    try:
        rules = service.list_rules()
    except StorageCorruptedError as e:
        _fail(str(e))

    if not rules:
        console.print("[yellow]No block rules found.[/yellow]")
        return

    now_ms = service.clock()
    table = Table(title="Block Rules")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Window", style="magenta")
    table.add_column("Priority", justify="right", style="blue")
    table.add_column("Apps", style="magenta")
    table.add_column("Active", style="green")
    table.add_column("Changes At", style="yellow")
    for rule in rules:
        table.add_row(
            rule.id,
            describe_window(rule.window),
            str(rule.priority),
            ", ".join(sorted(rule.target_apps)),
            "Yes" if rule.window.evaluate(now_ms) else "No",
            format_instant(rule.window.next_boundary(now_ms)),
        )
    console.print(table)


@app.command()
def remove(
    rule_id: str = typer.Argument(..., help="Id of the rule to remove"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Remove a rule, unless it is blocking right now."""
    setup_logging(verbose=verbose)
    try:
        removed = get_service().remove_rule(rule_id)
    except StorageCorruptedError as e:
        _fail(str(e))
    if not removed:
        _fail(f"Rule {rule_id} was not found or is blocking right now.")
    console.print(f"[green]Removed rule:[/green] {rule_id}")


@app.command(name="load-rules")
def load_rules(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON array of rules"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Replace every rule with the ones in a JSON file."""
    setup_logging(verbose=verbose)
    try:
        saved = get_service().save_block_rules(path.read_text())
    except StorageCorruptedError as e:
        _fail(str(e))
    if not saved:
        _fail("Rules were not replaced: the file is invalid or a block or bypass is active.")
    console.print(f"[green]Rules loaded from[/green] {path}")


@app.command()
def check(
    resource_id: str = typer.Argument(..., help="App (process name) to check"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Show whether an app would be blocked right now, and until when."""
    setup_logging(verbose=verbose)
    try:
        result = get_service().check(resource_id)
    except StorageCorruptedError as e:
        _fail(str(e))

    if isinstance(result.reason, BlockReason):
        console.print(f"[bold red]BLOCK[/bold red] {resource_id} (rule {result.reason.rule_id})")
    elif isinstance(result.reason, BypassReason):
        overridden = result.reason.blocked_by_rule_id or "none"
        console.print(
            f"[bold green]ALLOW[/bold green] {resource_id} via bypass "
            f"{result.reason.bypass_id} (overrides rule {overridden})"
        )
    else:
        console.print(f"[bold green]ALLOW[/bold green] {resource_id}")
    console.print(f"Re-evaluate at: {format_instant(result.next_evaluation_time_millis)}")


@app.command()
def bypass(
    resource_id: str = typer.Argument(..., help="App to allow briefly, or * for all timers"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Grant a short emergency bypass."""
    setup_logging(verbose=verbose)
    try:
        granted = get_service().request_emergency_bypass(resource_id)
    except StorageCorruptedError as e:
        _fail(str(e))
    if not granted:
        _fail("Bypass refused: another bypass is still active.")
    console.print(
        f"[bold yellow]Bypass granted[/bold yellow] for {resource_id} "
        f"({format_duration_seconds(settings.bypass_duration_ms // 1000)})"
    )


@app.command()
def timer(
    minutes: int = typer.Argument(..., help="Duration in minutes"),
    apps: list[str] | None = typer.Option(
        None, "--apps", "-a", help="Apps to block (comma separated process names)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Start a focus timer that hard-blocks apps."""
    setup_logging(verbose=verbose)
    blocked_apps = _require_apps(apps)
    try:
        started = get_service().start_focus_timer(minutes, blocked_apps)
    except StorageCorruptedError as e:
        _fail(str(e))
    if not started:
        _fail(
            f"Timer not started: duration must be between 1 and "
            f"{settings.max_timer_minutes} minutes."
        )
    console.print(
        f"[bold green]Focus timer started[/bold green] for {minutes}m. "
        f"Blocking: [magenta]{', '.join(blocked_apps)}[/magenta]"
    )


@app.command()
def pomodoro(
    minutes: int = typer.Argument(25, help="Duration in minutes"),
    is_break: bool = typer.Option(False, "--break", "-b", help="Start a break instead of focus"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Start a pomodoro focus or break timer."""
    setup_logging(verbose=verbose)
    service = get_service()
    try:
        if is_break:
            started = service.start_pomodoro_break(minutes)
        else:
            started = service.start_pomodoro_focus(minutes)
    except StorageCorruptedError as e:
        _fail(str(e))
    if not started:
        _fail("Pomodoro not started: invalid duration.")
    label = "break" if is_break else "focus"
    console.print(f"[bold green]Pomodoro {label} started[/bold green] for {minutes}m.")


@app.command()
def timers(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List running timers."""
    setup_logging(verbose=verbose)
    try:
        rows = get_service().get_active_timers()
    except StorageCorruptedError as e:
        _fail(str(e))

    if not rows:
        console.print("[yellow]No timers running.[/yellow]")
        return

    table = Table(title="Active Timers")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Mode", style="yellow")
    table.add_column("Remaining", style="green")
    table.add_column("Apps", style="magenta")
    table.add_column("Paused", style="blue")
    for row in rows:
        table.add_row(
            row["id"],
            row["mode"],
            format_duration_seconds(row["remainingSeconds"]),
            ", ".join(row["blockedPackages"]) or "-",
            "Yes" if row["paused"] else "No",
        )
    console.print(table)


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Check the daemon and what is blocked right now."""
    setup_logging(verbose=verbose)

    console.print("[bold cyan]Focus Guard - Status[/bold cyan]")
    state = read_state()
    if is_daemon_running():
        console.print("Daemon: [bold green]● Running[/bold green]")
        console.print(f"Daemon PID: [magenta]{state['pid']}[/magenta]")
        console.print(f"Next evaluation: {format_instant(state.get('next_evaluation'))}")
        if state.get("foreground"):
            console.print(f"Foreground app: {state['foreground']}")
    else:
        console.print("Daemon: [bold red]○ Stopped[/bold red]")

    try:
        block_status = get_service().get_block_status()
    except StorageCorruptedError as e:
        _fail(str(e))

    if block_status["isBlockActive"]:
        apps = ", ".join(block_status["blockedApps"]) or "none"
        console.print(f"\n[bold yellow]⚠️ BLOCK ACTIVE[/bold yellow] Blocking: [magenta]{apps}[/magenta]")
    else:
        console.print("\nNo block currently active.")
    if block_status["bypassActive"]:
        console.print("[yellow]An emergency bypass is running.[/yellow]")

    if not is_daemon_running():
        console.print("\n[dim]To start the daemon, run: [bold]focusguard start[/bold][/dim]")


@app.command()
def config(
    cooldown_ms: int | None = typer.Option(None, "--cooldown", help="Per-app enforcement cooldown (ms)"),
    overlay_timeout_ms: int | None = typer.Option(
        None, "--overlay-timeout", help="How long the block overlay stays up (ms)"
    ),
    bypass_minutes: int | None = typer.Option(
        None, "--bypass-minutes", help="Emergency bypass length in minutes"
    ),
    max_timer_minutes: int | None = typer.Option(
        None, "--max-timer", "-m", help="Maximum focus timer length in minutes (guardrail)"
    ),
    home: list[str] | None = typer.Option(
        None, "--home", help="Processes that count as the desktop (comma separated)"
    ),
    ignore: list[str] | None = typer.Option(
        None, "--ignore", help="Processes never blocked (comma separated)"
    ),
    message: str | None = typer.Option(None, "--message", help="Block overlay text"),
    popup: bool | None = typer.Option(
        None, "--popup/--no-popup", help="Also show a full-screen banner on block"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure enforcement settings."""
    setup_logging(verbose=verbose)
    current_settings = load_settings()

    try:
        if cooldown_ms is not None:
            current_settings.cooldown_ms = cooldown_ms
        if overlay_timeout_ms is not None:
            current_settings.overlay_timeout_ms = overlay_timeout_ms
        if bypass_minutes is not None:
            if not 1 <= bypass_minutes <= 24 * 60:
                _fail("Bypass length must be between 1 minute and 24 hours.")
            current_settings.bypass_duration_ms = bypass_minutes * 60 * 1000
        if max_timer_minutes is not None:
            if max_timer_minutes < 1:
                _fail("Maximum timer duration must be at least 1 minute.")
            current_settings.max_timer_minutes = max_timer_minutes
        if home:
            current_settings.home_resources = process_apps_list(home)
        if ignore:
            current_settings.ignored_resources = process_apps_list(ignore)
        if message is not None:
            current_settings.overlay_message = message
        if popup is not None:
            current_settings.show_popup = popup
    except ValidationError as e:
        _fail(str(e))

    current_settings.save()

    table = Table(title="Current Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Cooldown (ms)", str(current_settings.cooldown_ms))
    table.add_row("Overlay Timeout (ms)", str(current_settings.overlay_timeout_ms))
    table.add_row("Bypass Length", format_duration_seconds(current_settings.bypass_duration_ms // 1000))
    table.add_row("Max Timer (m)", str(current_settings.max_timer_minutes))
    table.add_row("Home Processes", ", ".join(current_settings.home_resources))
    table.add_row("Ignored Processes", ", ".join(current_settings.ignored_resources))
    table.add_row("Overlay Message", current_settings.overlay_message)
    table.add_row("Popup", "Yes" if current_settings.show_popup else "No")
    console.print(table)
    console.print("[green]Configuration saved![/green]")


@app.command()
def start(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    foreground: bool = typer.Option(
        False, "--foreground", "-f", help="Run the daemon in this terminal instead of systemd"
    ),
) -> None:
    """Start the blocking daemon (via systemd when a user unit is installed)."""
    setup_logging(verbose=verbose)

    if is_daemon_running():
        console.print("[yellow]Daemon is already running.[/yellow]")
        return

    service_file = Path(os.path.expanduser(f"~/.config/systemd/user/{SERVICE_NAME}"))
    if foreground or not service_file.exists():
        from focus_guard.daemon import run_daemon

        try:
            run_daemon()
        except StorageCorruptedError:
            raise typer.Exit(1)
        return

    try:
        subprocess.run(
            ["systemctl", "--user", "start", SERVICE_NAME],
            check=True,
            capture_output=True,
            text=True,
        )
        console.print("[bold green]✔ Daemon start requested via systemd.[/bold green]")
    except FileNotFoundError:
        _fail("`systemctl` command not found. Use --foreground instead.")
    except subprocess.CalledProcessError as e:
        console.print("[red]Error starting systemd service:[/red]")
        console.print(f"[dim]{e.stderr}[/dim]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
