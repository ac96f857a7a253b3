import subprocess

import psutil
from loguru import logger

from focus_guard.utils.notifications import send_notification

PROBE_TIMEOUT_SECONDS = 2


def terminate_resource(resource_id: str) -> int:
    """Kills every process whose name is `resource_id`. Returns how many were killed."""
    killed = 0
    for proc in psutil.process_iter(["name"]):
        try:
            if proc.info["name"] == resource_id:
                logger.info(f"Killing {resource_id} (PID: {proc.pid})")
                proc.kill()
                killed += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return killed


class ProcessTerminator:
    """Termination capability for the kill queue."""

    def __init__(self, notify: bool = True):
        self.notify = notify

    def terminate(self, resource_id: str) -> None:
        killed = terminate_resource(resource_id)
        if killed and self.notify:
            send_notification(f"Blocked {resource_id}", "App closed while blocked.")
        elif not killed:
            logger.debug(f"No running process named {resource_id}")


_home_command_cache: list[str] | None = None

HOME_COMMANDS = [
    # EWMH "show desktop"; works on most X11 window managers.
    ["wmctrl", "-k", "on"],
    ["xdotool", "key", "super+d"],
]


def go_home() -> bool:
    """Shows the desktop, trying each known method. Returns False if none is available."""
    global _home_command_cache

    if _home_command_cache:
        try:
            subprocess.run(_home_command_cache, check=False, timeout=PROBE_TIMEOUT_SECONDS)
            return True
        except (FileNotFoundError, subprocess.TimeoutExpired):
            _home_command_cache = None

    for command in HOME_COMMANDS:
        try:
            result = subprocess.run(
                command, check=False, capture_output=True, timeout=PROBE_TIMEOUT_SECONDS
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            continue
        if result.returncode == 0:
            _home_command_cache = command
            return True

    logger.warning("Could not return to the desktop: install wmctrl or xdotool.")
    return False


class DesktopNavigator:
    def go_home(self) -> None:
        go_home()


def active_window_app() -> str | None:
    """
    Process name owning the focused window, or None when nothing is focused.

    Raises:
        FileNotFoundError: If xdotool is not installed.
    """
    try:
        result = subprocess.run(
            ["xdotool", "getactivewindow", "getwindowpid"],
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        return None
    if result.returncode != 0:
        return None

    try:
        return psutil.Process(int(result.stdout.strip())).name()
    except (ValueError, psutil.NoSuchProcess, psutil.AccessDenied):
        return None
