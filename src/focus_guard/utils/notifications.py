import subprocess
import sys

from loguru import logger

from focus_guard.settings import settings


def send_notification(summary: str, body: str, replace_id: int | None = None) -> int | None:
    """
    Sends a desktop notification using notify-send.

    Returns the notification id when notify-send reports one, so a later
    call can replace the same bubble instead of stacking a new one.
    """
    logger.info(f"Sending notification: {summary} | {body}")
    cmd = ["notify-send", summary, body, "-a", settings.app_name, "-p"]
    if replace_id is not None:
        cmd += ["-r", str(replace_id)]
    try:
        result = subprocess.run(cmd, check=False, capture_output=True, text=True)
    except FileNotFoundError:
        logger.error("notify-send not found. Install libnotify-bin.")
        return None
    except OSError as e:
        logger.error(f"Failed to send notification: {e}")
        return None

    output = result.stdout.strip()
    return int(output) if output.isdigit() else None


def show_blocked_popup():
    """Opens a fullscreen terminal with the centered BLOCKED banner."""
    script_cmd = [sys.executable, "-m", "focus_guard.utils.center_message"]

    terminals = [
        ["kitty", "--start-as=fullscreen", "--title", "BLOCKED"] + script_cmd,
        ["gnome-terminal", "--full-screen", "--"] + script_cmd,
        ["konsole", "--fullscreen", "-e"] + script_cmd,
        ["xfce4-terminal", "--fullscreen", "-e"] + script_cmd,
        ["xterm", "-fullscreen", "-e"] + script_cmd,
    ]

    for cmd in terminals:
        try:
            if subprocess.run(["which", cmd[0]], capture_output=True).returncode == 0:
                logger.info(f"Launching blocked popup via {cmd[0]}")
                subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
                return
        except OSError as e:
            logger.debug(f"Failed to launch terminal {cmd[0]}: {e}")

    logger.warning("No suitable terminal emulator found to show popup.")


class NotificationOverlay:
    """
    Overlay presenter built on desktop notifications.

    `show` and `update` reuse one notification bubble; `hide` only flips the
    showing flag since notify-send bubbles expire on their own.
    """

    def __init__(self, title: str = "Focus Guard", popup: bool = False):
        self.title = title
        self.popup = popup
        self._showing = False
        self._notification_id: int | None = None

    def show(self, message: str) -> None:
        self._notification_id = send_notification(self.title, message)
        self._showing = True
        if self.popup:
            show_blocked_popup()

    def update(self, message: str) -> None:
        self._notification_id = send_notification(
            self.title, message, replace_id=self._notification_id
        )
        self._showing = True

    def hide(self) -> None:
        self._showing = False
        self._notification_id = None

    def is_showing(self) -> bool:
        return self._showing
