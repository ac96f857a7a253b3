import sys
import time

import pyfiglet
from rich.align import Align
from rich.console import Console
from rich.text import Text

DEFAULT_SUBTEXT = "This app is blocked right now.\n\nClosing in 3 seconds."


def render_banner(title: str = "BLOCKED", subtext: str = DEFAULT_SUBTEXT) -> Text:
    art = pyfiglet.Figlet(font="block").renderText(title)
    return Text.from_markup(f"[bold red]{art}[/bold red]") + Text(
        f"\n{subtext}", justify="center", style="bold yellow"
    )


def display(subtext: str = DEFAULT_SUBTEXT, seconds: float = 3):
    """Clears the terminal and shows the banner centered, then waits."""
    console = Console()
    console.clear()
    console.print(Align.center(render_banner(subtext=subtext), vertical="middle"))
    time.sleep(seconds)


if __name__ == "__main__":
    display(" ".join(sys.argv[1:]) or DEFAULT_SUBTEXT)
