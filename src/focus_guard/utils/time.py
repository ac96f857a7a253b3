import time
from collections.abc import Callable
from datetime import datetime, timedelta

# Every component takes a clock so tests can drive time explicitly.
Clock = Callable[[], int]


def now_millis() -> int:
    """Wall-clock epoch milliseconds; the default clock."""
    return time.time_ns() // 1_000_000


def to_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def from_millis(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000)


def local_tz_offset_millis(at: datetime | None = None) -> int:
    """
    The offset that turns an epoch instant into local wall time by subtraction.

    For a zone at UTC+2 this returns -7_200_000, so that
    `(now_ms - offset) % DAY` lands on the local time of day.
    """
    at = at or datetime.now()
    if at.tzinfo is None:
        at = at.astimezone()
    utcoffset = at.utcoffset() or timedelta(0)
    return -int(utcoffset.total_seconds() * 1000)


def parse_time_string(time_str: str, now: datetime | None = None) -> datetime:
    """Parses time strings like '8pm', '8:30pm', '20:00', '20:30' onto today's date."""
    formats = ["%I%p", "%I:%M%p", "%H:%M", "%H:%M:%S"]
    time_str = time_str.lower().replace(" ", "")
    now = now or datetime.now()
    for fmt in formats:
        try:
            parsed_time = datetime.strptime(time_str, fmt).time()
            return datetime.combine(now.date(), parsed_time)
        except ValueError:
            continue
    raise ValueError(f"Could not parse time: {time_str}")


def parse_clock(time_str: str) -> tuple[int, int]:
    """'8:30pm' -> (20, 30)."""
    parsed = parse_time_string(time_str)
    return parsed.hour, parsed.minute


def one_time_range_millis(
    start_str: str, end_str: str, now: datetime | None = None
) -> tuple[int, int]:
    """
    Turns a wall-clock range into absolute epoch milliseconds.

    An end at or before the start is taken to be tomorrow. A range that has
    already finished today is moved to tomorrow.
    """
    now = now or datetime.now()
    start_dt = parse_time_string(start_str, now)
    end_dt = parse_time_string(end_str, now)

    if end_dt <= start_dt:
        end_dt += timedelta(days=1)
    if end_dt <= now:
        start_dt += timedelta(days=1)
        end_dt += timedelta(days=1)

    return to_millis(start_dt), to_millis(end_dt)


def format_duration_seconds(seconds: int) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 30m' or '45m').
    """
    minutes = seconds // 60
    if minutes == 0 and seconds > 0:
        return "<1m"
    elif minutes <= 60:
        return f"{minutes}m"
    else:
        hours = minutes // 60
        remaining_minutes = minutes % 60
        return f"{hours}h {remaining_minutes}m"


def format_instant(ms: int | None) -> str:
    if ms is None:
        return "never"
    return from_millis(ms).strftime("%Y-%m-%d %H:%M:%S")
