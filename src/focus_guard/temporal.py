"""
Pure time-window arithmetic shared by the rule windows.

Every instant is an integer count of epoch milliseconds. Wall-clock windows
are expressed as millisecond offsets into a local day, where local time is
obtained by subtracting the window's timezone offset from the instant.
"""

from collections.abc import Callable, Iterable

MINUTE_MILLIS = 60 * 1000
HOUR_MILLIS = 60 * MINUTE_MILLIS
DAY_MILLIS = 24 * HOUR_MILLIS

# How far ahead boundary scans look. A weekday window with a single bit set
# changes state at most a week away, plus one day for midnight wraparound.
BOUNDARY_HORIZON_DAYS = 8

# Weekday numbering is anchored on the epoch: day 0 (1970-01-01) is a Thursday.
WEEKDAY_BITS = {
    "thu": 0,
    "fri": 1,
    "sat": 2,
    "sun": 3,
    "mon": 4,
    "tue": 5,
    "wed": 6,
}
ALL_WEEKDAYS_MASK = 0b1111111


def clock_millis(hour: int, minute: int) -> int:
    """Milliseconds from local midnight to hour:minute."""
    return (hour * 60 + minute) * MINUTE_MILLIS


def local_time_of_day(now_ms: int, tz_offset_millis: int = 0) -> int:
    """Position of `now_ms` inside its local day, always in [0, DAY_MILLIS)."""
    # Python's % already returns a non-negative result for a positive divisor,
    # whatever the sign of the offset.
    return (now_ms - tz_offset_millis) % DAY_MILLIS


def weekday_index(now_ms: int) -> int:
    """Epoch-anchored day of week (0 = Thursday) of the raw instant."""
    return (now_ms // DAY_MILLIS) % 7


def weekday_mask(names: Iterable[str]) -> int:
    """
    Builds a weekday bitmask from day names ('mon', 'Tuesday', ...).

    Raises:
        ValueError: If a name does not match a weekday.
    """
    mask = 0
    for name in names:
        key = name.strip().lower()[:3]
        if key not in WEEKDAY_BITS:
            raise ValueError(f"Unknown weekday: {name}")
        mask |= 1 << WEEKDAY_BITS[key]
    return mask


def weekday_names(mask: int) -> list[str]:
    """Day names set in `mask`, Monday first."""
    order = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]
    return [day for day in order if mask & (1 << WEEKDAY_BITS[day])]


def utc_weekday_windows(
    mask: int, start_millis: int, end_millis: int, tz_offset_millis: int = 0
) -> list[tuple[int, int, int]]:
    """
    Re-expresses a window on local weekdays as windows on epoch (UTC) days.

    The weekday gate of a weekday window looks at the epoch day of the raw
    instant, so a window meant as "Monday 09:00-17:00 local" has to be moved
    onto the UTC days its instants actually fall on. A window that wraps past
    local midnight runs into the following day.

    Returns (mask, start, end) triples with no timezone offset, one per
    distinct UTC span, in order of first occurrence. A span ending at UTC
    midnight has end 0, which `in_window` reads as wrapping to the day's end.
    A zero-width window yields nothing.
    """
    duration = (end_millis - start_millis) % DAY_MILLIS
    if duration == 0:
        return []

    spans: dict[tuple[int, int], int] = {}
    for day in range(7):
        if not mask & (1 << day):
            continue
        # Local midnight of epoch-day `day` is the instant day * DAY + offset.
        begin = day * DAY_MILLIS + start_millis + tz_offset_millis
        finish = begin + duration
        while begin < finish:
            utc_day = begin // DAY_MILLIS
            stop = min(finish, (utc_day + 1) * DAY_MILLIS)
            key = (begin - utc_day * DAY_MILLIS, (stop - utc_day * DAY_MILLIS) % DAY_MILLIS)
            spans[key] = spans.get(key, 0) | 1 << (utc_day % 7)
            begin = stop
    return [(span_mask, start, end) for (start, end), span_mask in spans.items()]


def in_window(time_of_day: int, start_millis: int, end_millis: int) -> bool:
    """
    Containment test for a local-day window.

    A window with start <= end is the half-open range [start, end), so a
    window with start == end never matches. A window with start > end wraps
    past midnight.
    """
    if start_millis <= end_millis:
        return start_millis <= time_of_day < end_millis
    return time_of_day >= start_millis or time_of_day < end_millis


def one_time_active(now_ms: int, start_ms: int, end_ms: int) -> bool:
    return start_ms <= now_ms < end_ms


def daily_active(
    now_ms: int, start_millis: int, end_millis: int, tz_offset_millis: int = 0
) -> bool:
    return in_window(local_time_of_day(now_ms, tz_offset_millis), start_millis, end_millis)


def weekday_active(
    now_ms: int,
    mask: int,
    start_millis: int,
    end_millis: int,
    tz_offset_millis: int = 0,
) -> bool:
    if not mask & (1 << weekday_index(now_ms)):
        return False
    return daily_active(now_ms, start_millis, end_millis, tz_offset_millis)


def next_one_time_boundary(now_ms: int, start_ms: int, end_ms: int) -> int | None:
    """Start if the window has not begun, end if inside it, None once it is over."""
    if now_ms < start_ms:
        return start_ms
    if now_ms < end_ms:
        return end_ms
    return None


def next_daily_boundary(
    now_ms: int, start_millis: int, end_millis: int, tz_offset_millis: int = 0
) -> int | None:
    """First instant after `now_ms` at which a daily window opens or closes."""
    midnight = now_ms - local_time_of_day(now_ms, tz_offset_millis)
    candidates = [
        midnight + day * DAY_MILLIS + offset
        for day in range(2)
        for offset in (start_millis, end_millis)
    ]
    return _first_change(
        now_ms,
        candidates,
        lambda at: daily_active(at, start_millis, end_millis, tz_offset_millis),
    )


def next_weekday_boundary(
    now_ms: int,
    mask: int,
    start_millis: int,
    end_millis: int,
    tz_offset_millis: int = 0,
) -> int | None:
    """
    First instant after `now_ms` at which a weekday window changes state.

    The state can flip at the window's local open/close instants and at the
    epoch day boundaries where the weekday gate is re-evaluated, so both are
    scanned over the boundary horizon.
    """
    midnight = now_ms - local_time_of_day(now_ms, tz_offset_millis)
    epoch_day = now_ms // DAY_MILLIS
    candidates: list[int] = []
    for day in range(BOUNDARY_HORIZON_DAYS + 1):
        candidates.append(midnight + day * DAY_MILLIS + start_millis)
        candidates.append(midnight + day * DAY_MILLIS + end_millis)
        candidates.append((epoch_day + day) * DAY_MILLIS)
    return _first_change(
        now_ms,
        candidates,
        lambda at: weekday_active(at, mask, start_millis, end_millis, tz_offset_millis),
    )


def _first_change(
    now_ms: int, candidates: Iterable[int], active: Callable[[int], bool]
) -> int | None:
    # The predicate is constant between consecutive candidates, so the first
    # candidate whose value differs from the millisecond before it is the
    # next real state change.
    for instant in sorted({c for c in candidates if c > now_ms}):
        if active(instant) != active(instant - 1):
            return instant
    return None
