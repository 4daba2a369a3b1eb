from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(us|µs|ms|s|m|h)")
_UNITS = {
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_local(tz: ZoneInfo) -> datetime:
    return now_utc().astimezone(tz)


def parse_clock(s: str) -> time:
    """Parse "HH:MM" into a time. Raises ValueError on anything else."""
    h, m = s.split(":")
    if len(h) not in (1, 2) or len(m) != 2:
        raise ValueError(f"Invalid time format: {s}, expected HH:MM")
    return time(hour=int(h), minute=int(m))


def at_clock(day: datetime | date, clock: time | str, tz: ZoneInfo | None = None) -> datetime:
    """The given clock time on the calendar day of `day`, in `day`'s zone (or `tz`)."""
    if isinstance(clock, str):
        clock = parse_clock(clock)
    if isinstance(day, datetime):
        tz = tz or day.tzinfo
        day = day.date()
    return datetime.combine(day, clock, tzinfo=tz)


def parse_duration(s: str) -> timedelta:
    """Parse a signed duration like "-1h30m", "+45m" or "90s"."""
    if not s:
        raise ValueError("empty duration")
    sign = 1
    rest = s
    if rest[0] in "+-":
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)

    total = timedelta(0)
    pos = 0
    for match in _DURATION_PART.finditer(rest):
        if match.start() != pos:
            break
        total += _UNITS[match.group(2)] * float(match.group(1))
        pos = match.end()
    if pos == 0 or pos != len(rest):
        raise ValueError(f"Invalid duration: {s}")
    return sign * total
