"""
Wall-clock delay specs ("9am", "18:30", "sunday at 6:00pm") and the
next-occurrence computation behind AbsoluteLocal delays.
"""

import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flows_core.errors import WallClockSpecError

_WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}
_WEEKDAY_ALIASES = {name[:3]: idx for name, idx in _WEEKDAYS.items()}
_WEEKDAY_ALIASES.update(_WEEKDAYS)
_WEEKDAY_ALIASES.update({"tues": 1, "wed": 2, "thur": 3, "thurs": 3})

_SPEC_RE = re.compile(
    r"^(?:(?P<day>[a-z]+)\s+(?:at\s+)?)?"
    r"(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<ampm>am|pm)?$"
)


@dataclass(frozen=True)
class WallClock:
    """A local time of day, optionally pinned to a weekday (Monday=0)."""

    hour: int
    minute: int
    weekday: int | None = None

    def __str__(self) -> str:
        clock = f"{self.hour:02d}:{self.minute:02d}"
        if self.weekday is None:
            return clock
        day = next(name for name, idx in _WEEKDAYS.items() if idx == self.weekday)
        return f"{day} {clock}"


def parse_wall_clock(spec: str) -> WallClock:
    """
    Parse a wall-clock spec.

    Accepted forms: "09:00", "9am", "9:30 pm", "noon", "midnight",
    "sunday at 6:00pm", "mon 09:00".
    """
    text = " ".join(spec.strip().lower().split())
    text = re.sub(r"\bnoon\b", "12:00pm", text)
    text = re.sub(r"\bmidnight\b", "12:00am", text)

    match = _SPEC_RE.match(text)
    if not match:
        raise WallClockSpecError(f"Unrecognised wall-clock spec: {spec!r}", details={"spec": spec})

    weekday = None
    if match.group("day"):
        weekday = _WEEKDAY_ALIASES.get(match.group("day"))
        if weekday is None:
            raise WallClockSpecError(f"Unknown weekday in {spec!r}", details={"spec": spec})

    hour = int(match.group("hour"))
    minute = int(match.group("minute") or 0)
    ampm = match.group("ampm")
    if ampm:
        if not 1 <= hour <= 12:
            raise WallClockSpecError(f"Hour out of range in {spec!r}", details={"spec": spec})
        hour = hour % 12 + (12 if ampm == "pm" else 0)
    elif hour > 23:
        raise WallClockSpecError(f"Hour out of range in {spec!r}", details={"spec": spec})
    if minute > 59:
        raise WallClockSpecError(f"Minute out of range in {spec!r}", details={"spec": spec})

    return WallClock(hour=hour, minute=minute, weekday=weekday)


def get_zone(name: str) -> ZoneInfo:
    """Return a ZoneInfo, raising ValueError for unknown names."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Invalid timezone: {name}") from exc


def next_occurrence(clock: WallClock, after: datetime, zone: ZoneInfo) -> datetime:
    """
    First instant at or after ``after`` whose local time in ``zone`` matches.

    Returns an aware UTC datetime. A local time that falls into a DST gap is
    read with the pre-transition offset, which lands after the gap, never
    before the requested wall-clock time. Ambiguous times take the first
    occurrence.
    """
    if after.tzinfo is None:
        raise ValueError("after must be timezone-aware")

    local_date = after.astimezone(zone).date()
    # Eight days covers "today already passed" for weekday-pinned specs.
    for offset in range(8):
        day = local_date + timedelta(days=offset)
        if clock.weekday is not None and day.weekday() != clock.weekday:
            continue
        candidate = datetime.combine(day, time(clock.hour, clock.minute), tzinfo=zone)
        candidate_utc = candidate.astimezone(timezone.utc)
        if candidate_utc >= after:
            return candidate_utc

    raise WallClockSpecError(f"No occurrence of {clock} found after {after.isoformat()}")
