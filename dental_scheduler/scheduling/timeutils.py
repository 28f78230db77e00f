"""Timezone-aware time helpers for slot filtering, display and booking payloads.

NexHealth returns slot instants as ISO 8601 strings carrying an offset
(``2025-07-15T14:05:00.000-05:00``).  Everything the caller hears is in the
practice's local time; everything sent back to NexHealth is UTC.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, time, tzinfo

# Lunch break in practice-local time: [13:00, 14:00)
LUNCH_BREAK_START = time(13, 0)
LUNCH_BREAK_END = time(14, 0)

# Part-of-day windows a caller can ask for, inclusive on both ends.
TIME_BUCKETS: dict[str, tuple[time, time]] = {
    "Early": (time(5, 0), time(8, 30)),
    "Morning": (time(5, 0), time(12, 0)),
    "Midday": (time(10, 0), time(15, 0)),
    "Afternoon": (time(12, 0), time(17, 0)),
    "Evening": (time(15, 30), time(20, 0)),
    "Late": (time(17, 0), time(22, 0)),
    "AllDay": (time(5, 0), time(22, 0)),
}

_DISPLAY_TIME_RE = re.compile(r"^(1[0-2]|[1-9]):([0-5][0-9])\s?([AaPp][Mm])$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_instant(value: str | None, default_tz: tzinfo | None = None) -> datetime | None:
    """Parse an ISO 8601 instant, returning ``None`` when it cannot be parsed.

    Naive values are interpreted in *default_tz* (practice-local) when given.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        if default_tz is None:
            return None
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed


def parse_iso_date(value: str | None) -> date | None:
    """Parse a strict ``YYYY-MM-DD`` date."""
    if not value or not _ISO_DATE_RE.match(value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def format_display_time(moment: datetime, tz: tzinfo) -> str:
    """'2:05 PM' style 12-hour string in *tz*."""
    local = moment.astimezone(tz)
    return local.strftime("%I:%M %p").lstrip("0")


def format_friendly_date(day: date) -> str:
    """'Tuesday, July 15'."""
    return f"{day:%A}, {day:%B} {day.day}"


def is_during_lunch(moment: datetime | None, tz: tzinfo) -> bool:
    """True when *moment* starts inside the lunch window, practice-local.

    Unknown times are never treated as lunch so they stay bookable.
    """
    if moment is None:
        return False
    local = moment.astimezone(tz).time().replace(second=0, microsecond=0)
    return LUNCH_BREAK_START <= local < LUNCH_BREAK_END


def in_time_bucket(moment: datetime | None, tz: tzinfo, bucket: str) -> bool:
    if moment is None or bucket not in TIME_BUCKETS:
        return False
    start, end = TIME_BUCKETS[bucket]
    local = moment.astimezone(tz).time().replace(second=0, microsecond=0)
    return start <= local <= end


def normalize_display_time(value: str | None) -> str | None:
    """Canonicalise a caller-supplied time to the slot display form.

    ``"2:05pm"`` → ``"2:05 PM"``.  Returns ``None`` when *value* is not a
    12-hour ``H:MM AM|PM`` time.
    """
    if not value:
        return None
    match = _DISPLAY_TIME_RE.match(value.strip())
    if not match:
        return None
    hour, minute, meridiem = match.groups()
    return f"{int(hour)}:{minute} {meridiem.upper()}"


def local_display_time_to_utc(day: date, display_time: str, tz: tzinfo) -> datetime:
    """Interpret *display_time* on *day* in *tz* and return the UTC instant.

    Raises ``ValueError`` if *display_time* is not a valid 12-hour time.
    """
    canonical = normalize_display_time(display_time)
    if canonical is None:
        raise ValueError(f"Invalid display time: {display_time!r}")
    clock = datetime.strptime(canonical, "%I:%M %p").time()
    local = datetime.combine(day, clock, tzinfo=tz)
    return local.astimezone(UTC)


def format_utc_iso(moment: datetime) -> str:
    """'2025-07-15T19:05:00Z'."""
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
