# air_quality_analysis/timeutil.py
"""
Timestamp helpers for hourly sensor readings.

Raw files report Year/Month/Day/Hour in local standard time at a fixed UTC
offset (+08:00), with no daylight saving. Timestamps are composed at that
offset explicitly instead of looking up a zone in the host tz database.

Storage format:
- All timestamps are persisted as UTC ISO-8601 text ("2015-01-01T01:00:00+00:00")
  so that lexical order in SQL matches chronological order.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

LOCAL_STANDARD_OFFSET = timedelta(hours=8)
LOCAL_STANDARD_TZ = timezone(LOCAL_STANDARD_OFFSET)

ONE_HOUR = timedelta(hours=1)

ERR_NAIVE_TIMESTAMP = "Timestamp must be timezone-aware; got naive value: {}"
ERR_BAD_TIMESTAMP = "Could not parse ISO-8601 timestamp: {!r}"


def local_standard_time(
    year: int,
    month: int,
    day: int,
    hour: int,
    *,
    offset: timedelta = LOCAL_STANDARD_OFFSET,
) -> datetime:
    """Compose an aware datetime for a wall-clock hour at a fixed UTC offset."""
    return datetime(year, month, day, hour, 0, 0, tzinfo=timezone(offset))


def to_storage(ts: datetime) -> str:
    if ts.tzinfo is None or ts.utcoffset() is None:
        raise ValueError(ERR_NAIVE_TIMESTAMP.format(ts))
    return ts.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def from_storage(text: str) -> datetime:
    return datetime.fromisoformat(text)


def parse_timestamp(text: str, *, offset: timedelta = LOCAL_STANDARD_OFFSET) -> datetime:
    """
    Parse an operator-supplied ISO-8601 timestamp.

    Values without an explicit offset are read as local standard time, the
    same clock the raw files use.
    """
    try:
        ts = datetime.fromisoformat(text.strip())
    except ValueError as exc:
        raise ValueError(ERR_BAD_TIMESTAMP.format(text)) from exc

    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone(offset))
    return ts
