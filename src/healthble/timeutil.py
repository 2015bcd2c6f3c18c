"""Wall-clock conversion helpers for unit clocks."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from .errors import DecodeError


def local_timestamp(
    tz: ZoneInfo, year: int, month: int, day: int, hour: int, minute: int, second: int
) -> datetime:
    """Interpret a unit's wall-clock reading in ``tz``.

    Units store local time without an offset, so a reading inside a DST
    transition cannot be mapped to a single instant.

    Raises:
        DecodeError: For impossible fields, or wall times that are skipped
            or repeated by a DST change in ``tz``.
    """
    try:
        first = datetime(year, month, day, hour, minute, second, tzinfo=tz, fold=0)
    except ValueError as e:
        raise DecodeError(
            f"Invalid timestamp {year:04d}-{month:02d}-{day:02d} {hour:02d}:{minute:02d}:{second:02d}: {e}"
        ) from e
    second_fold = first.replace(fold=1)

    if first.utcoffset() != second_fold.utcoffset():
        raise DecodeError(f"Ambiguous or non-existent local time {first.replace(tzinfo=None)} in {tz.key}")

    return first


def local_now(tz: ZoneInfo, now: Optional[datetime] = None) -> datetime:
    """Convert an aware instant (default: now) into ``tz``."""
    if now is None:
        now = datetime.now(timezone.utc)
    if now.tzinfo is None:
        raise ValueError("now must be timezone aware")
    return now.astimezone(tz)
