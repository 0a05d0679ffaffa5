from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

GRID_SECONDS = 30 * 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def round_to_grid(value: datetime, seconds: int = GRID_SECONDS) -> datetime:
    """Round to the nearest grid step (half-way rounds up)."""
    epoch = as_utc(value).timestamp()
    rounded = math.floor((epoch + seconds / 2) / seconds) * seconds
    return datetime.fromtimestamp(rounded, tz=timezone.utc)


def time_grid(center: datetime, range_hours: int = 3, interval_minutes: int = 30) -> list[datetime]:
    """center ± range_hours in interval_minutes steps, both ends included."""
    center = as_utc(center)
    step = timedelta(minutes=interval_minutes)
    start = center - timedelta(hours=range_hours)
    end = center + timedelta(hours=range_hours)
    points = []
    current = start
    while current <= end:
        points.append(current)
        current += step
    return points
