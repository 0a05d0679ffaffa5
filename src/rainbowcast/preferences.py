"""
Per-user notification preferences.

Stored as a JSON map on users.notification_settings. Missing keys fall back to
DEFAULT_NOTIFICATION_SETTINGS; the HTTP layer speaks camelCase.
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError
from .timeutils import as_utc

DEFAULT_NOTIFICATION_SETTINGS: dict[str, Any] = {
    "rainbow_alerts": True,
    "likes": True,
    "comments": True,
    "system": True,
    "alert_radius_km": 10,
    "quiet_hours_start": None,  # e.g. "22:00"
    "quiet_hours_end": None,  # e.g. "07:00"
    "timezone": "Asia/Tokyo",
}

ALLOWED_RADII_KM = (1, 5, 10, 25)
EARTH_RADIUS_KM = 6371.0

_TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")

CAMEL_KEYS = {
    "rainbow_alerts": "rainbowAlerts",
    "alert_radius_km": "alertRadiusKm",
    "quiet_hours_start": "quietHoursStart",
    "quiet_hours_end": "quietHoursEnd",
}
SNAKE_KEYS = {v: k for k, v in CAMEL_KEYS.items()}

# notification_type -> preference flag
TYPE_FLAGS = {
    "rainbow_alert": "rainbow_alerts",
    "like": "likes",
    "comment": "comments",
    "system": "system",
}


@dataclass(frozen=True)
class UserAlertPreferences:
    rainbow_alerts: bool = True
    likes: bool = True
    comments: bool = True
    system: bool = True
    alert_radius_km: int = 10
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    timezone: str = "Asia/Tokyo"

    @classmethod
    def from_stored(cls, stored: Optional[Mapping[str, Any]]) -> "UserAlertPreferences":
        merged = {**DEFAULT_NOTIFICATION_SETTINGS, **(stored or {})}
        return cls(**{k: merged[k] for k in DEFAULT_NOTIFICATION_SETTINGS})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_camel(self) -> dict[str, Any]:
        return {CAMEL_KEYS.get(k, k): v for k, v in self.to_dict().items()}

    def allows(self, notification_type: str) -> bool:
        flag = TYPE_FLAGS.get(notification_type)
        if flag is None:
            return True
        return bool(getattr(self, flag))

    def in_quiet_hours(self, now: datetime) -> bool:
        return in_quiet_hours(self.quiet_hours_start, self.quiet_hours_end, self.timezone, now)


def _minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def in_quiet_hours(start: Optional[str], end: Optional[str], tz_name: str, now: datetime) -> bool:
    """
    True when `now`, seen in tz_name, falls in [start, end).

    A start later than the end spans midnight (22:00-07:00). Unset bounds
    mean no quiet hours.
    """
    if not start or not end:
        return False
    try:
        tz = ZoneInfo(tz_name or "Asia/Tokyo")
    except (ZoneInfoNotFoundError, ValueError, OSError):
        tz = ZoneInfo("Asia/Tokyo")
    local = as_utc(now).astimezone(tz)
    current = local.hour * 60 + local.minute
    start_m, end_m = _minutes(start), _minutes(end)
    if start_m <= end_m:
        return start_m <= current < end_m
    return current >= start_m or current < end_m


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def normalize_update(changes: Mapping[str, Any]) -> dict[str, Any]:
    """Accept camelCase or snake_case keys; drop anything unknown."""
    out = {}
    for key, value in changes.items():
        key = SNAKE_KEYS.get(key, key)
        if key in DEFAULT_NOTIFICATION_SETTINGS:
            out[key] = value
    return out


def validate(settings: Mapping[str, Any]) -> None:
    radius = settings.get("alert_radius_km")
    try:
        radius_ok = int(radius) in ALLOWED_RADII_KM and float(radius) == int(radius)
    except (TypeError, ValueError):
        radius_ok = False
    if not radius_ok:
        raise ValidationError("alert_radius_km must be 1, 5, 10, or 25")

    for field_name in ("quiet_hours_start", "quiet_hours_end"):
        value = settings.get(field_name)
        if value in (None, ""):
            continue
        if not isinstance(value, str) or not _TIME_RE.match(value):
            raise ValidationError(f"{field_name} must be in HH:MM format")

    for field_name in ("rainbow_alerts", "likes", "comments", "system"):
        if not isinstance(settings.get(field_name), bool):
            raise ValidationError(f"{field_name} must be true or false")

    tz_name = settings.get("timezone")
    try:
        ZoneInfo(str(tz_name))
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise ValidationError(f"Unknown timezone: {tz_name}")


def merge_update(stored: Optional[Mapping[str, Any]], changes: Mapping[str, Any]) -> UserAlertPreferences:
    """Validated preferences after applying `changes` on top of `stored`."""
    merged = {**DEFAULT_NOTIFICATION_SETTINGS, **(stored or {}), **normalize_update(changes)}
    for field_name in ("quiet_hours_start", "quiet_hours_end"):
        if merged[field_name] == "":
            merged[field_name] = None
    validate(merged)
    merged["alert_radius_km"] = int(merged["alert_radius_km"])
    return UserAlertPreferences.from_stored(merged)
