"""
Shared helpers and factory functions for the rainbowcast tests.
Import from this module in each test file to avoid duplication.
"""

from __future__ import annotations

import itertools
import threading
import unittest
from datetime import datetime, timedelta, timezone
from typing import Optional

from rainbowcast.db import Base, SessionLocal, engine
from rainbowcast.errors import ApiError
from rainbowcast.models import DeviceEndpoint, Sighting, User
from rainbowcast.push import SendResult
from rainbowcast.sun import SunPosition
from rainbowcast.weather_gateway import RadarSnapshot, WeatherSnapshot

# Shiojiri, Daimon district
DAIMON = (36.115, 137.954)
TOKYO_STATION = (35.6812, 139.7671)

_token_ids = itertools.count(1)


def utc(year, month, day, hour=0, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class DatabaseTestCase(unittest.TestCase):
    """Fresh schema per test on the shared in-memory SQLite engine."""

    def setUp(self):
        Base.metadata.drop_all(bind=engine)
        Base.metadata.create_all(bind=engine)
        self.session = SessionLocal()

    def tearDown(self):
        self.session.close()


def make_user(session, display_name: str = "rainbow fan", settings: Optional[dict] = None, **kwargs) -> User:
    user = User(display_name=display_name, notification_settings=settings, **kwargs)
    session.add(user)
    session.commit()
    return user


def make_sighting(
    session,
    user: User,
    lat: Optional[float] = DAIMON[0],
    lng: Optional[float] = DAIMON[1],
    captured_at: Optional[datetime] = None,
    **kwargs,
) -> Sighting:
    sighting = Sighting(
        user_id=user.id,
        latitude=lat,
        longitude=lng,
        captured_at=captured_at if captured_at is not None else utc(2024, 6, 21, 8, 0),
        **kwargs,
    )
    session.add(sighting)
    session.commit()
    return sighting


def make_device(session, user: User, platform: str = "android", token: Optional[str] = None, is_active: bool = True) -> DeviceEndpoint:
    device = DeviceEndpoint(
        user_id=user.id,
        platform=platform,
        token=token or f"{platform}-token-{next(_token_ids)}",
        is_active=is_active,
    )
    session.add(device)
    session.commit()
    return device


def make_snapshot(observed_at: Optional[datetime] = None, **kwargs) -> WeatherSnapshot:
    defaults = dict(
        observed_at=observed_at or utc(2024, 6, 21, 8, 0),
        temperature=21.5,
        humidity=85,
        pressure=1008,
        weather_code=500,
        weather_description="light rain",
        wind_speed=3.2,
        wind_direction=220,
        wind_gust=None,
        rain_1h=0.4,
        snow_1h=None,
        cloud_cover=50,
        visibility=9000,
    )
    defaults.update(kwargs)
    return WeatherSnapshot(**defaults)


def make_sun(azimuth: float = 90.0, altitude: float = 25.0) -> SunPosition:
    return SunPosition(azimuth_deg=azimuth, altitude_deg=altitude)


class FakeGateway:
    """
    Stand-in for WeatherDataGateway.

    `failures` maps a timestamp to the exception raised for it; `fail_all`
    raises for every weather call.
    """

    def __init__(self, failures=None, fail_all: Optional[Exception] = None, radar_error: Optional[Exception] = None):
        self.failures = dict(failures or {})
        self.fail_all = fail_all
        self.radar_error = radar_error
        self.current_calls = []
        self.historical_calls = []
        self.radar_calls = []
        self.closed = False
        self._lock = threading.Lock()

    def current_weather(self, lat, lng):
        with self._lock:
            self.current_calls.append((lat, lng))
        if self.fail_all is not None:
            raise self.fail_all
        return make_snapshot()

    def historical_weather(self, lat, lng, timestamp):
        with self._lock:
            self.historical_calls.append(timestamp)
        if self.fail_all is not None:
            raise self.fail_all
        if timestamp in self.failures:
            raise self.failures[timestamp]
        return make_snapshot(observed_at=timestamp)

    def radar_at(self, lat, lng, timestamp):
        self.radar_calls.append(timestamp)
        if self.radar_error is not None:
            raise self.radar_error
        return RadarSnapshot(
            timestamp=timestamp - timedelta(minutes=3),
            latitude=lat,
            longitude=lng,
            zoom=10,
            tile_x=904,
            tile_y=403,
            tile_url="https://tilecache.rainviewer.com/v2/radar/1718956800/256/10/904/403/1/1_1.png",
        )

    def close(self):
        self.closed = True


class FakeSender:
    def __init__(self, platform: str = "android", error: Optional[Exception] = None, fail_tokens=()):
        self.platform = platform
        self.error = error
        self.fail_tokens = set(fail_tokens)
        self.sent = []
        self._lock = threading.Lock()

    def send(self, token, title, body, data):
        with self._lock:
            self.sent.append((token, title, body, data))
        if self.error is not None:
            raise self.error
        if token in self.fail_tokens:
            return SendResult(token, False, "HTTP 410: Unregistered", self.platform)
        return SendResult(token, True, platform=self.platform)


def api_error(message: str = "boom") -> ApiError:
    return ApiError(message, status_code=400)
