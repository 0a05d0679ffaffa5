"""
Thin client for the external weather and radar services.

Weather comes from the OpenWeatherMap One Call 3.0 API, radar frames from
RainViewer. Every call carries its own timeout and failures are raised as typed
errors:

- ConfigurationError: missing API key, 401/403. Never retry.
- TransientApiError / RateLimitError: timeout, transport failure, 5xx, 429.
- ApiError: any other unusable response.

Nothing is cached here; callers decide what to keep.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from .errors import ApiError, ConfigurationError, RateLimitError, TransientApiError
from .timeutils import as_utc

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_UNITS = "metric"  # Celsius, m/s
ONECALL_ENDPOINT = "/onecall"
TIMEMACHINE_ENDPOINT = "/onecall/timemachine"
RADAR_MAPS_ENDPOINT = "/public/weather-maps.json"

RADAR_ZOOM = 10
RADAR_TILE_SIZE = 256
RADAR_COLOR_SCHEME = 1
RADAR_OPTIONS = "1_1"  # smooth, show snow
RADAR_RADIUS_M = 50_000


@dataclass(frozen=True)
class WeatherSnapshot:
    """One normalized observation. Missing provider fields stay None."""

    observed_at: datetime
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    weather_code: Optional[int] = None
    weather_description: Optional[str] = None
    wind_speed: Optional[float] = None
    wind_direction: Optional[float] = None
    wind_gust: Optional[float] = None
    rain_1h: Optional[float] = None
    snow_1h: Optional[float] = None
    cloud_cover: Optional[float] = None
    visibility: Optional[float] = None


@dataclass(frozen=True)
class RadarSnapshot:
    timestamp: datetime
    latitude: float
    longitude: float
    zoom: int
    tile_x: int
    tile_y: int
    tile_url: str
    radius_m: int = RADAR_RADIUS_M
    precipitation_intensity: Optional[float] = None
    movement_direction: Optional[float] = None
    movement_speed: Optional[float] = None


def lat_lng_to_tile(lat: float, lng: float, zoom: int) -> tuple[int, int]:
    """Web-mercator slippy-map tile containing (lat, lng)."""
    n = 2 ** zoom
    x = int((lng + 180.0) / 360.0 * n)
    lat_rad = math.radians(lat)
    y = int((1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n)
    return min(max(x, 0), n - 1), min(max(y, 0), n - 1)


def _from_unix(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _parse_observation(block: dict) -> WeatherSnapshot:
    weather = (block.get("weather") or [{}])[0]
    return WeatherSnapshot(
        observed_at=_from_unix(block.get("dt")),
        temperature=block.get("temp"),
        humidity=block.get("humidity"),
        pressure=block.get("pressure"),
        weather_code=weather.get("id"),
        weather_description=weather.get("description"),
        wind_speed=block.get("wind_speed"),
        wind_direction=block.get("wind_deg"),
        wind_gust=block.get("wind_gust"),
        rain_1h=(block.get("rain") or {}).get("1h"),
        snow_1h=(block.get("snow") or {}).get("1h"),
        cloud_cover=block.get("clouds"),
        visibility=block.get("visibility"),
    )


class WeatherDataGateway:
    def __init__(
        self,
        api_key: Optional[str],
        weather_base_url: str = "https://api.openweathermap.org/data/3.0",
        radar_base_url: str = "https://api.rainviewer.com",
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.weather_base_url = weather_base_url.rstrip("/")
        self.radar_base_url = radar_base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Weather
    # ------------------------------------------------------------------

    def current_weather(self, lat: float, lng: float) -> WeatherSnapshot:
        params = {
            "lat": lat,
            "lon": lng,
            "appid": self._require_key(),
            "units": DEFAULT_UNITS,
            "exclude": "minutely,hourly,daily,alerts",
        }
        data = self._get_json(self.weather_base_url + ONECALL_ENDPOINT, params)
        current = data.get("current")
        if not current:
            raise ApiError("Weather response has no 'current' block")
        return _parse_observation(current)

    def historical_weather(self, lat: float, lng: float, timestamp: datetime) -> WeatherSnapshot:
        params = {
            "lat": lat,
            "lon": lng,
            "dt": int(as_utc(timestamp).timestamp()),
            "appid": self._require_key(),
            "units": DEFAULT_UNITS,
        }
        data = self._get_json(self.weather_base_url + TIMEMACHINE_ENDPOINT, params)
        blocks = data.get("data") or []
        if not blocks:
            raise ApiError(f"No historical weather for {timestamp.isoformat()}")
        return _parse_observation(blocks[0])

    # ------------------------------------------------------------------
    # Radar
    # ------------------------------------------------------------------

    def radar_at(self, lat: float, lng: float, timestamp: datetime) -> RadarSnapshot:
        """Closest past RainViewer frame to timestamp, as a tile reference."""
        data = self._get_json(self.radar_base_url + RADAR_MAPS_ENDPOINT, None)
        frames = (data.get("radar") or {}).get("past") or []
        if not frames:
            raise ApiError("No radar data available")

        target = as_utc(timestamp).timestamp()
        frame = min(frames, key=lambda f: abs(int(f["time"]) - target))

        x, y = lat_lng_to_tile(lat, lng, RADAR_ZOOM)
        host = data.get("host") or "https://tilecache.rainviewer.com"
        tile_url = (
            f"{host}{frame['path']}/{RADAR_TILE_SIZE}/{RADAR_ZOOM}/{x}/{y}"
            f"/{RADAR_COLOR_SCHEME}/{RADAR_OPTIONS}.png"
        )
        return RadarSnapshot(
            timestamp=_from_unix(frame["time"]),
            latitude=lat,
            longitude=lng,
            zoom=RADAR_ZOOM,
            tile_x=x,
            tile_y=y,
            tile_url=tile_url,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("OpenWeatherMap API key is required (set OPENWEATHERMAP_API_KEY)")
        return self.api_key

    def _get_json(self, url: str, params: Optional[dict]) -> dict:
        try:
            resp = self._client.get(url, params=params, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise TransientApiError(f"Timeout calling {url}") from exc
        except httpx.TransportError as exc:
            raise TransientApiError(f"Transport error calling {url}: {exc}") from exc

        status = resp.status_code
        if status == 200:
            try:
                return resp.json()
            except ValueError as exc:
                raise ApiError(f"Expected JSON from {url}", status_code=status) from exc
        if status in (401, 403):
            raise ConfigurationError(f"Weather provider rejected credentials (HTTP {status})")
        if status == 429:
            raise RateLimitError("API rate limit exceeded", status_code=status)
        if status >= 500:
            raise TransientApiError(f"Server error: {status}", status_code=status)

        logger.warning("[WeatherDataGateway] HTTP %s from %s: %s", status, url, resp.text[:200])
        raise ApiError(f"Client error: {status}", status_code=status)
