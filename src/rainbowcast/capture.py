"""
Weather history capture for a sighting.

For every sighting with a location and capture time we record the weather on a
30 minute grid from 3 h before to 3 h after the capture (13 points), plus one
radar frame at the capture time. Rows are upserted on
(sighting_id, rounded timestamp) so replaying the job never duplicates data.

Failure handling:
- a per-point ApiError is logged and the point skipped,
- a ConfigurationError aborts the whole capture,
- if nothing at all was stored and some point failed transiently the capture
  raises TransientApiError so the job queue retries it.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from . import crud, jobs
from .errors import ApiError, ConfigurationError, NotFoundError, TransientApiError
from .models import Job, RadarSample, Sighting, WeatherSample
from .sun import sun_position
from .timeutils import as_utc, round_to_grid, time_grid, utcnow
from .weather_gateway import WeatherDataGateway, WeatherSnapshot

logger = logging.getLogger(__name__)

RANGE_HOURS = 3
INTERVAL_MINUTES = 30
CURRENT_WEATHER_WINDOW = timedelta(minutes=5)  # later than now - 5 min -> live reading
CAPTURE_JOB = "capture_weather"


@dataclass
class CaptureReport:
    sighting_id: int
    requested: int = 0
    stored: int = 0
    failed: int = 0
    transient_failures: int = 0
    radar_stored: bool = False
    skipped_reason: Optional[str] = None


def precipitation_type(weather_code: Optional[int]) -> Optional[str]:
    """Coarse precipitation class from an OpenWeatherMap condition id."""
    if weather_code is None:
        return None
    group = int(weather_code) // 100
    return {
        2: "thunderstorm",
        3: "drizzle",
        5: "rain",
        6: "snow",
        7: "atmosphere",
    }.get(group)


def _sample_row(sighting_id: int, point: datetime, snapshot: WeatherSnapshot, lat: float, lng: float) -> dict:
    timestamp = round_to_grid(point)
    sun = sun_position(lat, lng, timestamp)
    return {
        "sighting_id": sighting_id,
        "timestamp": timestamp,
        "temperature": snapshot.temperature,
        "humidity": snapshot.humidity,
        "pressure": snapshot.pressure,
        "weather_code": str(snapshot.weather_code) if snapshot.weather_code is not None else None,
        "weather_description": snapshot.weather_description,
        "wind_speed": snapshot.wind_speed,
        "wind_direction": snapshot.wind_direction,
        "wind_gust": snapshot.wind_gust,
        "precipitation": snapshot.rain_1h or snapshot.snow_1h or 0.0,
        "precipitation_type": precipitation_type(snapshot.weather_code),
        "cloud_cover": snapshot.cloud_cover,
        "visibility": snapshot.visibility,
        "sun_azimuth": sun.azimuth_deg,
        "sun_altitude": sun.altitude_deg,
    }


class WeatherCaptureCoordinator:
    def __init__(
        self,
        gateway: WeatherDataGateway,
        max_workers: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.max_workers = max(1, max_workers)
        self.clock = clock

    def capture(self, session: Session, sighting_id: int) -> CaptureReport:
        sighting = session.get(Sighting, sighting_id)
        if sighting is None:
            raise NotFoundError(f"Sighting {sighting_id} not found")

        report = CaptureReport(sighting_id=sighting_id)
        if sighting.latitude is None or sighting.longitude is None or sighting.captured_at is None:
            logger.warning("[Capture] Skipping sighting %s: missing location or capture time", sighting_id)
            report.skipped_reason = "missing_location_or_time"
            return report

        lat, lng = float(sighting.latitude), float(sighting.longitude)
        captured_at = as_utc(sighting.captured_at)
        points = time_grid(captured_at, RANGE_HOURS, INTERVAL_MINUTES)
        report.requested = len(points)

        logger.info("[Capture] Fetching %s weather points for sighting %s", len(points), sighting_id)
        rows = []
        for point, snapshot, error in self._fetch_points(lat, lng, points):
            if error is not None:
                report.failed += 1
                if isinstance(error, TransientApiError):
                    report.transient_failures += 1
                logger.warning("[Capture] Failed to fetch weather at %s: %s", point.isoformat(), error)
                continue
            rows.append(_sample_row(sighting_id, point, snapshot, lat, lng))

        crud.upsert_weather_samples(session, rows)
        session.commit()
        report.stored = len(rows)
        logger.info("[Capture] Saved %s/%s weather points for sighting %s", report.stored, report.requested, sighting_id)

        report.radar_stored = self._capture_radar(session, sighting_id, lat, lng, captured_at)

        if report.stored == 0 and report.transient_failures > 0:
            raise TransientApiError(
                f"No weather stored for sighting {sighting_id} "
                f"({report.transient_failures} transient failures)"
            )
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fetch_one(self, lat: float, lng: float, point: datetime) -> WeatherSnapshot:
        if point > self.clock() - CURRENT_WEATHER_WINDOW:
            return self.gateway.current_weather(lat, lng)
        return self.gateway.historical_weather(lat, lng, point)

    def _fetch_points(self, lat: float, lng: float, points: list[datetime]):
        """Yield (point, snapshot, error) in grid order. ConfigurationError propagates."""
        results: dict[datetime, tuple[Optional[WeatherSnapshot], Optional[ApiError]]] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(self._fetch_one, lat, lng, p): p for p in points}
            for future in as_completed(futures):
                point = futures[future]
                try:
                    results[point] = (future.result(), None)
                except ConfigurationError:
                    for pending in futures:
                        pending.cancel()
                    raise
                except ApiError as exc:
                    results[point] = (None, exc)
        for point in points:
            snapshot, error = results[point]
            yield point, snapshot, error

    def _capture_radar(self, session: Session, sighting_id: int, lat: float, lng: float, captured_at: datetime) -> bool:
        try:
            radar = self.gateway.radar_at(lat, lng, captured_at)
        except ApiError as exc:
            logger.warning("[Capture] Failed to fetch radar for sighting %s: %s", sighting_id, exc)
            return False

        radar_id = crud.upsert_radar_sample(session, {
            "sighting_id": sighting_id,
            "timestamp": radar.timestamp,
            "center_latitude": lat,
            "center_longitude": lng,
            "radius_m": radar.radius_m,
            "tile_url": radar.tile_url,
            "precipitation_intensity": radar.precipitation_intensity,
            "movement_direction": radar.movement_direction,
            "movement_speed": radar.movement_speed,
        })
        crud.link_radar_sample(session, sighting_id, round_to_grid(captured_at), radar_id)
        session.commit()
        logger.debug("[Capture] Saved radar frame %s for sighting %s", radar.timestamp.isoformat(), sighting_id)
        return True


# ----------------------------------------------------------------------
# Entry points used by the HTTP layer and the job handlers
# ----------------------------------------------------------------------

def on_sighting_created(session: Session, sighting_id: int) -> Job:
    """Queue the weather capture for a freshly created sighting."""
    if session.get(Sighting, sighting_id) is None:
        raise NotFoundError(f"Sighting {sighting_id} not found")
    row = jobs.enqueue(session, CAPTURE_JOB, {"sighting_id": sighting_id})
    session.commit()
    return row


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def weather_sample_to_dict(sample: WeatherSample) -> dict[str, Any]:
    return {
        "id": sample.id,
        "timestamp": _iso(sample.timestamp),
        "temperature": sample.temperature,
        "humidity": sample.humidity,
        "pressure": sample.pressure,
        "weather_code": sample.weather_code,
        "weather_description": sample.weather_description,
        "wind_speed": sample.wind_speed,
        "wind_direction": sample.wind_direction,
        "wind_gust": sample.wind_gust,
        "precipitation": sample.precipitation,
        "precipitation_type": sample.precipitation_type,
        "cloud_cover": sample.cloud_cover,
        "visibility": sample.visibility,
        "sun_azimuth": sample.sun_azimuth,
        "sun_altitude": sample.sun_altitude,
        "radar_sample_id": sample.radar_sample_id,
    }


def radar_sample_to_dict(sample: RadarSample) -> dict[str, Any]:
    return {
        "id": sample.id,
        "timestamp": _iso(sample.timestamp),
        "center_latitude": sample.center_latitude,
        "center_longitude": sample.center_longitude,
        "radius_m": sample.radius_m,
        "tile_url": sample.tile_url,
        "precipitation_intensity": sample.precipitation_intensity,
        "movement_direction": sample.movement_direction,
        "movement_speed": sample.movement_speed,
    }


def get_weather_for_sighting(session: Session, sighting_id: int) -> dict[str, Any]:
    """Stored weather and radar history, oldest first. Missing values are None."""
    if session.get(Sighting, sighting_id) is None:
        raise NotFoundError(f"Sighting {sighting_id} not found")
    return {
        "sighting_id": sighting_id,
        "weather_samples": [weather_sample_to_dict(s) for s in crud.list_weather_samples(session, sighting_id)],
        "radar_samples": [radar_sample_to_dict(r) for r in crud.list_radar_samples(session, sighting_id)],
    }
