"""
Statistics over accumulated sightings and their weather samples.

Four read-only views, each cached for 30 minutes on the shared cache-aside
layer:

- region_stats: counts, weather averages and time-of-day distribution for a
  predefined region (or a custom circle)
- trends: sightings per day / week / month / year with a rising / falling
  summary
- weather_correlations: what the weather looked like around sightings
- compare_regions: region_stats side by side with rankings

Grouping and aggregation happen in SQL. Hours and calendar buckets are taken
in Japan local time, which has no daylight saving, so SQLite can use a fixed
+9 hour shift where PostgreSQL converts with AT TIME ZONE.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import Integer, case, cast, extract, func, literal_column, select
from sqlalchemy.orm import Session

from .cache import Cache, fetch
from .errors import ValidationError
from .models import Sighting, WeatherSample
from .timeutils import as_utc

logger = logging.getLogger(__name__)

CACHE_TTL = timedelta(minutes=30)
CACHE_PREFIX = "analysis/v1"
METERS_PER_DEGREE = 111_000.0

LOCAL_TZ = "Asia/Tokyo"
SQLITE_LOCAL_SHIFT = "+9 hours"

GROUP_BY_OPTIONS = ("day", "week", "month", "year")
DEFAULT_GROUP_BY = "month"

# SQLite date() modifiers that truncate a local timestamp to its bucket start
SQLITE_BUCKET_MODIFIERS = {
    "day": (),
    "week": ("weekday 0", "-6 days"),  # back to Monday
    "month": ("start of month",),
    "year": ("start of year",),
}

MORNING_HOURS = range(6, 12)
AFTERNOON_HOURS = range(12, 18)
EVENING_HOURS = range(18, 21)

# primary bow altitudes, degrees
FAVORABLE_SUN_ALTITUDE = (10.0, 42.0)
TREND_THRESHOLD_PCT = 10.0
TOP_WEATHER_CODES = 5
CUSTOM_REGION_ID = "custom"


@dataclass(frozen=True)
class Region:
    id: str
    name: str
    lat: float
    lng: float
    radius_m: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "center": {"lat": self.lat, "lng": self.lng},
            "radius": self.radius_m,
        }


REGIONS = (
    Region("daimon", "大門地区", 36.115, 137.954, 3000.0),
    Region("shiojiri_central", "塩尻市中心部", 36.116, 137.949, 5000.0),
    Region("shiojiri_city", "塩尻市全域", 36.100, 137.950, 15000.0),
)
REGIONS_BY_ID = {r.id: r for r in REGIONS}


@dataclass(frozen=True)
class Period:
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def __post_init__(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValidationError("start_date must not be after end_date")

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
        }

    def clauses(self, column) -> list:
        """Whole days in UTC; the end day is included."""
        out = []
        if self.start_date:
            out.append(column >= datetime.combine(self.start_date, time.min, tzinfo=timezone.utc))
        if self.end_date:
            out.append(column < datetime.combine(self.end_date + timedelta(days=1), time.min, tzinfo=timezone.utc))
        return out


def resolve_region(
    region_id: str,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius_m: Optional[float] = None,
) -> Region:
    if region_id == CUSTOM_REGION_ID:
        if lat is None or lng is None or radius_m is None:
            raise ValidationError("Custom region requires lat, lng and radius parameters")
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValidationError("Custom region center is out of range")
        if radius_m <= 0:
            raise ValidationError("Custom region radius must be positive")
        return Region(CUSTOM_REGION_ID, "カスタム領域", float(lat), float(lng), float(radius_m))
    region = REGIONS_BY_ID.get(region_id)
    if region is None:
        available = ", ".join(list(REGIONS_BY_ID) + [CUSTOM_REGION_ID])
        raise ValidationError(f"Unknown region: {region_id}. Available: {available}")
    return region


def within_region(region: Region) -> list:
    """
    Sightings inside the region circle.

    A bounding box first (served by the lat/lng index), then the flat-earth
    distance, which is accurate to well under 1 % at these radii.
    """
    lng_scale = METERS_PER_DEGREE * math.cos(math.radians(region.lat))
    dlat = region.radius_m / METERS_PER_DEGREE
    dlng = region.radius_m / lng_scale
    dy = (Sighting.latitude - region.lat) * METERS_PER_DEGREE
    dx = (Sighting.longitude - region.lng) * lng_scale
    return [
        Sighting.latitude.between(region.lat - dlat, region.lat + dlat),
        Sighting.longitude.between(region.lng - dlng, region.lng + dlng),
        dy * dy + dx * dx <= region.radius_m * region.radius_m,
    ]


def visible_sightings(region: Optional[Region], period: Period) -> list:
    where = [Sighting.is_visible.is_(True)]
    if region is not None:
        where += [Sighting.latitude.is_not(None), Sighting.longitude.is_not(None)]
        where += within_region(region)
    where += period.clauses(Sighting.captured_at)
    return where


def _dialect(session: Session) -> str:
    name = session.get_bind().dialect.name
    if name not in ("postgresql", "sqlite"):
        raise RuntimeError(f"Statistics not supported on dialect {name!r}")
    return name


def _const(value: str):
    """Inline string constant, so a GROUP BY repeats its SELECT expression verbatim."""
    return literal_column("'" + value + "'")


def local_hour(session: Session, column):
    if _dialect(session) == "postgresql":
        return cast(extract("hour", func.timezone(_const(LOCAL_TZ), column)), Integer)
    return cast(func.strftime(_const("%H"), column, _const(SQLITE_LOCAL_SHIFT)), Integer)


def local_bucket(session: Session, column, group_by: str):
    """Start of the local day / week / month / year containing column."""
    if _dialect(session) == "postgresql":
        return func.date_trunc(_const(group_by), func.timezone(_const(LOCAL_TZ), column))
    modifiers = [_const(m) for m in SQLITE_BUCKET_MODIFIERS[group_by]]
    return func.date(column, _const(SQLITE_LOCAL_SHIFT), *modifiers)


def _round(value, digits: int = 1) -> Optional[float]:
    return round(float(value), digits) if value is not None else None


def _pct(part: int, total: int) -> float:
    return round(part / total * 100.0, 1) if total else 0.0


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def months_spanned(start: date, end: date) -> int:
    return abs((end.year * 12 + end.month) - (start.year * 12 + start.month)) + 1


def trend_direction(counts: list[int]) -> str:
    """Compare the mean of the second half of the series against the first."""
    if len(counts) < 2:
        return "stable"
    half = len(counts) // 2
    first, second = counts[:half], counts[half:]
    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second)
    if first_avg == 0:
        return "stable"
    change = (second_avg - first_avg) / first_avg * 100.0
    if change > TREND_THRESHOLD_PCT:
        return "increasing"
    if change < -TREND_THRESHOLD_PCT:
        return "decreasing"
    return "stable"


def empty_stats() -> dict[str, Any]:
    return {
        "totalSightings": 0,
        "uniqueUsers": 0,
        "dateRange": None,
        "weather": {},
        "timeDistribution": {},
        "sightingsPerMonth": 0,
    }


def cache_key(kind: str, params: dict[str, Any]) -> str:
    digest = hashlib.md5(json.dumps(params, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f"{CACHE_PREFIX}/{kind}/{digest}"


def parse_region_ids(values: Iterable[str]) -> list[str]:
    """Accepts repeated values and comma-separated lists."""
    ids = []
    for value in values or ():
        ids.extend(part.strip() for part in str(value).split(",") if part.strip())
    return ids


class AnalysisEngine:
    def __init__(self, cache: Cache) -> None:
        self.cache = cache

    def list_regions(self) -> dict:
        return {"regions": [r.to_dict() for r in REGIONS]}

    # ------------------------------------------------------------------
    # Region statistics
    # ------------------------------------------------------------------

    def region_stats(
        self,
        session: Session,
        region_id: str,
        period: Optional[Period] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        radius_m: Optional[float] = None,
    ) -> dict:
        period = period or Period()
        region = resolve_region(region_id, lat, lng, radius_m)

        def compute() -> dict:
            return {
                "region": region.to_dict(),
                "period": period.to_dict(),
                "statistics": self._region_statistics(session, region, period),
            }

        key = cache_key("region_stats", {"region": region.to_dict(), "period": period.to_dict()})
        return fetch(self.cache, key, CACHE_TTL, compute)

    def _region_statistics(self, session: Session, region: Region, period: Period) -> dict:
        where = visible_sightings(region, period)
        totals = session.execute(
            select(
                func.count(Sighting.id).label("total"),
                func.count(func.distinct(Sighting.user_id)).label("users"),
                func.min(Sighting.captured_at).label("first"),
                func.max(Sighting.captured_at).label("last"),
            ).where(*where)
        ).one()
        if not totals.total:
            return empty_stats()

        return {
            "totalSightings": totals.total,
            "uniqueUsers": totals.users,
            "dateRange": {
                "firstSighting": _iso(totals.first),
                "lastSighting": _iso(totals.last),
            },
            "weather": self._weather_stats(session, where),
            "timeDistribution": self._time_stats(session, where),
            "sightingsPerMonth": self._monthly_average(totals, period),
        }

    def _weather_stats(self, session: Session, sighting_where: list) -> dict:
        scope = select(Sighting.id).where(*sighting_where)
        in_scope = WeatherSample.sighting_id.in_(scope)
        agg = session.execute(
            select(
                func.count(WeatherSample.id).label("samples"),
                func.avg(WeatherSample.temperature).label("temperature"),
                func.avg(WeatherSample.humidity).label("humidity"),
                func.avg(WeatherSample.cloud_cover).label("cloud_cover"),
                func.avg(WeatherSample.sun_altitude).label("sun_altitude"),
                func.sum(case((WeatherSample.precipitation > 0, 1), else_=0)).label("wet"),
            ).where(in_scope)
        ).one()
        if not agg.samples:
            return {}

        hits = func.count(WeatherSample.id).label("hits")
        codes = session.execute(
            select(WeatherSample.weather_code, hits)
            .where(in_scope, WeatherSample.weather_code.is_not(None))
            .group_by(WeatherSample.weather_code)
            .order_by(hits.desc(), WeatherSample.weather_code)
            .limit(TOP_WEATHER_CODES)
        ).all()
        return {
            "averageTemperature": _round(agg.temperature),
            "averageHumidity": _round(agg.humidity),
            "averageCloudCover": _round(agg.cloud_cover),
            "typicalSunAltitude": _round(agg.sun_altitude),
            "precipitationPresentRate": _pct(int(agg.wet or 0), agg.samples),
            "commonWeatherCodes": {str(r.weather_code): r.hits for r in codes},
        }

    def _time_stats(self, session: Session, sighting_where: list) -> dict:
        hour = local_hour(session, Sighting.captured_at).label("hour")
        rows = session.execute(
            select(hour, func.count(Sighting.id).label("hits"))
            .where(*sighting_where, Sighting.captured_at.is_not(None))
            .group_by(hour)
            .order_by(hour)
        ).all()
        by_hour = {int(r.hour): r.hits for r in rows}
        total = sum(by_hour.values())
        if not total:
            return {}

        # earliest hour wins a tie
        peak_hour = max(sorted(by_hour), key=lambda h: by_hour[h])
        return {
            "peakHour": peak_hour,
            "hourDistribution": {str(h): n for h, n in sorted(by_hour.items())},
            "morningRate": _pct(sum(n for h, n in by_hour.items() if h in MORNING_HOURS), total),
            "afternoonRate": _pct(sum(n for h, n in by_hour.items() if h in AFTERNOON_HOURS), total),
            "eveningRate": _pct(sum(n for h, n in by_hour.items() if h in EVENING_HOURS), total),
        }

    def _monthly_average(self, totals, period: Period) -> float:
        start = period.start_date or (as_utc(totals.first).date() if totals.first else None)
        end = period.end_date or (as_utc(totals.last).date() if totals.last else None)
        if start is None or end is None:
            return float(totals.total)
        return round(totals.total / months_spanned(start, end), 2)

    # ------------------------------------------------------------------
    # Trends
    # ------------------------------------------------------------------

    def trends(
        self,
        session: Session,
        period: Optional[Period] = None,
        group_by: Optional[str] = None,
        region_id: Optional[str] = None,
    ) -> dict:
        period = period or Period()
        group_by = group_by or DEFAULT_GROUP_BY
        if group_by not in GROUP_BY_OPTIONS:
            raise ValidationError(f"group_by must be one of {', '.join(GROUP_BY_OPTIONS)}")
        region = resolve_region(region_id) if region_id else None

        def compute() -> dict:
            bucket = local_bucket(session, Sighting.captured_at, group_by).label("bucket")
            rows = session.execute(
                select(bucket, func.count(Sighting.id).label("hits"))
                .where(*visible_sightings(region, period), Sighting.captured_at.is_not(None))
                .group_by(bucket)
                .order_by(bucket)
            ).all()
            series = [{"date": str(r.bucket)[:10], "count": r.hits} for r in rows]
            counts = [point["count"] for point in series]
            return {
                "period": period.to_dict(),
                "groupBy": group_by,
                "regionId": region_id,
                "trends": series,
                "summary": {
                    "total": sum(counts),
                    "average": round(sum(counts) / len(counts), 2) if counts else 0,
                    "max": max(counts, default=0),
                    "min": min(counts, default=0),
                    "trendDirection": trend_direction(counts),
                },
            }

        key = cache_key("trends", {"period": period.to_dict(), "group_by": group_by, "region": region_id})
        return fetch(self.cache, key, CACHE_TTL, compute)

    # ------------------------------------------------------------------
    # Weather correlations
    # ------------------------------------------------------------------

    def weather_correlations(self, session: Session, period: Optional[Period] = None, region_id: Optional[str] = None) -> dict:
        period = period or Period()
        region = resolve_region(region_id) if region_id else None

        def compute() -> dict:
            return {
                "period": period.to_dict(),
                "regionId": region_id,
                "correlations": self._correlations(session, region, period),
            }

        key = cache_key("weather", {"period": period.to_dict(), "region": region_id})
        return fetch(self.cache, key, CACHE_TTL, compute)

    def _correlations(self, session: Session, region: Optional[Region], period: Period) -> dict:
        # period applies to the sample time, region to the sighting
        scope = select(Sighting.id).where(*visible_sightings(region, Period()))
        where = [WeatherSample.sighting_id.in_(scope), *period.clauses(WeatherSample.timestamp)]
        low, high = FAVORABLE_SUN_ALTITUDE
        agg = session.execute(
            select(
                func.count(WeatherSample.id).label("samples"),
                func.sum(case((WeatherSample.sun_altitude.between(low, high), 1), else_=0)).label("favorable"),
                func.sum(case((WeatherSample.precipitation > 0, 1), else_=0)).label("wet"),
                func.min(WeatherSample.temperature).label("temp_min"),
                func.max(WeatherSample.temperature).label("temp_max"),
                func.avg(WeatherSample.temperature).label("temp_avg"),
                func.min(WeatherSample.humidity).label("hum_min"),
                func.max(WeatherSample.humidity).label("hum_max"),
                func.avg(WeatherSample.humidity).label("hum_avg"),
            ).where(*where)
        ).one()
        if not agg.samples:
            return {}

        hits = func.count(WeatherSample.id).label("hits")
        distribution = session.execute(
            select(WeatherSample.weather_code, hits)
            .where(*where)
            .group_by(WeatherSample.weather_code)
            .order_by(hits.desc(), WeatherSample.weather_code)
        ).all()
        wet = int(agg.wet or 0)
        return {
            "totalSamples": agg.samples,
            "weatherDistribution": {
                (str(r.weather_code) if r.weather_code is not None else "unknown"): r.hits
                for r in distribution
            },
            "favorableSunPositionRate": _pct(int(agg.favorable or 0), agg.samples),
            "temperatureRange": {
                "min": agg.temp_min,
                "max": agg.temp_max,
                "average": _round(agg.temp_avg),
            },
            "humidityRange": {
                "min": agg.hum_min,
                "max": agg.hum_max,
                "average": _round(agg.hum_avg),
            },
            "precipitationCorrelation": {
                "withPrecipitation": wet,
                "withoutPrecipitation": agg.samples - wet,
                "correlationRate": _pct(wet, agg.samples),
            },
        }

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def compare_regions(self, session: Session, region_ids: list[str], period: Optional[Period] = None) -> dict:
        period = period or Period()
        if not region_ids:
            raise ValidationError("At least one region_id is required")

        def compute() -> dict:
            regions = []
            for region_id in region_ids:
                if region_id not in REGIONS_BY_ID:
                    logger.info("[Analysis] skipping unknown region %s in comparison", region_id)
                    continue
                result = self.region_stats(session, region_id, period)
                regions.append({
                    "regionId": region_id,
                    "regionName": result["region"]["name"],
                    "statistics": result["statistics"],
                })
            return {
                "period": period.to_dict(),
                "regions": regions,
                "rankings": rankings(regions),
            }

        key = cache_key("compare", {"regions": sorted(region_ids), "period": period.to_dict()})
        return fetch(self.cache, key, CACHE_TTL, compute)


def rankings(regions: list[dict]) -> dict:
    if not regions:
        return {}

    def ranked(stat: str) -> list[dict]:
        ordered = sorted(regions, key=lambda r: -(r["statistics"].get(stat) or 0))
        return [{"regionId": r["regionId"], "value": r["statistics"].get(stat)} for r in ordered]

    return {
        "byTotalSightings": ranked("totalSightings"),
        "byMonthlyAverage": ranked("sightingsPerMonth"),
    }
