"""
Periodic scan of the fixed monitoring points for rainbow-friendly weather.

Intended cadence is every 15 minutes, triggered from outside (cron running
`rainbowcast scan`, or anything that enqueues the scan job). Each location is
alerted at most once per 2 h through a cache marker written as soon as the
location is found favorable. Markers are not locks: two overlapping scans can
both alert.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import jobs
from .cache import Cache
from .evaluator import RainbowAssessment, RainbowConditionEvaluator
from .models import User
from .notifications import AlertDispatcher, AlertSummary
from .timeutils import utcnow

logger = logging.getLogger(__name__)

SCAN_INTERVAL = timedelta(minutes=15)
LOCATION_THROTTLE = timedelta(hours=2)
LOCATION_THROTTLE_PREFIX = "rainbow_alert:location"
SCAN_JOB = "scan_rainbow_conditions"

DEFAULT_DURATION_MIN = 15
MIN_DURATION_MIN = 10
MAX_DURATION_MIN = 45


@dataclass(frozen=True)
class MonitoringLocation:
    id: str
    name: str
    lat: float
    lng: float


MONITORING_LOCATIONS = (
    MonitoringLocation("daimon", "大門地区", 36.115, 137.954),
    MonitoringLocation("shiojiri_central", "塩尻市中心部", 36.116, 137.949),
    MonitoringLocation("hirooka", "広丘地区", 36.135, 137.975),
    MonitoringLocation("katasegawa", "片瀬川地区", 36.080, 137.920),
    MonitoringLocation("narai", "奈良井地区", 35.972, 137.809),
)


@dataclass
class FavorableLocation:
    location: MonitoringLocation
    assessment: RainbowAssessment
    estimated_duration: int
    weather_summary: str


@dataclass
class ScanReport:
    checked: list[str] = field(default_factory=list)
    throttled: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    favorable: list[FavorableLocation] = field(default_factory=list)
    alerts: dict[str, AlertSummary] = field(default_factory=dict)


def location_throttle_key(location_id: str) -> str:
    return f"{LOCATION_THROTTLE_PREFIX}:{location_id}"


def estimate_duration(assessment: RainbowAssessment) -> int:
    """Expected viewing window in minutes, within [10, 45]."""
    minutes = DEFAULT_DURATION_MIN
    if assessment.score >= 80:
        minutes += 10
    elif assessment.score >= 70:
        minutes += 5
    if assessment.factor_favorable("precipitation"):
        minutes += 5
    sun_altitude = assessment.sun_altitude if assessment.sun_altitude is not None else 20
    if sun_altitude < 20:
        minutes += 5
    return max(MIN_DURATION_MIN, min(MAX_DURATION_MIN, minutes))


def describe_cloud_cover(cloud_cover: float) -> str:
    if cloud_cover <= 25:
        return "晴れ"
    if cloud_cover <= 50:
        return "晴れ時々曇り"
    if cloud_cover <= 75:
        return "曇り時々晴れ"
    return "曇り"


def build_weather_summary(assessment: RainbowAssessment) -> str:
    parts = []
    humidity = assessment.factors.get("humidity")
    if humidity is not None and humidity.value is not None:
        parts.append(f"湿度{humidity.value:g}%")
    cloud = assessment.factors.get("cloud_cover")
    if cloud is not None and cloud.value is not None:
        parts.append(describe_cloud_cover(cloud.value))
    if assessment.factor_favorable("precipitation"):
        parts.append("雨上がり")
    return "、".join(parts)


class MonitoringScheduler:
    def __init__(
        self,
        evaluator: RainbowConditionEvaluator,
        dispatcher: AlertDispatcher,
        cache: Cache,
        locations: tuple[MonitoringLocation, ...] = MONITORING_LOCATIONS,
        self_schedule: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.cache = cache
        self.locations = locations
        self.self_schedule = self_schedule
        self.clock = clock

    def scan(self, session: Session, now: Optional[datetime] = None) -> ScanReport:
        now = now or self.clock()
        report = ScanReport()
        logger.info("[Monitor] Starting rainbow condition check (%s locations)", len(self.locations))

        for location in self.locations:
            try:
                if self.cache.exists(location_throttle_key(location.id)):
                    report.throttled.append(location.id)
                    continue
                assessment = self.evaluator.evaluate(location.lat, location.lng, now)
                report.checked.append(location.id)
                if assessment.is_favorable:
                    self.cache.set(location_throttle_key(location.id), int(now.timestamp()), LOCATION_THROTTLE)
            except Exception as exc:
                report.errors[location.id] = str(exc)
                logger.error("[Monitor] Error checking location %s: %s", location.id, exc)
                continue

            if assessment.is_favorable:
                report.favorable.append(FavorableLocation(
                    location=location,
                    assessment=assessment,
                    estimated_duration=estimate_duration(assessment),
                    weather_summary=build_weather_summary(assessment),
                ))

        if report.favorable:
            logger.info("[Monitor] Found %s favorable locations", len(report.favorable))
            self._send_alerts(session, report)

        if self.self_schedule:
            self.schedule_next(session, now)

        logger.info("[Monitor] Completed rainbow condition check")
        return report

    def schedule_next(self, session: Session, now: datetime) -> bool:
        """Fallback for deployments without an external trigger."""
        if jobs.has_pending(session, SCAN_JOB):
            return False
        jobs.enqueue(session, SCAN_JOB, {}, run_at=now + SCAN_INTERVAL)
        session.commit()
        return True

    def _send_alerts(self, session: Session, report: ScanReport) -> None:
        users = list(session.scalars(select(User).where(User.is_active.is_(True)).order_by(User.id)))
        for favorable in report.favorable:
            location = favorable.location
            try:
                summary = self.dispatcher.send_rainbow_alert(
                    session,
                    users,
                    (location.lat, location.lng),
                    favorable.assessment.direction.cardinal,
                    favorable.assessment.score / 100.0,
                    estimated_duration=favorable.estimated_duration,
                    weather_summary=favorable.weather_summary,
                )
            except Exception as exc:
                session.rollback()
                report.errors[location.id] = str(exc)
                logger.error("[Monitor] Failed to send alert for %s: %s", location.name, exc)
                continue
            report.alerts[location.id] = summary
            logger.info(
                "[Monitor] Alert sent for %s: sent=%s, skipped=%s, failed=%s",
                location.name, summary.sent, summary.skipped, summary.failed,
            )
