"""
src/rainbowcast/main.py

FastAPI entry point for the rainbowcast API.

Features:
- Weather / radar history per sighting (capture runs in the job worker)
- Map markers, density clusters and heatmap over visible sightings
- Regional statistics, trends, weather correlations and region comparison
- Notification preferences, inbox and read flags
- Manual trigger for the rainbow monitoring scan
- Errors returned as {"error": {"code", "message"}}
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date as DateType
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from . import capture, jobs, services
from .analysis import AnalysisEngine, Period, parse_region_ids
from .config import configure_logging, get_settings
from .db import ensure_tables_exist, get_db
from .errors import (
    ApiError,
    ConfigurationError,
    NotFoundError,
    RainbowcastError,
    TransientApiError,
    ValidationError,
)
from .geo import Bounds, GeospatialQueryEngine, MapFilters
from .models import User
from .monitoring import SCAN_JOB
from .notifications import AlertDispatcher


# -------------------------------------------------
# Logging configuration
# -------------------------------------------------
logger = logging.getLogger("rainbowcast.api")
configure_logging()

settings = get_settings()


# -------------------------------------------------
# Service dependencies (overridable in tests)
# -------------------------------------------------
def get_geo_engine() -> GeospatialQueryEngine:
    return services.build_geo_engine()


def get_dispatcher() -> AlertDispatcher:
    return services.build_dispatcher()


def get_analysis_engine() -> AnalysisEngine:
    return services.build_analysis_engine()


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


# -------------------------------------------------
# Application lifespan (startup / shutdown)
# -------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables once at startup (safe to repeat)."""
    try:
        logger.info("[startup] Ensuring tables exist...")
        ensure_tables_exist()
        logger.info("[startup] Database ready.")
    except Exception:
        logger.exception("[startup] Database setup failed.")
        raise

    yield

    logger.info("[shutdown] Application shutting down.")


# -------------------------------------------------
# FastAPI app instance
# -------------------------------------------------
app = FastAPI(
    title=settings.app_title,
    version=settings.app_version,
    lifespan=lifespan,
)


# -------------------------------------------------
# CORS (development-friendly defaults)
# -------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------------------------------------
# Error mapping
# -------------------------------------------------
def _status_for(exc: RainbowcastError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, (ConfigurationError, TransientApiError)):
        return 503
    if isinstance(exc, ApiError):
        return 502
    return 500


@app.exception_handler(RainbowcastError)
async def rainbowcast_error_handler(request: Request, exc: RainbowcastError):
    status = _status_for(exc)
    if status >= 500:
        logger.error("[api] %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status,
        content={"error": {"code": exc.code, "message": str(exc)}},
    )


# -------------------------------------------------
# Meta endpoints
# -------------------------------------------------
@app.get("/", tags=["meta"])
def root():
    return {"status": "ok", "docs": "/docs"}


@app.get("/health", tags=["meta"])
def health():
    return {"status": "healthy"}


# -------------------------------------------------
# Sighting weather
# -------------------------------------------------
@app.get("/api/v1/sightings/{sighting_id}/weather", tags=["weather"])
def sighting_weather(sighting_id: int, db: Session = Depends(get_db)):
    return capture.get_weather_for_sighting(db, sighting_id)


@app.post("/api/v1/sightings/{sighting_id}/weather/fetch", status_code=202, tags=["weather"])
def fetch_sighting_weather(sighting_id: int, db: Session = Depends(get_db)):
    job = capture.on_sighting_created(db, sighting_id)
    return {"job_id": job.id, "status": "queued"}


# -------------------------------------------------
# Maps
# -------------------------------------------------
def map_bounds(
    sw_lat: float = Query(...),
    sw_lng: float = Query(...),
    ne_lat: float = Query(...),
    ne_lng: float = Query(...),
) -> Bounds:
    return Bounds(sw_lat=sw_lat, sw_lng=sw_lng, ne_lat=ne_lat, ne_lng=ne_lng)


def map_filters(
    start_date: Optional[DateType] = Query(None),
    end_date: Optional[DateType] = Query(None),
    user_id: Optional[int] = Query(None),
) -> MapFilters:
    return MapFilters(start_date=start_date, end_date=end_date, user_id=user_id)


@app.get("/api/v1/maps/markers", tags=["maps"])
def map_markers(
    limit: Optional[int] = Query(None),
    bounds: Bounds = Depends(map_bounds),
    filters: MapFilters = Depends(map_filters),
    engine: GeospatialQueryEngine = Depends(get_geo_engine),
    db: Session = Depends(get_db),
):
    return engine.markers(db, bounds, filters, limit)


@app.get("/api/v1/maps/clusters", tags=["maps"])
def map_clusters(
    cluster_distance: Optional[float] = Query(None, gt=0),
    min_points: Optional[int] = Query(None, ge=1),
    bounds: Bounds = Depends(map_bounds),
    filters: MapFilters = Depends(map_filters),
    engine: GeospatialQueryEngine = Depends(get_geo_engine),
    db: Session = Depends(get_db),
):
    return engine.clusters(db, bounds, filters, cluster_distance, min_points)


@app.get("/api/v1/maps/heatmap", tags=["maps"])
def map_heatmap(
    grid_size: Optional[float] = Query(None, gt=0),
    bounds: Bounds = Depends(map_bounds),
    filters: MapFilters = Depends(map_filters),
    engine: GeospatialQueryEngine = Depends(get_geo_engine),
    db: Session = Depends(get_db),
):
    return engine.heatmap(db, bounds, filters, grid_size)


# -------------------------------------------------
# Statistics
# -------------------------------------------------
def stats_period(
    start_date: Optional[DateType] = Query(None),
    end_date: Optional[DateType] = Query(None),
) -> Period:
    return Period(start_date=start_date, end_date=end_date)


@app.get("/api/v1/statistics/regions", tags=["statistics"])
def statistics_regions(engine: AnalysisEngine = Depends(get_analysis_engine)):
    return engine.list_regions()


@app.get("/api/v1/statistics/region/{region_id}", tags=["statistics"])
def statistics_region(
    region_id: str,
    lat: Optional[float] = Query(None),
    lng: Optional[float] = Query(None),
    radius: Optional[float] = Query(None),
    period: Period = Depends(stats_period),
    engine: AnalysisEngine = Depends(get_analysis_engine),
    db: Session = Depends(get_db),
):
    return engine.region_stats(db, region_id, period, lat=lat, lng=lng, radius_m=radius)


@app.get("/api/v1/statistics/trends", tags=["statistics"])
def statistics_trends(
    group_by: str = Query("month"),
    region_id: Optional[str] = Query(None),
    period: Period = Depends(stats_period),
    engine: AnalysisEngine = Depends(get_analysis_engine),
    db: Session = Depends(get_db),
):
    return engine.trends(db, period, group_by=group_by, region_id=region_id)


@app.get("/api/v1/statistics/weather", tags=["statistics"])
def statistics_weather(
    region_id: Optional[str] = Query(None),
    period: Period = Depends(stats_period),
    engine: AnalysisEngine = Depends(get_analysis_engine),
    db: Session = Depends(get_db),
):
    return engine.weather_correlations(db, period, region_id=region_id)


@app.get("/api/v1/statistics/compare", tags=["statistics"])
def statistics_compare(
    region_ids: List[str] = Query([]),
    period: Period = Depends(stats_period),
    engine: AnalysisEngine = Depends(get_analysis_engine),
    db: Session = Depends(get_db),
):
    return engine.compare_regions(db, parse_region_ids(region_ids), period)


# -------------------------------------------------
# Notification settings
# -------------------------------------------------
class NotificationSettingsUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rainbow_alerts: Optional[bool] = Field(None, alias="rainbowAlerts")
    likes: Optional[bool] = None
    comments: Optional[bool] = None
    system: Optional[bool] = None
    alert_radius_km: Optional[int] = Field(None, alias="alertRadiusKm")
    quiet_hours_start: Optional[str] = Field(None, alias="quietHoursStart")
    quiet_hours_end: Optional[str] = Field(None, alias="quietHoursEnd")
    timezone: Optional[str] = None


class MarkReadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    notification_ids: Optional[List[int]] = Field(None, alias="notificationIds")


@app.get("/api/v1/users/{user_id}/notification-settings", tags=["notifications"])
def read_notification_settings(
    user_id: int,
    db: Session = Depends(get_db),
    dispatcher: AlertDispatcher = Depends(get_dispatcher),
):
    user = get_user_or_404(db, user_id)
    return {"settings": dispatcher.get_settings(user).to_camel()}


@app.put("/api/v1/users/{user_id}/notification-settings", tags=["notifications"])
def write_notification_settings(
    user_id: int,
    payload: NotificationSettingsUpdate,
    db: Session = Depends(get_db),
    dispatcher: AlertDispatcher = Depends(get_dispatcher),
):
    user = get_user_or_404(db, user_id)
    prefs = dispatcher.update_settings(db, user, payload.model_dump(exclude_unset=True))
    return {"settings": prefs.to_camel()}


# -------------------------------------------------
# Notification inbox
# -------------------------------------------------
@app.get("/api/v1/users/{user_id}/notifications", tags=["notifications"])
def list_notifications(
    user_id: int,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    filter_name: Optional[str] = Query(None, alias="filter"),
    db: Session = Depends(get_db),
    dispatcher: AlertDispatcher = Depends(get_dispatcher),
):
    user = get_user_or_404(db, user_id)
    return dispatcher.list_for_user(db, user, page=page, per_page=per_page, filter_name=filter_name)


@app.post("/api/v1/users/{user_id}/notifications/mark-read", tags=["notifications"])
def mark_notifications_read(
    user_id: int,
    payload: Optional[MarkReadRequest] = None,
    db: Session = Depends(get_db),
    dispatcher: AlertDispatcher = Depends(get_dispatcher),
):
    user = get_user_or_404(db, user_id)
    ids = payload.notification_ids if payload else None
    return {"markedCount": dispatcher.mark_as_read(db, user, ids)}


# -------------------------------------------------
# Monitoring
# -------------------------------------------------
@app.post("/api/v1/monitoring/scan", status_code=202, tags=["monitoring"])
def trigger_scan(db: Session = Depends(get_db)):
    job = jobs.enqueue(db, SCAN_JOB, {})
    db.commit()
    return {"job_id": job.id, "status": "queued"}


# -------------------------------------------------
# Local development entrypoint
# -------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "rainbowcast.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )
