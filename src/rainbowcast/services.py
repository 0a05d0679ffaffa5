"""Builds the service objects from Settings. Shared by the API, the CLI and the job handlers."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from .analysis import AnalysisEngine
from .cache import Cache, build_cache
from .capture import WeatherCaptureCoordinator
from .config import Settings, get_settings
from .db import SessionLocal
from .evaluator import RainbowConditionEvaluator
from .geo import GeospatialQueryEngine
from .monitoring import MonitoringScheduler
from .notifications import AlertDispatcher
from .push import PushSender, build_senders
from .weather_gateway import WeatherDataGateway


@lru_cache(maxsize=1)
def get_cache() -> Cache:
    return build_cache(get_settings().cache_backend, SessionLocal)


@lru_cache(maxsize=1)
def get_senders() -> dict[str, PushSender]:
    """Process-wide senders, so minted push tokens are reused until they near expiry."""
    return build_senders(get_settings())


def build_gateway(settings: Optional[Settings] = None) -> WeatherDataGateway:
    settings = settings or get_settings()
    return WeatherDataGateway(
        api_key=settings.openweathermap_api_key,
        weather_base_url=settings.weather_api_base_url,
        radar_base_url=settings.radar_api_base_url,
        timeout=settings.weather_api_timeout,
    )


def build_coordinator(settings: Optional[Settings] = None) -> WeatherCaptureCoordinator:
    settings = settings or get_settings()
    return WeatherCaptureCoordinator(build_gateway(settings), max_workers=settings.capture_concurrency)


def build_dispatcher(settings: Optional[Settings] = None) -> AlertDispatcher:
    senders = build_senders(settings) if settings is not None else get_senders()
    settings = settings or get_settings()
    return AlertDispatcher(senders, get_cache(), max_workers=settings.push_concurrency)


def build_scheduler(settings: Optional[Settings] = None) -> MonitoringScheduler:
    dispatcher = build_dispatcher(settings)
    settings = settings or get_settings()
    return MonitoringScheduler(
        evaluator=RainbowConditionEvaluator(build_gateway(settings)),
        dispatcher=dispatcher,
        cache=get_cache(),
        self_schedule=settings.monitor_self_schedule,
    )


def build_geo_engine() -> GeospatialQueryEngine:
    return GeospatialQueryEngine(get_cache())


def build_analysis_engine() -> AnalysisEngine:
    return AnalysisEngine(get_cache())
