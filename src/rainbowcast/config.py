# src/rainbowcast/config.py
"""
Runtime configuration for rainbowcast.

Everything is read from environment variables (a local .env file is loaded
first when present). Call get_settings() instead of reading os.environ directly
so that tests can swap values with reset_settings().
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_TRUTHY = {"1", "true", "yes", "y"}


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str]
    log_level: str

    # weather / radar providers
    openweathermap_api_key: Optional[str]
    weather_api_base_url: str
    radar_api_base_url: str
    weather_api_timeout: float

    # cache store for throttle markers and map queries
    cache_backend: str

    # bounded concurrency
    capture_concurrency: int
    push_concurrency: int

    # push transports
    fcm_project_id: Optional[str]
    fcm_credentials_path: Optional[str]  # service-account JSON
    apns_key_path: Optional[str]  # AuthKey_<key id>.p8
    apns_key_id: Optional[str]
    apns_team_id: Optional[str]
    apns_topic: Optional[str]
    apns_use_sandbox: bool

    # background work
    monitor_self_schedule: bool
    worker_poll_interval: float

    # http
    app_title: str
    app_version: str
    cors_origins: tuple[str, ...]
    host: str
    port: int

    @property
    def fcm_configured(self) -> bool:
        return bool(self.fcm_project_id and self.fcm_credentials_path)

    @property
    def apns_configured(self) -> bool:
        return bool(self.apns_key_path and self.apns_key_id and self.apns_team_id and self.apns_topic)


def load_settings() -> Settings:
    """Build a Settings snapshot from the current environment."""
    load_dotenv()
    origins = os.getenv("CORS_ORIGINS", "*").split(",")
    return Settings(
        database_url=_env_optional("DATABASE_URL"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        openweathermap_api_key=_env_optional("OPENWEATHERMAP_API_KEY"),
        weather_api_base_url=os.getenv("WEATHER_API_BASE_URL", "https://api.openweathermap.org/data/3.0"),
        radar_api_base_url=os.getenv("RADAR_API_BASE_URL", "https://api.rainviewer.com"),
        weather_api_timeout=float(os.getenv("WEATHER_API_TIMEOUT", "10")),
        cache_backend=os.getenv("CACHE_BACKEND", "database").strip().lower(),
        capture_concurrency=int(os.getenv("CAPTURE_CONCURRENCY", "4")),
        push_concurrency=int(os.getenv("PUSH_CONCURRENCY", "8")),
        fcm_project_id=_env_optional("FCM_PROJECT_ID"),
        fcm_credentials_path=_env_optional("FCM_CREDENTIALS_PATH"),
        apns_key_path=_env_optional("APNS_KEY_PATH"),
        apns_key_id=_env_optional("APNS_KEY_ID"),
        apns_team_id=_env_optional("APNS_TEAM_ID"),
        apns_topic=_env_optional("APNS_TOPIC"),
        apns_use_sandbox=_env_bool("APNS_USE_SANDBOX"),
        monitor_self_schedule=_env_bool("MONITOR_SELF_SCHEDULE"),
        worker_poll_interval=float(os.getenv("WORKER_POLL_INTERVAL", "5")),
        app_title=os.getenv("APP_TITLE", "Rainbowcast API"),
        app_version=os.getenv("APP_VERSION", "0.1.0"),
        cors_origins=tuple(o.strip() for o in origins if o.strip()),
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def reset_settings() -> None:
    """Forget the cached Settings (next get_settings() re-reads the environment)."""
    get_settings.cache_clear()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or get_settings().log_level,
        format=LOG_FORMAT,
    )
