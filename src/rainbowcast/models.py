# src/rainbowcast/models.py
from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .db import Base
from .timeutils import utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    display_name = Column(String(100), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    # raw preference map; see preferences.DEFAULT_NOTIFICATION_SETTINGS
    notification_settings = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Sighting(Base):
    __tablename__ = "sightings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    captured_at = Column(DateTime(timezone=True), nullable=True, index=True)
    title = Column(String(200), nullable=True)
    thumbnail_url = Column(String, nullable=True)
    is_visible = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_sightings_lat_lng", "latitude", "longitude"),
    )


class RadarSample(Base):
    __tablename__ = "radar_samples"

    id = Column(Integer, primary_key=True, index=True)
    sighting_id = Column(Integer, ForeignKey("sightings.id", ondelete="CASCADE"), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    center_latitude = Column(Float, nullable=False)
    center_longitude = Column(Float, nullable=False)
    radius_m = Column(Integer, nullable=False)
    tile_url = Column(String, nullable=True)

    precipitation_intensity = Column(Float, nullable=True)
    movement_direction = Column(Float, nullable=True)
    movement_speed = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("sighting_id", "timestamp", name="uq_radar_sighting_timestamp"),
    )


class WeatherSample(Base):
    __tablename__ = "weather_samples"

    id = Column(Integer, primary_key=True, index=True)
    sighting_id = Column(Integer, ForeignKey("sightings.id", ondelete="CASCADE"), nullable=False, index=True)
    # rounded to the 30 minute grid
    timestamp = Column(DateTime(timezone=True), nullable=False)

    temperature = Column(Float, nullable=True)
    humidity = Column(Float, nullable=True)
    pressure = Column(Float, nullable=True)
    weather_code = Column(String(10), nullable=True)
    weather_description = Column(String, nullable=True)
    wind_speed = Column(Float, nullable=True)
    wind_direction = Column(Float, nullable=True)
    wind_gust = Column(Float, nullable=True)
    precipitation = Column(Float, nullable=True)
    precipitation_type = Column(String(20), nullable=True)
    cloud_cover = Column(Float, nullable=True)
    visibility = Column(Float, nullable=True)
    sun_azimuth = Column(Float, nullable=True)
    sun_altitude = Column(Float, nullable=True)

    radar_sample_id = Column(Integer, ForeignKey("radar_samples.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (
        UniqueConstraint("sighting_id", "timestamp", name="uq_weather_sighting_timestamp"),
        Index("ix_weather_sighting_timestamp", "sighting_id", "timestamp"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    notification_type = Column(String(20), nullable=False)
    title = Column(String(200), nullable=True)
    body = Column(String(1000), nullable=True)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class DeviceEndpoint(Base):
    __tablename__ = "device_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    platform = Column(String(10), nullable=False)  # "ios" | "android"
    token = Column(String, nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    queue = Column(String(50), nullable=False, default="default")
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    run_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_jobs_status_run_at", "status", "run_at"),
    )


class CacheEntry(Base):
    __tablename__ = "cache_entries"

    key = Column(String(255), primary_key=True)
    value = Column(JSON, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
