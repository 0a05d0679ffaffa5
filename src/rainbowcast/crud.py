"""
src/rainbowcast/crud.py

Query and write helpers shared by the services.

Writes that must be idempotent (weather and radar samples) go through an
INSERT ... ON CONFLICT DO UPDATE so replayed jobs never duplicate rows.
Paginated readers return:
    (total, rows, total_pages, offset)
"""

from __future__ import annotations  # forward refs

from datetime import datetime  # timestamp filters
from math import ceil  # compute total pages
from typing import Any, Dict, List, Optional, Sequence, Tuple  # typing

from sqlalchemy import func, select, update  # SQLAlchemy core
from sqlalchemy.dialects import postgresql, sqlite  # dialect inserts with ON CONFLICT
from sqlalchemy.orm import Session  # DB session

from .models import DeviceEndpoint, Notification, RadarSample, Sighting, WeatherSample  # ORM models


def _insert_for(session: Session, model):
    """Pick the INSERT construct that supports ON CONFLICT for the bound dialect."""
    dialect = session.get_bind().dialect.name  # "postgresql" / "sqlite"
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Upsert not supported on dialect {dialect!r}")


def upsert(session: Session, model, rows: Sequence[Dict[str, Any]], index_elements: List[str]) -> int:
    """
    Insert rows, updating the non-key columns of rows that already exist.

    Only the columns present in the row dicts are updated, so columns written
    elsewhere (e.g. the radar back-link) survive a replay.
    """
    if not rows:  # nothing to write
        return 0

    stmt = _insert_for(session, model).values(list(rows))  # bulk insert values
    update_cols = [c for c in rows[0].keys() if c not in index_elements]  # everything but the natural key
    if update_cols:
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={c: stmt.excluded[c] for c in update_cols},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)

    result = session.execute(stmt)  # execute the statement
    return max(result.rowcount or 0, 0)  # normalize None/-1 to 0


def upsert_weather_samples(session: Session, rows: Sequence[Dict[str, Any]]) -> int:
    return upsert(session, WeatherSample, rows, ["sighting_id", "timestamp"])


def upsert_radar_sample(session: Session, row: Dict[str, Any]) -> int:
    """Upsert one radar sample and return its id."""
    upsert(session, RadarSample, [row], ["sighting_id", "timestamp"])
    return session.execute(
        select(RadarSample.id).where(
            RadarSample.sighting_id == row["sighting_id"],
            RadarSample.timestamp == row["timestamp"],
        )
    ).scalar_one()


def link_radar_sample(session: Session, sighting_id: int, timestamp: datetime, radar_sample_id: int) -> int:
    """Point the weather sample at (sighting_id, timestamp) to a radar sample."""
    result = session.execute(
        update(WeatherSample)
        .where(WeatherSample.sighting_id == sighting_id, WeatherSample.timestamp == timestamp)
        .values(radar_sample_id=radar_sample_id)
    )
    return max(result.rowcount or 0, 0)


def count_weather_samples(session: Session, sighting_id: int) -> int:
    return session.execute(
        select(func.count()).select_from(WeatherSample).where(WeatherSample.sighting_id == sighting_id)
    ).scalar_one()


def list_weather_samples(session: Session, sighting_id: int) -> List[WeatherSample]:
    q = select(WeatherSample).where(WeatherSample.sighting_id == sighting_id)
    return list(session.scalars(q.order_by(WeatherSample.timestamp.asc())))  # chronological


def list_radar_samples(session: Session, sighting_id: int) -> List[RadarSample]:
    q = select(RadarSample).where(RadarSample.sighting_id == sighting_id)
    return list(session.scalars(q.order_by(RadarSample.timestamp.asc())))


def latest_sighting_location(session: Session, user_id: int) -> Optional[Tuple[float, float]]:
    """User's last known position: the location of their most recent sighting."""
    row = session.execute(
        select(Sighting.latitude, Sighting.longitude)
        .where(
            Sighting.user_id == user_id,
            Sighting.latitude.is_not(None),
            Sighting.longitude.is_not(None),
        )
        .order_by(Sighting.created_at.desc(), Sighting.id.desc())
        .limit(1)
    ).first()
    if row is None:  # no located sighting yet
        return None
    return float(row.latitude), float(row.longitude)


def active_devices(session: Session, user_id: int) -> List[DeviceEndpoint]:
    q = select(DeviceEndpoint).where(DeviceEndpoint.user_id == user_id, DeviceEndpoint.is_active.is_(True))
    return list(session.scalars(q.order_by(DeviceEndpoint.id.asc())))


NOTIFICATION_FILTERS = {
    "unread": lambda q: q.where(Notification.is_read.is_(False)),
    "rainbow_alerts": lambda q: q.where(Notification.notification_type == "rainbow_alert"),
    "social": lambda q: q.where(Notification.notification_type.in_(["like", "comment"])),
    "system": lambda q: q.where(Notification.notification_type == "system"),
}


def get_notifications(
    session: Session,  # database session
    user_id: int,  # recipient
    page: int,  # 1-indexed page number
    page_size: int,  # rows per page
    filter_name: Optional[str] = None,  # optional filter (see NOTIFICATION_FILTERS)
) -> Tuple[int, List[Notification], int, int]:
    """
    Fetch paginated notifications for one user, newest first.
    """
    q = select(Notification).where(Notification.user_id == user_id)  # start query on Notification

    if filter_name in NOTIFICATION_FILTERS:  # apply filter if recognised
        q = NOTIFICATION_FILTERS[filter_name](q)

    total = session.execute(select(func.count()).select_from(q.subquery())).scalar_one()  # total rows
    total_pages = ceil(total / page_size) if page_size else 0  # compute total pages
    offset = (page - 1) * page_size  # compute offset for pagination

    q = q.order_by(Notification.created_at.desc(), Notification.id.desc())  # newest first
    rows = list(session.scalars(q.offset(offset).limit(page_size)))  # fetch paginated rows
    return total, rows, total_pages, offset  # return pagination tuple


def count_unread(session: Session, user_id: int) -> int:
    return session.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
    ).scalar_one()


def mark_notifications_read(session: Session, user_id: int, notification_ids: Optional[List[int]] = None) -> int:
    stmt = update(Notification).where(Notification.user_id == user_id, Notification.is_read.is_(False))
    if notification_ids:  # only the listed ids
        stmt = stmt.where(Notification.id.in_(notification_ids))
    result = session.execute(stmt.values(is_read=True))
    return max(result.rowcount or 0, 0)
