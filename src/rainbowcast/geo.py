"""
Map queries over visible sightings: markers, density clusters and heatmaps.

All three share one filter builder (bounding box, capture date range, owner,
visibility) and one cache-aside layer with a 5 minute TTL. Distances given in
meters are turned into degrees with the flat 111 km per degree approximation,
which is what the map clients expect at city scale.

Heatmap cells are counted by the database. Clustering runs in Python on at
most MAX_CLUSTER_POINTS of the newest sightings, with a grid index so each
point is only compared against its neighbouring cells.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

import numpy as np
from sqlalchemy import func, literal_column, select
from sqlalchemy.orm import Session

from .cache import Cache, fetch
from .errors import ValidationError
from .models import Sighting
from .timeutils import as_utc

logger = logging.getLogger(__name__)

DEFAULT_MARKER_LIMIT = 500
MAX_MARKER_LIMIT = 2000
DEFAULT_CLUSTER_DISTANCE_M = 500.0
DEFAULT_MIN_POINTS = 2
DEFAULT_GRID_SIZE_M = 100.0
# clustering keeps the newest points, the heatmap the busiest cells
MAX_CLUSTER_POINTS = 5000
MAX_HEATMAP_CELLS = 5000
METERS_PER_DEGREE = 111_000.0
CACHE_TTL = timedelta(minutes=5)
CACHE_PREFIX = "geo/v1"


@dataclass(frozen=True)
class Bounds:
    sw_lat: float
    sw_lng: float
    ne_lat: float
    ne_lng: float

    def __post_init__(self):
        if not (-90 <= self.sw_lat <= 90 and -90 <= self.ne_lat <= 90):
            raise ValidationError("Latitude must be between -90 and 90")
        if not (-180 <= self.sw_lng <= 180 and -180 <= self.ne_lng <= 180):
            raise ValidationError("Longitude must be between -180 and 180")
        if self.sw_lat > self.ne_lat or self.sw_lng > self.ne_lng:
            raise ValidationError("South-west corner must be below and left of north-east corner")

    def to_dict(self) -> dict[str, float]:
        return {"sw_lat": self.sw_lat, "sw_lng": self.sw_lng, "ne_lat": self.ne_lat, "ne_lng": self.ne_lng}


@dataclass(frozen=True)
class MapFilters:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    user_id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "user_id": self.user_id,
        }


def sanitize_limit(limit: Optional[int]) -> int:
    limit = int(limit or 0)
    if limit <= 0:
        limit = DEFAULT_MARKER_LIMIT
    return min(limit, MAX_MARKER_LIMIT)


def meters_to_degrees(meters: float) -> float:
    return float(meters) / METERS_PER_DEGREE


def cache_key(kind: str, bounds: Bounds, filters: MapFilters, *extra: Any) -> str:
    digest = hashlib.md5(json.dumps(filters.to_dict(), sort_keys=True).encode("utf-8")).hexdigest()
    parts = [
        CACHE_PREFIX,
        kind,
        ",".join(f"{v:.4f}" for v in bounds.to_dict().values()),
        digest,
        "_".join(str(e) for e in extra),
    ]
    return "/".join(parts)


def filtered_query(bounds: Bounds, filters: MapFilters):
    """Visible sightings inside bounds matching the optional filters."""
    q = select(Sighting).where(
        Sighting.is_visible.is_(True),
        Sighting.latitude.is_not(None),
        Sighting.longitude.is_not(None),
        Sighting.latitude.between(bounds.sw_lat, bounds.ne_lat),
        Sighting.longitude.between(bounds.sw_lng, bounds.ne_lng),
    )
    if filters.start_date:
        q = q.where(Sighting.captured_at >= datetime.combine(filters.start_date, time.min, tzinfo=timezone.utc))
    if filters.end_date:
        # whole end day included
        end = datetime.combine(filters.end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        q = q.where(Sighting.captured_at < end)
    if filters.user_id is not None:
        q = q.where(Sighting.user_id == filters.user_id)
    return q


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def _neighborhoods(points: np.ndarray, eps: float) -> list[np.ndarray]:
    """
    Indices within eps of each row, in ascending order.

    Rows are bucketed into eps-sized cells so each row only measures against
    the 3x3 block of cells around it instead of every other row.
    """
    cells = np.floor(points / eps).astype(np.int64)
    buckets: dict[tuple[int, int], list[int]] = defaultdict(list)
    for i, (cy, cx) in enumerate(cells):
        buckets[(int(cy), int(cx))].append(i)

    neighbors = []
    for i, (cy, cx) in enumerate(cells):
        candidates = sorted(
            j
            for dy in (-1, 0, 1)
            for dx in (-1, 0, 1)
            for j in buckets.get((int(cy) + dy, int(cx) + dx), ())
        )
        idx = np.array(candidates, dtype=int)
        dist = np.hypot(points[idx, 0] - points[i, 0], points[idx, 1] - points[i, 1])
        neighbors.append(idx[dist <= eps])
    return neighbors


def dbscan(points: np.ndarray, eps: float, min_points: int) -> np.ndarray:
    """
    Density clustering of (lat, lng) rows with planar distance in degrees.

    Returns one label per row: 0, 1, ... for clusters, -1 for noise. A point is
    a core point when at least min_points rows (itself included) lie within eps.
    """
    n = len(points)
    labels = np.full(n, -1, dtype=int)
    if n == 0:
        return labels

    neighbors = _neighborhoods(points, eps)
    core = np.array([len(nb) >= min_points for nb in neighbors])

    cluster = 0
    for i in range(n):
        if labels[i] != -1 or not core[i]:
            continue
        labels[i] = cluster
        stack = [i]
        while stack:
            j = stack.pop()
            for k in neighbors[j]:
                if labels[k] == -1:
                    labels[k] = cluster
                    if core[k]:
                        stack.append(k)
        cluster += 1
    return labels


def cell_center(cell: float, step: float) -> float:
    """Degrees of a grid cell index produced by round(value / step)."""
    return round(float(cell) * step, 6)


class GeospatialQueryEngine:
    def __init__(self, cache: Cache) -> None:
        self.cache = cache

    # ------------------------------------------------------------------
    # Markers
    # ------------------------------------------------------------------

    def markers(self, session: Session, bounds: Bounds, filters: Optional[MapFilters] = None, limit: Optional[int] = None) -> dict:
        filters = filters or MapFilters()
        limit = sanitize_limit(limit)

        def compute() -> dict:
            q = filtered_query(bounds, filters)
            total = session.execute(select(func.count()).select_from(q.subquery())).scalar_one()
            rows = session.scalars(q.order_by(Sighting.captured_at.desc(), Sighting.id.desc()).limit(limit))
            return {
                "markers": [
                    {
                        "id": s.id,
                        "latitude": s.latitude,
                        "longitude": s.longitude,
                        "title": s.title,
                        "thumbnailUrl": s.thumbnail_url,
                        "capturedAt": _iso(s.captured_at),
                    }
                    for s in rows
                ],
                "totalCount": total,
                "bounds": bounds.to_dict(),
            }

        return fetch(self.cache, cache_key("markers", bounds, filters, limit), CACHE_TTL, compute)

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    def clusters(
        self,
        session: Session,
        bounds: Bounds,
        filters: Optional[MapFilters] = None,
        cluster_distance_m: Optional[float] = None,
        min_points: Optional[int] = None,
    ) -> dict:
        filters = filters or MapFilters()
        distance = float(cluster_distance_m or DEFAULT_CLUSTER_DISTANCE_M)
        min_points = int(min_points or DEFAULT_MIN_POINTS)
        if distance <= 0 or min_points < 1:
            raise ValidationError("cluster_distance must be positive and min_points at least 1")

        def compute() -> dict:
            q = filtered_query(bounds, filters)
            total = session.execute(select(func.count()).select_from(q.subquery())).scalar_one()
            rows = session.execute(
                q.with_only_columns(Sighting.id, Sighting.latitude, Sighting.longitude, Sighting.captured_at)
                .order_by(Sighting.captured_at.desc(), Sighting.id.desc())
                .limit(MAX_CLUSTER_POINTS)
            ).all()
            if total > len(rows):
                logger.info("[Geo] clustering newest %s of %s sightings", len(rows), total)
            rows.sort(key=lambda r: r.id)
            points = np.array([[r.latitude, r.longitude] for r in rows], dtype=float).reshape(-1, 2)
            labels = dbscan(points, meters_to_degrees(distance), min_points)

            groups: dict[int, list] = {}
            noise = []
            for row, label in zip(rows, labels):
                if label < 0:
                    noise.append(row)
                else:
                    groups.setdefault(int(label), []).append(row)

            clusters = []
            for label, members in groups.items():
                captured = [as_utc(m.captured_at) for m in members if m.captured_at is not None]
                clusters.append({
                    "id": f"cluster_{label}",
                    "latitude": float(np.mean([m.latitude for m in members])),
                    "longitude": float(np.mean([m.longitude for m in members])),
                    "count": len(members),
                    "sightingIds": [m.id for m in members],
                    "earliestCapture": min(captured).isoformat() if captured else None,
                    "latestCapture": max(captured).isoformat() if captured else None,
                    "isCluster": len(members) > 1,
                })
            clusters.sort(key=lambda c: -c["count"])

            for row in noise:
                clusters.append({
                    "id": f"unclustered_{row.id}",
                    "latitude": row.latitude,
                    "longitude": row.longitude,
                    "count": 1,
                    "sightingIds": [row.id],
                    "earliestCapture": _iso(row.captured_at),
                    "latestCapture": _iso(row.captured_at),
                    "isCluster": False,
                })

            return {
                "clusters": clusters,
                "totalSightings": total,
                "clusteredSightings": len(rows),
                "truncated": total > len(rows),
                "totalClusters": len(groups),
                "unclusteredCount": len(noise),
                "bounds": bounds.to_dict(),
            }

        key = cache_key("clusters", bounds, filters, distance, min_points)
        return fetch(self.cache, key, CACHE_TTL, compute)

    # ------------------------------------------------------------------
    # Heatmap
    # ------------------------------------------------------------------

    def heatmap(self, session: Session, bounds: Bounds, filters: Optional[MapFilters] = None, grid_size_m: Optional[float] = None) -> dict:
        filters = filters or MapFilters()
        grid_size = float(grid_size_m or DEFAULT_GRID_SIZE_M)
        if grid_size <= 0:
            raise ValidationError("grid_size must be positive")

        def compute() -> dict:
            step = meters_to_degrees(grid_size)
            visible = filtered_query(bounds, filters).subquery()
            # inline, so GROUP BY repeats the SELECT expression verbatim
            divisor = literal_column(repr(step))
            lat_cell = func.round(visible.c.latitude / divisor).label("lat_cell")
            lng_cell = func.round(visible.c.longitude / divisor).label("lng_cell")
            hits = func.count().label("hits")
            total = session.execute(select(func.count()).select_from(visible)).scalar_one()
            rows = session.execute(
                select(lat_cell, lng_cell, hits)
                .group_by(lat_cell, lng_cell)
                .order_by(hits.desc(), lat_cell, lng_cell)
                .limit(MAX_HEATMAP_CELLS)
            ).all()
            max_count = rows[0].hits if rows else 1
            points = [
                {
                    "latitude": cell_center(r.lat_cell, step),
                    "longitude": cell_center(r.lng_cell, step),
                    "intensity": round(r.hits / max_count, 3),
                    "count": r.hits,
                }
                for r in rows
            ]
            return {
                "heatmapPoints": points,
                "maxIntensity": 1.0,
                "maxCount": max_count,
                "totalSightings": total,
                "bounds": bounds.to_dict(),
            }

        return fetch(self.cache, cache_key("heatmap", bounds, filters, grid_size), CACHE_TTL, compute)
