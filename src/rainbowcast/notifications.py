"""
Alert and notification fan-out.

AlertDispatcher decides whether a user should hear about something (quiet
hours, per-type opt-out, alert radius, rainbow throttle), records the in-app
Notification row and pushes to every active device of the user. Device
failures are counted in the returned PushResult, never raised.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.orm import Session

from . import crud, jobs, preferences
from .cache import Cache
from .errors import NotFoundError, ValidationError
from .models import Job, Notification, Sighting, User
from .preferences import UserAlertPreferences
from .push import PushSender, SendResult
from .timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

RAINBOW_ALERT_TITLE = "虹が見える可能性があります！"
RAINBOW_ALERT_THROTTLE = timedelta(hours=2)
USER_THROTTLE_PREFIX = "rainbow_alert:user"
DEFAULT_ALERT_VALIDITY_MINUTES = 30
COMMENT_PREVIEW_LENGTH = 50

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

SCHEDULED_NOTIFICATION_JOB = "deliver_scheduled_notification"

DIRECTIONS_JA = {
    "north": "北",
    "northeast": "北東",
    "east": "東",
    "southeast": "南東",
    "south": "南",
    "southwest": "南西",
    "west": "西",
    "northwest": "北西",
}


@dataclass
class PushResult:
    skipped: bool = False
    reason: Optional[str] = None  # "quiet_hours" | "disabled_by_user" | "self_action"
    notification_id: Optional[int] = None
    devices_sent: int = 0
    devices_failed: int = 0
    results: list[SendResult] = field(default_factory=list)


@dataclass
class AlertSummary:
    sent: int = 0
    skipped: int = 0
    failed: int = 0


def truncate_text(text: Optional[str], max_length: int) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[: max_length - 1] + "…"


def direction_to_japanese(direction: str) -> str:
    return DIRECTIONS_JA.get(str(direction).lower(), direction)


def build_rainbow_alert_body(
    direction: str,
    probability: float,
    estimated_duration: Optional[int] = None,
    weather_summary: Optional[str] = None,
) -> str:
    parts = [f"{direction_to_japanese(direction)}の空をご覧ください（確率{round(probability * 100)}%）"]
    if estimated_duration:
        parts.append(f"推定{estimated_duration}分間")
    if weather_summary:
        parts.append(weather_summary)
    return "。".join(parts)


def user_throttle_key(user_id: int) -> str:
    return f"{USER_THROTTLE_PREFIX}:{user_id}"


def serialize_notification(n: Notification) -> dict[str, Any]:
    return {
        "id": n.id,
        "type": n.notification_type,
        "title": n.title,
        "body": n.body,
        "data": n.data,
        "isRead": n.is_read,
        "createdAt": as_utc(n.created_at).isoformat(),
    }


class AlertDispatcher:
    def __init__(
        self,
        senders: dict[str, PushSender],
        cache: Cache,
        max_workers: int = 8,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.senders = senders
        self.cache = cache
        self.max_workers = max(1, max_workers)
        self.clock = clock

    # ------------------------------------------------------------------
    # Core push
    # ------------------------------------------------------------------

    def send_push_notification(
        self,
        session: Session,
        user: Optional[User],
        title: str,
        body: str,
        data: Optional[dict[str, Any]] = None,
        notification_type: str = "system",
        save_to_db: bool = True,
        skip_quiet_hours_check: bool = False,
    ) -> PushResult:
        if user is None:
            raise NotFoundError("User not found")
        prefs = UserAlertPreferences.from_stored(user.notification_settings)
        data = data or {}

        if not skip_quiet_hours_check and prefs.in_quiet_hours(self.clock()):
            logger.debug("[AlertDispatcher] user %s in quiet hours, skipping %s", user.id, notification_type)
            return PushResult(skipped=True, reason="quiet_hours")
        if not prefs.allows(notification_type):
            return PushResult(skipped=True, reason="disabled_by_user")

        result = PushResult()
        if save_to_db:
            row = Notification(
                user_id=user.id,
                notification_type=notification_type,
                title=title,
                body=body,
                data=data,
                is_read=False,
                created_at=self.clock(),
            )
            session.add(row)
            session.commit()
            result.notification_id = row.id

        result.results = self._send_to_devices(session, user, title, body, data)
        result.devices_sent = sum(1 for r in result.results if r.success)
        result.devices_failed = len(result.results) - result.devices_sent
        if result.devices_failed:
            logger.warning(
                "[AlertDispatcher] user %s: %s/%s device sends failed",
                user.id, result.devices_failed, len(result.results),
            )
        return result

    # ------------------------------------------------------------------
    # Rainbow alerts
    # ------------------------------------------------------------------

    def send_rainbow_alert(
        self,
        session: Session,
        users: Iterable[User],
        location: tuple[float, float],
        direction: str,
        probability: float,
        estimated_duration: Optional[int] = None,
        weather_summary: Optional[str] = None,
    ) -> AlertSummary:
        if not location or location[0] is None or location[1] is None:
            raise ValidationError("Location required")
        lat, lng = location

        body = build_rainbow_alert_body(direction, probability, estimated_duration, weather_summary)
        expires_at = self.clock() + timedelta(minutes=estimated_duration or DEFAULT_ALERT_VALIDITY_MINUTES)
        data = {
            "type": "rainbow_alert",
            "location": {"lat": lat, "lng": lng},
            "direction": direction,
            "probability": probability,
            "estimated_duration": estimated_duration,
            "expires_at": expires_at.isoformat(),
        }

        summary = AlertSummary()
        for user in users:
            try:
                if not self.within_alert_radius(session, user, lat, lng):
                    summary.skipped += 1
                    continue
                if self.cache.exists(user_throttle_key(user.id)):
                    summary.skipped += 1
                    continue

                result = self.send_push_notification(
                    session, user, RAINBOW_ALERT_TITLE, body, data, notification_type="rainbow_alert",
                )
                if result.skipped:
                    summary.skipped += 1
                    continue
                if result.results and not result.devices_sent:
                    # no device got it; leave the user open to the next alert
                    summary.failed += 1
                    continue
                self.cache.set(user_throttle_key(user.id), int(self.clock().timestamp()), RAINBOW_ALERT_THROTTLE)
                summary.sent += 1
            except Exception:
                session.rollback()
                summary.failed += 1
                logger.exception("[AlertDispatcher] rainbow alert to user %s failed", user.id)

        logger.info(
            "[AlertDispatcher] rainbow alert (%.3f, %.3f): sent=%s skipped=%s failed=%s",
            lat, lng, summary.sent, summary.skipped, summary.failed,
        )
        return summary

    def within_alert_radius(self, session: Session, user: User, lat: float, lng: float) -> bool:
        """Users with no known location are never filtered out."""
        user_location = crud.latest_sighting_location(session, user.id)
        if user_location is None:
            return True
        radius_km = UserAlertPreferences.from_stored(user.notification_settings).alert_radius_km
        distance = preferences.haversine_km(user_location[0], user_location[1], lat, lng)
        return distance <= float(radius_km)

    # ------------------------------------------------------------------
    # Social
    # ------------------------------------------------------------------

    def send_like_notification(self, session: Session, liker: Optional[User], sighting: Optional[Sighting]) -> PushResult:
        if liker is None:
            raise NotFoundError("Liker not found")
        if sighting is None:
            raise NotFoundError("Sighting not found")
        owner = session.get(User, sighting.user_id)
        if owner is None:
            raise NotFoundError("Sighting owner not found")
        if liker.id == owner.id:
            return PushResult(skipped=True, reason="self_action")

        data = {
            "type": "like",
            "liker_id": liker.id,
            "liker_name": liker.display_name,
            "sighting_id": sighting.id,
            "sighting_thumbnail_url": sighting.thumbnail_url,
        }
        return self.send_push_notification(
            session, owner, "いいね！", f"{liker.display_name}さんがあなたの写真にいいねしました",
            data, notification_type="like",
        )

    def send_comment_notification(
        self,
        session: Session,
        commenter: Optional[User],
        sighting: Optional[Sighting],
        comment_text: str,
        comment_id: Optional[int] = None,
    ) -> PushResult:
        if commenter is None:
            raise NotFoundError("Commenter not found")
        if sighting is None:
            raise NotFoundError("Sighting not found")
        owner = session.get(User, sighting.user_id)
        if owner is None:
            raise NotFoundError("Sighting owner not found")
        if commenter.id == owner.id:
            return PushResult(skipped=True, reason="self_action")

        preview = truncate_text(comment_text, COMMENT_PREVIEW_LENGTH)
        data = {
            "type": "comment",
            "commenter_id": commenter.id,
            "commenter_name": commenter.display_name,
            "sighting_id": sighting.id,
            "comment_id": comment_id,
            "comment_preview": preview,
            "sighting_thumbnail_url": sighting.thumbnail_url,
        }
        return self.send_push_notification(
            session, owner, "コメント", f"{commenter.display_name}さんがコメントしました: 「{preview}」",
            data, notification_type="comment",
        )

    # ------------------------------------------------------------------
    # Scheduling / inbox
    # ------------------------------------------------------------------

    def schedule_notification(
        self,
        session: Session,
        user: Optional[User],
        title: str,
        body: str,
        deliver_at: datetime,
        notification_type: str = "system",
        data: Optional[dict[str, Any]] = None,
    ) -> Job:
        if user is None:
            raise NotFoundError("User not found")
        deliver_at = as_utc(deliver_at)
        if deliver_at <= self.clock():
            raise ValidationError("deliver_at must be in the future")

        row = jobs.enqueue(
            session,
            SCHEDULED_NOTIFICATION_JOB,
            {
                "user_id": user.id,
                "title": title,
                "body": body,
                "notification_type": notification_type,
                "data": data or {},
            },
            run_at=deliver_at,
        )
        session.commit()
        return row

    def list_for_user(
        self,
        session: Session,
        user: Optional[User],
        page: int = 1,
        per_page: int = DEFAULT_PAGE_SIZE,
        filter_name: Optional[str] = None,
    ) -> dict[str, Any]:
        if user is None:
            raise NotFoundError("User not found")
        per_page = min(int(per_page), MAX_PAGE_SIZE)
        if per_page <= 0:
            per_page = DEFAULT_PAGE_SIZE
        page = max(int(page), 1)

        total, rows, total_pages, _ = crud.get_notifications(session, user.id, page, per_page, filter_name)
        return {
            "notifications": [serialize_notification(n) for n in rows],
            "pagination": {
                "currentPage": page,
                "perPage": per_page,
                "totalPages": total_pages,
                "totalCount": total,
            },
            "unreadCount": crud.count_unread(session, user.id),
        }

    def mark_as_read(self, session: Session, user: Optional[User], notification_ids: Optional[list[int]] = None) -> int:
        if user is None:
            raise NotFoundError("User not found")
        count = crud.mark_notifications_read(session, user.id, notification_ids)
        session.commit()
        return count

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def get_settings(self, user: Optional[User]) -> UserAlertPreferences:
        if user is None:
            raise NotFoundError("User not found")
        return UserAlertPreferences.from_stored(user.notification_settings)

    def update_settings(self, session: Session, user: Optional[User], changes: dict[str, Any]) -> UserAlertPreferences:
        if user is None:
            raise NotFoundError("User not found")
        prefs = preferences.merge_update(user.notification_settings, changes)
        user.notification_settings = prefs.to_dict()
        session.commit()
        return prefs

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _send_to_devices(self, session: Session, user: User, title: str, body: str, data: dict) -> list[SendResult]:
        by_platform: dict[str, list[str]] = defaultdict(list)
        for device in crud.active_devices(session, user.id):
            by_platform[device.platform].append(device.token)
        if not by_platform:
            return []

        calls = []
        results: list[SendResult] = []
        for platform, tokens in by_platform.items():
            sender = self.senders.get(platform)
            for token in tokens:
                if sender is None:
                    results.append(SendResult(token, False, f"no sender for platform {platform}", platform))
                else:
                    calls.append((platform, sender, token))

        def deliver(call) -> SendResult:
            platform, sender, token = call
            try:
                return sender.send(token, title, body, data)
            except Exception as exc:
                logger.warning("[AlertDispatcher] %s send to %s... raised: %s", platform, token[:8], exc)
                return SendResult(token, False, str(exc), platform)

        with ThreadPoolExecutor(max_workers=min(self.max_workers, max(1, len(calls)))) as pool:
            results.extend(pool.map(deliver, calls))
        return results
