"""
Job handlers. Importing this module registers them with the queue.

Every handler receives the worker's session followed by the job payload as
keyword arguments, and must be safe to run more than once.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from . import services
from .capture import CAPTURE_JOB
from .errors import NotFoundError
from .jobs import job
from .models import Sighting, User
from .monitoring import SCAN_JOB
from .notifications import SCHEDULED_NOTIFICATION_JOB

logger = logging.getLogger(__name__)

SOCIAL_NOTIFICATION_JOB = "social_notification"


@job(CAPTURE_JOB, queue="default", max_attempts=3)
def capture_weather(session: Session, sighting_id: int) -> None:
    coordinator = services.build_coordinator()
    try:
        report = coordinator.capture(session, sighting_id)
    finally:
        coordinator.gateway.close()
    logger.info(
        "[capture_weather] sighting %s: stored=%s/%s radar=%s",
        sighting_id, report.stored, report.requested, report.radar_stored,
    )


@job(SCAN_JOB, queue="alerts", max_attempts=3, backoff=lambda attempt: 300.0)
def scan_rainbow_conditions(session: Session) -> None:
    scheduler = services.build_scheduler()
    try:
        scheduler.scan(session)
    finally:
        scheduler.evaluator.gateway.close()


@job(SCHEDULED_NOTIFICATION_JOB, queue="notifications", max_attempts=3)
def deliver_scheduled_notification(
    session: Session,
    user_id: int,
    title: str,
    body: str,
    notification_type: str = "system",
    data: Optional[dict[str, Any]] = None,
) -> None:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    if not user.is_active:
        logger.info("[deliver_scheduled_notification] user %s is inactive, dropping", user_id)
        return
    result = services.build_dispatcher().send_push_notification(
        session, user, title, body, data or {}, notification_type=notification_type,
    )
    if result.skipped:
        logger.info("[deliver_scheduled_notification] user %s skipped: %s", user_id, result.reason)


@job(SOCIAL_NOTIFICATION_JOB, queue="notifications", max_attempts=3)
def social_notification(
    session: Session,
    notification_type: str,
    sighting_id: int,
    actor_id: int,
    comment_text: Optional[str] = None,
    comment_id: Optional[int] = None,
) -> None:
    actor = session.get(User, actor_id)
    sighting = session.get(Sighting, sighting_id)
    if actor is None or sighting is None:
        raise NotFoundError(f"{notification_type} notification: actor {actor_id} or sighting {sighting_id} missing")

    dispatcher = services.build_dispatcher()
    if notification_type == "like":
        result = dispatcher.send_like_notification(session, actor, sighting)
    elif notification_type == "comment":
        result = dispatcher.send_comment_notification(session, actor, sighting, comment_text or "", comment_id)
    else:
        logger.warning("[social_notification] Unknown notification type: %s", notification_type)
        return

    if result.skipped:
        logger.info("[social_notification] %s notification skipped: %s", notification_type, result.reason)
    else:
        logger.info("[social_notification] %s notification sent for sighting %s", notification_type, sighting_id)
