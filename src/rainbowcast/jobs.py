"""
Database-backed background job queue.

Jobs are rows in the ``jobs`` table. Any number of worker processes may poll
the table; on PostgreSQL claims use SELECT ... FOR UPDATE SKIP LOCKED so a job
is handed to one worker at a time. Delivery is at-least-once: handlers must be
idempotent.

A failing job is retried with increasing backoff until ``max_attempts`` is
reached, then marked ``failed``. Exceptions listed in the job's ``discard_on``
(by default NotFoundError, ConfigurationError, ValidationError) end the job
immediately as ``discarded``.
"""

from __future__ import annotations

import logging
import time
from importlib import import_module
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from .errors import ConfigurationError, NotFoundError, ValidationError
from .models import Job
from .timeutils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_DISCARD = (NotFoundError, ConfigurationError, ValidationError)


def polynomial_backoff(attempt: int) -> float:
    """Seconds to wait after the given (1-based) failed attempt: 3, 18, 83, ..."""
    return float(attempt ** 4 + 2)


@dataclass(frozen=True)
class JobSpec:
    name: str
    handler: Callable[..., Any]  # handler(session, **payload)
    queue: str = "default"
    max_attempts: int = 3
    backoff: Callable[[int], float] = polynomial_backoff
    discard_on: tuple[type[BaseException], ...] = DEFAULT_DISCARD


REGISTRY: dict[str, JobSpec] = {}

# modules whose import registers handlers with @job
HANDLER_MODULES = ("rainbowcast.tasks",)


def autodiscover() -> None:
    for module in HANDLER_MODULES:
        import_module(module)


def job(
    name: str,
    queue: str = "default",
    max_attempts: int = 3,
    backoff: Callable[[int], float] = polynomial_backoff,
    discard_on: tuple[type[BaseException], ...] = DEFAULT_DISCARD,
):
    """Register a function as the handler for job ``name``."""

    def decorator(fn):
        REGISTRY[name] = JobSpec(
            name=name,
            handler=fn,
            queue=queue,
            max_attempts=max_attempts,
            backoff=backoff,
            discard_on=discard_on,
        )
        return fn

    return decorator


def enqueue(
    session: Session,
    name: str,
    payload: Optional[dict] = None,
    run_at: Optional[datetime] = None,
) -> Job:
    """Add a job row. The caller owns the transaction (commit to publish it)."""
    autodiscover()
    spec = REGISTRY.get(name)
    if spec is None:
        raise ValueError(f"Unknown job: {name}")
    row = Job(
        name=name,
        queue=spec.queue,
        payload=payload or {},
        status="pending",
        attempts=0,
        max_attempts=spec.max_attempts,
        run_at=run_at or utcnow(),
    )
    session.add(row)
    session.flush()
    logger.info("[Jobs] enqueued %s #%s (run_at=%s)", name, row.id, row.run_at.isoformat())
    return row


def has_pending(session: Session, name: str) -> bool:
    count = session.execute(
        select(func.count()).select_from(Job).where(Job.name == name, Job.status == "pending")
    ).scalar_one()
    return count > 0


class Worker:
    def __init__(
        self,
        session_factory: sessionmaker,
        queues: Optional[Iterable[str]] = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 10,
    ) -> None:
        self.session_factory = session_factory
        self.queues = tuple(queues) if queues else None
        self.clock = clock
        self.batch_size = batch_size
        self._stopped = False

    def stop(self) -> None:
        self._stopped = True

    def run_forever(self, poll_interval: float = 5.0) -> None:
        logger.info("[Worker] started (queues=%s)", ",".join(self.queues) if self.queues else "*")
        while not self._stopped:
            processed = self.run_once()
            if processed == 0:
                time.sleep(poll_interval)
        logger.info("[Worker] stopped")

    def run_once(self) -> int:
        """Claim and run every job that is due. Returns how many ran."""
        autodiscover()
        job_ids = self._claim()
        for job_id in job_ids:
            self._perform(job_id)
        return len(job_ids)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _claim(self) -> list[int]:
        with self.session_factory() as session:
            q = (
                select(Job)
                .where(Job.status == "pending", Job.run_at <= self.clock())
                .order_by(Job.run_at.asc(), Job.id.asc())
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            )
            if self.queues:
                q = q.where(Job.queue.in_(self.queues))
            rows = list(session.scalars(q))
            for row in rows:
                row.status = "running"
                row.attempts += 1
            session.commit()
            return [row.id for row in rows]

    def _perform(self, job_id: int) -> None:
        with self.session_factory() as session:
            row = session.get(Job, job_id)
            spec = REGISTRY.get(row.name)
            if spec is None:
                self._finish(session, row, "failed", f"No handler registered for {row.name}")
                logger.error("[Worker] job #%s: no handler registered for %s", job_id, row.name)
                return

            payload = dict(row.payload or {})
            try:
                spec.handler(session, **payload)
            except spec.discard_on as exc:
                session.rollback()
                row = session.get(Job, job_id)
                self._finish(session, row, "discarded", repr(exc))
                logger.warning("[Worker] %s #%s discarded: %s", row.name, job_id, exc)
            except Exception as exc:
                session.rollback()
                row = session.get(Job, job_id)
                if row.attempts < row.max_attempts:
                    delay = spec.backoff(row.attempts)
                    row.status = "pending"
                    row.run_at = self.clock() + timedelta(seconds=delay)
                    row.last_error = repr(exc)
                    session.commit()
                    logger.warning(
                        "[Worker] %s #%s failed (attempt %s/%s), retrying in %.0fs: %s",
                        row.name, job_id, row.attempts, row.max_attempts, delay, exc,
                    )
                else:
                    self._finish(session, row, "failed", repr(exc))
                    logger.exception("[Worker] %s #%s failed permanently after %s attempts", row.name, job_id, row.attempts)
            else:
                self._finish(session, row, "done", None)
                logger.info("[Worker] %s #%s done", row.name, job_id)

    def _finish(self, session: Session, row: Job, status: str, error: Optional[str]) -> None:
        row.status = status
        row.last_error = error
        row.finished_at = self.clock()
        session.commit()
