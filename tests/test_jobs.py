"""
Tests for the database-backed job queue: enqueue, claiming, retry with
backoff, permanent failure and discard-on-error.
"""

from __future__ import annotations

from datetime import timedelta

from rainbowcast import jobs
from rainbowcast.db import SessionLocal
from rainbowcast.errors import NotFoundError
from rainbowcast.jobs import Worker, enqueue, has_pending, job, polynomial_backoff
from rainbowcast.models import Job, User
from rainbowcast.timeutils import utcnow

from tests.common import DatabaseTestCase, FakeClock

CALLS = []


@job("test_record", queue="tests")
def record(session, value):
    CALLS.append(value)
    session.add(User(display_name=f"made by job {value}"))
    session.commit()


@job("test_always_fails", queue="tests", max_attempts=3)
def always_fails(session):
    session.add(User(display_name="should be rolled back"))
    session.flush()
    raise RuntimeError("kaboom")


@job("test_missing_record", queue="tests")
def missing_record(session):
    raise NotFoundError("gone")


class JobTestCase(DatabaseTestCase):

    def setUp(self):
        super().setUp()
        CALLS.clear()
        self.clock = FakeClock(utcnow() + timedelta(seconds=1))
        self.worker = Worker(SessionLocal, queues=["tests"], clock=self.clock)

    def reload(self, job_id) -> Job:
        self.session.expire_all()
        return self.session.get(Job, job_id)


class TestEnqueue(JobTestCase):

    def test_enqueue_creates_pending_row(self):
        row = enqueue(self.session, "test_record", {"value": 1})
        self.session.commit()
        self.assertEqual(row.status, "pending")
        self.assertEqual(row.queue, "tests")
        self.assertEqual(row.attempts, 0)
        self.assertTrue(has_pending(self.session, "test_record"))

    def test_unknown_job_rejected(self):
        with self.assertRaises(ValueError):
            enqueue(self.session, "no_such_job")

    def test_handlers_module_is_discovered(self):
        jobs.autodiscover()
        for name in ("capture_weather", "scan_rainbow_conditions", "deliver_scheduled_notification", "social_notification"):
            self.assertIn(name, jobs.REGISTRY)

    def test_backoff_grows(self):
        self.assertEqual([polynomial_backoff(a) for a in (1, 2, 3)], [3.0, 18.0, 83.0])


class TestWorker(JobTestCase):

    def test_successful_job_is_done(self):
        row = enqueue(self.session, "test_record", {"value": 7})
        self.session.commit()

        self.assertEqual(self.worker.run_once(), 1)

        row = self.reload(row.id)
        self.assertEqual(row.status, "done")
        self.assertEqual(row.attempts, 1)
        self.assertIsNotNone(row.finished_at)
        self.assertEqual(CALLS, [7])

    def test_future_job_waits(self):
        row = enqueue(self.session, "test_record", {"value": 1}, run_at=self.clock.now + timedelta(hours=1))
        self.session.commit()

        self.assertEqual(self.worker.run_once(), 0)
        self.clock.advance(hours=1, seconds=1)
        self.assertEqual(self.worker.run_once(), 1)
        self.assertEqual(self.reload(row.id).status, "done")

    def test_other_queues_are_ignored(self):
        enqueue(self.session, "test_record", {"value": 1})
        self.session.commit()
        other = Worker(SessionLocal, queues=["alerts"], clock=self.clock)
        self.assertEqual(other.run_once(), 0)

    def test_failure_retries_with_backoff_then_fails(self):
        row = enqueue(self.session, "test_always_fails")
        self.session.commit()

        self.worker.run_once()
        first = self.reload(row.id)
        self.assertEqual(first.status, "pending")
        self.assertEqual(first.attempts, 1)
        self.assertIn("kaboom", first.last_error)

        # not due again until the backoff has passed
        self.assertEqual(self.worker.run_once(), 0)
        self.clock.advance(seconds=4)
        self.assertEqual(self.worker.run_once(), 1)
        self.assertEqual(self.reload(row.id).attempts, 2)

        self.clock.advance(seconds=19)
        self.worker.run_once()
        final = self.reload(row.id)
        self.assertEqual(final.status, "failed")
        self.assertEqual(final.attempts, 3)

        # the handler's own writes were rolled back each time
        self.assertEqual(self.session.query(User).count(), 0)

    def test_not_found_discards_immediately(self):
        row = enqueue(self.session, "test_missing_record")
        self.session.commit()

        self.worker.run_once()

        row = self.reload(row.id)
        self.assertEqual(row.status, "discarded")
        self.assertEqual(row.attempts, 1)
        self.assertFalse(has_pending(self.session, "test_missing_record"))
