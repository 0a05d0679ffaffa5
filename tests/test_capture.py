"""
Tests for WeatherCaptureCoordinator: the 13 point grid, partial failures,
idempotent replays, radar back-linking and the read side.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select

from rainbowcast import capture
from rainbowcast.capture import WeatherCaptureCoordinator, precipitation_type
from rainbowcast.crud import count_weather_samples, list_weather_samples
from rainbowcast.errors import ConfigurationError, NotFoundError, TransientApiError
from rainbowcast.models import Job, RadarSample
from rainbowcast.sun import sun_position
from rainbowcast.timeutils import as_utc, time_grid

from tests.common import DatabaseTestCase, FakeClock, FakeGateway, api_error, make_sighting, make_user, utc

CAPTURED_AT = utc(2024, 6, 21, 8, 0)


class CaptureTestCase(DatabaseTestCase):

    def setUp(self):
        super().setUp()
        self.user = make_user(self.session)
        self.sighting = make_sighting(self.session, self.user, captured_at=CAPTURED_AT)
        # a day later: every grid point is historical
        self.clock = FakeClock(CAPTURED_AT + timedelta(days=1))

    def coordinator(self, gateway) -> WeatherCaptureCoordinator:
        return WeatherCaptureCoordinator(gateway, max_workers=4, clock=self.clock)


class TestGrid(CaptureTestCase):

    def test_grid_has_thirteen_points_both_ends_included(self):
        points = time_grid(CAPTURED_AT)
        self.assertEqual(len(points), 13)
        self.assertEqual(points[0], CAPTURED_AT - timedelta(hours=3))
        self.assertEqual(points[-1], CAPTURED_AT + timedelta(hours=3))

    def test_full_capture_stores_every_point(self):
        gateway = FakeGateway()
        report = self.coordinator(gateway).capture(self.session, self.sighting.id)

        self.assertEqual(report.requested, 13)
        self.assertEqual(report.stored, 13)
        self.assertEqual(report.failed, 0)
        self.assertTrue(report.radar_stored)
        self.assertEqual(len(gateway.historical_calls), 13)
        self.assertEqual(gateway.current_calls, [])
        self.assertEqual(count_weather_samples(self.session, self.sighting.id), 13)

    def test_recent_points_use_current_weather(self):
        self.clock.now = CAPTURED_AT
        gateway = FakeGateway()
        self.coordinator(gateway).capture(self.session, self.sighting.id)

        # capture time and the six points after it are newer than now - 5 min
        self.assertEqual(len(gateway.current_calls), 7)
        self.assertEqual(len(gateway.historical_calls), 6)

    def test_samples_carry_sun_position_and_precipitation(self):
        self.coordinator(FakeGateway()).capture(self.session, self.sighting.id)
        samples = list_weather_samples(self.session, self.sighting.id)

        self.assertEqual(as_utc(samples[0].timestamp), CAPTURED_AT - timedelta(hours=3))
        for sample in samples:
            self.assertIsNotNone(sample.sun_azimuth)
            self.assertIsNotNone(sample.sun_altitude)
            self.assertEqual(sample.weather_code, "500")
            self.assertEqual(sample.precipitation_type, "rain")
            self.assertEqual(sample.precipitation, 0.4)

    def test_sun_position_matches_stored_timestamp(self):
        off_grid = make_sighting(self.session, self.user, captured_at=utc(2024, 6, 21, 8, 10))
        self.coordinator(FakeGateway()).capture(self.session, off_grid.id)
        samples = list_weather_samples(self.session, off_grid.id)

        self.assertEqual(as_utc(samples[0].timestamp), utc(2024, 6, 21, 5, 0))
        for sample in samples:
            sun = sun_position(off_grid.latitude, off_grid.longitude, as_utc(sample.timestamp))
            self.assertAlmostEqual(sample.sun_azimuth, sun.azimuth_deg, places=6)
            self.assertAlmostEqual(sample.sun_altitude, sun.altitude_deg, places=6)


class TestPartialFailure(CaptureTestCase):

    def test_eight_of_thirteen(self):
        points = time_grid(CAPTURED_AT)
        failing = {points[i]: api_error() for i in (0, 2, 5, 9, 12)}
        report = self.coordinator(FakeGateway(failures=failing)).capture(self.session, self.sighting.id)

        self.assertEqual(report.stored, 8)
        self.assertEqual(report.failed, 5)
        stored = {as_utc(s.timestamp) for s in list_weather_samples(self.session, self.sighting.id)}
        self.assertEqual(len(stored), 8)
        self.assertFalse(stored & set(failing))

    def test_configuration_error_aborts_and_stores_nothing(self):
        gateway = FakeGateway(fail_all=ConfigurationError("no key"))
        with self.assertRaises(ConfigurationError):
            self.coordinator(gateway).capture(self.session, self.sighting.id)
        self.assertEqual(count_weather_samples(self.session, self.sighting.id), 0)

    def test_all_transient_failures_raise_for_retry(self):
        gateway = FakeGateway(fail_all=TransientApiError("503"))
        with self.assertRaises(TransientApiError):
            self.coordinator(gateway).capture(self.session, self.sighting.id)

    def test_all_permanent_failures_do_not_raise(self):
        report = self.coordinator(FakeGateway(fail_all=api_error())).capture(self.session, self.sighting.id)
        self.assertEqual(report.stored, 0)
        self.assertEqual(report.failed, 13)

    def test_radar_failure_keeps_weather(self):
        gateway = FakeGateway(radar_error=TransientApiError("radar down"))
        report = self.coordinator(gateway).capture(self.session, self.sighting.id)
        self.assertFalse(report.radar_stored)
        self.assertEqual(report.stored, 13)


class TestIdempotence(CaptureTestCase):

    def test_replay_does_not_duplicate(self):
        coordinator = self.coordinator(FakeGateway())
        coordinator.capture(self.session, self.sighting.id)
        first_ids = [s.id for s in list_weather_samples(self.session, self.sighting.id)]

        coordinator.capture(self.session, self.sighting.id)
        self.session.expire_all()
        samples = list_weather_samples(self.session, self.sighting.id)

        self.assertEqual(len(samples), 13)
        self.assertEqual([s.id for s in samples], first_ids)
        radar_rows = self.session.scalars(select(RadarSample)).all()
        self.assertEqual(len(radar_rows), 1)

    def test_replay_fills_previously_failed_points(self):
        points = time_grid(CAPTURED_AT)
        failing = {points[i]: api_error() for i in range(5)}
        self.coordinator(FakeGateway(failures=failing)).capture(self.session, self.sighting.id)
        self.assertEqual(count_weather_samples(self.session, self.sighting.id), 8)

        self.coordinator(FakeGateway()).capture(self.session, self.sighting.id)
        self.assertEqual(count_weather_samples(self.session, self.sighting.id), 13)

    def test_radar_link_survives_replay(self):
        coordinator = self.coordinator(FakeGateway())
        coordinator.capture(self.session, self.sighting.id)
        coordinator.capture(self.session, self.sighting.id)
        self.session.expire_all()

        radar = self.session.scalars(select(RadarSample)).one()
        linked = [s for s in list_weather_samples(self.session, self.sighting.id) if s.radar_sample_id]
        self.assertEqual(len(linked), 1)
        self.assertEqual(as_utc(linked[0].timestamp), CAPTURED_AT)
        self.assertEqual(linked[0].radar_sample_id, radar.id)


class TestEdges(CaptureTestCase):

    def test_missing_sighting(self):
        with self.assertRaises(NotFoundError):
            self.coordinator(FakeGateway()).capture(self.session, 9999)

    def test_sighting_without_location_is_skipped(self):
        sighting = make_sighting(self.session, self.user, lat=None, lng=None)
        gateway = FakeGateway()
        report = self.coordinator(gateway).capture(self.session, sighting.id)
        self.assertEqual(report.skipped_reason, "missing_location_or_time")
        self.assertEqual(gateway.historical_calls, [])

    def test_precipitation_type_groups(self):
        self.assertEqual(precipitation_type(211), "thunderstorm")
        self.assertEqual(precipitation_type(301), "drizzle")
        self.assertEqual(precipitation_type(601), "snow")
        self.assertEqual(precipitation_type(741), "atmosphere")
        self.assertIsNone(precipitation_type(800))
        self.assertIsNone(precipitation_type(None))


class TestEntryPoints(CaptureTestCase):

    def test_on_sighting_created_enqueues_capture_job(self):
        job = capture.on_sighting_created(self.session, self.sighting.id)
        row = self.session.get(Job, job.id)
        self.assertEqual(row.name, "capture_weather")
        self.assertEqual(row.payload, {"sighting_id": self.sighting.id})
        self.assertEqual(row.status, "pending")

    def test_on_sighting_created_unknown_sighting(self):
        with self.assertRaises(NotFoundError):
            capture.on_sighting_created(self.session, 4242)

    def test_weather_for_sighting_returns_every_field(self):
        points = time_grid(CAPTURED_AT)
        self.coordinator(FakeGateway(failures={points[0]: api_error()})).capture(self.session, self.sighting.id)

        data = capture.get_weather_for_sighting(self.session, self.sighting.id)

        self.assertEqual(len(data["weather_samples"]), 12)
        self.assertEqual(len(data["radar_samples"]), 1)
        first = data["weather_samples"][0]
        self.assertIn("wind_gust", first)
        self.assertIsNone(first["wind_gust"])
        self.assertIsNone(data["radar_samples"][0]["precipitation_intensity"])
        timestamps = [s["timestamp"] for s in data["weather_samples"]]
        self.assertEqual(timestamps, sorted(timestamps))

    def test_weather_for_unknown_sighting(self):
        with self.assertRaises(NotFoundError):
            capture.get_weather_for_sighting(self.session, 4242)
