"""
Tests for rainbow scoring: factor bands, score bounds, favorability threshold
and the viewing direction opposite the sun.
"""

from __future__ import annotations

import itertools
import unittest
from unittest.mock import MagicMock

from rainbowcast.evaluator import (
    FAVORABLE_SCORE,
    RainbowConditionEvaluator,
    assess,
    azimuth_to_cardinal,
    has_recent_precipitation,
    rainbow_direction,
    score_cloud_cover,
    score_humidity,
    score_sun_altitude,
)

from tests.common import DAIMON, make_snapshot, make_sun, utc


class TestDirection(unittest.TestCase):

    def test_sun_in_east_means_look_west(self):
        direction = rainbow_direction(90.0)
        self.assertEqual(direction.cardinal, "west")
        self.assertEqual(direction.azimuth, 270.0)

    def test_sun_in_southwest_means_look_northeast(self):
        self.assertEqual(rainbow_direction(225.0).cardinal, "northeast")

    def test_sector_edges(self):
        self.assertEqual(azimuth_to_cardinal(0), "north")
        self.assertEqual(azimuth_to_cardinal(22.4), "north")
        self.assertEqual(azimuth_to_cardinal(22.5), "northeast")
        self.assertEqual(azimuth_to_cardinal(337.5), "north")
        self.assertEqual(azimuth_to_cardinal(359.9), "north")
        self.assertEqual(azimuth_to_cardinal(180), "south")

    def test_wraps_negative_and_large_angles(self):
        self.assertEqual(azimuth_to_cardinal(-90), "west")
        self.assertEqual(azimuth_to_cardinal(450), "east")


class TestFactors(unittest.TestCase):

    def test_sun_altitude_band(self):
        self.assertEqual(score_sun_altitude(25).score, 1.0)
        self.assertTrue(score_sun_altitude(10).favorable)
        self.assertTrue(score_sun_altitude(40).favorable)
        self.assertEqual(score_sun_altitude(-3).score, 0.0)
        self.assertEqual(score_sun_altitude(55).score, 0.0)
        self.assertFalse(score_sun_altitude(None).favorable)

    def test_humidity_peaks_near_saturation(self):
        self.assertEqual(score_humidity(30).score, 0.0)
        self.assertEqual(score_humidity(95).score, 1.0)
        self.assertEqual(score_humidity(100).score, 1.0)
        self.assertLess(score_humidity(60).score, score_humidity(80).score)

    def test_cloud_cover_prefers_partial_cover(self):
        self.assertEqual(score_cloud_cover(50).score, 1.0)
        self.assertTrue(score_cloud_cover(25).favorable)
        self.assertTrue(score_cloud_cover(75).favorable)
        self.assertLess(score_cloud_cover(95).score, 0.5)
        self.assertLess(score_cloud_cover(0).score, 1.0)

    def test_precipitation_from_rain_or_condition_code(self):
        self.assertTrue(has_recent_precipitation(make_snapshot(rain_1h=0.2, weather_code=800)))
        self.assertTrue(has_recent_precipitation(make_snapshot(rain_1h=None, weather_code=521)))
        self.assertFalse(has_recent_precipitation(make_snapshot(rain_1h=None, weather_code=800)))
        self.assertTrue(has_recent_precipitation(make_snapshot(rain_1h=None, snow_1h=None, weather_code=601)))
        self.assertTrue(has_recent_precipitation(make_snapshot(rain_1h=None, snow_1h=None, weather_code=622)))
        self.assertFalse(has_recent_precipitation(make_snapshot(rain_1h=None, snow_1h=None, weather_code=701)))
        self.assertFalse(has_recent_precipitation(make_snapshot(rain_1h=None, weather_code=None)))


class TestAssess(unittest.TestCase):

    def test_ideal_conditions_are_favorable(self):
        result = assess(make_snapshot(humidity=90, cloud_cover=50, rain_1h=0.5), make_sun(azimuth=90, altitude=25))
        self.assertEqual(result.score, 98)
        self.assertTrue(result.is_favorable)
        self.assertEqual(result.direction.cardinal, "west")
        self.assertEqual(set(result.factors), {"sun_altitude", "precipitation", "humidity", "cloud_cover"})
        self.assertEqual(result.recommendations[0], "Excellent rainbow conditions! Keep watching the sky.")

    def test_hopeless_conditions_score_zero(self):
        snapshot = make_snapshot(humidity=30, cloud_cover=100, rain_1h=None, weather_code=800)
        result = assess(snapshot, make_sun(azimuth=180, altitude=60))
        self.assertEqual(result.score, 0)
        self.assertFalse(result.is_favorable)
        # one hint per unfavorable factor
        self.assertEqual(len(result.recommendations), 5)

    def test_score_bounds_and_threshold_hold_everywhere(self):
        grid = itertools.product(
            (None, 0, 20, 45, 70, 100),  # humidity
            (None, 0, 30, 60, 90, 100),  # cloud cover
            (None, 0.0, 1.2),  # rain
            (-10, 5, 15, 35, 41, 70),  # sun altitude
        )
        for humidity, clouds, rain, altitude in grid:
            result = assess(
                make_snapshot(humidity=humidity, cloud_cover=clouds, rain_1h=rain, weather_code=800),
                make_sun(azimuth=120, altitude=altitude),
            )
            self.assertTrue(0 <= result.score <= 100)
            self.assertIsInstance(result.score, int)
            self.assertEqual(result.is_favorable, result.score >= FAVORABLE_SCORE)

    def test_to_dict_uses_api_keys(self):
        data = assess(make_snapshot(), make_sun()).to_dict()
        self.assertIn("isFavorable", data)
        self.assertIn("sunAltitude", data)
        self.assertEqual(data["direction"]["cardinal"], "west")
        self.assertIn("reason", data["conditions"]["humidity"])


class TestRainbowConditionEvaluator(unittest.TestCase):

    def test_evaluate_uses_current_weather_at_location(self):
        gateway = MagicMock()
        gateway.current_weather.return_value = make_snapshot()
        evaluator = RainbowConditionEvaluator(gateway)

        # 07:00 JST, sun low in the east
        result = evaluator.evaluate(*DAIMON, utc(2024, 6, 20, 22, 0))

        gateway.current_weather.assert_called_once_with(*DAIMON)
        self.assertTrue(result.factor_favorable("sun_altitude"))
        self.assertEqual(result.direction.cardinal, "west")
