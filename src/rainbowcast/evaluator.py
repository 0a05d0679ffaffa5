"""
Rainbow favorability scoring.

assess() is pure: weather snapshot + sun position in, RainbowAssessment out.
RainbowConditionEvaluator.evaluate() only adds the I/O (current weather fetch
and sun position) around it.

The thresholds are the contract (favorable at 60, sun band 10-40 degrees,
cloud band 25-75 %); the per-factor weights are tunable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .sun import SunPosition, sun_position
from .weather_gateway import WeatherDataGateway, WeatherSnapshot

FAVORABLE_SCORE = 60

FACTOR_WEIGHTS = {
    "sun_altitude": 30,
    "precipitation": 30,
    "humidity": 20,
    "cloud_cover": 20,
}

SUN_ALTITUDE_BAND = (10.0, 40.0)
SUN_ALTITUDE_MAX = 42.0  # no primary bow above this
CLOUD_COVER_BAND = (25.0, 75.0)
HUMIDITY_FLOOR = 40.0
HUMIDITY_SATURATION = 95.0

# OpenWeatherMap condition ids: thunderstorm, drizzle and rain, then snow
PRECIPITATION_CODES = (range(200, 532), range(600, 623))

CARDINALS = (
    "north",
    "northeast",
    "east",
    "southeast",
    "south",
    "southwest",
    "west",
    "northwest",
)


@dataclass(frozen=True)
class FactorScore:
    value: object
    score: float  # 0.0 - 1.0
    favorable: bool
    reason: str

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "score": round(self.score, 3),
            "favorable": self.favorable,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RainbowDirection:
    azimuth: float
    cardinal: str


@dataclass(frozen=True)
class RainbowAssessment:
    score: int
    is_favorable: bool
    direction: RainbowDirection
    factors: dict[str, FactorScore]
    sun_altitude: float
    sun_azimuth: float
    recommendations: tuple[str, ...] = field(default_factory=tuple)

    def factor_favorable(self, name: str) -> bool:
        factor = self.factors.get(name)
        return bool(factor and factor.favorable)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "isFavorable": self.is_favorable,
            "direction": {"azimuth": self.direction.azimuth, "cardinal": self.direction.cardinal},
            "conditions": {name: f.to_dict() for name, f in self.factors.items()},
            "sunAltitude": self.sun_altitude,
            "sunAzimuth": self.sun_azimuth,
            "recommendations": list(self.recommendations),
        }


def azimuth_to_cardinal(azimuth: float) -> str:
    """8-way bucket, 45 degree sectors centred on north, northeast, ..."""
    index = int(((azimuth % 360.0) + 22.5) // 45.0) % 8
    return CARDINALS[index]


def rainbow_direction(sun_azimuth: float) -> RainbowDirection:
    """A rainbow sits opposite the sun."""
    opposite = (sun_azimuth + 180.0) % 360.0
    return RainbowDirection(azimuth=round(opposite, 1), cardinal=azimuth_to_cardinal(opposite))


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def score_sun_altitude(altitude: Optional[float]) -> FactorScore:
    if altitude is None:
        return FactorScore(None, 0.0, False, "Sun position unknown")
    low, high = SUN_ALTITUDE_BAND
    if altitude <= 0:
        score, reason = 0.0, f"Sun is below horizon ({altitude:.1f}°)"
    elif altitude < low:
        score, reason = altitude / low, f"Sun is very low ({altitude:.1f}°)"
    elif altitude <= high:
        score, reason = 1.0, f"Sun altitude is optimal ({altitude:.1f}°)"
    elif altitude < SUN_ALTITUDE_MAX:
        score = (SUN_ALTITUDE_MAX - altitude) / (SUN_ALTITUDE_MAX - high)
        reason = f"Sun is almost too high ({altitude:.1f}°)"
    else:
        score, reason = 0.0, f"Sun is too high ({altitude:.1f}°) - rainbows form when sun is lower"
    score = _clamp(score)
    return FactorScore(round(altitude, 1), score, score >= 0.5, reason)


def score_humidity(humidity: Optional[float]) -> FactorScore:
    if humidity is None:
        return FactorScore(None, 0.0, False, "Humidity unknown")
    score = _clamp((humidity - HUMIDITY_FLOOR) / (HUMIDITY_SATURATION - HUMIDITY_FLOOR))
    if score >= 0.5:
        reason = f"Humidity is sufficient ({humidity:g}%)"
    else:
        reason = f"Humidity too low ({humidity:g}%) - need moisture in the air"
    return FactorScore(humidity, score, score >= 0.5, reason)


def score_cloud_cover(cloud_cover: Optional[float]) -> FactorScore:
    if cloud_cover is None:
        return FactorScore(None, 0.0, False, "Cloud cover unknown")
    low, high = CLOUD_COVER_BAND
    if cloud_cover < low:
        # clear sky: sunshine but little chance of showers nearby
        score = 0.4 + 0.6 * (cloud_cover / low)
        reason = f"Mostly clear ({cloud_cover:g}%)"
    elif cloud_cover <= high:
        score = 1.0
        reason = f"Partial cloud cover is ideal ({cloud_cover:g}%)"
    else:
        score = (100.0 - cloud_cover) / (100.0 - high)
        reason = f"Too cloudy ({cloud_cover:g}%) - need some clear sky to see rainbow"
    score = _clamp(score)
    return FactorScore(cloud_cover, score, score >= 0.5, reason)


def has_recent_precipitation(snapshot: WeatherSnapshot) -> bool:
    rain = snapshot.rain_1h or 0
    snow = snapshot.snow_1h or 0
    code = snapshot.weather_code
    return rain > 0 or snow > 0 or (code is not None and any(code in codes for codes in PRECIPITATION_CODES))


def score_precipitation(snapshot: WeatherSnapshot) -> FactorScore:
    if has_recent_precipitation(snapshot):
        return FactorScore(True, 1.0, True, "Recent precipitation detected - water droplets present")
    return FactorScore(False, 0.0, False, "No recent precipitation - rainbows need water droplets")


def recommendations_for(factors: dict[str, FactorScore], score: int) -> tuple[str, ...]:
    if score >= 80:
        tips = ["Excellent rainbow conditions! Keep watching the sky."]
    elif score >= FAVORABLE_SCORE:
        tips = ["Good chance of seeing a rainbow."]
    elif score >= 40:
        tips = ["Some favorable conditions, but rainbow unlikely."]
    else:
        tips = ["Conditions not favorable for rainbows."]

    hints = {
        "sun_altitude": "Wait for sun to be lower in the sky (early morning or late afternoon).",
        "precipitation": "Watch for rain showers with breaks in the clouds.",
        "humidity": "Humidity is low - rainbows more likely after rain.",
        "cloud_cover": "Wait for some clearing in the clouds.",
    }
    for name, factor in factors.items():
        if not factor.favorable:
            tips.append(hints[name])
    return tuple(tips)


def assess(snapshot: WeatherSnapshot, sun: SunPosition) -> RainbowAssessment:
    factors = {
        "sun_altitude": score_sun_altitude(sun.altitude_deg),
        "precipitation": score_precipitation(snapshot),
        "humidity": score_humidity(snapshot.humidity),
        "cloud_cover": score_cloud_cover(snapshot.cloud_cover),
    }
    total_weight = sum(FACTOR_WEIGHTS.values())
    weighted = sum(FACTOR_WEIGHTS[name] * f.score for name, f in factors.items())
    score = int(round(100.0 * weighted / total_weight))
    score = max(0, min(100, score))

    return RainbowAssessment(
        score=score,
        is_favorable=score >= FAVORABLE_SCORE,
        direction=rainbow_direction(sun.azimuth_deg),
        factors=factors,
        sun_altitude=sun.altitude_deg,
        sun_azimuth=sun.azimuth_deg,
        recommendations=recommendations_for(factors, score),
    )


class RainbowConditionEvaluator:
    def __init__(self, gateway: WeatherDataGateway) -> None:
        self.gateway = gateway

    def evaluate(self, lat: float, lng: float, when: datetime) -> RainbowAssessment:
        snapshot = self.gateway.current_weather(lat, lng)
        return assess(snapshot, sun_position(lat, lng, when))
