"""Sun position for a place and instant, via astral."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from astral import Observer
from astral.sun import azimuth, elevation, sun

from .timeutils import as_utc


@dataclass(frozen=True)
class SunPosition:
    azimuth_deg: float  # compass bearing, 0 = north, 90 = east
    altitude_deg: float  # degrees above the horizon (refraction corrected)
    sunrise: Optional[datetime] = None
    sunset: Optional[datetime] = None

    @property
    def is_daytime(self) -> bool:
        return self.altitude_deg > 0


def sun_position(lat: float, lng: float, when: datetime) -> SunPosition:
    """Pure: same inputs always give the same position."""
    observer = Observer(latitude=lat, longitude=lng)
    when = as_utc(when)
    try:
        times = sun(observer, date=when.date())
        sunrise, sunset = times["sunrise"], times["sunset"]
    except ValueError:
        # polar day / night: the sun never crosses the horizon
        sunrise = sunset = None
    return SunPosition(
        azimuth_deg=round(azimuth(observer, when) % 360.0, 1),
        altitude_deg=round(elevation(observer, when), 1),
        sunrise=sunrise,
        sunset=sunset,
    )
