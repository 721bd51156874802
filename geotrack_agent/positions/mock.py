from __future__ import annotations

import hashlib
import math
import random
from dataclasses import dataclass, field

from ..errors import PositionUnavailable
from ..records import utcnow
from .base import AccuracyHint, Position

DEFAULT_CENTER_LAT = 48.8566
DEFAULT_CENTER_LON = 2.3522
DEFAULT_RADIUS_M = 5000.0
EARTH_RADIUS_M = 6_371_008.8

_ACCURACY_M = {"low": 500.0, "balanced": 50.0, "high": 8.0}


def _normalize_lon(lon_deg: float) -> float:
    return ((lon_deg + 180.0) % 360.0) - 180.0


def _offset(lat: float, lon: float, *, distance_m: float, bearing_rad: float) -> tuple[float, float]:
    lat1 = math.radians(lat)
    lon1 = math.radians(lon)
    angular = distance_m / EARTH_RADIUS_M

    lat2 = math.asin(
        math.sin(lat1) * math.cos(angular) + math.cos(lat1) * math.sin(angular) * math.cos(bearing_rad)
    )
    lon2 = lon1 + math.atan2(
        math.sin(bearing_rad) * math.sin(angular) * math.cos(lat1),
        math.cos(angular) - math.sin(lat1) * math.sin(lat2),
    )
    return math.degrees(lat2), _normalize_lon(math.degrees(lon2))


@dataclass
class MockPositionSource:
    """Deterministic simulated fixes for demos and local runs.

    Each device gets a stable home point inside `radius_m` of the center and
    then wanders a few meters per reading. `failure_rate` simulates a radio
    that occasionally has no fix.
    """

    device_key: str
    center_lat: float = DEFAULT_CENTER_LAT
    center_lon: float = DEFAULT_CENTER_LON
    radius_m: float = DEFAULT_RADIUS_M
    failure_rate: float = 0.0
    name: str = "mock"
    _rng: random.Random = field(init=False, repr=False)
    _current: tuple[float, float] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        seed_bytes = hashlib.sha256(f"{self.device_key}:geo".encode("utf-8")).digest()
        self._rng = random.Random(int.from_bytes(seed_bytes[:8], "big"))
        u = int.from_bytes(seed_bytes[8:16], "big") / float((1 << 64) - 1)
        v = int.from_bytes(seed_bytes[16:24], "big") / float((1 << 64) - 1)
        self._current = _offset(
            self.center_lat,
            self.center_lon,
            distance_m=self.radius_m * math.sqrt(u),
            bearing_rad=2.0 * math.pi * v,
        )

    def read_position(self, accuracy_hint: AccuracyHint) -> Position:
        if self.failure_rate > 0 and self._rng.random() < self.failure_rate:
            raise PositionUnavailable("simulated fix unavailable")

        step_m = self._rng.uniform(0.0, 25.0)
        lat, lon = _offset(
            *self._current,
            distance_m=step_m,
            bearing_rad=self._rng.uniform(0.0, 2.0 * math.pi),
        )
        self._current = (lat, lon)

        return Position(
            latitude=round(lat, 6),
            longitude=round(lon, 6),
            altitude=round(35.0 + self._rng.uniform(-2.0, 2.0), 1),
            accuracy=_ACCURACY_M.get(accuracy_hint, 50.0),
            speed=round(step_m / 3600.0, 4),
            fixed_at=utcnow(),
        )
