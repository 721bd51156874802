from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Protocol

AccuracyHint = Literal["low", "balanced", "high"]

ACCURACY_HINTS: frozenset[str] = frozenset({"low", "balanced", "high"})


@dataclass(frozen=True)
class Position:
    """One raw fix from a position primitive. Optional fields may be None."""

    latitude: float
    longitude: float
    altitude: float | None = None
    accuracy: float | None = None
    speed: float | None = None
    fixed_at: datetime | None = None


class PositionSource(Protocol):
    """Small internal position interface used by the sampler.

    Implementations raise PositionUnavailable when no fix can be produced and
    PermissionDenied when the platform refuses access.
    """

    name: str

    def read_position(self, accuracy_hint: AccuracyHint) -> Position: ...
