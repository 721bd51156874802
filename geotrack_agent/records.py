from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

UNKNOWN_DEVICE_NAME = "Unknown Device"

ROW_FIELDS = (
    "device_id",
    "device_name",
    "latitude",
    "longitude",
    "altitude",
    "accuracy",
    "speed",
    "timestamp",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Render an instant as ISO-8601 UTC with millisecond precision and a Z suffix."""

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _require_coordinate(row: Mapping[str, Any], key: str, *, limit: float) -> float:
    v = row.get(key)
    if not _is_number(v) or not math.isfinite(float(v)):
        raise ValueError(f"'{key}' must be a finite number")
    if abs(float(v)) > limit:
        raise ValueError(f"'{key}' out of range: {v}")
    return float(v)


def _optional_float(row: Mapping[str, Any], key: str) -> float | None:
    v = row.get(key)
    if v is None:
        return None
    if not _is_number(v):
        raise ValueError(f"'{key}' must be a number or null")
    f = float(v)
    if not math.isfinite(f):
        return None
    return f


def _require_str(row: Mapping[str, Any], key: str) -> str:
    v = row.get(key)
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"'{key}' must be a non-empty string")
    return v


@dataclass(frozen=True)
class LocationRecord:
    device_id: str
    device_name: str
    latitude: float
    longitude: float
    altitude: float | None
    accuracy: float | None
    speed: float | None
    timestamp: str

    def to_row(self) -> Dict[str, Any]:
        # Optional fields are always present; absent values are encoded as null.
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "altitude": self.altitude,
            "accuracy": self.accuracy,
            "speed": self.speed,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> LocationRecord:
        """Parse a persisted/wire row. Raises ValueError for malformed rows."""

        timestamp = _require_str(row, "timestamp")
        try:
            parse_timestamp(timestamp)
        except ValueError as exc:
            raise ValueError(f"'timestamp' is not ISO-8601: {timestamp!r}") from exc

        device_name = row.get("device_name")
        if not isinstance(device_name, str) or not device_name.strip():
            device_name = UNKNOWN_DEVICE_NAME

        return cls(
            device_id=_require_str(row, "device_id"),
            device_name=device_name,
            latitude=_require_coordinate(row, "latitude", limit=90.0),
            longitude=_require_coordinate(row, "longitude", limit=180.0),
            altitude=_optional_float(row, "altitude"),
            accuracy=_optional_float(row, "accuracy"),
            speed=_optional_float(row, "speed"),
            timestamp=timestamp,
        )
