from __future__ import annotations

import logging
import math
import threading
from datetime import datetime
from typing import Any, Callable, Dict

from .errors import PermissionDenied, PositionUnavailable, SampleFailure, SampleTimeout
from .positions.base import AccuracyHint, Position, PositionSource
from .records import UNKNOWN_DEVICE_NAME, LocationRecord, format_timestamp, utcnow

log = logging.getLogger("geotrack.sampler")

NowFn = Callable[[], datetime]


def _optional(v: float | None) -> float | None:
    if v is None:
        return None
    f = float(v)
    return f if math.isfinite(f) else None


class Sampler:
    """Obtains one reading on demand and turns it into a LocationRecord.

    Each read runs on its own daemon thread so a hung fix can be abandoned
    after `timeout_s` without blocking later samples or interpreter exit.
    Failures other than PermissionDenied are reported as SampleFailure
    subclasses.
    """

    def __init__(
        self,
        source: PositionSource,
        *,
        device_id: str = "",
        device_name: str = UNKNOWN_DEVICE_NAME,
        timeout_s: float = 30.0,
        now_fn: NowFn | None = None,
    ) -> None:
        self.source = source
        self.device_id = device_id
        self.device_name = device_name
        self.timeout_s = float(timeout_s)
        self.abandoned_reads = 0
        self._now_fn = now_fn or utcnow
        self._closed = False

    def bind_identity(self, *, device_id: str, device_name: str) -> None:
        self.device_id = device_id
        self.device_name = device_name

    def sample(self, accuracy_hint: AccuracyHint = "balanced") -> LocationRecord:
        if self._closed:
            raise SampleFailure("sampler is closed")

        outcome: Dict[str, Any] = {}
        done = threading.Event()

        def _read() -> None:
            try:
                outcome["position"] = self.source.read_position(accuracy_hint)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()

        worker = threading.Thread(target=_read, name="geotrack-sampler", daemon=True)
        worker.start()
        if not done.wait(self.timeout_s):
            self.abandoned_reads += 1
            log.warning(
                "position read exceeded %gs; abandoning worker (abandoned=%s)",
                self.timeout_s,
                self.abandoned_reads,
            )
            raise SampleTimeout(f"no position within {self.timeout_s:g}s")

        error = outcome.get("error")
        if isinstance(error, (PermissionDenied, SampleFailure)):
            raise error
        if error is not None:
            raise PositionUnavailable(f"{type(error).__name__}: {error}") from error
        position = outcome.get("position")
        if not isinstance(position, Position):
            raise PositionUnavailable(f"source returned {type(position).__name__}, not a position")

        record = self._to_record(position)
        log.debug(
            "fix from %s lat=%s lon=%s at %s",
            getattr(self.source, "name", "source"),
            record.latitude,
            record.longitude,
            record.timestamp,
        )
        return record

    def _to_record(self, position: Position) -> LocationRecord:
        if not self.device_id:
            raise SampleFailure("sampler has no device identity bound")
        lat = float(position.latitude)
        lon = float(position.longitude)
        if not (math.isfinite(lat) and math.isfinite(lon)) or abs(lat) > 90.0 or abs(lon) > 180.0:
            raise PositionUnavailable(f"invalid coordinates lat={position.latitude} lon={position.longitude}")

        fixed_at = position.fixed_at or self._now_fn()
        return LocationRecord(
            device_id=self.device_id,
            device_name=self.device_name,
            latitude=lat,
            longitude=lon,
            altitude=_optional(position.altitude),
            accuracy=_optional(position.accuracy),
            speed=_optional(position.speed),
            timestamp=format_timestamp(fixed_at),
        )

    def close(self) -> None:
        # Abandoned read threads are daemons; they do not block exit.
        self._closed = True
