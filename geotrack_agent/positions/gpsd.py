from __future__ import annotations

import json
import logging
import math
import socket
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, ContextManager, Iterator, Mapping

from ..errors import PositionUnavailable
from ..records import parse_timestamp
from .base import AccuracyHint, Position

WATCH_COMMAND = b'?WATCH={"enable":true,"json":true}\n'

# gpsd TPV mode: 0/1 = no fix, 2 = 2D, 3 = 3D.
_MIN_MODE = {"low": 2, "balanced": 2, "high": 3}

log = logging.getLogger("geotrack.positions.gpsd")

StreamFactory = Callable[[str, int, float], ContextManager[Iterator[str]]]


@contextmanager
def _socket_stream(host: str, port: int, timeout_s: float) -> Iterator[Iterator[str]]:
    try:
        sock = socket.create_connection((host, port), timeout=timeout_s)
    except OSError as exc:
        raise PositionUnavailable(f"gpsd unreachable at {host}:{port}: {exc}") from exc

    try:
        sock.sendall(WATCH_COMMAND)
        reader = sock.makefile("r", encoding="utf-8", errors="replace")

        def _lines() -> Iterator[str]:
            try:
                for line in reader:
                    yield line
            except OSError as exc:
                raise PositionUnavailable(f"gpsd read failed: {exc}") from exc

        yield _lines()
    finally:
        sock.close()


def _as_float(v: Any) -> float | None:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    f = float(v)
    return f if math.isfinite(f) else None


def parse_tpv(report: Mapping[str, Any], accuracy_hint: AccuracyHint) -> Position | None:
    """Turn a gpsd TPV report into a Position, or None if it is not a usable fix."""

    if report.get("class") != "TPV":
        return None

    mode = report.get("mode")
    if not isinstance(mode, int) or mode < _MIN_MODE.get(accuracy_hint, 2):
        return None

    lat = _as_float(report.get("lat"))
    lon = _as_float(report.get("lon"))
    if lat is None or lon is None:
        return None

    altitude = _as_float(report.get("altMSL"))
    if altitude is None:
        altitude = _as_float(report.get("alt"))
    if mode < 3:
        altitude = None

    accuracy = _as_float(report.get("eph"))
    if accuracy is None:
        epx = _as_float(report.get("epx"))
        epy = _as_float(report.get("epy"))
        if epx is not None and epy is not None:
            accuracy = max(epx, epy)

    fixed_at = None
    raw_time = report.get("time")
    if isinstance(raw_time, str) and raw_time.strip():
        try:
            fixed_at = parse_timestamp(raw_time)
        except ValueError:
            fixed_at = None

    return Position(
        latitude=lat,
        longitude=lon,
        altitude=altitude,
        accuracy=accuracy,
        speed=_as_float(report.get("speed")),
        fixed_at=fixed_at,
    )


@dataclass
class GpsdPositionSource:
    """Reads one fix from a local gpsd daemon over its JSON socket protocol."""

    host: str = "127.0.0.1"
    port: int = 2947
    read_timeout_s: float = 20.0
    stream_factory: StreamFactory = _socket_stream
    name: str = "gpsd"

    def read_position(self, accuracy_hint: AccuracyHint) -> Position:
        deadline = time.monotonic() + float(self.read_timeout_s)
        with self.stream_factory(self.host, self.port, self.read_timeout_s) as lines:
            for line in lines:
                if time.monotonic() > deadline:
                    break
                try:
                    report = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(report, dict):
                    continue
                position = parse_tpv(report, accuracy_hint)
                if position is not None:
                    return position
        raise PositionUnavailable(f"no {accuracy_hint} fix from gpsd within {self.read_timeout_s:.0f}s")
