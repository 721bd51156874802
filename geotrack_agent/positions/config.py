from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from ..errors import ConfigError
from .base import PositionSource
from .gpsd import GpsdPositionSource
from .mock import DEFAULT_CENTER_LAT, DEFAULT_CENTER_LON, DEFAULT_RADIUS_M, MockPositionSource

_VALID_BACKENDS = {"mock", "gpsd"}


@dataclass(frozen=True)
class PositionConfig:
    backend: str
    settings: Mapping[str, Any] = field(default_factory=dict)


def load_position_config_from_env() -> PositionConfig:
    config_path = os.getenv("POSITION_CONFIG_PATH")
    override_backend = os.getenv("POSITION_BACKEND")

    raw: dict[str, Any]
    origin = "env defaults"
    if config_path:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise ConfigError(f"POSITION_CONFIG_PATH does not exist: {path}")
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigError(f"failed to parse position config at {path}: {exc}") from exc
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"position config at {path} must be a YAML object")
        raw = dict(loaded)
        origin = str(path)
    else:
        raw = {"backend": "mock"}

    if override_backend:
        raw["backend"] = override_backend.strip()

    return parse_position_config(raw, origin=origin)


def parse_position_config(raw: Mapping[str, Any], *, origin: str) -> PositionConfig:
    value = raw.get("backend")
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{origin}: missing required 'backend' string")
    backend = value.strip()
    if backend not in _VALID_BACKENDS:
        allowed = ", ".join(sorted(_VALID_BACKENDS))
        raise ConfigError(f"{origin}: unsupported position backend '{backend}' (allowed: {allowed})")

    settings = {k: v for k, v in raw.items() if k != "backend"}
    if backend == "gpsd":
        _check_number(settings, "port", origin=origin, integer=True)
        _check_number(settings, "read_timeout_s", origin=origin)
    else:
        for key in ("center_lat", "center_lon", "radius_m", "failure_rate"):
            _check_number(settings, key, origin=origin)
        rate = settings.get("failure_rate")
        if rate is not None and not 0.0 <= float(rate) <= 1.0:
            raise ConfigError(f"{origin}: failure_rate must be between 0 and 1")

    return PositionConfig(backend=backend, settings=settings)


def _check_number(settings: Mapping[str, Any], key: str, *, origin: str, integer: bool = False) -> None:
    v = settings.get(key)
    if v is None:
        return
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ConfigError(f"{origin}: {key} must be numeric")
    if integer and not isinstance(v, int):
        raise ConfigError(f"{origin}: {key} must be an integer")


def build_position_source(*, device_key: str, config: PositionConfig) -> PositionSource:
    s = config.settings
    if config.backend == "gpsd":
        return GpsdPositionSource(
            host=str(s.get("host", os.getenv("GPSD_HOST", "127.0.0.1"))),
            port=int(s.get("port", os.getenv("GPSD_PORT", "2947"))),
            read_timeout_s=float(s.get("read_timeout_s", 20.0)),
        )

    return MockPositionSource(
        device_key=device_key,
        center_lat=float(s.get("center_lat", DEFAULT_CENTER_LAT)),
        center_lon=float(s.get("center_lon", DEFAULT_CENTER_LON)),
        radius_m=float(s.get("radius_m", DEFAULT_RADIUS_M)),
        failure_rate=float(s.get("failure_rate", 0.0)),
    )
