from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Protocol

log = logging.getLogger("geotrack.permissions")

_GRANTED_VALUES = {"1", "true", "yes", "on", "granted", "allow"}
_DENIED_VALUES = {"0", "false", "no", "off", "denied", "deny"}


class PermissionSource(Protocol):
    """Answers whether foreground location access has been granted."""

    def request_foreground_location_permission(self) -> bool: ...


@dataclass(frozen=True)
class StaticPermissionSource:
    granted: bool

    def request_foreground_location_permission(self) -> bool:
        return self.granted


@dataclass(frozen=True)
class EnvPermissionSource:
    """Operator consent read from the environment.

    Unrecognized values are treated as denied.
    """

    env_name: str = "GEOTRACK_LOCATION_PERMISSION"
    default: str = "granted"

    def request_foreground_location_permission(self) -> bool:
        raw = os.getenv(self.env_name, self.default)
        value = raw.strip().lower()
        if value in _GRANTED_VALUES:
            return True
        if value not in _DENIED_VALUES:
            log.warning("unrecognized %s=%r; treating as denied", self.env_name, raw)
        return False
