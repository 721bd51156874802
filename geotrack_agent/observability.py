from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def _utc_iso(ts: float | None = None) -> str:
    dt = datetime.fromtimestamp(ts or time.time(), tz=timezone.utc)
    return dt.isoformat()


@dataclass
class JsonLogConfig:
    service_name: str = "geotrack-agent"


class DeviceFilter(logging.Filter):
    """Stamps every record with the device identity once it is known."""

    def __init__(self) -> None:
        super().__init__()
        self.device_id: str | None = None

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "device_id"):
            record.device_id = self.device_id
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line for log shippers."""

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.config.service_name,
        }

        device_id = getattr(record, "device_id", None)
        if device_id:
            payload["device_id"] = device_id

        # Attach any explicit structured extra payload under "fields".
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload["fields"] = fields

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


_device_filter = DeviceFilter()


def set_log_device_id(device_id: str | None) -> None:
    _device_filter.device_id = device_id


def configure_logging(*, level: int | str, log_format: str) -> None:
    """Configure agent logging.

    - log_format="json": structured JSON lines
    - log_format="text": standard human-readable
    """

    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers to avoid duplicate logs when called multiple times.
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.addFilter(_device_filter)
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JsonLogConfig()))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))

    root.addHandler(handler)
