from __future__ import annotations

import json
import logging
from typing import Iterator

import pytest

from geotrack_agent.observability import JsonFormatter, JsonLogConfig, configure_logging


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_configure_logging_twice_keeps_one_handler() -> None:
    configure_logging(level="INFO", log_format="text")
    configure_logging(level="DEBUG", log_format="json")

    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, JsonFormatter)
    assert root.level == logging.DEBUG


def test_json_formatter_includes_device_and_fields() -> None:
    record = logging.LogRecord(
        name="geotrack.driver",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="flush of %s records failed",
        args=(3,),
        exc_info=None,
    )
    record.device_id = "3f2b8c1e-9a4d-4e6f-8b7a-1c2d3e4f5a6b"
    record.fields = {"queue": 3}

    payload = json.loads(JsonFormatter(JsonLogConfig()).format(record))

    assert payload["message"] == "flush of 3 records failed"
    assert payload["severity"] == "WARNING"
    assert payload["logger"] == "geotrack.driver"
    assert payload["service"] == "geotrack-agent"
    assert payload["device_id"] == "3f2b8c1e-9a4d-4e6f-8b7a-1c2d3e4f5a6b"
    assert payload["fields"] == {"queue": 3}
