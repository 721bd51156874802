from __future__ import annotations

import json
import textwrap
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import pytest

from geotrack_agent.errors import ConfigError, PositionUnavailable
from geotrack_agent.positions import build_position_source, load_position_config_from_env
from geotrack_agent.positions.gpsd import GpsdPositionSource, parse_tpv
from geotrack_agent.positions.mock import MockPositionSource


def _stream_of(*reports: dict[str, object]):
    lines = [json.dumps(r) + "\n" for r in reports]

    @contextmanager
    def _factory(host: str, port: int, timeout_s: float) -> Iterator[Iterator[str]]:
        yield iter(lines)

    return _factory


def test_position_config_defaults_to_mock(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("POSITION_CONFIG_PATH", raising=False)
    monkeypatch.delenv("POSITION_BACKEND", raising=False)

    cfg = load_position_config_from_env()
    assert cfg.backend == "mock"

    source = build_position_source(device_key="Field Tablet", config=cfg)
    position = source.read_position("balanced")
    assert -90.0 <= position.latitude <= 90.0
    assert -180.0 <= position.longitude <= 180.0


def test_position_config_reads_yaml_and_env_override(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    path = tmp_path / "positions.yaml"
    path.write_text(
        textwrap.dedent(
            """
            backend: mock
            center_lat: 45.5
            center_lon: -73.6
            port: 3000
            """
        ).strip()
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("POSITION_CONFIG_PATH", str(path))
    monkeypatch.delenv("POSITION_BACKEND", raising=False)
    assert load_position_config_from_env().settings["center_lat"] == 45.5

    monkeypatch.setenv("POSITION_BACKEND", "gpsd")
    cfg = load_position_config_from_env()
    assert cfg.backend == "gpsd"
    source = build_position_source(device_key="x", config=cfg)
    assert isinstance(source, GpsdPositionSource)
    assert source.port == 3000


def test_position_config_rejects_unknown_backend(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    path = tmp_path / "positions.yaml"
    path.write_text("backend: glonass-direct\n", encoding="utf-8")
    monkeypatch.setenv("POSITION_CONFIG_PATH", str(path))
    monkeypatch.delenv("POSITION_BACKEND", raising=False)

    with pytest.raises(ConfigError, match="unsupported position backend"):
        load_position_config_from_env()


def test_mock_source_is_deterministic_per_device() -> None:
    a = MockPositionSource(device_key="tablet-1")
    b = MockPositionSource(device_key="tablet-1")
    c = MockPositionSource(device_key="tablet-2")

    pa = a.read_position("balanced")
    pb = b.read_position("balanced")
    pc = c.read_position("balanced")
    assert (pa.latitude, pa.longitude) == (pb.latitude, pb.longitude)
    assert (pa.latitude, pa.longitude) != (pc.latitude, pc.longitude)


def test_mock_source_failure_rate_raises_unavailable() -> None:
    source = MockPositionSource(device_key="tablet-1", failure_rate=1.0)
    with pytest.raises(PositionUnavailable):
        source.read_position("balanced")


def test_parse_tpv_3d_fix() -> None:
    position = parse_tpv(
        {
            "class": "TPV",
            "mode": 3,
            "lat": 48.8584,
            "lon": 2.2945,
            "altMSL": 35.2,
            "eph": 4.5,
            "speed": 0.3,
            "time": "2026-03-01T12:00:00.000Z",
        },
        "high",
    )
    assert position is not None
    assert (position.latitude, position.longitude) == (48.8584, 2.2945)
    assert position.altitude == 35.2
    assert position.accuracy == 4.5
    assert position.speed == 0.3
    assert position.fixed_at is not None and position.fixed_at.year == 2026


def test_parse_tpv_2d_fix_drops_altitude_and_rejected_for_high() -> None:
    report = {"class": "TPV", "mode": 2, "lat": 1.0, "lon": 2.0, "alt": 99.0, "epx": 3.0, "epy": 7.0}
    position = parse_tpv(report, "balanced")
    assert position is not None
    assert position.altitude is None
    assert position.accuracy == 7.0
    assert parse_tpv(report, "high") is None


def test_parse_tpv_ignores_non_fix_reports() -> None:
    assert parse_tpv({"class": "SKY"}, "low") is None
    assert parse_tpv({"class": "TPV", "mode": 1}, "low") is None
    assert parse_tpv({"class": "TPV", "mode": 3, "lat": 1.0}, "low") is None


def test_gpsd_source_skips_until_usable_fix() -> None:
    source = GpsdPositionSource(
        stream_factory=_stream_of(
            {"class": "VERSION", "release": "3.25"},
            {"class": "TPV", "mode": 1},
            {"class": "TPV", "mode": 2, "lat": 10.0, "lon": 20.0},
        )
    )
    position = source.read_position("balanced")
    assert (position.latitude, position.longitude) == (10.0, 20.0)


def test_gpsd_source_raises_when_stream_ends_without_fix() -> None:
    source = GpsdPositionSource(stream_factory=_stream_of({"class": "TPV", "mode": 1}))
    with pytest.raises(PositionUnavailable):
        source.read_position("low")
