from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterator

import pytest

from geotrack_agent.buffer import LocationBuffer
from geotrack_agent.errors import StorageFailure
from geotrack_agent.identity import DEVICE_ID_KEY, IdentityResolver
from geotrack_agent.kv_store import SqliteKeyValueStore
from geotrack_agent.main import main
from geotrack_agent.records import LocationRecord


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def state_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    for name in ("SUPABASE_URL", "SUPABASE_ANON_KEY", "BUFFER_MAX_RECORDS", "GEOTRACK_ACCURACY"):
        monkeypatch.delenv(name, raising=False)
    db = tmp_path / "state.sqlite"
    monkeypatch.setenv("GEOTRACK_STATE_DB_PATH", str(db))
    monkeypatch.setenv("GEOTRACK_DEVICE_NAME", "Field Tablet")
    return db


def _seed(db: Path, count: int) -> str:
    store = SqliteKeyValueStore(str(db))
    device_id = IdentityResolver(store).resolve()
    buf = LocationBuffer(store)
    for i in range(count):
        buf.append(
            LocationRecord(
                device_id=device_id,
                device_name="Field Tablet",
                latitude=10.0 + i,
                longitude=20.0,
                altitude=None,
                accuracy=None,
                speed=None,
                timestamp=f"2026-03-01T12:0{i}:00.000Z",
            )
        )
    return device_id


def test_status_reports_identity_and_pending(state_db: Path, capsys: pytest.CaptureFixture[str]) -> None:
    device_id = _seed(state_db, 2)

    assert main(["status"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["device_id"] == device_id
    assert payload["device_name"] == "Field Tablet"
    assert payload["pending_count"] == 2


def test_export_writes_json_lines(state_db: Path, tmp_path: Path) -> None:
    _seed(state_db, 3)
    out = tmp_path / "export" / "pending.jsonl"

    assert main(["export", "--output", str(out)]) == 0

    rows = [json.loads(line) for line in out.read_text(encoding="utf-8").splitlines()]
    assert [r["latitude"] for r in rows] == [10.0, 11.0, 12.0]
    assert rows[0]["altitude"] is None
    # Export never drains the queue.
    assert LocationBuffer(SqliteKeyValueStore(str(state_db))).count() == 3


def test_flush_without_sink_config_exits(state_db: Path) -> None:
    with pytest.raises(SystemExit, match="SUPABASE_URL"):
        main(["flush"])


def test_status_includes_buffer_metrics(state_db: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _seed(state_db, 1)

    assert main(["status"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["buffer_queue_depth"] == 1
    assert payload["buffer_evictions_total"] == 0
    assert payload["buffer_degraded"] is False


def test_status_reports_malformed_identity_as_null(state_db: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = SqliteKeyValueStore(str(state_db))
    store.set(DEVICE_ID_KEY, "not-a-uuid")

    assert main(["status"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["device_id"] is None
    # Status is read-only; the stored value is left for the agent to repair.
    assert store.get(DEVICE_ID_KEY) == "not-a-uuid"


def test_status_survives_unreadable_store(
    state_db: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def _locked(self: SqliteKeyValueStore, key: str) -> str | None:
        raise StorageFailure("sqlite database error: database is locked")

    monkeypatch.setattr(SqliteKeyValueStore, "get", _locked)

    assert main(["status"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["device_id"] is None
    assert payload["pending_count"] == 0
    assert payload["buffer_degraded"] is True
