from __future__ import annotations

import re
from pathlib import Path

import pytest

from geotrack_agent.errors import StorageFailure
from geotrack_agent.identity import (
    DEVICE_ID_KEY,
    IdentityResolver,
    derive_uuid4,
    is_valid_uuid4,
    resolve_device_name,
)
from geotrack_agent.kv_store import MemoryKeyValueStore, SqliteKeyValueStore
from geotrack_agent.records import UNKNOWN_DEVICE_NAME

UUID4_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


class _CountingStore(MemoryKeyValueStore):
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        super().__init__(initial)
        self.writes = 0

    def set(self, key: str, value: str) -> None:
        self.writes += 1
        super().set(key, value)


class _BrokenStore:
    def get(self, key: str) -> str | None:
        raise StorageFailure("disk gone")

    def set(self, key: str, value: str) -> None:
        raise StorageFailure("disk gone")

    def remove(self, key: str) -> None:
        raise StorageFailure("disk gone")


def test_resolve_generates_and_persists_when_absent() -> None:
    store = _CountingStore()
    resolver = IdentityResolver(store)

    first = resolver.resolve()
    second = resolver.resolve()

    assert UUID4_PATTERN.match(first)
    assert second == first
    assert store.get(DEVICE_ID_KEY) == first
    assert store.writes == 1


def test_resolve_returns_valid_identity_unchanged_without_writing() -> None:
    existing = "3f2b8c1e-9a4d-4e6f-8b7a-1c2d3e4f5a6b"
    store = _CountingStore({DEVICE_ID_KEY: existing})

    assert IdentityResolver(store).resolve() == existing
    assert store.writes == 0


def test_resolve_accepts_uppercase_identity() -> None:
    existing = "3F2B8C1E-9A4D-4E6F-8B7A-1C2D3E4F5A6B"
    store = MemoryKeyValueStore({DEVICE_ID_KEY: existing})
    assert IdentityResolver(store).resolve() == existing


def test_resolve_repairs_malformed_identity_deterministically() -> None:
    store_a = _CountingStore({DEVICE_ID_KEY: "Pixel 7 Pro"})
    store_b = _CountingStore({DEVICE_ID_KEY: "Pixel 7 Pro"})

    repaired_a = IdentityResolver(store_a).resolve()
    repaired_b = IdentityResolver(store_b).resolve()

    assert UUID4_PATTERN.match(repaired_a)
    assert repaired_a == repaired_b
    assert store_a.get(DEVICE_ID_KEY) == repaired_a
    assert store_a.writes == 1

    # Once repaired, the value is stable and no further writes happen.
    assert IdentityResolver(store_a).resolve() == repaired_a
    assert store_a.writes == 1


def test_derive_uuid4_matches_reshaped_md5_layout() -> None:
    # md5("abc") = 900150983cd24fb0d6963f7d28e17f72
    assert derive_uuid4("abc") == "90015098-3cd2-4fb0-9696-3f7d28e17f72"


def test_derive_uuid4_always_produces_valid_layout() -> None:
    for raw in ("", "x", "not-a-uuid", "12345678-1234-1234-1234-123456789012", "é" * 40):
        derived = derive_uuid4(raw)
        assert is_valid_uuid4(derived), raw


def test_is_valid_uuid4_rejects_other_versions_and_variants() -> None:
    assert is_valid_uuid4("3f2b8c1e-9a4d-4e6f-8b7a-1c2d3e4f5a6b")
    assert not is_valid_uuid4("3f2b8c1e-9a4d-1e6f-8b7a-1c2d3e4f5a6b")
    assert not is_valid_uuid4("3f2b8c1e-9a4d-4e6f-cb7a-1c2d3e4f5a6b")
    assert not is_valid_uuid4("3f2b8c1e9a4d4e6f8b7a1c2d3e4f5a6b")
    assert not is_valid_uuid4(" 3f2b8c1e-9a4d-4e6f-8b7a-1c2d3e4f5a6b")


def test_resolve_survives_storage_failure_with_stable_session_identity() -> None:
    resolver = IdentityResolver(_BrokenStore())

    first = resolver.resolve()
    assert UUID4_PATTERN.match(first)
    assert resolver.resolve() == first


def test_identity_persists_across_sqlite_reopen(tmp_path: Path) -> None:
    path = str(tmp_path / "state.sqlite")
    first = IdentityResolver(SqliteKeyValueStore(path)).resolve()
    second = IdentityResolver(SqliteKeyValueStore(path)).resolve()
    assert first == second


def test_resolve_device_name_prefers_explicit_then_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEOTRACK_DEVICE_NAME", "env-phone")
    assert resolve_device_name("  Field Tablet  ") == "Field Tablet"
    assert resolve_device_name(None) == "env-phone"


def test_resolve_device_name_falls_back_to_sentinel(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GEOTRACK_DEVICE_NAME", raising=False)
    monkeypatch.setattr("geotrack_agent.identity.socket.gethostname", lambda: "")
    assert resolve_device_name(None) == UNKNOWN_DEVICE_NAME
