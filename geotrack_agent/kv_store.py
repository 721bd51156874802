from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Protocol, TypeVar

from .errors import StorageFailure

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
"""

_T = TypeVar("_T")

_CORRUPTION_MARKERS = (
    "database disk image is malformed",
    "malformed database schema",
    "file is not a database",
    "not a database",
    "database corrupt",
)

_ALLOWED_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
_ALLOWED_SYNCHRONOUS = {"OFF", "NORMAL", "FULL", "EXTRA"}

log = logging.getLogger("geotrack.kv_store")


class KeyValueStore(Protocol):
    """Durable string slots keyed by name."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Session-only store used when the durable store is unavailable."""

    def __init__(self, initial: Dict[str, str] | None = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class SqliteKeyValueStore:
    """Key-value slots in a single sqlite file.

    Every sqlite error is surfaced as StorageFailure. A corrupt file is moved
    aside once and the store reinitialized empty.
    """

    def __init__(
        self,
        path: str,
        *,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
        recover_corruption: bool = True,
    ) -> None:
        self.path = Path(path)
        self.journal_mode = self._normalize_pragma(
            "journal_mode",
            journal_mode,
            allowed=_ALLOWED_JOURNAL_MODES,
            default="WAL",
        )
        self.synchronous = self._normalize_pragma(
            "synchronous",
            synchronous,
            allowed=_ALLOWED_SYNCHRONOUS,
            default="NORMAL",
        )
        self.recover_corruption = bool(recover_corruption)
        self._init_db(allow_recovery=True)

    @staticmethod
    def _normalize_pragma(name: str, value: str, *, allowed: set[str], default: str) -> str:
        candidate = (value or "").strip().upper()
        if candidate in allowed:
            return candidate
        log.warning("invalid %s=%r; using %s", name, value, default)
        return default

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path), timeout=5.0)
        conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        conn.execute(f"PRAGMA synchronous={self.synchronous}")
        return conn

    def _init_db(self, *, allow_recovery: bool) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageFailure(f"cannot create state directory for {self.path}: {exc}") from exc

        try:
            with self._conn() as conn:
                conn.execute(SCHEMA_SQL)
                conn.commit()
        except sqlite3.DatabaseError as exc:
            if allow_recovery and self._is_corruption_error(exc) and self._recover_from_corruption():
                return
            raise StorageFailure(f"cannot open state store {self.path}: {exc}") from exc

    @staticmethod
    def _is_corruption_error(exc: BaseException) -> bool:
        text = str(exc).strip().lower()
        return any(marker in text for marker in _CORRUPTION_MARKERS)

    def _corrupt_backup_path(self, source: Path, *, stamp: str) -> Path:
        base = source.with_name(f"{source.name}.corrupt-{stamp}")
        if not base.exists():
            return base
        idx = 1
        while True:
            candidate = source.with_name(f"{source.name}.corrupt-{stamp}-{idx}")
            if not candidate.exists():
                return candidate
            idx += 1

    def _recover_from_corruption(self) -> bool:
        if not self.recover_corruption:
            return False

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        moved: list[Path] = []
        candidates = [
            self.path,
            self.path.with_name(f"{self.path.name}-wal"),
            self.path.with_name(f"{self.path.name}-shm"),
        ]

        for source in candidates:
            if not source.exists():
                continue
            target = self._corrupt_backup_path(source, stamp=stamp)
            try:
                source.replace(target)
            except OSError as exc:
                log.error("failed to move corrupt sqlite file %s: %r", source, exc)
                return False
            moved.append(target)

        if moved:
            log.warning("detected sqlite corruption; moved files: %s", ", ".join(str(p) for p in moved))

        try:
            self._init_db(allow_recovery=False)
        except StorageFailure as exc:
            log.error("failed to reinitialize state store after corruption: %s", exc)
            return False
        return True

    def _run_db(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        try:
            with self._conn() as conn:
                return fn(conn)
        except sqlite3.DatabaseError as exc:
            if self._is_corruption_error(exc) and self._recover_from_corruption():
                try:
                    with self._conn() as conn:
                        return fn(conn)
                except sqlite3.Error as retry_exc:
                    raise StorageFailure(f"sqlite operation failed after recovery: {retry_exc}") from retry_exc
            raise StorageFailure(f"sqlite database error: {exc}") from exc
        except sqlite3.Error as exc:
            raise StorageFailure(f"sqlite error: {exc}") from exc

    def get(self, key: str) -> str | None:
        def _op(conn: sqlite3.Connection) -> str | None:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            return None if row is None else str(row[0])

        return self._run_db(_op)

    def set(self, key: str, value: str) -> None:
        updated_at = datetime.now(timezone.utc).isoformat()

        def _op(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO kv(key, value, updated_at) VALUES(?,?,?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, value, updated_at),
            )
            conn.commit()

        self._run_db(_op)

    def remove(self, key: str) -> None:
        def _op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()

        self._run_db(_op)


def open_store(path: str) -> KeyValueStore:
    """Open the durable store, degrading to memory for this session on failure."""

    try:
        return SqliteKeyValueStore(path)
    except StorageFailure as exc:
        log.warning("state store unavailable (%s); using in-memory store for this session", exc)
        return MemoryKeyValueStore()
