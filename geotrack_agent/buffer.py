from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from .errors import StorageFailure
from .kv_store import KeyValueStore, MemoryKeyValueStore
from .records import LocationRecord

PENDING_QUEUE_KEY = "offline_locations"

log = logging.getLogger("geotrack.buffer")


class LocationBuffer:
    """Append-only queue of undelivered records, persisted as one JSON blob.

    All operations are read-modify-write against a single slot. Callers must
    serialize access; the sync driver does so with its flush lock.

    `max_records` is optional. When set, append drops the oldest records to
    stay within the cap. The default is unbounded.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key: str = PENDING_QUEUE_KEY,
        max_records: int | None = None,
    ) -> None:
        self.store = store
        self.key = key
        self.max_records = max(1, int(max_records)) if max_records else None
        self.evictions_total = 0
        self.degraded = False

    def append(self, record: LocationRecord) -> int:
        """Persist `record` at the tail of the queue and return the new length."""

        records = self._load()
        records.append(record)

        if self.max_records is not None and len(records) > self.max_records:
            dropped = len(records) - self.max_records
            records = records[dropped:]
            self.evictions_total += dropped
            log.warning(
                "buffer cap reached; evicted %s oldest records (queue=%s max=%s)",
                dropped,
                len(records),
                self.max_records,
            )

        self._save(records)
        return len(records)

    def snapshot(self) -> List[LocationRecord]:
        return self._load()

    def clear(self) -> None:
        try:
            self.store.remove(self.key)
        except StorageFailure as exc:
            self._degrade(exc)
            self.store.remove(self.key)

    def count(self) -> int:
        return len(self._load())

    def metrics(self) -> Dict[str, Any]:
        return {
            "buffer_queue_depth": self.count(),
            "buffer_evictions_total": int(self.evictions_total),
            "buffer_degraded": bool(self.degraded),
        }

    def _degrade(self, exc: StorageFailure) -> None:
        # Records already persisted stay on disk for the next session; this
        # session continues with an empty in-memory slot.
        log.warning("buffer storage failed (%s); continuing with in-memory buffer", exc)
        self.store = MemoryKeyValueStore()
        self.degraded = True

    def _read_blob(self) -> str | None:
        try:
            return self.store.get(self.key)
        except StorageFailure as exc:
            self._degrade(exc)
            return self.store.get(self.key)

    def _save(self, records: List[LocationRecord]) -> None:
        blob = json.dumps([r.to_row() for r in records], separators=(",", ":"))
        try:
            self.store.set(self.key, blob)
        except StorageFailure as exc:
            self._degrade(exc)
            self.store.set(self.key, blob)

    def _load(self) -> List[LocationRecord]:
        blob = self._read_blob()
        if blob is None:
            return []

        try:
            rows = json.loads(blob)
        except json.JSONDecodeError:
            rows = None
        if not isinstance(rows, list):
            self._quarantine(blob)
            return []

        out: List[LocationRecord] = []
        for idx, row in enumerate(rows):
            if not isinstance(row, dict):
                log.warning("skipping buffered entry %s: not an object", idx)
                continue
            try:
                out.append(LocationRecord.from_row(row))
            except ValueError as exc:
                log.warning("skipping malformed buffered entry %s: %s", idx, exc)
        return out

    def _quarantine(self, blob: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        backup_key = f"{self.key}.corrupt-{stamp}"
        log.error("pending queue blob is corrupt; moved to %s and reset to empty", backup_key)
        try:
            self.store.set(backup_key, blob)
            self.store.remove(self.key)
        except StorageFailure as exc:
            self._degrade(exc)
