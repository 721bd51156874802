from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Protocol, Sequence

import requests

from .errors import RemoteRejected
from .records import LocationRecord

log = logging.getLogger("geotrack.sink")


class RemoteSink(Protocol):
    """Bulk insert of buffered records; the whole batch succeeds or fails."""

    def insert_batch(self, records: Sequence[LocationRecord]) -> None: ...


@dataclass(frozen=True)
class SinkConfig:
    url: str
    api_key: str
    table: str = "locations"
    timeout_s: float = 10.0


def _parse_retry_after_seconds(headers: Mapping[str, Any]) -> float | None:
    """Parse Retry-After (seconds only). Returns None if unparseable."""

    ra = headers.get("Retry-After")
    if not ra:
        return None
    try:
        return float(str(ra).strip())
    except ValueError:
        return None


def _error_reason(resp: requests.Response) -> str:
    # PostgREST errors are JSON objects with message/details/hint/code.
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        parts = [str(body[k]) for k in ("code", "message", "details", "hint") if body.get(k)]
        if parts:
            return f"HTTP {resp.status_code}: " + " | ".join(parts)
    return f"HTTP {resp.status_code}: {resp.text[:200]}"


def estimate_payload_bytes(rows: List[Dict[str, Any]]) -> int:
    blob = json.dumps(rows, separators=(",", ":"), ensure_ascii=False)
    return len(blob.encode("utf-8"))


class SupabaseSink:
    """Inserts rows into a Supabase table through its PostgREST endpoint.

    Any non-2xx status or transport error is a RemoteRejected; the caller
    keeps the batch. There is no deduplication at this layer.
    """

    def __init__(self, config: SinkConfig, *, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return f"{self.config.url.rstrip('/')}/rest/v1/{self.config.table}"

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.config.api_key,
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }

    def insert_batch(self, records: Sequence[LocationRecord]) -> None:
        rows = [r.to_row() for r in records]
        if not rows:
            return

        try:
            resp = self.session.post(
                self.endpoint,
                headers=self._headers(),
                json=rows,
                timeout=self.config.timeout_s,
            )
        except requests.RequestException as exc:
            raise RemoteRejected(f"transport error: {exc!r}") from exc

        if 200 <= resp.status_code < 300:
            log.debug("inserted %s rows (%s bytes) into %s", len(rows), estimate_payload_bytes(rows), self.config.table)
            return

        if resp.status_code == 429:
            raise RemoteRejected(
                f"rate limited: {resp.text[:200]}",
                status_code=429,
                retry_after_s=_parse_retry_after_seconds(resp.headers),
            )

        raise RemoteRejected(_error_reason(resp), status_code=resp.status_code)

    def close(self) -> None:
        self.session.close()
