from __future__ import annotations

import hashlib
import logging
import os
import re
import socket
import uuid

from .errors import StorageFailure
from .kv_store import KeyValueStore
from .records import UNKNOWN_DEVICE_NAME

DEVICE_ID_KEY = "device_id"

_UUID4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

log = logging.getLogger("geotrack.identity")


def is_valid_uuid4(value: str) -> bool:
    return bool(_UUID4_RE.match(value))


def derive_uuid4(value: str) -> str:
    """Map any string onto a well-formed UUIDv4 string, deterministically.

    The md5 digest is reshaped into the v4 layout: the version nibble is
    forced to 4 and the variant bits of the clock-seq byte to 10xx.
    """

    h = hashlib.md5(value.encode("utf-8")).hexdigest()
    variant = (int(h[16:18], 16) & 0x3F) | 0x80
    return f"{h[0:8]}-{h[8:12]}-4{h[13:16]}-{variant:02x}{h[18:20]}-{h[20:32]}"


def resolve_device_name(explicit: str | None = None) -> str:
    """Return a human-readable device name, never empty."""

    for candidate in (explicit, os.getenv("GEOTRACK_DEVICE_NAME")):
        if candidate and candidate.strip():
            return candidate.strip()
    try:
        hostname = socket.gethostname().strip()
    except OSError:
        hostname = ""
    return hostname or UNKNOWN_DEVICE_NAME


class IdentityResolver:
    """Derives and persists the per-installation device identity."""

    def __init__(self, store: KeyValueStore, *, key: str = DEVICE_ID_KEY) -> None:
        self.store = store
        self.key = key
        self._session_identity: str | None = None

    def resolve(self) -> str:
        """Return the persisted identity, creating or repairing it as needed.

        Writes to the store at most once per call. A storage failure is logged
        and the identity is kept in memory for the rest of the session.
        """

        try:
            current = self.store.get(self.key)
        except StorageFailure as exc:
            log.warning("identity read failed (%s); using in-memory identity", exc)
            return self._in_memory_identity()

        if current is not None and is_valid_uuid4(current):
            return current

        if current is None:
            identity = self._session_identity or str(uuid.uuid4())
            log.info("generated new device identity %s", identity)
        else:
            identity = derive_uuid4(current)
            log.warning("stored device identity %r is malformed; repaired to %s", current, identity)

        try:
            self.store.set(self.key, identity)
        except StorageFailure as exc:
            log.warning("identity write failed (%s); identity kept in memory for this session", exc)
        self._session_identity = identity
        return identity

    def _in_memory_identity(self) -> str:
        if self._session_identity is None:
            self._session_identity = str(uuid.uuid4())
        return self._session_identity
