from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from .buffer import LocationBuffer
from .errors import PermissionDenied, RemoteRejected, SampleFailure, SyncFailure
from .identity import IdentityResolver
from .permissions import PermissionSource
from .positions.base import AccuracyHint
from .records import format_timestamp, parse_timestamp, utcnow
from .sampler import Sampler
from .sink import RemoteSink

log = logging.getLogger("geotrack.driver")

PERMISSION_DENIED_MESSAGE = "Permission to access location was denied"
SYNC_FAILED_MESSAGE = "Failed to send locations. Will retry later."


class DriverState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    SAMPLING = "sampling"
    FLUSHING = "flushing"
    IDLE = "idle"
    HALTED = "halted"


class ConnectivityNotifier(Protocol):
    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]: ...


@dataclass(frozen=True)
class SyncStatus:
    """Snapshot of what the surrounding application shows the user."""

    state: DriverState
    message: str
    error: Optional[str]
    pending_count: int
    device_id: Optional[str]
    device_name: str
    last_sample_at: Optional[str]
    last_flush_at: Optional[str]
    consecutive_flush_failures: int

    @property
    def status_line(self) -> str:
        return self.error if self.error else self.message


class SyncDriver:
    """Orchestrates sampling, buffering and flushing for one device.

    Two independent triggers can flush: the sampling schedule and
    connectivity-restored events. Both go through `_lock`, so the buffer's
    read-modify-write cycles never interleave. Sampling itself runs outside
    the lock; a slow fix does not hold up a connectivity flush.

    Failures never escape as exceptions from the trigger paths; they are
    logged and reflected in `status()`.
    """

    def __init__(
        self,
        *,
        permissions: PermissionSource,
        identity: IdentityResolver,
        buffer: LocationBuffer,
        sampler: Sampler,
        sink: RemoteSink,
        device_name: str,
        connectivity: ConnectivityNotifier | None = None,
        sample_interval_s: float = 3600.0,
        accuracy_hint: AccuracyHint = "balanced",
    ) -> None:
        self.permissions = permissions
        self.identity = identity
        self.buffer = buffer
        self.sampler = sampler
        self.sink = sink
        self.device_name = device_name
        self.connectivity = connectivity
        self.sample_interval_s = max(1.0, float(sample_interval_s))
        self.accuracy_hint = accuracy_hint

        self.state = DriverState.INITIALIZING
        self.device_id: str | None = None
        self.consecutive_flush_failures = 0

        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._last_connected: bool | None = None

        self._message = "Initializing..."
        self._error: str | None = None
        self._last_sample_at: str | None = None
        self._last_flush_at: str | None = None

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def initialize(self) -> bool:
        """Request permission and resolve identity. Returns False when halted."""

        with self._lock:
            if self.state == DriverState.HALTED:
                return False
            if self.state != DriverState.INITIALIZING:
                return True

            try:
                granted = bool(self.permissions.request_foreground_location_permission())
            except PermissionDenied:
                granted = False

            if not granted:
                self.state = DriverState.HALTED
                self._error = PERMISSION_DENIED_MESSAGE
                log.error("location permission denied; tracking halted for this session")
                return False

            self.device_id = self.identity.resolve()
            self.sampler.bind_identity(device_id=self.device_id, device_name=self.device_name)
            self.state = DriverState.READY
            self._message = "Tracking started"
            log.info("tracking ready device_id=%s device_name=%s", self.device_id, self.device_name)
            return True

    def start(self) -> bool:
        """Initialize, register the connectivity listener and start the schedule.

        The first sample is taken immediately on the scheduler thread.
        """

        if not self.initialize():
            return False
        if self._thread is not None:
            return True

        if self.connectivity is not None:
            self._unsubscribe = self.connectivity.subscribe(self.on_connectivity_change)

        self._stop.clear()
        self._thread = threading.Thread(target=self._run_schedule, name="geotrack-scheduler", daemon=True)
        self._thread.start()
        return True

    def stop(self, timeout_s: float = 10.0) -> None:
        """Cancel the schedule and deregister the connectivity listener."""

        self._stop.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout_s)
        self._thread = None

    def wait(self, timeout_s: float | None = None) -> bool:
        """Block until stop() is called. Returns True if stopped."""

        return self._stop.wait(timeout_s)

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    def _run_schedule(self) -> None:
        next_at = time.monotonic()
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception:
                log.exception("sync cycle failed unexpectedly")

            next_at += self.sample_interval_s
            now = time.monotonic()
            if next_at < now:
                # Skip ticks that were missed while a cycle overran.
                missed = int((now - next_at) // self.sample_interval_s) + 1
                next_at += missed * self.sample_interval_s
            if self._stop.wait(next_at - now):
                break

    # -----------------------------
    # Triggers
    # -----------------------------

    def run_cycle(self) -> bool:
        """Sample once, buffer the reading and attempt a flush.

        Returns True when a reading was buffered.
        """

        if not self._active():
            log.debug("cycle skipped in state=%s", self.state.value)
            return False

        with self._lock:
            self.state = DriverState.SAMPLING

        try:
            record = self.sampler.sample(self.accuracy_hint)
        except (SampleFailure, PermissionDenied) as exc:
            with self._lock:
                self._error = f"Location update failed: {exc}"
                self.state = DriverState.IDLE
                log.warning("sample failed: %s (buffer untouched, queue=%s)", exc, self.buffer.count())
            return False

        with self._lock:
            queued = self.buffer.append(record)
            self._last_sample_at = record.timestamp
            self._message = "Location updated: " + _local_clock(record.timestamp)
            self._error = None
            log.info(
                "buffered location lat=%.6f lon=%.6f at %s queue=%s",
                record.latitude,
                record.longitude,
                record.timestamp,
                queued,
            )
            self._flush_locked()
            self.state = DriverState.IDLE
        return True

    def flush(self) -> bool:
        """Send the whole buffer as one batch. Returns True if nothing remains."""

        if not self._active():
            return False
        with self._lock:
            ok = self._flush_locked()
            self.state = DriverState.IDLE
            return ok

    def on_connectivity_change(self, connected: bool) -> None:
        with self._lock:
            previous = self._last_connected
            self._last_connected = bool(connected)
            if not connected or previous is True:
                return
            if not self._active():
                return
            log.info("connectivity restored; flushing pending records")
            self.flush()

    def _active(self) -> bool:
        return self.state not in (DriverState.INITIALIZING, DriverState.HALTED)

    def _flush_locked(self) -> bool:
        records = self.buffer.snapshot()
        if not records:
            return True

        self.state = DriverState.FLUSHING
        try:
            self.sink.insert_batch(records)
        except SyncFailure as exc:
            self.consecutive_flush_failures += 1
            self._error = SYNC_FAILED_MESSAGE
            if isinstance(exc, RemoteRejected) and exc.retry_after_s is not None:
                log.warning(
                    "flush of %s records rate limited (retry_after=%.0fs); buffer retained",
                    len(records),
                    exc.retry_after_s,
                )
            else:
                log.warning("flush of %s records failed: %s; buffer retained", len(records), exc)
            return False

        self.buffer.clear()
        self.consecutive_flush_failures = 0
        self._last_flush_at = _now_iso()
        self._error = None
        log.info("sent %s buffered locations", len(records))
        return True

    # -----------------------------
    # Status
    # -----------------------------

    def status(self) -> SyncStatus:
        with self._lock:
            return SyncStatus(
                state=self.state,
                message=self._message,
                error=self._error,
                pending_count=self.buffer.count(),
                device_id=self.device_id,
                device_name=self.device_name,
                last_sample_at=self._last_sample_at,
                last_flush_at=self._last_flush_at,
                consecutive_flush_failures=self.consecutive_flush_failures,
            )


def _local_clock(timestamp: str) -> str:
    try:
        return parse_timestamp(timestamp).astimezone().strftime("%H:%M:%S")
    except ValueError:
        return timestamp


def _now_iso() -> str:
    return format_timestamp(utcnow())
