from __future__ import annotations


class GeotrackError(Exception):
    """Base class for location sync failures."""


class ConfigError(ValueError):
    """Raised when agent configuration is invalid."""


class PermissionDenied(GeotrackError):
    """Location permission was not granted. Terminal for the session."""


class SampleFailure(GeotrackError):
    """A single position reading failed. The schedule continues."""


class PositionUnavailable(SampleFailure):
    """No usable fix (radio/GPS unavailable or the reading was malformed)."""


class SampleTimeout(SampleFailure):
    """The position primitive did not answer within the sample timeout."""


class StorageFailure(GeotrackError):
    """The persistent key-value store could not be read or written."""


class SyncFailure(GeotrackError):
    """A flush attempt failed; buffered records are retained."""


class RemoteRejected(SyncFailure):
    """Raised when the remote sink refuses a batch.

    retry_after_s is best-effort parsed from Retry-After.
    """

    def __init__(
        self,
        reason: str,
        *,
        status_code: int | None = None,
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
        self.retry_after_s = retry_after_s
