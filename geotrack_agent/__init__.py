from .buffer import LocationBuffer
from .driver import DriverState, SyncDriver, SyncStatus
from .errors import (
    ConfigError,
    GeotrackError,
    PermissionDenied,
    PositionUnavailable,
    RemoteRejected,
    SampleFailure,
    SampleTimeout,
    StorageFailure,
    SyncFailure,
)
from .identity import IdentityResolver, derive_uuid4, is_valid_uuid4
from .records import LocationRecord
from .sampler import Sampler
from .sink import SupabaseSink

__all__ = [
    "ConfigError",
    "DriverState",
    "GeotrackError",
    "IdentityResolver",
    "LocationBuffer",
    "LocationRecord",
    "PermissionDenied",
    "PositionUnavailable",
    "RemoteRejected",
    "SampleFailure",
    "SampleTimeout",
    "Sampler",
    "StorageFailure",
    "SupabaseSink",
    "SyncDriver",
    "SyncFailure",
    "SyncStatus",
    "derive_uuid4",
    "is_valid_uuid4",
]
