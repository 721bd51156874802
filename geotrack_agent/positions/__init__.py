from .base import ACCURACY_HINTS, AccuracyHint, Position, PositionSource
from .config import PositionConfig, build_position_source, load_position_config_from_env

__all__ = [
    "ACCURACY_HINTS",
    "AccuracyHint",
    "Position",
    "PositionConfig",
    "PositionSource",
    "build_position_source",
    "load_position_config_from_env",
]
