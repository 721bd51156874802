from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .connectivity import ConnectivityConfig
from .errors import ConfigError
from .positions.base import ACCURACY_HINTS, AccuracyHint
from .sink import SinkConfig

log = logging.getLogger("geotrack.config")

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


@dataclass(frozen=True)
class AgentConfig:
    state_db_path: str
    device_name: str | None
    sample_interval_s: float
    sample_timeout_s: float
    accuracy_hint: AccuracyHint
    buffer_max_records: int | None
    log_level: str
    log_format: str
    sink: SinkConfig | None
    connectivity: ConnectivityConfig

    def require_sink(self) -> SinkConfig:
        if self.sink is None:
            raise ConfigError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
        return self.sink


def load_env_files() -> None:
    # Repo-level .env (if present), then package-local overrides.
    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")


def _parse_positive_float_env(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return float(default)
    try:
        value = float(raw.strip())
    except ValueError:
        log.warning("invalid %s=%r; using %s", name, raw, default)
        return float(default)
    if value <= 0:
        log.warning("invalid %s=%r; using %s", name, raw, default)
        return float(default)
    return value


def _parse_optional_positive_int_env(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        log.warning("invalid %s=%r; using unbounded", name, raw)
        return None
    if value <= 0:
        return None
    return value


def _parse_bool_env(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    log.warning("invalid %s=%r; using %s", name, raw, default)
    return default


def _get_optional_str(name: str) -> str | None:
    v = os.getenv(name)
    if v is None:
        return None
    vv = v.strip()
    return vv or None


def _parse_accuracy_env(name: str, *, default: AccuracyHint) -> AccuracyHint:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw not in ACCURACY_HINTS:
        raise ConfigError(f"{name} must be one of: {sorted(ACCURACY_HINTS)}")
    return raw  # type: ignore[return-value]


def load_sink_config_from_env() -> SinkConfig | None:
    url = _get_optional_str("SUPABASE_URL")
    api_key = _get_optional_str("SUPABASE_ANON_KEY")
    if url is None and api_key is None:
        return None
    if url is None or api_key is None:
        raise ConfigError("SUPABASE_URL and SUPABASE_ANON_KEY must be set together")
    if not url.startswith(("http://", "https://")):
        raise ConfigError(f"SUPABASE_URL must be an http(s) URL, got {url!r}")

    table = _get_optional_str("SUPABASE_TABLE") or "locations"
    return SinkConfig(
        url=url,
        api_key=api_key,
        table=table,
        timeout_s=_parse_positive_float_env("SINK_TIMEOUT_S", default=10.0),
    )


def load_connectivity_config_from_env() -> ConnectivityConfig:
    dns_host = _get_optional_str("CONNECTIVITY_DNS_HOST") or "www.gstatic.com"
    http_url = _get_optional_str("CONNECTIVITY_HTTP_URL") or "https://www.gstatic.com/generate_204"
    return ConnectivityConfig(
        enabled=_parse_bool_env("CONNECTIVITY_ENABLED", default=True),
        interval_s=_parse_positive_float_env("CONNECTIVITY_INTERVAL_S", default=30.0),
        dns_host=dns_host,
        http_url=http_url,
        timeout_s=_parse_positive_float_env("CONNECTIVITY_TIMEOUT_S", default=2.5),
    )


def load_config_from_env() -> AgentConfig:
    return AgentConfig(
        state_db_path=_get_optional_str("GEOTRACK_STATE_DB_PATH") or "./geotrack_state.sqlite",
        device_name=_get_optional_str("GEOTRACK_DEVICE_NAME"),
        sample_interval_s=_parse_positive_float_env("GEOTRACK_SAMPLE_INTERVAL_S", default=3600.0),
        sample_timeout_s=_parse_positive_float_env("GEOTRACK_SAMPLE_TIMEOUT_S", default=30.0),
        accuracy_hint=_parse_accuracy_env("GEOTRACK_ACCURACY", default="balanced"),
        buffer_max_records=_parse_optional_positive_int_env("BUFFER_MAX_RECORDS"),
        log_level=(_get_optional_str("LOG_LEVEL") or "INFO").upper(),
        log_format=(_get_optional_str("LOG_FORMAT") or "text").lower(),
        sink=load_sink_config_from_env(),
        connectivity=load_connectivity_config_from_env(),
    )
