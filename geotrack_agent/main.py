from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

from .buffer import LocationBuffer
from .config import AgentConfig, load_config_from_env, load_env_files
from .connectivity import ConnectivityMonitor
from .driver import SyncDriver, SyncStatus
from .errors import ConfigError, StorageFailure
from .identity import DEVICE_ID_KEY, IdentityResolver, is_valid_uuid4, resolve_device_name
from .kv_store import KeyValueStore, open_store
from .observability import configure_logging, set_log_device_id
from .permissions import EnvPermissionSource
from .positions import build_position_source, load_position_config_from_env
from .sampler import Sampler
from .sink import SupabaseSink

log = logging.getLogger("geotrack.main")


@dataclass
class Agent:
    """Constructed-once collaborators for one process, with teardown."""

    config: AgentConfig
    store: KeyValueStore
    driver: SyncDriver
    sampler: Sampler
    sink: SupabaseSink
    monitor: Optional[ConnectivityMonitor]

    def close(self) -> None:
        self.driver.stop()
        if self.monitor is not None:
            self.monitor.stop()
        self.sampler.close()
        self.sink.close()


def build_agent(config: AgentConfig) -> Agent:
    sink_config = config.require_sink()
    store = open_store(config.state_db_path)
    device_name = resolve_device_name(config.device_name)

    position_source = build_position_source(
        device_key=device_name,
        config=load_position_config_from_env(),
    )
    sampler = Sampler(position_source, timeout_s=config.sample_timeout_s)
    sink = SupabaseSink(sink_config)
    monitor = ConnectivityMonitor(config.connectivity) if config.connectivity.enabled else None

    driver = SyncDriver(
        permissions=EnvPermissionSource(),
        identity=IdentityResolver(store),
        buffer=LocationBuffer(store, max_records=config.buffer_max_records),
        sampler=sampler,
        sink=sink,
        device_name=device_name,
        connectivity=monitor,
        sample_interval_s=config.sample_interval_s,
        accuracy_hint=config.accuracy_hint,
    )
    return Agent(config=config, store=store, driver=driver, sampler=sampler, sink=sink, monitor=monitor)


def _status_payload(status: SyncStatus, buffer: LocationBuffer) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "state": status.state.value,
        "status": status.status_line,
        "device_id": status.device_id,
        "device_name": status.device_name,
        "pending_count": status.pending_count,
        "last_sample_at": status.last_sample_at,
        "last_flush_at": status.last_flush_at,
        "consecutive_flush_failures": status.consecutive_flush_failures,
    }
    payload.update(buffer.metrics())
    return payload


def _print_json(payload: Dict[str, Any], out: TextIO) -> None:
    out.write(json.dumps(payload, sort_keys=True) + "\n")


def cmd_run(config: AgentConfig) -> int:
    agent = build_agent(config)

    def _terminate(signum: int, _frame: Any) -> None:
        log.info("received signal %s; stopping", signum)
        agent.driver.stop()

    signal.signal(signal.SIGTERM, _terminate)

    try:
        if not agent.driver.start():
            log.error("tracking halted: %s", agent.driver.status().status_line)
            return 2
        set_log_device_id(agent.driver.device_id)
        if agent.monitor is not None:
            agent.monitor.start()

        log.info(
            "device_id=%s device_name=%s interval=%ss store=%s table=%s connectivity=%s",
            agent.driver.device_id,
            agent.driver.device_name,
            int(config.sample_interval_s),
            config.state_db_path,
            agent.sink.config.table,
            "enabled" if agent.monitor is not None else "disabled",
        )
        agent.driver.wait()
    except KeyboardInterrupt:
        log.info("interrupted; stopping")
    finally:
        agent.close()
    return 0


def cmd_once(config: AgentConfig, out: TextIO) -> int:
    agent = build_agent(config)
    try:
        if not agent.driver.initialize():
            _print_json(_status_payload(agent.driver.status(), agent.driver.buffer), out)
            return 2
        set_log_device_id(agent.driver.device_id)
        agent.driver.run_cycle()
        status = agent.driver.status()
        _print_json(_status_payload(status, agent.driver.buffer), out)
        return 0 if status.error is None else 1
    finally:
        agent.close()


def cmd_flush(config: AgentConfig, out: TextIO) -> int:
    agent = build_agent(config)
    try:
        if not agent.driver.initialize():
            _print_json(_status_payload(agent.driver.status(), agent.driver.buffer), out)
            return 2
        ok = agent.driver.flush()
        _print_json(_status_payload(agent.driver.status(), agent.driver.buffer), out)
        return 0 if ok else 1
    finally:
        agent.close()


def _stored_device_id(store: KeyValueStore) -> Optional[str]:
    # Read-only: a missing or malformed identity is reported as null, not repaired.
    try:
        value = store.get(DEVICE_ID_KEY)
    except StorageFailure as exc:
        log.warning("cannot read device identity: %s", exc)
        return None
    if value is None or not is_valid_uuid4(value):
        return None
    return value


def cmd_status(config: AgentConfig, out: TextIO) -> int:
    store = open_store(config.state_db_path)
    buf = LocationBuffer(store, max_records=config.buffer_max_records)
    payload: Dict[str, Any] = {
        "device_id": _stored_device_id(store),
        "device_name": resolve_device_name(config.device_name),
        "pending_count": buf.count(),
        "state_db_path": config.state_db_path,
    }
    payload.update(buf.metrics())
    _print_json(payload, out)
    return 0


def cmd_export(config: AgentConfig, output: Optional[str], out: TextIO) -> int:
    store = open_store(config.state_db_path)
    records = LocationBuffer(store).snapshot()
    lines: List[str] = [json.dumps(r.to_row(), sort_keys=True) for r in records]

    if output:
        path = Path(output)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
        log.info("exported %s buffered records to %s", len(lines), path)
    else:
        for line in lines:
            out.write(line + "\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="geotrack-agent",
        description="Periodically sample device position and sync it to a remote table",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the sampling schedule until stopped")
    sub.add_parser("once", help="Take one sample, buffer it and attempt a flush")
    sub.add_parser("flush", help="Send buffered records without sampling")
    sub.add_parser("status", help="Print identity and pending record count as JSON")
    export = sub.add_parser("export", help="Write buffered records as JSON lines")
    export.add_argument("--output", default=None, help="Destination file (default: stdout)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_env_files()
    args = build_parser().parse_args(argv)

    try:
        config = load_config_from_env()
    except ConfigError as exc:
        raise SystemExit(f"geotrack-agent: invalid config: {exc}") from exc

    configure_logging(level=config.log_level, log_format=config.log_format)

    try:
        if args.command == "run":
            return cmd_run(config)
        if args.command == "once":
            return cmd_once(config, sys.stdout)
        if args.command == "flush":
            return cmd_flush(config, sys.stdout)
        if args.command == "status":
            return cmd_status(config, sys.stdout)
        return cmd_export(config, args.output, sys.stdout)
    except ConfigError as exc:
        raise SystemExit(f"geotrack-agent: invalid config: {exc}") from exc


if __name__ == "__main__":
    sys.exit(main())
