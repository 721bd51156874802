from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from typing import Callable, List

import requests

log = logging.getLogger("geotrack.connectivity")

ConnectivityListener = Callable[[bool], None]
DnsProbe = Callable[[str, float], bool]
HttpProbe = Callable[[str, float], bool]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class ConnectivityConfig:
    enabled: bool = True
    interval_s: float = 30.0
    dns_host: str = "www.gstatic.com"
    http_url: str = "https://www.gstatic.com/generate_204"
    timeout_s: float = 2.5


class ConnectivityMonitor:
    """Polls DNS + HTTP reachability and publishes "is-connected" changes.

    Listeners are called from the monitor thread with the new boolean state
    whenever it differs from the previous observation, including the first
    observation after start().
    """

    def __init__(
        self,
        config: ConnectivityConfig,
        *,
        dns_probe: DnsProbe | None = None,
        http_probe: HttpProbe | None = None,
    ) -> None:
        self.config = config
        self._dns_probe = dns_probe or _default_dns_probe
        self._http_probe = http_probe or _default_http_probe
        self._listeners: List[ConnectivityListener] = []
        self._listeners_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.connected: bool | None = None

    def subscribe(self, listener: ConnectivityListener) -> Unsubscribe:
        with self._listeners_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def probe(self) -> bool:
        try:
            dns_ok = bool(self._dns_probe(self.config.dns_host, self.config.timeout_s))
        except Exception:
            dns_ok = False
        if not dns_ok:
            return False

        try:
            return bool(self._http_probe(self.config.http_url, self.config.timeout_s))
        except Exception:
            return False

    def poll_once(self) -> bool:
        """Probe once and notify listeners if the state changed."""

        connected = self.probe()
        if connected != self.connected:
            previous = self.connected
            self.connected = connected
            log.info("connectivity changed: %s -> %s", _label(previous), _label(connected))
            self._publish(connected)
        return connected

    def _publish(self, connected: bool) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(connected)
            except Exception:
                log.exception("connectivity listener failed")

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="geotrack-connectivity", daemon=True)
        self._thread.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout_s)
        self._thread = None
        with self._listeners_lock:
            self._listeners.clear()

    def _run(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(max(1.0, float(self.config.interval_s)))


def _label(state: bool | None) -> str:
    if state is None:
        return "unknown"
    return "online" if state else "offline"


def _default_dns_probe(hostname: str, timeout_s: float) -> bool:
    # getaddrinfo has no per-call timeout argument; we keep this best-effort.
    _ = timeout_s
    try:
        socket.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except OSError:
        return False
    return True


def _default_http_probe(url: str, timeout_s: float) -> bool:
    try:
        resp = requests.head(url, timeout=timeout_s, allow_redirects=True)
        if resp.status_code == 405:
            resp = requests.get(url, timeout=timeout_s, allow_redirects=True, stream=True)
        return 200 <= resp.status_code < 500
    except requests.RequestException:
        return False
