from __future__ import annotations

import logging
import os
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable

import requests


class ConnectivityConfigError(ValueError):
    """Raised when connectivity env configuration is invalid."""


ConnectivityOracle = Callable[[], bool]
DnsProbe = Callable[[str, float], bool]
HttpProbe = Callable[[str, float], bool]

_VALID_MODES = {"probe", "always", "never"}

logger = logging.getLogger("geobeacon.connectivity")


@dataclass(frozen=True)
class ConnectivityConfig:
    mode: str
    dns_host: str
    http_url: str
    timeout_s: float
    cache_s: float


class ConnectivityMonitor:
    """Synchronous connected/disconnected oracle.

    In `probe` mode the link counts as up only when both a DNS lookup and an
    HTTP probe succeed. Results are cached for `cache_s` so that bursts of
    samples do not each pay for a probe.
    """

    def __init__(
        self,
        config: ConnectivityConfig,
        *,
        dns_probe: DnsProbe | None = None,
        http_probe: HttpProbe | None = None,
        now_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._dns_probe = dns_probe or _default_dns_probe
        self._http_probe = http_probe or _default_http_probe
        self._now_fn = now_fn

        self._lock = threading.Lock()
        self._cached: bool | None = None
        self._next_probe_at = 0.0

    def __call__(self) -> bool:
        return self.is_connected()

    def is_connected(self) -> bool:
        if self.config.mode == "always":
            return True
        if self.config.mode == "never":
            return False

        with self._lock:
            now = self._now_fn()
            if self._cached is not None and now < self._next_probe_at:
                return self._cached

            connected = self._probe()
            if connected != self._cached:
                logger.info("connectivity %s", "up" if connected else "down")
            self._cached = connected
            self._next_probe_at = now + self.config.cache_s
            return connected

    def invalidate(self) -> None:
        with self._lock:
            self._next_probe_at = 0.0

    def _probe(self) -> bool:
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


def build_connectivity_monitor_from_env() -> ConnectivityMonitor:
    return ConnectivityMonitor(load_connectivity_config_from_env())


def load_connectivity_config_from_env() -> ConnectivityConfig:
    mode = os.getenv("CONNECTIVITY_MODE", "probe").strip().lower() or "probe"
    if mode not in _VALID_MODES:
        raise ConnectivityConfigError(f"CONNECTIVITY_MODE must be one of: {sorted(_VALID_MODES)}")

    dns_host = os.getenv("CONNECTIVITY_DNS_HOST", "www.gstatic.com").strip()
    if not dns_host:
        raise ConnectivityConfigError("CONNECTIVITY_DNS_HOST must be non-empty")

    http_url = os.getenv("CONNECTIVITY_HTTP_URL", "https://www.gstatic.com/generate_204").strip()
    if not http_url:
        raise ConnectivityConfigError("CONNECTIVITY_HTTP_URL must be non-empty")

    return ConnectivityConfig(
        mode=mode,
        dns_host=dns_host,
        http_url=http_url,
        timeout_s=_parse_positive_float_env("CONNECTIVITY_TIMEOUT_S", default=2.5),
        cache_s=_parse_non_negative_float_env("CONNECTIVITY_CACHE_S", default=5.0),
    )


def _parse_positive_float_env(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return float(default)
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ConnectivityConfigError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ConnectivityConfigError(f"{name} must be > 0")
    return parsed


def _parse_non_negative_float_env(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return float(default)
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ConnectivityConfigError(f"{name} must be a number") from exc
    if parsed < 0:
        raise ConnectivityConfigError(f"{name} must be >= 0")
    return parsed


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
