from __future__ import annotations

import enum
import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Protocol

import requests

from .buffer import SqliteBuffer
from .credentials import PLACEHOLDER_TOKEN
from .decision import DeliveryState, DeliveryStateHolder
from .models import Payload

logger = logging.getLogger("geobeacon.delivery")

LOCATION_UPDATE_PATH = "/api/location/update"


class HTTPSession(Protocol):
    def post(
        self,
        url: str,
        *,
        headers: Mapping[str, str],
        json: Mapping[str, object],
        timeout: float,
    ) -> Any:
        raise NotImplementedError


class DeliveryResult(str, enum.Enum):
    DELIVERED = "delivered"
    BUFFERED = "buffered"
    # Neither sent nor persisted: the buffer could not be written.
    DROPPED = "dropped"


@dataclass(frozen=True)
class SendResult:
    ok: bool
    status_code: int | None = None
    retry_after_s: float | None = None
    error: str | None = None


class DeliveryCounters:
    """Thread-safe counters for delivered / buffered / failed payloads."""

    _FIELDS = (
        "delivered",
        "buffered",
        "send_failures",
        "buffer_write_failures",
        "skipped",
        "flushed",
        "flush_failures",
        "deadlettered",
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, int] = {name: 0 for name in self._FIELDS}

    def incr(self, name: str, n: int = 1) -> None:
        if name not in self._values:
            raise KeyError(name)
        with self._lock:
            self._values[name] += int(n)

    def get(self, name: str) -> int:
        with self._lock:
            return self._values[name]

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)


def _parse_retry_after_seconds(headers: Mapping[str, Any]) -> float | None:
    """Parse Retry-After (seconds only). Returns None if unparseable."""

    ra = headers.get("Retry-After")
    if not ra:
        return None
    try:
        value = float(str(ra).strip())
    except ValueError:
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


def post_location(
    session: HTTPSession,
    api_url: str,
    token: str,
    payload: Mapping[str, Any],
    timeout_s: float = 10.0,
) -> Any:
    return session.post(
        f"{api_url.rstrip('/')}{LOCATION_UPDATE_PATH}",
        headers={
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        },
        json=payload,
        timeout=timeout_s,
    )


class DeliveryPipeline:
    """Send one payload now, or persist it for the flush scheduler.

    `deliver` never raises for network trouble; failures degrade into
    buffering. Retries are not attempted here.
    """

    def __init__(
        self,
        *,
        session: HTTPSession,
        api_url: str,
        buffer: SqliteBuffer,
        state: DeliveryStateHolder,
        is_connected: Callable[[], bool],
        token_source: Callable[[], str | None] | None = None,
        timeout_s: float = 10.0,
        counters: DeliveryCounters | None = None,
    ) -> None:
        self.session = session
        self.api_url = api_url
        self.buffer = buffer
        self.state = state
        self.is_connected = is_connected
        self.token_source = token_source
        self.timeout_s = float(timeout_s)
        self.counters = counters or DeliveryCounters()

        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")

    def _token(self) -> str:
        if self.token_source is None:
            return PLACEHOLDER_TOKEN
        try:
            token = self.token_source()
        except Exception as exc:
            logger.warning("token lookup failed; using placeholder: %r", exc)
            return PLACEHOLDER_TOKEN
        return token or PLACEHOLDER_TOKEN

    def _connected(self) -> bool:
        try:
            return bool(self.is_connected())
        except Exception as exc:
            logger.warning("connectivity check failed; assuming offline: %r", exc)
            return False

    def send(self, payload: Payload | Mapping[str, Any]) -> SendResult:
        """POST a single payload. Does not buffer and does not touch DeliveryState."""

        body = payload.to_json() if isinstance(payload, Payload) else dict(payload)
        try:
            resp = post_location(self.session, self.api_url, self._token(), body, timeout_s=self.timeout_s)
        except requests.RequestException as exc:
            logger.warning("send failed: %r", exc)
            return SendResult(ok=False, error=repr(exc))
        except Exception as exc:
            # e.g. UnicodeEncodeError from http.client for a non latin-1 token
            logger.exception("send failed unexpectedly")
            return SendResult(ok=False, error=repr(exc))

        status = int(resp.status_code)
        if 200 <= status < 300:
            return SendResult(ok=True, status_code=status)

        retry_after_s = _parse_retry_after_seconds(getattr(resp, "headers", {}) or {}) if status == 429 else None
        body_text = (getattr(resp, "text", "") or "")[:200]
        logger.warning(
            "collector rejected payload: %s %s",
            status,
            body_text,
            extra={"fields": {"status_code": status, "retry_after_s": retry_after_s}},
        )
        return SendResult(ok=False, status_code=status, retry_after_s=retry_after_s, error=body_text)

    def deliver(self, payload: Payload) -> DeliveryResult:
        if not self._connected():
            return self._buffer(payload, reason="offline")

        result = self.send(payload)
        if not result.ok:
            self.counters.incr("send_failures")
            return self._buffer(payload, reason="send_failed")

        # Measure future decisions from the acknowledged point, not from send time.
        self.state.set(DeliveryState.from_payload(payload))
        self.counters.incr("delivered")
        logger.info(
            "delivered lat=%.6f lon=%.6f captured_at=%s",
            payload.lat,
            payload.lon,
            payload.captured_at,
        )
        return DeliveryResult.DELIVERED

    def _buffer(self, payload: Payload, *, reason: str) -> DeliveryResult:
        if not self.buffer.append(payload):
            self.counters.incr("buffer_write_failures")
            logger.error(
                "payload could not be buffered and was dropped (%s)",
                reason,
                extra={"fields": {"captured_at": payload.captured_at, "reason": reason}},
            )
            return DeliveryResult.DROPPED

        self.counters.incr("buffered")
        logger.info("%s -> buffered queue=%s", reason, self.buffer.count())
        return DeliveryResult.BUFFERED

    def metrics(self) -> Dict[str, int]:
        out = dict(self.counters.snapshot())
        out.update(self.buffer.metrics())
        return out
