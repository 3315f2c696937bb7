from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict

from apscheduler.schedulers.background import BackgroundScheduler

from .buffer import SqliteBuffer
from .delivery import DeliveryPipeline
from .models import Payload, PayloadError

logger = logging.getLogger("geobeacon.flush")

FLUSH_JOB_ID = "buffer_flush"


@dataclass(frozen=True)
class FlushReport:
    connected: bool
    attempted: int = 0
    delivered: int = 0
    deadlettered: int = 0
    remaining: int = 0
    stopped_early: bool = False
    skipped_reason: str | None = None


class FlushScheduler:
    """Drain the durable buffer through the pipeline's send step.

    Rows are sent strictly oldest-first and removed one by one after a 2xx.
    The first failed send ends the drain for this tick. Replayed payloads do
    not update DeliveryState.
    """

    def __init__(
        self,
        *,
        pipeline: DeliveryPipeline,
        buffer: SqliteBuffer,
        is_connected: Callable[[], bool],
        interval_s: float = 30.0,
        batch_size: int = 50,
        deadletter_path: Path | None = None,
        max_retry_after_s: float = 900.0,
        now_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pipeline = pipeline
        self.buffer = buffer
        self.is_connected = is_connected
        self.interval_s = float(interval_s)
        self.batch_size = max(1, int(batch_size))
        self.deadletter_path = deadletter_path
        self.max_retry_after_s = max(0.0, float(max_retry_after_s))
        self._now_fn = now_fn

        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._last_connected: bool | None = None
        self._not_before = 0.0
        self._scheduler: BackgroundScheduler | None = None

        if self.interval_s <= 0:
            raise ValueError("interval_s must be > 0")

    # -----------------------------
    # Triggers
    # -----------------------------

    def tick(self) -> FlushReport:
        connected = self._connected()
        self._remember_connectivity(connected)
        return self.flush_once(connected=connected)

    def notify_connectivity(self, connected: bool) -> FlushReport | None:
        """Flush immediately when the link goes from down to up."""

        previous = self._remember_connectivity(bool(connected))
        if connected and previous is False:
            logger.info("connectivity restored; flushing buffer")
            return self.flush_once()
        return None

    def _remember_connectivity(self, connected: bool) -> bool | None:
        with self._state_lock:
            previous = self._last_connected
            self._last_connected = connected
            return previous

    # -----------------------------
    # Drain
    # -----------------------------

    def flush_once(self, *, connected: bool | None = None) -> FlushReport:
        if not self._run_lock.acquire(blocking=False):
            return FlushReport(connected=bool(connected), skipped_reason="already_running")
        try:
            return self._flush(connected)
        except Exception:
            logger.exception("buffer flush failed")
            self.pipeline.counters.incr("flush_failures")
            return FlushReport(connected=bool(connected), stopped_early=True, skipped_reason="error")
        finally:
            self._run_lock.release()

    def _flush(self, connected: bool | None) -> FlushReport:
        if connected is None:
            connected = self._connected()
        if not connected:
            return FlushReport(connected=False, skipped_reason="offline")

        with self._state_lock:
            not_before = self._not_before
        if self._now_fn() < not_before:
            return FlushReport(connected=True, skipped_reason="retry_after")

        attempted = 0
        delivered = 0
        deadlettered = 0

        while True:
            queued = self.buffer.drain(limit=self.batch_size)
            if not queued:
                break

            for item in queued:
                try:
                    payload = Payload.from_json(item.payload)
                except PayloadError as exc:
                    self._deadletter(item.payload, seq=item.seq, error=str(exc))
                    if not self.buffer.remove(item.seq):
                        return self._stopped(attempted, delivered, deadlettered)
                    deadlettered += 1
                    continue

                attempted += 1
                result = self.pipeline.send(payload)
                if not result.ok:
                    self.pipeline.counters.incr("flush_failures")
                    if result.retry_after_s is not None:
                        defer_s = min(float(result.retry_after_s), self.max_retry_after_s)
                        with self._state_lock:
                            self._not_before = self._now_fn() + defer_s
                    return self._stopped(attempted, delivered, deadlettered)

                if not self.buffer.remove(item.seq):
                    # The payload went out but its row is still queued; stop so
                    # it is not replayed again in this same drain.
                    logger.error("failed to remove delivered row seq=%s; stopping flush", item.seq)
                    return self._stopped(attempted, delivered + 1, deadlettered)
                delivered += 1
                self.pipeline.counters.incr("flushed")

        if delivered or deadlettered:
            logger.info("flushed %s buffered payloads (deadlettered=%s)", delivered, deadlettered)
        return FlushReport(
            connected=True,
            attempted=attempted,
            delivered=delivered,
            deadlettered=deadlettered,
            remaining=0,
        )

    def _stopped(self, attempted: int, delivered: int, deadlettered: int) -> FlushReport:
        remaining = self.buffer.count()
        logger.info("flush stopped early delivered=%s remaining=%s", delivered, remaining)
        return FlushReport(
            connected=True,
            attempted=attempted,
            delivered=delivered,
            deadlettered=deadlettered,
            remaining=remaining,
            stopped_early=True,
        )

    def _deadletter(self, payload: Dict[str, Any], *, seq: int, error: str) -> None:
        self.pipeline.counters.incr("deadlettered")
        logger.error("unreadable buffered row seq=%s: %s", seq, error)
        if self.deadletter_path is None:
            return
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "seq": seq,
            "error": error,
            "payload": payload,
        }
        try:
            self.deadletter_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.deadletter_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            logger.error("failed to write dead-letter record: %r", exc)

    def _connected(self) -> bool:
        try:
            return bool(self.is_connected())
        except Exception as exc:
            logger.warning("connectivity check failed; assuming offline: %r", exc)
            return False

    # -----------------------------
    # Periodic timer
    # -----------------------------

    def start(self) -> None:
        if self._scheduler is not None:
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            func=self.tick,
            trigger="interval",
            seconds=self.interval_s,
            id=FLUSH_JOB_ID,
            max_instances=1,
            replace_existing=True,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("flush scheduler started (interval_s=%s)", self.interval_s)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("flush scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None
