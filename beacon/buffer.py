from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, TypeVar

from .models import Payload


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  payload_json TEXT NOT NULL,
  enqueued_at TEXT NOT NULL
);
"""

_T = TypeVar("_T")

_CORRUPTION_MARKERS = (
    "database disk image is malformed",
    "malformed database schema",
    "file is not a database",
    "not a database",
    "database corrupt",
)
_DISK_FULL_MARKERS = ("database or disk is full",)

_ALLOWED_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
_ALLOWED_SYNCHRONOUS = {"OFF", "NORMAL", "FULL", "EXTRA"}
_ALLOWED_TEMP_STORE = {"DEFAULT", "FILE", "MEMORY"}

logger = logging.getLogger("geobeacon.buffer")


@dataclass
class BufferedPayload:
    seq: int
    payload: Dict[str, Any]
    enqueued_at: str


class SqliteBuffer:
    """Durable FIFO of payloads awaiting delivery.

    Rows are ordered by an autoincrement `seq`, so insertion order survives
    restarts and equal timestamps. A row leaves the queue only through
    `remove` (confirmed delivery), `clear` (explicit user
    action) or drop-oldest eviction once `max_messages` is exceeded.
    """

    def __init__(
        self,
        path: str,
        *,
        max_messages: int | None = None,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
        temp_store: str = "MEMORY",
        eviction_batch_size: int = 100,
        recover_corruption: bool = True,
        busy_timeout_s: float = 5.0,
    ) -> None:
        self.path = Path(path)
        self.max_messages = max(0, int(max_messages)) if max_messages is not None else None
        if self.max_messages == 0:
            self.max_messages = None

        self.journal_mode = self._normalize_pragma(
            "journal_mode",
            journal_mode,
            allowed=_ALLOWED_JOURNAL_MODES,
            default="WAL",
        )
        self.synchronous = self._normalize_pragma(
            "synchronous",
            synchronous,
            allowed=_ALLOWED_SYNCHRONOUS,
            default="NORMAL",
        )
        self.temp_store = self._normalize_pragma(
            "temp_store",
            temp_store,
            allowed=_ALLOWED_TEMP_STORE,
            default="MEMORY",
        )
        self.eviction_batch_size = max(1, int(eviction_batch_size))
        self.recover_corruption = bool(recover_corruption)
        self.busy_timeout_s = max(0.0, float(busy_timeout_s))
        self.evictions_total = 0
        self.write_failures_total = 0

        self._lock = threading.Lock()
        self._init_db(allow_recovery=True)

    @staticmethod
    def _normalize_pragma(name: str, value: str, *, allowed: set[str], default: str) -> str:
        candidate = (value or "").strip().upper()
        if candidate in allowed:
            return candidate
        logger.warning("invalid %s=%r; using %s", name, value, default)
        return default

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit (or roll back) on exit and always close it."""

        with closing(sqlite3.connect(str(self.path), timeout=self.busy_timeout_s)) as conn:
            self._apply_pragmas(conn)
            with conn:
                yield conn

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        conn.execute(f"PRAGMA synchronous={self.synchronous}")
        conn.execute(f"PRAGMA temp_store={self.temp_store}")

    def _init_db(self, *, allow_recovery: bool) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with self._conn() as conn:
                conn.execute(SCHEMA_SQL)
                conn.commit()
        except sqlite3.DatabaseError as exc:
            if allow_recovery and self._is_corruption_error(exc) and self._recover_from_corruption():
                return
            raise

    @staticmethod
    def _error_text(exc: BaseException) -> str:
        return str(exc).strip().lower()

    def _is_corruption_error(self, exc: BaseException) -> bool:
        text = self._error_text(exc)
        return any(marker in text for marker in _CORRUPTION_MARKERS)

    @staticmethod
    def _is_disk_full_error(exc: BaseException) -> bool:
        text = SqliteBuffer._error_text(exc)
        return any(marker in text for marker in _DISK_FULL_MARKERS)

    def _corrupt_backup_path(self, source: Path, *, stamp: str) -> Path:
        base = source.with_name(f"{source.name}.corrupt-{stamp}")
        if not base.exists():
            return base
        idx = 1
        while True:
            candidate = source.with_name(f"{source.name}.corrupt-{stamp}-{idx}")
            if not candidate.exists():
                return candidate
            idx += 1

    def _recover_from_corruption(self) -> bool:
        if not self.recover_corruption:
            return False

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        moved: list[Path] = []
        candidates = [
            self.path,
            self.path.with_name(f"{self.path.name}-wal"),
            self.path.with_name(f"{self.path.name}-shm"),
        ]

        for source in candidates:
            if not source.exists():
                continue
            target = self._corrupt_backup_path(source, stamp=stamp)
            try:
                source.replace(target)
            except OSError as exc:
                logger.error("failed to move corrupt sqlite file %s: %r", source, exc)
                return False
            moved.append(target)

        if moved:
            logger.error(
                "detected sqlite corruption; moved files: %s",
                ", ".join(str(p) for p in moved),
            )

        try:
            self._init_db(allow_recovery=False)
        except sqlite3.Error as exc:
            logger.error("failed to reinitialize sqlite buffer after corruption: %r", exc)
            return False
        return True

    def _run_db(self, fn: Callable[[sqlite3.Connection], _T], *, fallback: _T) -> _T:
        with self._lock:
            try:
                with self._conn() as conn:
                    return fn(conn)
            except sqlite3.DatabaseError as exc:
                if self._is_corruption_error(exc) and self._recover_from_corruption():
                    try:
                        with self._conn() as conn:
                            return fn(conn)
                    except sqlite3.Error as retry_exc:
                        logger.error("sqlite operation failed after recovery: %r", retry_exc)
                        return fallback
                logger.error("sqlite database error: %r", exc)
                return fallback
            except sqlite3.Error as exc:
                logger.error("sqlite error: %r", exc)
                return fallback

    def _insert(self, conn: sqlite3.Connection, *, payload_json: str, enqueued_at: str) -> None:
        conn.execute(
            "INSERT INTO queue(payload_json, enqueued_at) VALUES(?,?)",
            (payload_json, enqueued_at),
        )

    def _evict_oldest(self, conn: sqlite3.Connection, *, count: int) -> int:
        rows = conn.execute(
            "SELECT seq FROM queue ORDER BY seq ASC LIMIT ?",
            (max(1, int(count)),),
        ).fetchall()
        if not rows:
            return 0
        conn.executemany("DELETE FROM queue WHERE seq = ?", rows)
        return len(rows)

    def _enforce_max_messages(self, conn: sqlite3.Connection) -> int:
        if self.max_messages is None:
            return 0
        overflow = self._safe_count(conn) - self.max_messages
        if overflow <= 0:
            return 0
        return self._evict_oldest(conn, count=overflow)

    def _record_evictions(self, conn: sqlite3.Connection, *, evicted: int) -> None:
        if evicted <= 0:
            return
        self.evictions_total += int(evicted)
        logger.warning(
            "evicted %s oldest queued payloads (queue=%s max=%s)",
            evicted,
            self._safe_count(conn),
            self.max_messages if self.max_messages is not None else "unbounded",
        )

    def append(self, payload: Payload) -> bool:
        """Append a payload at the tail. Returns False if it could not be persisted."""

        payload_json = json.dumps(payload.to_json(), separators=(",", ":"))
        enqueued_at = datetime.now(timezone.utc).isoformat()

        def _op(conn: sqlite3.Connection) -> bool:
            evicted = 0
            try:
                self._insert(conn, payload_json=payload_json, enqueued_at=enqueued_at)
            except sqlite3.OperationalError as exc:
                if not self._is_disk_full_error(exc):
                    raise

                conn.rollback()
                evicted = self._evict_oldest(conn, count=self.eviction_batch_size)
                conn.commit()
                if evicted <= 0:
                    logger.error("disk full and no queued rows to evict; payload not persisted")
                    return False

                try:
                    self._insert(conn, payload_json=payload_json, enqueued_at=enqueued_at)
                except sqlite3.OperationalError as retry_exc:
                    if self._is_disk_full_error(retry_exc):
                        logger.error(
                            "disk still full after evicting %s rows; payload not persisted",
                            evicted,
                        )
                        return False
                    raise

            evicted += self._enforce_max_messages(conn)
            conn.commit()
            self._record_evictions(conn, evicted=evicted)
            return True

        ok = bool(self._run_db(_op, fallback=False))
        if not ok:
            self.write_failures_total += 1
        return ok

    @staticmethod
    def _safe_count(conn: sqlite3.Connection) -> int:
        (n,) = conn.execute("SELECT COUNT(*) FROM queue").fetchone()
        return int(n)

    def drain(self, limit: int | None = None) -> List[BufferedPayload]:
        """Read queued payloads oldest-first without removing them."""

        def _op(conn: sqlite3.Connection) -> List[BufferedPayload]:
            if limit is None:
                rows = conn.execute(
                    "SELECT seq, payload_json, enqueued_at FROM queue ORDER BY seq ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT seq, payload_json, enqueued_at FROM queue ORDER BY seq ASC LIMIT ?",
                    (max(1, int(limit)),),
                ).fetchall()
            out: List[BufferedPayload] = []
            for seq, payload_json, enqueued_at in rows:
                try:
                    payload_obj = json.loads(payload_json)
                except json.JSONDecodeError:
                    payload_obj = {}
                out.append(
                    BufferedPayload(
                        seq=int(seq),
                        payload=payload_obj if isinstance(payload_obj, dict) else {},
                        enqueued_at=enqueued_at,
                    )
                )
            return out

        return self._run_db(_op, fallback=[])

    def remove(self, seq: int) -> bool:
        def _op(conn: sqlite3.Connection) -> bool:
            conn.execute("DELETE FROM queue WHERE seq = ?", (int(seq),))
            conn.commit()
            return True

        return bool(self._run_db(_op, fallback=False))

    def clear(self) -> int:
        def _op(conn: sqlite3.Connection) -> int:
            cur = conn.execute("DELETE FROM queue")
            conn.commit()
            return int(cur.rowcount or 0)

        deleted = int(self._run_db(_op, fallback=0))
        if deleted:
            logger.info("cleared %s queued payloads", deleted)
        return deleted

    def count(self) -> int:
        return int(self._run_db(self._safe_count, fallback=0))

    def db_bytes(self) -> int:
        total = 0
        for candidate in (self.path, self.path.with_name(f"{self.path.name}-wal")):
            try:
                if candidate.exists():
                    total += int(candidate.stat().st_size)
            except OSError:
                continue
        return total

    def metrics(self) -> Dict[str, int]:
        return {
            "buffer_db_bytes": int(self.db_bytes()),
            "buffer_queue_depth": int(self.count()),
            "buffer_evictions_total": int(self.evictions_total),
            "buffer_write_failures_total": int(self.write_failures_total),
        }
