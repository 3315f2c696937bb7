from __future__ import annotations

import sqlite3
from pathlib import Path

from beacon.buffer import SqliteBuffer
from beacon.models import Payload


def _payload(idx: int) -> Payload:
    return Payload(
        entity_id="entity-1",
        lat=float(idx),
        lon=20.0,
        speed=1.5,
        accuracy=5.0,
        captured_at=f"2026-01-01T00:{idx % 60:02d}:00+00:00",
    )


def _lats(buf: SqliteBuffer) -> list[float]:
    return [row.payload["lat"] for row in buf.drain()]


def test_buffer_applies_sqlite_pragmas(tmp_path: Path) -> None:
    buf = SqliteBuffer(
        str(tmp_path / "buffer.sqlite"),
        journal_mode="wal",
        synchronous="normal",
        temp_store="memory",
    )

    with buf._conn() as conn:  # noqa: SLF001 - test verifies configured pragmas
        (journal_mode,) = conn.execute("PRAGMA journal_mode").fetchone()
        (synchronous,) = conn.execute("PRAGMA synchronous").fetchone()
        (temp_store,) = conn.execute("PRAGMA temp_store").fetchone()

    assert str(journal_mode).lower() == "wal"
    assert int(synchronous) == 1
    assert int(temp_store) == 2


def test_invalid_pragma_falls_back_to_default(tmp_path: Path) -> None:
    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"), journal_mode="bogus")
    assert buf.journal_mode == "WAL"


def test_drain_is_fifo_and_non_destructive(tmp_path: Path) -> None:
    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"))
    for idx in range(3):
        assert buf.append(_payload(idx)) is True

    first = buf.drain()
    second = buf.drain()

    assert [row.payload["lat"] for row in first] == [0.0, 1.0, 2.0]
    assert [row.seq for row in first] == [row.seq for row in second]
    assert first[0].payload == _payload(0).to_json()
    assert buf.count() == 3


def test_drain_limit_returns_oldest_rows(tmp_path: Path) -> None:
    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"))
    for idx in range(5):
        buf.append(_payload(idx))

    assert [row.payload["lat"] for row in buf.drain(limit=2)] == [0.0, 1.0]


def test_queue_survives_reopen(tmp_path: Path) -> None:
    path = str(tmp_path / "buffer.sqlite")
    buf = SqliteBuffer(path)
    buf.append(_payload(1))
    buf.append(_payload(2))

    reopened = SqliteBuffer(path)

    assert reopened.count() == 2
    assert _lats(reopened) == [1.0, 2.0]


def test_remove_deletes_only_that_row(tmp_path: Path) -> None:
    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"))
    for idx in range(3):
        buf.append(_payload(idx))
    rows = buf.drain()

    assert buf.remove(rows[1].seq) is True

    assert _lats(buf) == [0.0, 2.0]


def test_seq_keeps_growing_after_rows_are_removed(tmp_path: Path) -> None:
    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"))
    buf.append(_payload(1))
    (row,) = buf.drain()
    buf.remove(row.seq)

    buf.append(_payload(2))
    (row2,) = buf.drain()

    assert row2.seq > row.seq


def test_clear_empties_queue(tmp_path: Path) -> None:
    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"))
    for idx in range(4):
        buf.append(_payload(idx))

    assert buf.clear() == 4
    assert buf.count() == 0
    assert buf.drain() == []


def test_max_messages_drops_oldest(tmp_path: Path) -> None:
    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"), max_messages=2)
    for idx in range(4):
        assert buf.append(_payload(idx)) is True

    assert _lats(buf) == [2.0, 3.0]
    assert buf.evictions_total == 2

    metrics = buf.metrics()
    assert metrics["buffer_queue_depth"] == 2
    assert metrics["buffer_evictions_total"] == 2
    assert metrics["buffer_write_failures_total"] == 0
    assert metrics["buffer_db_bytes"] > 0


def test_zero_max_messages_means_unbounded(tmp_path: Path) -> None:
    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"), max_messages=0)
    assert buf.max_messages is None


def test_append_disk_full_evicts_oldest_and_retries(monkeypatch, tmp_path: Path) -> None:
    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"), eviction_batch_size=1)
    assert buf.append(_payload(1)) is True
    assert buf.append(_payload(2)) is True

    original_insert = buf._insert  # noqa: SLF001 - controlled disk-full simulation in test
    attempts = {"n": 0}

    def _flaky_insert(conn: sqlite3.Connection, *, payload_json: str, enqueued_at: str) -> None:
        if attempts["n"] == 0:
            attempts["n"] += 1
            raise sqlite3.OperationalError("database or disk is full")
        original_insert(conn, payload_json=payload_json, enqueued_at=enqueued_at)

    monkeypatch.setattr(buf, "_insert", _flaky_insert)

    assert buf.append(_payload(3)) is True
    assert _lats(buf) == [2.0, 3.0]
    assert buf.evictions_total == 1


def test_append_disk_full_with_empty_queue_reports_failure(monkeypatch, tmp_path: Path) -> None:
    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"), eviction_batch_size=1)

    def _always_fail(conn: sqlite3.Connection, *, payload_json: str, enqueued_at: str) -> None:
        _ = (conn, payload_json, enqueued_at)
        raise sqlite3.OperationalError("database or disk is full")

    monkeypatch.setattr(buf, "_insert", _always_fail)

    assert buf.append(_payload(1)) is False
    assert buf.count() == 0
    assert buf.write_failures_total == 1


def test_buffer_recovers_from_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "buffer.sqlite"
    path.write_bytes(b"not-a-sqlite-db")

    buf = SqliteBuffer(str(path), recover_corruption=True)
    backups = list(tmp_path.glob("buffer.sqlite.corrupt-*"))
    assert backups
    assert path.exists()

    assert buf.append(_payload(1)) is True
    assert buf.count() == 1


def test_unparseable_row_drains_as_empty_dict(tmp_path: Path) -> None:
    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"))
    with buf._conn() as conn:  # noqa: SLF001 - inject a damaged row
        conn.execute(
            "INSERT INTO queue(payload_json, enqueued_at) VALUES(?,?)",
            ("{not json", "2026-01-01T00:00:00+00:00"),
        )
        conn.commit()

    (row,) = buf.drain()
    assert row.payload == {}


def test_every_connection_is_closed(monkeypatch, tmp_path: Path) -> None:
    opened: list[sqlite3.Connection] = []
    closed: list[sqlite3.Connection] = []

    class _TrackingConnection(sqlite3.Connection):
        def close(self) -> None:
            closed.append(self)
            super().close()

    real_connect = sqlite3.connect

    def _connect(*args, **kwargs):
        conn = real_connect(*args, factory=_TrackingConnection, **kwargs)
        opened.append(conn)
        return conn

    monkeypatch.setattr(sqlite3, "connect", _connect)

    buf = SqliteBuffer(str(tmp_path / "buffer.sqlite"))
    buf.append(_payload(1))
    (row,) = buf.drain()
    buf.remove(row.seq)
    buf.count()

    assert len(opened) == 5
    assert closed == opened
