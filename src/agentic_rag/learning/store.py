"""Persistence for performance records."""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import asdict, replace
from pathlib import Path
from typing import Protocol

from agentic_rag.types import Feedback, PerformanceRecord, QueryIntent, RetrievalStrategy


class RecordStore(Protocol):
    """Append/update log of performance records, oldest first."""

    def load(self) -> list[PerformanceRecord]:
        """Return every stored record in insertion order."""

    def append(self, record: PerformanceRecord) -> None:
        """Persist a new record."""

    def update(self, record: PerformanceRecord) -> None:
        """Replace the stored record with the same id."""

    def delete(self, record_id: str) -> None:
        """Remove one record."""

    def clear(self) -> None:
        """Remove every record."""

    def close(self) -> None:
        """Flush pending writes and release resources."""


class InMemoryRecordStore:
    """Process-local store used by tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._records: dict[str, PerformanceRecord] = {}
        self.closed = False

    def load(self) -> list[PerformanceRecord]:
        return [replace(record) for record in self._records.values()]

    def append(self, record: PerformanceRecord) -> None:
        self._records[record.id] = replace(record)

    def update(self, record: PerformanceRecord) -> None:
        if record.id not in self._records:
            raise KeyError(f"Record not found: {record.id}")
        self._records[record.id] = replace(record)

    def delete(self, record_id: str) -> None:
        self._records.pop(record_id, None)

    def clear(self) -> None:
        self._records.clear()

    def close(self) -> None:
        self.closed = True


class SqliteRecordStore:
    """SQLite-backed record store; every write commits before returning."""

    def __init__(self, path: str | Path = "agentic_rag.db") -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._ensure_table()

    def load(self) -> list[PerformanceRecord]:
        with self._lock, sqlite3.connect(self.path) as conn:
            rows = conn.execute("SELECT payload FROM performance_records ORDER BY seq").fetchall()
        return [_decode(row[0]) for row in rows]

    def append(self, record: PerformanceRecord) -> None:
        with self._lock, sqlite3.connect(self.path) as conn:
            conn.execute(
                "INSERT INTO performance_records(id, payload) VALUES(?, ?)",
                (record.id, _encode(record)),
            )
            conn.commit()

    def update(self, record: PerformanceRecord) -> None:
        with self._lock, sqlite3.connect(self.path) as conn:
            cur = conn.execute(
                "UPDATE performance_records SET payload = ? WHERE id = ?",
                (_encode(record), record.id),
            )
            conn.commit()
        if cur.rowcount == 0:
            raise KeyError(f"Record not found: {record.id}")

    def delete(self, record_id: str) -> None:
        with self._lock, sqlite3.connect(self.path) as conn:
            conn.execute("DELETE FROM performance_records WHERE id = ?", (record_id,))
            conn.commit()

    def clear(self) -> None:
        with self._lock, sqlite3.connect(self.path) as conn:
            conn.execute("DELETE FROM performance_records")
            conn.commit()

    def close(self) -> None:
        # Writes commit eagerly; nothing is buffered.
        return None

    def _ensure_table(self) -> None:
        with sqlite3.connect(self.path) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS performance_records("
                "seq INTEGER PRIMARY KEY AUTOINCREMENT, id TEXT UNIQUE NOT NULL, payload TEXT NOT NULL)"
            )
            conn.commit()


def _encode(record: PerformanceRecord) -> str:
    return json.dumps(asdict(record), default=str)


def _decode(payload: str) -> PerformanceRecord:
    data = json.loads(payload)
    data["intent"] = QueryIntent(data["intent"])
    data["strategy"] = RetrievalStrategy(data["strategy"])
    if data.get("user_feedback") is not None:
        data["user_feedback"] = Feedback(data["user_feedback"])
    return PerformanceRecord(**data)
