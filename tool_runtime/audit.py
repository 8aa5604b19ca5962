"""Persistent audit trail of tool calls.

The default store is a local SQLite file (one ``tool_calls`` table). Any
object with ``insert(log)`` and ``query(since, until, tool_name)`` can stand
in for it. Stores are synchronous; the AuditLogger in ``middleware`` calls
``insert`` off the event loop.

Usage:
    store = SqliteAuditStore("~/.tool_runtime/tool_calls.db")
    stats = get_tool_call_stats(store, minutes=60)
    store.prune(retention_days=30)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from tool_runtime.config import DEFAULT_AUDIT_RETENTION_DAYS
from tool_runtime.models import ToolCallLog

logger = logging.getLogger(__name__)

_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS tool_calls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    tool_name TEXT NOT NULL,
    args TEXT,
    success INTEGER NOT NULL,
    error TEXT,
    duration_ms REAL,
    result_size INTEGER,
    source TEXT,
    metadata TEXT
);
"""

_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_tool_calls_timestamp ON tool_calls(timestamp);
CREATE INDEX IF NOT EXISTS idx_tool_calls_tool_ts ON tool_calls(tool_name, timestamp);
CREATE INDEX IF NOT EXISTS idx_tool_calls_tool_ts_success ON tool_calls(tool_name, timestamp, success);
"""

_COLUMNS = (
    "timestamp, tool_name, args, success, error, duration_ms, result_size, source, metadata"
)


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison orders correctly."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_ts(text: str) -> datetime:
    return datetime.strptime(text, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


@runtime_checkable
class AuditStore(Protocol):
    def insert(self, log: ToolCallLog) -> None: ...

    def query(
        self,
        since: datetime,
        until: datetime | None = None,
        tool_name: str | None = None,
    ) -> list[ToolCallLog]: ...


class SqliteAuditStore:
    """SQLite-backed AuditStore. The connection is opened lazily and shared across threads."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _get_db(self) -> sqlite3.Connection:
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.executescript(_TABLES_SQL)
            conn.executescript(_INDEXES_SQL)
            self._conn = conn
        return self._conn

    def insert(self, log: ToolCallLog) -> None:
        with self._lock:
            db = self._get_db()
            db.execute(
                f"INSERT INTO tool_calls ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    _ts(log.timestamp),
                    log.tool_name,
                    json.dumps(log.args, default=str),
                    int(log.success),
                    log.error,
                    log.duration_ms,
                    log.result_size,
                    log.source,
                    json.dumps(log.metadata, default=str),
                ),
            )
            db.commit()

    def query(
        self,
        since: datetime,
        until: datetime | None = None,
        tool_name: str | None = None,
    ) -> list[ToolCallLog]:
        clauses = ["timestamp >= ?"]
        params: list[Any] = [_ts(since)]
        if until is not None:
            clauses.append("timestamp <= ?")
            params.append(_ts(until))
        if tool_name:
            clauses.append("tool_name = ?")
            params.append(tool_name)
        sql = (
            f"SELECT {_COLUMNS} FROM tool_calls WHERE {' AND '.join(clauses)} "
            "ORDER BY timestamp ASC, id ASC"
        )
        with self._lock:
            rows = self._get_db().execute(sql, params).fetchall()
        return [_row_to_log(row) for row in rows]

    def prune(
        self,
        retention_days: int = DEFAULT_AUDIT_RETENTION_DAYS,
        now: datetime | None = None,
    ) -> int:
        """Delete rows older than the retention window. Returns the count removed."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
        with self._lock:
            db = self._get_db()
            cursor = db.execute("DELETE FROM tool_calls WHERE timestamp < ?", (_ts(cutoff),))
            db.commit()
        if cursor.rowcount:
            logger.info("Pruned %d audit rows older than %d days", cursor.rowcount, retention_days)
        return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


def _row_to_log(row: tuple[Any, ...]) -> ToolCallLog:
    timestamp, tool_name, args, success, error, duration_ms, result_size, source, metadata = row
    return ToolCallLog(
        tool_name=tool_name,
        args=json.loads(args) if args else {},
        success=bool(success),
        error=error,
        duration_ms=duration_ms or 0.0,
        result_size=result_size or 0,
        source=source or "",
        timestamp=_parse_ts(timestamp),
        metadata=json.loads(metadata) if metadata else {},
    )


def get_tool_call_stats(
    store: AuditStore,
    minutes: float = 60,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Aggregate calls in the trailing window.

    Returns ``{total_calls, success_rate, avg_duration_ms, by_tool}`` where
    ``by_tool[name] = {calls, errors, avg_duration_ms}``. An empty window
    yields zeroes.
    """
    since = (now or datetime.now(timezone.utc)) - timedelta(minutes=minutes)
    logs = store.query(since, until=now)
    total = len(logs)
    per_tool: dict[str, list[ToolCallLog]] = defaultdict(list)
    for log in logs:
        per_tool[log.tool_name].append(log)

    by_tool = {
        name: {
            "calls": len(calls),
            "errors": sum(1 for c in calls if not c.success),
            "avg_duration_ms": sum(c.duration_ms for c in calls) / len(calls),
        }
        for name, calls in sorted(per_tool.items())
    }
    return {
        "total_calls": total,
        "success_rate": (sum(1 for log in logs if log.success) / total) if total else 0.0,
        "avg_duration_ms": (sum(log.duration_ms for log in logs) / total) if total else 0.0,
        "by_tool": by_tool,
    }
