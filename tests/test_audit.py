"""Tests for tool_runtime.audit: the SQLite audit store and aggregate stats."""

from datetime import datetime, timedelta, timezone

import pytest

from tool_runtime.audit import AuditStore, SqliteAuditStore, get_tool_call_stats
from tool_runtime.models import ToolCallLog

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_log(tool_name="tasks_filter", *, minutes_ago=0, success=True, duration_ms=10.0, **kwargs):
    return ToolCallLog(
        tool_name=tool_name,
        success=success,
        duration_ms=duration_ms,
        timestamp=NOW - timedelta(minutes=minutes_ago),
        **kwargs,
    )


@pytest.fixture
def store(tmp_path):
    store = SqliteAuditStore(tmp_path / "audit" / "tool_calls.db")
    yield store
    store.close()


class TestSqliteAuditStore:
    def test_creates_parent_dir_lazily(self, tmp_path):
        path = tmp_path / "nested" / "calls.db"
        store = SqliteAuditStore(path)
        assert not path.parent.exists()
        store.insert(make_log())
        assert path.exists()
        store.close()

    def test_is_an_audit_store(self, store):
        assert isinstance(store, AuditStore)

    def test_insert_and_query_round_trip(self, store):
        log = make_log(
            "tasks_by_project",
            args={"projectId": "p42"},
            success=False,
            error="boom",
            result_size=0,
            source="agent",
            metadata={"memory_keys": ["ids.projectId"]},
        )
        store.insert(log)
        [row] = store.query(NOW - timedelta(hours=1))
        assert row == log

    def test_query_window_and_tool_filter(self, store):
        store.insert(make_log("a", minutes_ago=90))
        store.insert(make_log("a", minutes_ago=30))
        store.insert(make_log("b", minutes_ago=20))
        store.insert(make_log("a", minutes_ago=5))
        since = NOW - timedelta(hours=1)
        assert [log.tool_name for log in store.query(since)] == ["a", "b", "a"]
        assert len(store.query(since, tool_name="a")) == 2
        assert len(store.query(since, until=NOW - timedelta(minutes=10))) == 2

    def test_query_orders_by_timestamp(self, store):
        store.insert(make_log("late", minutes_ago=1))
        store.insert(make_log("early", minutes_ago=50))
        names = [log.tool_name for log in store.query(NOW - timedelta(hours=1))]
        assert names == ["early", "late"]

    def test_naive_datetimes_are_utc(self, store):
        store.insert(make_log())
        naive_since = (NOW - timedelta(minutes=1)).replace(tzinfo=None)
        assert len(store.query(naive_since)) == 1

    def test_prune(self, store):
        store.insert(make_log("old", minutes_ago=60 * 24 * 31))
        store.insert(make_log("new", minutes_ago=60 * 24 * 29))
        assert store.prune(retention_days=30, now=NOW) == 1
        remaining = store.query(NOW - timedelta(days=365))
        assert [log.tool_name for log in remaining] == ["new"]
        assert store.prune(retention_days=30, now=NOW) == 0


class TestStats:
    def test_aggregates(self, store):
        store.insert(make_log("a", minutes_ago=1, duration_ms=10))
        store.insert(make_log("a", minutes_ago=2, duration_ms=30, success=False))
        store.insert(make_log("b", minutes_ago=3, duration_ms=20))
        store.insert(make_log("b", minutes_ago=120, duration_ms=999))
        stats = get_tool_call_stats(store, minutes=60, now=NOW)
        assert stats["total_calls"] == 3
        assert stats["success_rate"] == pytest.approx(2 / 3)
        assert stats["avg_duration_ms"] == pytest.approx(20.0)
        assert stats["by_tool"] == {
            "a": {"calls": 2, "errors": 1, "avg_duration_ms": 20.0},
            "b": {"calls": 1, "errors": 0, "avg_duration_ms": 20.0},
        }

    def test_empty_window(self, store):
        assert get_tool_call_stats(store, minutes=5, now=NOW) == {
            "total_calls": 0,
            "success_rate": 0.0,
            "avg_duration_ms": 0.0,
            "by_tool": {},
        }

    def test_any_store(self, audit_store):
        audit_store.insert(make_log("x"))
        assert get_tool_call_stats(audit_store, minutes=1, now=NOW)["total_calls"] == 1
