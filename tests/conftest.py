"""Shared fixtures: a real stdio tool server, an in-memory document store, and fakes."""

from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Any, Mapping, Sequence

import pytest

from tool_runtime.config import RuntimeConfig
from tool_runtime.models import ServerIdentity, ToolCallLog

ECHO_SERVER = Path(__file__).parent / "fixtures" / "echo_server.py"


@pytest.fixture
def echo_server() -> ServerIdentity:
    return ServerIdentity(
        id="echo",
        name="Echo",
        transport="stdio",
        stdio={"command": sys.executable, "args": ["-u", str(ECHO_SERVER)], "env": {"ECHO_MARKER": "m-1"}},
    )


@pytest.fixture
def http_server() -> ServerIdentity:
    return ServerIdentity(
        id="remote",
        transport="http",
        http={"url": "http://tools.test/rpc", "headers": {"Authorization": "Bearer t0k"}},
    )


@pytest.fixture
def quiet_config() -> RuntimeConfig:
    """Config with audit persistence off so nothing touches the home directory."""
    return RuntimeConfig(audit_enabled=False)


class MemoryAuditStore:
    """AuditStore that keeps rows in a list."""

    def __init__(self) -> None:
        self.logs: list[ToolCallLog] = []

    def insert(self, log: ToolCallLog) -> None:
        self.logs.append(log)

    def query(self, since, until=None, tool_name=None) -> list[ToolCallLog]:
        return [
            log for log in self.logs
            if log.timestamp >= since
            and (until is None or log.timestamp <= until)
            and (tool_name is None or log.tool_name == tool_name)
        ]


@pytest.fixture
def audit_store() -> MemoryAuditStore:
    return MemoryAuditStore()


# ---------------------------------------------------------------------------
# In-memory document store
# ---------------------------------------------------------------------------


def _matches_op(value: Any, op: str, operand: Any) -> bool:
    if op == "$ne":
        return value != operand
    if op == "$eq":
        return value == operand
    if op == "$in":
        return value in operand
    if op == "$nin":
        return value not in operand
    if op == "$regex":
        return isinstance(value, str) and re.search(operand, value, re.IGNORECASE) is not None
    if op == "$options":
        return True
    if value is None or type(value) is not type(operand):
        return False
    if op == "$lte":
        return value <= operand
    if op == "$lt":
        return value < operand
    if op == "$gte":
        return value >= operand
    if op == "$gt":
        return value > operand
    raise ValueError(f"unsupported operator {op}")


def matches(doc: Mapping[str, Any], selector: Mapping[str, Any]) -> bool:
    for key, condition in selector.items():
        if key == "$or":
            if not any(matches(doc, branch) for branch in condition):
                return False
        elif key == "$and":
            if not all(matches(doc, branch) for branch in condition):
                return False
        elif isinstance(condition, Mapping):
            if not all(_matches_op(doc.get(key), op, operand) for op, operand in condition.items()):
                return False
        elif isinstance(doc.get(key), list):
            if condition not in doc[key]:
                return False
        elif doc.get(key) != condition:
            return False
    return True


class FakeDocumentStore:
    """Tiny Mongo-ish store: enough selector semantics for the handler tests."""

    def __init__(self, collections: Mapping[str, list[dict[str, Any]]] | None = None) -> None:
        self.collections = {name: list(docs) for name, docs in (collections or {}).items()}
        self.queries: list[tuple[str, dict[str, Any]]] = []

    async def find(
        self,
        collection: str,
        selector: Mapping[str, Any],
        fields: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self.queries.append((collection, dict(selector)))
        docs = [d for d in self.collections.get(collection, []) if matches(d, selector)]
        if fields:
            docs = [{k: v for k, v in d.items() if k in fields or k == "_id"} for d in docs]
        return docs[:limit] if limit else docs

    async def find_one(
        self,
        collection: str,
        selector: Mapping[str, Any],
        fields: Sequence[str] | None = None,
    ) -> dict[str, Any] | None:
        docs = await self.find(collection, selector, fields=fields, limit=1)
        return docs[0] if docs else None


@pytest.fixture
def workspace() -> FakeDocumentStore:
    return FakeDocumentStore({
        "projects": [
            {"_id": "p42", "name": "Panorama", "description": "Personal cockpit"},
            {"_id": "p7", "name": "Garden (v2)", "description": "Plants"},
        ],
        "tasks": [
            {"_id": "t1", "projectId": "p42", "title": "Ship", "status": "todo",
             "deadline": "2020-01-01", "isUrgent": True, "isImportant": False},
            {"_id": "t2", "projectId": "p42", "title": "Done thing", "status": "done",
             "deadline": "2020-01-01"},
            {"_id": "t3", "projectId": "p7", "title": "Water", "status": "todo",
             "deadline": "2999-12-31", "isImportant": True, "tags": ["home"]},
        ],
        "notes": [{"_id": "n1", "projectId": "p42", "title": "Kickoff"}],
        "noteSessions": [{"_id": "s1", "projectId": "p42", "name": "Standup"}],
        "noteLines": [{"_id": "l1", "sessionId": "s1", "content": "Said hello"}],
        "links": [{"_id": "k1", "projectId": "p42", "name": "Docs", "url": "https://example.org"}],
        "files": [{"_id": "f1", "projectId": "p42", "name": "plan.pdf"}],
        "people": [{"_id": "u1", "name": "Ada"}],
        "teams": [{"_id": "g1", "name": "Core"}],
    })
