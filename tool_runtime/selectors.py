"""Pure builders for document-store query selectors.

Selectors are Mongo-style dicts. Deadlines may be stored either as datetimes
or as ``YYYY-MM-DD`` strings, so date thresholds match both representations:

    {"$or": [{"deadline": {"$lte": <datetime>}},
             {"deadline": {"$lte": "2025-01-31"}}]}
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from typing import Any, Mapping

DONE_STATUS = "done"

FIELD_ALLOWLIST: dict[str, tuple[str, ...]] = {
    "tasks": (
        "title", "status", "deadline", "projectId", "isUrgent", "isImportant",
        "tags", "createdAt", "updatedAt",
    ),
    "projects": ("name", "description", "createdAt", "updatedAt"),
    "notes": ("projectId", "title", "content", "createdAt", "updatedAt"),
    "noteSessions": ("projectId", "name", "createdAt", "updatedAt"),
    "noteLines": ("sessionId", "content", "createdAt", "updatedAt"),
    "links": ("projectId", "name", "url", "createdAt", "updatedAt"),
    "people": ("name", "createdAt", "updatedAt"),
    "teams": ("name", "createdAt", "updatedAt"),
    "files": ("projectId", "name", "createdAt", "updatedAt"),
    "alarms": ("title", "enabled", "when", "createdAt", "updatedAt"),
}
"""Fields a read-only ``collection_query`` may filter on, per collection."""

_WHERE_OPS = ("eq", "ne", "lt", "lte", "gt", "gte")
_WHERE_LIST_OPS = ("in", "nin")


def _clean(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def parse_threshold(value: Any) -> datetime | None:
    """Coerce an ISO string, date or datetime to an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def date_threshold_clause(threshold: Any, field: str = "deadline") -> dict[str, Any] | None:
    """``$or`` clause matching ``field <= threshold`` in both storage formats."""
    parsed = parse_threshold(threshold)
    if parsed is None:
        return None
    return {
        "$or": [
            {field: {"$lte": parsed}},
            {field: {"$lte": parsed.date().isoformat()}},
        ]
    }


def build_tasks_selector(search: Mapping[str, Any] | None = None) -> dict[str, Any]:
    search = search or {}
    selector: dict[str, Any] = {}
    for key in ("projectId", "status"):
        value = search.get(key)
        if isinstance(value, str) and value.strip():
            selector[key] = value.strip()
    clause = date_threshold_clause(search.get("dueBefore"))
    if clause is not None:
        selector.update(clause)
    return selector


def build_overdue_selector(now: Any = None) -> dict[str, Any]:
    """Open tasks whose deadline is at or before ``now`` (default: current time)."""
    selector: dict[str, Any] = {"status": {"$ne": DONE_STATUS}}
    clause = date_threshold_clause(datetime.now(timezone.utc) if now is None else now)
    if clause is not None:
        selector.update(clause)
    return selector


def build_by_entity_selector(
    field: str, value: Any, exclude_done: bool = True,
) -> dict[str, Any]:
    selector: dict[str, Any] = {}
    cleaned = _clean(value)
    if cleaned:
        selector[field] = cleaned
    if exclude_done:
        selector["status"] = {"$ne": DONE_STATUS}
    return selector


def build_by_project_selector(project_id: Any) -> dict[str, Any]:
    return build_by_entity_selector("projectId", project_id)


def _parse_flag(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        value = value.strip().lower()
        if value in ("true", "1"):
            return True
        if value in ("false", "0"):
            return False
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
    return None


def build_filter_selector(filters: Mapping[str, Any] | None = None) -> dict[str, Any]:
    filters = filters or {}
    selector: dict[str, Any] = {}
    for source, target in (("projectId", "projectId"), ("status", "status"), ("tag", "tags")):
        cleaned = _clean(filters.get(source))
        if cleaned:
            selector[target] = cleaned
    for source, target in (("important", "isImportant"), ("urgent", "isUrgent")):
        if source in filters:
            flag = _parse_flag(filters[source])
            if flag is not None:
                selector[target] = flag
    clause = date_threshold_clause(filters.get("dueBefore"))
    if clause is not None:
        selector.update(clause)
    return selector


def build_name_match_selector(name: Any, field: str = "name") -> dict[str, Any]:
    """Exact, case-insensitive match with every regex metacharacter escaped."""
    cleaned = _clean(name)
    if not cleaned:
        return {}
    return {field: {"$regex": f"^{re.escape(cleaned)}$", "$options": "i"}}


def build_project_by_name_selector(name: Any) -> dict[str, Any]:
    return build_name_match_selector(name, "name")


# ---------------------------------------------------------------------------
# Generic read-only queries
# ---------------------------------------------------------------------------


def list_key_for_collection(collection: str) -> str:
    """Memory ``lists.<key>`` for a collection's results."""
    return str(collection or "").strip()


def compile_where(collection: str, where: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Compile the ``where`` mini-DSL to a selector.

    ``{"status": {"ne": "done"}, "or": [{"isUrgent": true}, {"tags": "x"}]}``
    becomes ``{"status": {"$ne": "done"}, "$or": [...]}``. Fields not on the
    collection's allowlist are dropped silently.
    """
    allowed = set(FIELD_ALLOWLIST.get(str(collection), ()))

    def compile_node(node: Any) -> dict[str, Any]:
        if not isinstance(node, Mapping):
            return {}
        selector: dict[str, Any] = {}
        for logical in ("and", "or"):
            branches = node.get(logical)
            if isinstance(branches, list):
                selector[f"${logical}"] = [compile_node(branch) for branch in branches]
        for key, value in node.items():
            if key in ("and", "or") or key not in allowed:
                continue
            if isinstance(value, Mapping):
                ops = {f"${op}": value[op] for op in _WHERE_OPS if op in value}
                for op in _WHERE_LIST_OPS:
                    if op in value:
                        items = value[op]
                        ops[f"${op}"] = list(items) if isinstance(items, (list, tuple)) else [items]
                if ops:
                    selector[key] = ops
            else:
                selector[key] = value
        return selector

    return compile_node(where or {})
