"""Result envelopes returned by local tool handlers.

Handlers return ``{"output": "<json>"}`` where the JSON carries the data, a
one-line human-readable summary, and provenance metadata. ``to_mcp_result``
turns any handler result into the tool-server ``content`` format.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping

from tool_runtime.catalog import Policy, tool_policy

DEFAULT_SOURCE = "workspace_db"
RETRY_HINT = (
    "If this result is not what you expected, try different parameters "
    "or ask for a new tool"
)

_LIST_KEYS = ("tasks", "projects", "notes", "noteSessions", "noteLines", "links", "files")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


def _is_overdue(task: Mapping[str, Any], now: datetime) -> bool:
    deadline = task.get("deadline")
    if isinstance(deadline, datetime):
        due = deadline if deadline.tzinfo else deadline.replace(tzinfo=timezone.utc)
        return due < now
    if isinstance(deadline, str) and deadline:
        return deadline[:10] < now.date().isoformat()
    return False


def summarize(data: Any, tool_name: str) -> str:
    """A short sentence describing ``data`` for the model reading the result."""
    if not isinstance(data, Mapping):
        return "Operation completed successfully"
    total = data.get("total")
    items: list[Any] = next(
        (data[key] for key in _LIST_KEYS if isinstance(data.get(key), list) and data[key]),
        [],
    )
    count = total if isinstance(total, int) else len(items)

    if tool_name in ("tasks_by_project", "tasks_filter", "tasks_due_before", "overdue_tasks"):
        now = datetime.now(timezone.utc)
        parts = [f"Found {_plural(count, 'task')}"]
        urgent = sum(1 for t in items if isinstance(t, Mapping) and t.get("isUrgent"))
        important = sum(1 for t in items if isinstance(t, Mapping) and t.get("isImportant"))
        overdue = sum(1 for t in items if isinstance(t, Mapping) and _is_overdue(t, now))
        if urgent:
            parts.append(f"{urgent} urgent")
        if important:
            parts.append(f"{important} important")
        if overdue:
            parts.append(f"{overdue} overdue")
        return ", ".join(parts)
    if tool_name == "projects_list":
        return f"Found {_plural(count, 'project')}"
    if tool_name == "project_by_name":
        single = data.get("project")
        projects = [single] if isinstance(single, Mapping) else []
        projects += [p for p in data.get("projects") or [] if isinstance(p, Mapping)]
        if not projects:
            return "No projects found"
        if len(projects) <= 2:
            names = ", ".join(f'"{p.get("name", "")}"' for p in projects)
            return f"Found {_plural(len(projects), 'project')}: {names}"
        return f"Found {len(projects)} projects"
    if tool_name == "collection_query":
        name = next((k for k in data if k != "total"), "items")
        rows = data.get(name)
        return f"Found {total if isinstance(total, int) else len(rows or [])} {name}"
    if items:
        return f"Found {_plural(len(items), 'result')}"
    return "Operation completed successfully"


def build_success_response(
    data: Any,
    tool_name: str,
    *,
    source: str = DEFAULT_SOURCE,
    policy: Policy | None = None,
    summary: str | None = None,
    include_hint: bool = True,
) -> dict[str, str]:
    metadata: dict[str, Any] = {
        "source": source,
        "policy": policy or tool_policy(tool_name),
        "timestamp": _now_iso(),
    }
    if include_hint:
        metadata["hint"] = RETRY_HINT
    body = {
        "data": data,
        "summary": summary or summarize(data, tool_name),
        "metadata": metadata,
    }
    return {"output": json.dumps(body, default=str)}


def build_error_response(
    error: BaseException | str,
    tool_name: str,
    *,
    code: str = "TOOL_ERROR",
    suggestion: str | None = None,
) -> dict[str, str]:
    detail: dict[str, Any] = {
        "code": code,
        "message": str(error) or type(error).__name__,
        "tool": tool_name,
        "timestamp": _now_iso(),
    }
    if suggestion:
        detail["suggestion"] = suggestion
    return {"output": json.dumps({"error": detail}, default=str)}


def to_mcp_result(result: Any, is_error: bool = False) -> dict[str, Any]:
    """Wrap a handler result as ``{"content": [{"type": "text", "text": ...}]}``."""
    if isinstance(result, Mapping) and isinstance(result.get("output"), str):
        text = result["output"]
    elif isinstance(result, str):
        text = result
    elif result is None:
        text = "{}"
    else:
        text = json.dumps(result, default=str)
    mcp: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        mcp["isError"] = True
    return mcp


def parse_output(result: Mapping[str, Any]) -> Any:
    """Decode the JSON body of an ``{"output": ...}`` envelope."""
    return json.loads(result.get("output") or "{}")
