"""Catalog of workspace tools: required arguments and access policy.

Only tools served by LocalHandlers are listed. Anything else (remote tools,
handlers registered at runtime) skips argument validation and gets its
policy from the name prefix.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping

from tool_runtime.errors import ToolValidationError

Policy = Literal["read_only", "write", "delete"]


@dataclass(frozen=True)
class ToolSpec:
    required_args: tuple[str, ...] = ()
    read_only: bool = True


def _read(*required: str) -> ToolSpec:
    return ToolSpec(required_args=required, read_only=True)


TOOL_CATALOG: dict[str, ToolSpec] = {
    "projects_list": _read(),
    "project_by_name": _read("name"),
    "tasks_by_project": _read("projectId"),
    "tasks_filter": _read(),
    "tasks_due_before": _read("dueBefore"),
    "overdue_tasks": _read(),
    "collection_query": _read("collection"),
    "notes_by_project": _read("projectId"),
    "note_sessions_by_project": _read("projectId"),
    "note_lines_by_session": _read("sessionId"),
    "links_by_project": _read("projectId"),
    "files_by_project": _read("projectId"),
    "people_list": _read(),
    "teams_list": _read(),
}


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_tool_args(
    tool_name: str,
    args: Mapping[str, Any] | None,
    catalog: Mapping[str, ToolSpec] | None = None,
) -> None:
    """Raise ToolValidationError for an unknown tool or missing required args."""
    catalog = TOOL_CATALOG if catalog is None else catalog
    spec = catalog.get(tool_name)
    if spec is None:
        raise ToolValidationError(f"Unknown tool: {tool_name}")
    args = args or {}
    missing = [name for name in spec.required_args if _is_missing(args.get(name))]
    if missing:
        raise ToolValidationError(
            f"Missing required argument(s) for {tool_name}: {', '.join(missing)}",
            missing=missing,
        )


def tool_policy(tool_name: str, catalog: Mapping[str, ToolSpec] | None = None) -> Policy:
    """Side-effect class of ``tool_name``; a catalog entry wins over the name prefix."""
    spec = (TOOL_CATALOG if catalog is None else catalog).get(tool_name)
    if spec is None:
        return infer_policy(tool_name)
    if spec.read_only:
        return "read_only"
    return "delete" if infer_policy(tool_name) == "delete" else "write"


def is_read_only(tool_name: str, catalog: Mapping[str, ToolSpec] | None = None) -> bool:
    return tool_policy(tool_name, catalog) == "read_only"


def infer_policy(tool_name: str) -> Policy:
    if tool_name.startswith(("create_", "update_")):
        return "write"
    if tool_name.startswith("delete_"):
        return "delete"
    return "read_only"
