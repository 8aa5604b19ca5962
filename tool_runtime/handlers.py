"""Read-only workspace tools backed by the selector builders.

The document store is an external collaborator; anything implementing
``DocumentStore`` works (a Mongo client wrapper in production, an in-memory
fake in tests). Every handler folds what it found into memory and returns a
``build_success_response`` envelope.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Protocol, Sequence

from tool_runtime.errors import ToolValidationError
from tool_runtime.memory import Memory
from tool_runtime.responses import build_success_response
from tool_runtime.selectors import (
    FIELD_ALLOWLIST,
    build_by_entity_selector,
    build_by_project_selector,
    build_filter_selector,
    build_overdue_selector,
    build_project_by_name_selector,
    build_tasks_selector,
    compile_where,
    list_key_for_collection,
)

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 300
DEFAULT_QUERY_LIMIT = 50
MAX_QUERY_LIMIT = 200

TASK_FIELDS = ("title", "projectId", "status", "deadline", "isUrgent", "isImportant", "notes")


class DocumentStore(Protocol):
    async def find(
        self,
        collection: str,
        selector: Mapping[str, Any],
        fields: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def find_one(
        self,
        collection: str,
        selector: Mapping[str, Any],
        fields: Sequence[str] | None = None,
    ) -> dict[str, Any] | None: ...


def clamp_text(value: Any, limit: int = MAX_TEXT_CHARS) -> str:
    text = "" if value is None else str(value)
    return text if len(text) <= limit else text[: limit - 1] + "…"


def doc_id(doc: Mapping[str, Any]) -> Any:
    return doc.get("_id", doc.get("id"))


def _task_row(task: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id(task),
        "projectId": task.get("projectId"),
        "title": clamp_text(task.get("title")),
        "notes": task.get("notes") or "",
        "status": task.get("status") or "todo",
        "deadline": task.get("deadline"),
        "isUrgent": bool(task.get("isUrgent")),
        "isImportant": bool(task.get("isImportant")),
    }


def _named_row(doc: Mapping[str, Any]) -> dict[str, Any]:
    row = {"id": doc_id(doc), "name": clamp_text(doc.get("name"))}
    for key in ("description", "url", "projectId"):
        if key in doc:
            row[key] = clamp_text(doc[key]) if key == "description" else doc[key]
    return row


def _note_row(doc: Mapping[str, Any]) -> dict[str, Any]:
    return {"id": doc_id(doc), "title": clamp_text(doc.get("title"))}


def _line_row(doc: Mapping[str, Any]) -> dict[str, Any]:
    return {"id": doc_id(doc), "content": clamp_text(doc.get("content"))}


def _query_limit(raw: Any) -> int:
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_QUERY_LIMIT
    return max(1, min(MAX_QUERY_LIMIT, limit)) if limit > 0 else DEFAULT_QUERY_LIMIT


Handler = Callable[[dict[str, Any], Memory], Any]


class LocalHandlers:
    """Workspace tool handlers bound to one DocumentStore."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def _list(
        self,
        tool_name: str,
        memory: Memory,
        *,
        collection: str,
        selector: Mapping[str, Any],
        fields: Sequence[str] | None,
        row: Callable[[Mapping[str, Any]], dict[str, Any]],
        list_key: str,
    ) -> dict[str, str]:
        logger.debug("%s: %s %s", tool_name, collection, selector)
        docs = await self.store.find(collection, selector, fields=fields)
        rows = [row(doc) for doc in docs or []]
        memory.set_list(list_key, rows)
        return build_success_response({list_key: rows, "total": len(rows)}, tool_name)

    # -- projects ------------------------------------------------------------

    async def projects_list(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        return await self._list(
            "projects_list", memory,
            collection="projects", selector={}, fields=("name", "description"),
            row=_named_row, list_key="projects",
        )

    async def project_by_name(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        selector = build_project_by_name_selector(args.get("name"))
        if not selector:
            raise ToolValidationError("name is required", missing=["name"])
        project = await self.store.find_one("projects", selector, fields=("name", "description"))
        out = None
        if project is not None and doc_id(project) is not None:
            memory.set_id("projectId", doc_id(project))
            memory.set_entity("project", {
                "name": project.get("name") or "",
                "description": project.get("description") or "",
            })
            out = _named_row({**project, "description": project.get("description") or ""})
        return build_success_response({"project": out}, "project_by_name")

    # -- tasks ---------------------------------------------------------------

    async def _tasks(self, tool_name: str, selector: Mapping[str, Any], memory: Memory) -> dict[str, str]:
        return await self._list(
            tool_name, memory,
            collection="tasks", selector=selector, fields=TASK_FIELDS,
            row=_task_row, list_key="tasks",
        )

    async def tasks_by_project(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        return await self._tasks(
            "tasks_by_project", build_by_project_selector(args.get("projectId")), memory,
        )

    async def tasks_filter(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        return await self._tasks("tasks_filter", build_filter_selector(args), memory)

    async def tasks_due_before(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        selector = build_tasks_selector(args)
        if "$or" not in selector:
            raise ToolValidationError(
                f"dueBefore is not a valid date: {args.get('dueBefore')!r}", missing=["dueBefore"],
            )
        return await self._tasks("tasks_due_before", selector, memory)

    async def overdue_tasks(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        return await self._tasks("overdue_tasks", build_overdue_selector(args.get("now")), memory)

    # -- notes, links, files -------------------------------------------------

    def _by(self, field: str, args: Mapping[str, Any]) -> dict[str, Any]:
        return build_by_entity_selector(field, args.get(field), exclude_done=False)

    async def notes_by_project(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        return await self._list(
            "notes_by_project", memory,
            collection="notes", selector=self._by("projectId", args), fields=("title",),
            row=_note_row, list_key="notes",
        )

    async def note_sessions_by_project(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        return await self._list(
            "note_sessions_by_project", memory,
            collection="noteSessions", selector=self._by("projectId", args),
            fields=("name", "projectId"), row=_named_row, list_key="noteSessions",
        )

    async def note_lines_by_session(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        return await self._list(
            "note_lines_by_session", memory,
            collection="noteLines", selector=self._by("sessionId", args), fields=("content",),
            row=_line_row, list_key="noteLines",
        )

    async def links_by_project(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        return await self._list(
            "links_by_project", memory,
            collection="links", selector=self._by("projectId", args), fields=("name", "url"),
            row=_named_row, list_key="links",
        )

    async def files_by_project(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        return await self._list(
            "files_by_project", memory,
            collection="files", selector=self._by("projectId", args), fields=("name",),
            row=_named_row, list_key="files",
        )

    # -- people --------------------------------------------------------------

    async def people_list(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        return await self._list(
            "people_list", memory,
            collection="people", selector={}, fields=("name",), row=_named_row, list_key="people",
        )

    async def teams_list(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        return await self._list(
            "teams_list", memory,
            collection="teams", selector={}, fields=("name",), row=_named_row, list_key="teams",
        )

    # -- generic -------------------------------------------------------------

    async def collection_query(self, args: dict[str, Any], memory: Memory) -> dict[str, str]:
        collection = str(args.get("collection") or "").strip()
        allowed = FIELD_ALLOWLIST.get(collection)
        if allowed is None:
            raise ToolValidationError(f"Unsupported collection: {collection or '<empty>'}")
        select = [f for f in args.get("select") or [] if f in allowed]
        selector = compile_where(collection, args.get("where"))
        docs = await self.store.find(
            collection, selector, fields=select or None, limit=_query_limit(args.get("limit")),
        )
        key = list_key_for_collection(collection)
        rows = list(docs or [])
        memory.set_list(key, rows)
        return build_success_response({key: rows, "total": len(rows)}, "collection_query")

    def as_registry(self) -> dict[str, Handler]:
        """Tool name to bound handler, for ToolRegistry.register_many."""
        return {
            name: getattr(self, name)
            for name in (
                "projects_list",
                "project_by_name",
                "tasks_by_project",
                "tasks_filter",
                "tasks_due_before",
                "overdue_tasks",
                "notes_by_project",
                "note_sessions_by_project",
                "note_lines_by_session",
                "links_by_project",
                "files_by_project",
                "people_list",
                "teams_list",
                "collection_query",
            )
        }
