"""Fill tool arguments from agent memory before dispatch.

Two mechanisms:

1. Placeholders: any argument value (at any depth) of the form
   ``{"var": "ids.projectId"}`` is replaced by the memory value at that path.
   Placeholders that do not resolve are omitted.
2. Scoped arguments: tools scoped to a project or session get ``projectId`` /
   ``sessionId`` injected from ``memory.ids`` when the caller left it missing
   (absent, None, or blank).

Explicit caller values always win, the input mapping is never mutated, and
``bind(bind(x)) == bind(x)``.
"""

from __future__ import annotations

from typing import Any, Mapping

from tool_runtime.memory import Memory

DEFAULT_SCOPED_ARGS: dict[str, tuple[str, ...]] = {
    "tasks_by_project": ("projectId",),
    "notes_by_project": ("projectId",),
    "note_sessions_by_project": ("projectId",),
    "note_lines_by_session": ("sessionId",),
    "links_by_project": ("projectId",),
    "files_by_project": ("projectId",),
}

PLACEHOLDER_KEY = "var"

_OMIT = object()


def is_placeholder(value: Any) -> bool:
    return (
        isinstance(value, Mapping)
        and len(value) == 1
        and isinstance(value.get(PLACEHOLDER_KEY), str)
    )


def is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class ArgumentBinder:
    """Resolves placeholders and injects scoped ids for a fixed tool table."""

    def __init__(self, scoped_args: Mapping[str, tuple[str, ...]] | None = None) -> None:
        self.scoped_args = dict(DEFAULT_SCOPED_ARGS if scoped_args is None else scoped_args)

    def bind(
        self,
        tool_name: str,
        raw_args: Mapping[str, Any] | None,
        memory: Memory | Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        mem = Memory.from_mapping(memory)
        args: dict[str, Any] = {}
        for key, value in dict(raw_args or {}).items():
            resolved = _resolve(value, mem)
            if resolved is not _OMIT:
                args[key] = resolved

        for field in self.scoped_args.get(tool_name, ()):
            if not is_missing(args.get(field)):
                continue
            injected = mem.ids.get(field)
            if not is_missing(injected):
                args[field] = injected
        return args


def _resolve(value: Any, memory: Memory) -> Any:
    if is_placeholder(value):
        resolved = memory.lookup(value[PLACEHOLDER_KEY])
        return _OMIT if resolved is None else resolved
    if isinstance(value, Mapping):
        out = {}
        for key, item in value.items():
            resolved = _resolve(item, memory)
            if resolved is not _OMIT:
                out[key] = resolved
        return out
    if isinstance(value, list):
        return [item for item in (_resolve(v, memory) for v in value) if item is not _OMIT]
    return value


_default_binder = ArgumentBinder()


def bind_args(
    tool_name: str,
    raw_args: Mapping[str, Any] | None,
    memory: Memory | Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Bind with the default scoped-argument table."""
    return _default_binder.bind(tool_name, raw_args, memory)
