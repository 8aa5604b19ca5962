"""Decide whether an agent has gathered enough to stop calling tools.

    evaluate_stop_condition(["ids.projectId", "lists.tasks"], memory)

Every path must hold (AND). ``lists.*`` / ``ids.*`` / ``entities.*`` hold when
any value in that map is truthy (a list must be non-empty). An empty
requirement list never holds: no declared stop condition means keep going.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from tool_runtime.memory import CATEGORIES, Memory


def _truthy(category: str, value: Any) -> bool:
    if category == "lists":
        return isinstance(value, list) and len(value) > 0
    return bool(value)


def check_path(path: str, memory: Memory) -> bool:
    key = str(path or "").strip()
    category, _, rest = key.partition(".")
    if category not in CATEGORIES or not rest:
        return False
    bucket = memory.category(category) or {}
    if rest == "*":
        return any(_truthy(category, value) for value in bucket.values())
    value = memory.lookup(key)
    if category == "lists" and "." not in rest:
        return _truthy("lists", value)
    return bool(value)


def evaluate_stop_condition(
    required_paths: Iterable[str] | None,
    memory: Memory | Mapping[str, Any] | None,
) -> bool:
    paths = list(required_paths or [])
    if not paths:
        return False
    mem = Memory.from_mapping(memory)
    return all(check_path(path, mem) for path in paths)


evaluate = evaluate_stop_condition
