"""Per-episode agent memory: what has been learned so far in one agent task.

Three named maps, each with its own value type:

    ids       {"projectId": "p42"}
    lists     {"tasks": [{...}, {...}]}
    entities  {"project": {...}}

Paths are ``<category>.<key>[.<more>...]``. ``lookup`` resolves them against
the matching map only; there is no attribute walking.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

Category = Literal["ids", "lists", "entities"]
CATEGORIES: tuple[Category, ...] = ("ids", "lists", "entities")

_MISSING = object()


@dataclass
class Memory:
    ids: dict[str, str] = field(default_factory=dict)
    lists: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    entities: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | Memory | None) -> Memory:
        """Accept a Memory, a plain ``{ids, lists, entities}`` mapping, or None."""
        if isinstance(data, Memory):
            return data
        data = data or {}
        return cls(
            ids={str(k): v for k, v in dict(data.get("ids") or {}).items()},
            lists={str(k): list(v or []) for k, v in dict(data.get("lists") or {}).items()},
            entities=dict(data.get("entities") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ids": dict(self.ids),
            "lists": {k: list(v) for k, v in self.lists.items()},
            "entities": dict(self.entities),
        }

    def category(self, name: str) -> dict[str, Any] | None:
        if name == "ids":
            return self.ids
        if name == "lists":
            return self.lists
        if name == "entities":
            return self.entities
        return None

    def lookup(self, path: str, default: Any = None) -> Any:
        """Resolve a dot path such as ``ids.projectId`` or ``lists.tasks.0.title``."""
        value = self._resolve(path)
        return default if value is _MISSING else value

    def has(self, path: str) -> bool:
        return self._resolve(path) is not _MISSING

    def _resolve(self, path: str) -> Any:
        head, _, rest = str(path or "").strip().partition(".")
        bucket = self.category(head)
        if bucket is None or not rest:
            return _MISSING
        key, _, tail = rest.partition(".")
        current: Any = bucket.get(key, _MISSING)
        for part in tail.split(".") if tail else ():
            current = _step(current, part)
            if current is _MISSING:
                break
        return current

    # -- folding tool results in ---------------------------------------------

    def set_id(self, name: str, value: Any) -> None:
        if value is None or str(value).strip() == "":
            return
        self.ids[name] = str(value)

    def set_list(self, name: str, items: list[dict[str, Any]] | None) -> None:
        self.lists[name] = list(items or [])

    def set_entity(self, name: str, value: Any) -> None:
        self.entities[name] = value

    def merge(self, other: Mapping[str, Any] | Memory) -> None:
        """Fold another memory fragment in; later values win per key."""
        fragment = Memory.from_mapping(other)
        for name, value in fragment.ids.items():
            self.set_id(name, value)
        self.lists.update(fragment.lists)
        self.entities.update(fragment.entities)


def _step(current: Any, part: str) -> Any:
    if isinstance(current, Mapping):
        return current.get(part, _MISSING)
    if isinstance(current, list) and part.lstrip("-").isdigit():
        index = int(part)
        return current[index] if -len(current) <= index < len(current) else _MISSING
    return _MISSING
