"""Storage adapters: where collections persist their documents.

Adapters are async and keyed by string. The in-memory collection never
reads from its adapter except in ``Collection.load()``.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from rivulet.query import Predicate, compile_filter


@runtime_checkable
class StorageAdapter(Protocol):
    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def get_collection(self, name: str) -> list[Any] | None: ...

    async def set_collection(self, name: str, documents: list[Any]) -> None: ...

    async def query(self, name: str, filter: Mapping[str, Any] | Predicate | None = None) -> list[Any]: ...


class MemoryStorage:
    """Process-local adapter. Values are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}
        self._collections: dict[str, list[Any]] = {}
        self.writes = 0

    async def get(self, key: str) -> Any:
        return copy.deepcopy(self._values.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._values[key] = copy.deepcopy(value)
        self.writes += 1

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._collections.pop(key, None)

    async def get_collection(self, name: str) -> list[Any] | None:
        documents = self._collections.get(name)
        return None if documents is None else copy.deepcopy(documents)

    async def set_collection(self, name: str, documents: list[Any]) -> None:
        self._collections[name] = copy.deepcopy(list(documents))
        self.writes += 1

    async def query(self, name: str, filter: Mapping[str, Any] | Predicate | None = None) -> list[Any]:
        predicate = compile_filter(filter)
        return [copy.deepcopy(doc) for doc in self._collections.get(name, []) if predicate(doc)]

    def __contains__(self, key: str) -> bool:
        return key in self._values or key in self._collections
