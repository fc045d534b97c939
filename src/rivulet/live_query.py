"""LiveQuery: a Reactive list of documents kept in sync with a Collection.

Created by ``Collection.find()``/``where()``/``live()``. Only the owning
collection pushes new results; application code reads and subscribes.

While registered, the query is refreshed after every committed mutation and
notifies its subscribers only when the result actually changed (different
documents or order). When its last subscriber leaves it is unregistered;
subscribing again re-registers it and recomputes the result.

The collection holds a query strongly only while it has subscribers. A
query that is neither referenced nor subscribed is garbage collected and
drops out of the registry on its own.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

from rivulet.query import Predicate
from rivulet.reactive import Reactive

if TYPE_CHECKING:
    from rivulet.collection import Collection

logger = logging.getLogger("rivulet.live_query")

T = TypeVar("T")


class LiveQuery(Reactive[list[T]]):
    __slots__ = ("_collection", "_predicate", "_filter", "_registered")

    def __init__(self, collection: Collection[T], predicate: Predicate, filter: Any = None) -> None:
        super().__init__(collection._select(predicate))
        self._collection = collection
        self._predicate = predicate
        self._filter = filter
        self._registered = False
        self._register()

    @property
    def collection(self) -> Collection[T]:
        return self._collection

    @property
    def filter(self) -> Any:
        return self._filter

    @property
    def registered(self) -> bool:
        return self._registered

    def get(self) -> list[T]:
        if not self._registered:
            self._value = self._collection._select(self._predicate)
        return list(self._value)

    def set(self, value: list[T]) -> None:
        raise TypeError("live query results are maintained by their collection")

    def error(self, exc: BaseException) -> None:
        raise TypeError("live query results are maintained by their collection")

    def refresh(self) -> bool:
        """Re-run the predicate; notify subscribers if the result changed."""
        result = self._collection._select(self._predicate)
        if _same(result, self._value):
            return False
        self._emit(result)
        return True

    def _register(self) -> None:
        if not self._registered:
            self._collection._register(self)
            self._registered = True
            logger.debug("Registered %r", self)

    def _unregister(self) -> None:
        if self._registered:
            self._collection._unregister(self)
            self._registered = False
            logger.debug("Unregistered %r", self)

    def _activate(self) -> None:
        if not self._registered:
            self._value = self._collection._select(self._predicate)
            self._register()
        self._collection._observe(self)

    def _deactivate(self) -> None:
        self._unregister()

    def __repr__(self) -> str:
        return (
            f"LiveQuery({self._collection.name}, filter={self._filter!r}, "
            f"matches={len(self._value)}, subscribers={len(self._subscribers)})"
        )


def _same(a: list[Any], b: list[Any]) -> bool:
    return len(a) == len(b) and all(x is y for x, y in zip(a, b))
