"""Database: a registry of named collections sharing one storage adapter.

transaction() batches live-query refresh across every collection, so
subscribers never observe a cross-collection change half applied.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from typing import Any, Iterator

from rivulet.collection import Collection, Migrate
from rivulet.storage import StorageAdapter

logger = logging.getLogger("rivulet.database")


class Database:
    """Named collections with a shared lifecycle."""

    def __init__(self, storage: StorageAdapter | None = None) -> None:
        self.storage = storage
        self._collections: dict[str, Collection[Any]] = {}

    def define(
        self,
        name: str,
        schema: Any,
        *,
        primary_key: str = "id",
        migrate: Migrate | None = None,
    ) -> Collection[Any]:
        if name in self._collections:
            raise ValueError(f"Collection {name!r} is already defined")
        collection: Collection[Any] = Collection(
            name, schema, primary_key=primary_key, storage=self.storage, migrate=migrate
        )
        self._collections[name] = collection
        logger.debug("Defined collection %s", name)
        return collection

    def get(self, name: str) -> Collection[Any] | None:
        return self._collections.get(name)

    def __getitem__(self, name: str) -> Collection[Any]:
        return self._collections[name]

    def __contains__(self, name: object) -> bool:
        return name in self._collections

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._collections))

    def __len__(self) -> int:
        return len(self._collections)

    @contextmanager
    def transaction(self):
        """Batch mutations on every collection; queries refresh on exit.

        Usage:
            with db.transaction():
                db["orders"].insert(order)
                db["stock"].update(item_id, {"count": 4})
        """
        with ExitStack() as stack:
            for collection in list(self._collections.values()):
                stack.enter_context(collection.batch())
            yield self

    async def load(self) -> dict[str, int]:
        """Load every collection from storage; returns document counts by name."""
        counts = {}
        for name, collection in list(self._collections.items()):
            counts[name] = await collection.load()
        return counts

    async def flush(self) -> None:
        for collection in list(self._collections.values()):
            await collection.flush()

    async def dispose(self) -> None:
        try:
            for collection in list(self._collections.values()):
                await collection.dispose()
        finally:
            self._collections.clear()

    def __repr__(self) -> str:
        return f"Database({', '.join(self._collections)})"
