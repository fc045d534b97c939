"""Collection: validated, insertion-ordered documents with live queries.

Every mutation goes through the collection's Validator, is committed to the
in-memory store, and then refreshes the registered live queries in the order
they were created. Queries whose result did not change are not notified.

    class User(BaseModel):
        id: int
        name: str
        age: int = Field(ge=18)
        active: bool = True

    users = Collection("users", User)
    adults = users.find({"active": True})
    adults.subscribe(render)          # render([...]) right away
    users.insert({"id": 1, "name": "Ada", "age": 36})
                                      # render([User(id=1, ...)])

With a StorageAdapter attached, committed changes are written in the
background on the running event loop; ``await flush()`` waits for them and
raises the last write failure, if any. Storage never affects what readers
see in memory.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import weakref
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar

from rivulet.errors import (
    CollectionError,
    DocumentNotFoundError,
    DuplicateKeyError,
    FieldError,
    ValidationError,
)
from rivulet.live_query import LiveQuery
from rivulet.query import Predicate, compile_filter, get_field
from rivulet.validation import Validator, as_validator

if TYPE_CHECKING:
    from rivulet.storage import StorageAdapter

logger = logging.getLogger("rivulet.collection")

T = TypeVar("T")

Migrate = Callable[[list[Any]], list[Any]]

_MISSING = object()


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a ``try_*`` call.

    ``errors`` holds the field errors of a validation failure; ``error`` is
    the exception the plain method would have raised.
    """

    success: bool
    data: T | None = None
    errors: tuple[FieldError, ...] = ()
    error: Exception | None = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(True, data)

    @classmethod
    def failed(cls, error: Exception) -> Result[T]:
        errors = error.errors if isinstance(error, ValidationError) else ()
        return cls(False, None, errors, error)

    @property
    def message(self) -> str | None:
        return None if self.error is None else str(self.error)

    def __bool__(self) -> bool:
        return self.success


class Collection(Generic[T]):
    """Named set of documents keyed by ``primary_key``."""

    def __init__(
        self,
        name: str,
        schema: Any,
        *,
        primary_key: str = "id",
        storage: StorageAdapter | None = None,
        migrate: Migrate | None = None,
    ) -> None:
        self.name = name
        self.validator: Validator[T] = as_validator(schema)
        self.primary_key = primary_key
        self._storage = storage
        self._migrate = migrate
        self._documents: dict[Any, T] = {}
        # registration order; a query nobody references or observes drops out
        self._queries: list[weakref.ref[LiveQuery[T]]] = []
        self._observed: set[LiveQuery[T]] = set()
        self._refreshing = False
        self._stale = False
        self._batch_depth = 0
        self._refresh_pending = False
        self._dirty = False
        self._writer: asyncio.Task | None = None
        self._write_error: BaseException | None = None
        self._disposed = False

    # --- Reading ---

    def get(self, key: Any, default: T | None = None) -> T | None:
        return self._documents.get(key, default)

    def all(self) -> list[T]:
        return list(self._documents.values())

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, key: object) -> bool:
        return key in self._documents

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._documents.values()))

    def find(self, filter: Mapping[str, Any] | Predicate | None = None) -> LiveQuery[T]:
        """A LiveQuery over the documents matching ``filter`` (all when None)."""
        return LiveQuery(self, compile_filter(filter), filter)

    def where(self, filter: Mapping[str, Any] | Predicate) -> LiveQuery[T]:
        return self.find(filter)

    def live(self) -> LiveQuery[T]:
        """A LiveQuery over the whole collection."""
        return self.find(None)

    def find_one(self, filter: Mapping[str, Any] | Predicate | None = None) -> T | None:
        predicate = compile_filter(filter)
        for doc in self._documents.values():
            if predicate(doc):
                return doc
        return None

    @property
    def queries(self) -> list[LiveQuery[T]]:
        """Registered live queries, in registration order."""
        alive = (ref() for ref in self._queries)
        return [query for query in alive if query is not None]

    # --- Mutations ---

    def validate_insert(self, candidate: Any) -> Result[T]:
        """Check whether ``insert(candidate)`` would succeed, without storing."""
        try:
            doc = self.validator.validate(candidate)
            self._check_new_key(self._key_of(doc))
        except (ValidationError, CollectionError) as e:
            return Result.failed(e)
        return Result.ok(doc)

    def insert(self, candidate: Any) -> T:
        self._check_open()
        doc = self.validator.validate(candidate)
        key = self._key_of(doc)
        self._check_new_key(key)
        self._documents[key] = doc
        self._changed()
        return doc

    def try_insert(self, candidate: Any) -> Result[T]:
        try:
            return Result.ok(self.insert(candidate))
        except (ValidationError, CollectionError) as e:
            return Result.failed(e)

    def update(self, key: Any, patch: Mapping[str, Any]) -> T:
        """Merge ``patch`` into the stored document and validate the result.

        The document keeps its position; its identity cannot change.
        """
        self._check_open()
        existing = self._require(key)
        if self.primary_key in patch and patch[self.primary_key] != key:
            raise self._identity_error()
        doc = self.validator.validate({**_as_mapping(existing), **patch})
        if self._key_of(doc) != key:
            raise self._identity_error()
        self._documents[key] = doc
        self._changed()
        return doc

    def try_update(self, key: Any, patch: Mapping[str, Any]) -> Result[T]:
        try:
            return Result.ok(self.update(key, patch))
        except (ValidationError, CollectionError) as e:
            return Result.failed(e)

    def delete(self, key: Any) -> T:
        self._check_open()
        self._require(key)
        doc = self._documents.pop(key)
        self._changed()
        return doc

    def try_delete(self, key: Any) -> Result[T]:
        try:
            return Result.ok(self.delete(key))
        except CollectionError as e:
            return Result.failed(e)

    @contextmanager
    def batch(self):
        """Apply several mutations, refreshing live queries once at the end.

        Usage:
            with users.batch():
                users.insert(a)
                users.insert(b)
                # subscribers see both documents at once
        """
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._refresh_pending:
                self._refresh_pending = False
                self._refresh()

    # --- Persistence ---

    async def load(self) -> int:
        """Replace the contents with the documents held by the storage adapter.

        Raw documents go through ``migrate`` and then the Validator; nothing
        is replaced unless every document is accepted.
        """
        storage = self._require_storage()
        raw = list(await storage.get_collection(self.name) or [])
        if self._migrate is not None:
            raw = list(self._migrate(raw))
        documents: dict[Any, T] = {}
        for candidate in raw:
            doc = self.validator.validate(candidate)
            key = self._key_of(doc)
            if key in documents:
                raise DuplicateKeyError(f"Item with id {key!r} already exists in {self.name}")
            documents[key] = doc
        self._documents = documents
        logger.info("Loaded %d documents into %s", len(documents), self.name)
        self._changed(persist=False)
        return len(documents)

    async def flush(self) -> None:
        """Wait until every committed change has reached storage."""
        if self._storage is None:
            return
        writer = self._writer
        if writer is not None and not writer.done() and writer.get_loop() is asyncio.get_running_loop():
            await asyncio.wait([writer])
        error, self._write_error = self._write_error, None
        if error is not None:
            raise error
        if self._dirty:
            self._dirty = False
            try:
                await self._storage.set_collection(self.name, self._snapshot())
            except Exception:
                self._dirty = True
                raise

    async def dispose(self) -> None:
        """Flush pending writes and release every live query."""
        try:
            await self.flush()
        finally:
            for query in self.queries:
                query._unregister()
            self._disposed = True

    # --- Internals ---

    def _key_of(self, doc: Any) -> Any:
        key = get_field(doc, self.primary_key, _MISSING)
        if key is _MISSING:
            raise ValidationError(
                [FieldError((self.primary_key,), "Field required", "missing")],
                title=self.name,
            )
        return key

    def _check_new_key(self, key: Any) -> None:
        if key in self._documents:
            raise DuplicateKeyError(f"Item with id {key!r} already exists in {self.name}")

    def _require(self, key: Any) -> T:
        try:
            return self._documents[key]
        except KeyError:
            raise DocumentNotFoundError(f"Item with id {key!r} not found in {self.name}") from None

    def _identity_error(self) -> ValidationError:
        return ValidationError(
            [FieldError((self.primary_key,), "Identity field cannot be changed", "immutable")],
            title=self.name,
        )

    def _check_open(self) -> None:
        if self._disposed:
            raise CollectionError(f"Collection {self.name} is disposed")

    def _require_storage(self) -> StorageAdapter:
        if self._storage is None:
            raise CollectionError(f"Collection {self.name} has no storage adapter")
        return self._storage

    def _select(self, predicate: Predicate) -> list[T]:
        return [doc for doc in self._documents.values() if predicate(doc)]

    def _register(self, query: LiveQuery[T]) -> None:
        self._queries.append(weakref.ref(query, self._forget))

    def _observe(self, query: LiveQuery[T]) -> None:
        # subscribers only hold their callbacks, so keep the query itself alive
        self._observed.add(query)

    def _unregister(self, query: LiveQuery[T]) -> None:
        self._observed.discard(query)
        for ref in self._queries:
            if ref() is query:
                self._queries.remove(ref)
                break

    def _forget(self, ref: weakref.ref[LiveQuery[T]]) -> None:
        if ref in self._queries:
            self._queries.remove(ref)

    def _changed(self, persist: bool = True) -> None:
        if persist:
            self._schedule_write()
        if self._batch_depth:
            self._refresh_pending = True
            return
        self._refresh()

    def _refresh(self) -> None:
        if self._refreshing:
            # a subscriber mutated the collection; run another pass afterwards
            self._stale = True
            return
        self._refreshing = True
        try:
            while True:
                self._stale = False
                for query in self.queries:
                    if query.registered:
                        query.refresh()
                if not self._stale:
                    break
        finally:
            self._refreshing = False

    def _snapshot(self) -> list[Any]:
        dump = getattr(self.validator, "dump", None)
        if dump is None:
            return [_as_mapping(doc) for doc in self._documents.values()]
        return [dump(doc) for doc in self._documents.values()]

    def _schedule_write(self) -> None:
        if self._storage is None:
            return
        self._dirty = True
        if self._writer is not None and not self._writer.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; %s is written on flush()", self.name)
            return
        self._writer = loop.create_task(self._write_loop())
        self._writer.add_done_callback(self._write_done)

    async def _write_loop(self) -> None:
        while self._dirty:
            self._dirty = False
            snapshot = self._snapshot()
            try:
                await self._storage.set_collection(self.name, snapshot)
            except Exception:
                self._dirty = True
                raise
            logger.debug("Persisted %d documents of %s", len(snapshot), self.name)

    def _write_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._write_error = exc
            logger.error("Persisting %s failed", self.name, exc_info=exc)

    def __repr__(self) -> str:
        return f"Collection({self.name!r}, documents={len(self._documents)}, queries={len(self._queries)})"


def _as_mapping(doc: Any) -> dict[str, Any]:
    if isinstance(doc, Mapping):
        return dict(doc)
    if hasattr(doc, "model_dump"):
        return doc.model_dump()
    if dataclasses.is_dataclass(doc) and not isinstance(doc, type):
        return {f.name: getattr(doc, f.name) for f in dataclasses.fields(doc)}
    return dict(vars(doc))
