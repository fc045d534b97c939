"""Tests for storage adapters and collection persistence."""

import asyncio
import logging

import pytest
from pydantic import BaseModel

from rivulet import Collection, CollectionError, MemoryStorage, StorageAdapter, ValidationError


class User(BaseModel):
    id: int
    name: str
    active: bool = True


class _FailingStorage(MemoryStorage):
    async def set_collection(self, name, documents):
        raise OSError("disk full")


class TestMemoryStorage:
    def test_key_value_roundtrip(self):
        async def main():
            storage = MemoryStorage()
            await storage.set("settings", {"theme": "dark"})
            value = await storage.get("settings")
            await storage.delete("settings")
            return value, await storage.get("settings")

        value, after = asyncio.run(main())
        assert value == {"theme": "dark"}
        assert after is None

    def test_values_are_copied(self):
        async def main():
            storage = MemoryStorage()
            docs = [{"id": 1}]
            await storage.set_collection("users", docs)
            docs[0]["id"] = 2
            loaded = await storage.get_collection("users")
            loaded[0]["id"] = 3
            return await storage.get_collection("users")

        assert asyncio.run(main()) == [{"id": 1}]

    def test_missing_collection(self):
        assert asyncio.run(MemoryStorage().get_collection("nope")) is None

    def test_query_uses_filters(self):
        async def main():
            storage = MemoryStorage()
            await storage.set_collection("users", [{"id": 1, "age": 15}, {"id": 2, "age": 40}])
            return await storage.query("users", {"age": {"$gte": 18}})

        assert asyncio.run(main()) == [{"id": 2, "age": 40}]

    def test_satisfies_protocol(self):
        assert isinstance(MemoryStorage(), StorageAdapter)


class TestPersistence:
    def test_mutations_are_written_in_background(self):
        async def main():
            storage = MemoryStorage()
            users = Collection("users", User, storage=storage)
            users.insert({"id": 1, "name": "Ada"})
            users.insert({"id": 2, "name": "Bob"})
            await users.flush()
            return storage

        storage = asyncio.run(main())
        assert storage.writes == 1
        assert asyncio.run(storage.get_collection("users")) == [
            {"id": 1, "name": "Ada", "active": True},
            {"id": 2, "name": "Bob", "active": True},
        ]

    def test_changes_without_event_loop_are_written_on_flush(self):
        storage = MemoryStorage()
        users = Collection("users", User, storage=storage)
        users.insert({"id": 1, "name": "Ada"})
        assert storage.writes == 0
        asyncio.run(users.flush())
        assert asyncio.run(storage.get_collection("users")) == [{"id": 1, "name": "Ada", "active": True}]

    def test_write_failure_is_logged_and_raised_by_flush(self, caplog):
        async def main():
            users = Collection("users", User, storage=_FailingStorage())
            users.insert({"id": 1, "name": "Ada"})
            with pytest.raises(OSError, match="disk full"):
                await users.flush()
            return users

        with caplog.at_level(logging.ERROR, logger="rivulet.collection"):
            users = asyncio.run(main())
        assert "Persisting users failed" in caplog.text
        assert users.get(1).name == "Ada"

    def test_flush_without_storage_is_a_no_op(self):
        asyncio.run(Collection("users", User).flush())


class TestLoad:
    def test_load_replaces_contents_and_notifies(self):
        async def main():
            storage = MemoryStorage()
            await storage.set_collection("users", [{"id": 7, "name": "Stored"}])
            users = Collection("users", User, storage=storage)
            seen = []
            users.live().subscribe(seen.append)
            count = await users.load()
            return count, seen

        count, seen = asyncio.run(main())
        assert count == 1
        assert [[u.name for u in result] for result in seen] == [[], ["Stored"]]

    def test_migrate_runs_before_validation(self):
        def migrate(raw):
            return [{"id": doc["id"], "name": doc.pop("full_name")} for doc in raw]

        async def main():
            storage = MemoryStorage()
            await storage.set_collection("users", [{"id": 1, "full_name": "Ada"}])
            users = Collection("users", User, storage=storage, migrate=migrate)
            await users.load()
            return users

        users = asyncio.run(main())
        assert users.get(1).name == "Ada"

    def test_invalid_stored_document_leaves_collection_untouched(self):
        async def main():
            storage = MemoryStorage()
            await storage.set_collection("users", [{"id": 1, "name": "Ok"}, {"id": "x"}])
            users = Collection("users", User, storage=storage)
            users.insert({"id": 5, "name": "Kept"})
            with pytest.raises(ValidationError):
                await users.load()
            return users

        users = asyncio.run(main())
        assert [u.id for u in users] == [5]

    def test_load_requires_storage(self):
        with pytest.raises(CollectionError):
            asyncio.run(Collection("users", User).load())

    def test_load_empty_storage(self):
        users = Collection("users", User, storage=MemoryStorage())
        assert asyncio.run(users.load()) == 0
