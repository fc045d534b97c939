"""Tests for Collection: validated CRUD and try_* results."""

import asyncio

import pytest
from pydantic import BaseModel, Field
from typing_extensions import TypedDict

from rivulet import (
    Collection,
    CollectionError,
    DocumentNotFoundError,
    DuplicateKeyError,
    FieldError,
    ValidationError,
)


class User(BaseModel):
    id: int
    name: str
    age: int = Field(ge=18)
    active: bool = True


class Note(TypedDict):
    slug: str
    body: str


def _users():
    return Collection("users", User)


class TestInsert:
    def test_insert_returns_validated_document(self):
        users = _users()
        doc = users.insert({"id": 1, "name": "Ada", "age": 36})
        assert isinstance(doc, User)
        assert doc.active is True
        assert users.get(1) is doc
        assert len(users) == 1
        assert 1 in users

    def test_insert_rejects_invalid(self):
        users = _users()
        with pytest.raises(ValidationError) as exc_info:
            users.insert({"id": 1, "name": "Kid", "age": 15})
        errors = exc_info.value.errors
        assert [e.path for e in errors] == [("age",)]
        assert errors[0].code == "greater_than_equal"
        assert len(users) == 0

    def test_validation_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            _users().insert({"id": "x", "name": "Ada", "age": 36})

    def test_duplicate_key(self):
        users = _users()
        users.insert({"id": 1, "name": "Ada", "age": 36})
        with pytest.raises(DuplicateKeyError, match="already exists"):
            users.insert({"id": 1, "name": "Bob", "age": 40})
        assert users.get(1).name == "Ada"

    def test_keeps_insertion_order(self):
        users = _users()
        for i in (3, 1, 2):
            users.insert({"id": i, "name": f"u{i}", "age": 20 + i})
        assert [u.id for u in users] == [3, 1, 2]
        assert [u.id for u in users.all()] == [3, 1, 2]

    def test_custom_primary_key(self):
        notes = Collection("notes", Note, primary_key="slug")
        notes.insert({"slug": "hello", "body": "hi"})
        assert notes.get("hello") == {"slug": "hello", "body": "hi"}


class TestTryInsert:
    def test_underage_fails_adult_succeeds(self):
        users = _users()
        failed = users.try_insert({"id": 1, "name": "Kid", "age": 15})
        ok = users.try_insert({"id": 2, "name": "Ada", "age": 20})
        assert failed.success is False
        assert ok.success is True
        assert ok.data.age == 20
        assert list(users.all()) == [ok.data]

    def test_failure_carries_field_errors(self):
        result = _users().try_insert({"id": 1, "age": 15})
        assert not result
        assert {e.location for e in result.errors} == {"name", "age"}
        assert isinstance(result.error, ValidationError)
        assert "validation error" in result.message

    def test_duplicate_is_a_failed_result(self):
        users = _users()
        users.insert({"id": 1, "name": "Ada", "age": 36})
        result = users.try_insert({"id": 1, "name": "Bob", "age": 40})
        assert not result.success
        assert result.errors == ()
        assert isinstance(result.error, DuplicateKeyError)


class TestValidateInsert:
    def test_does_not_store(self):
        users = _users()
        result = users.validate_insert({"id": 1, "name": "Ada", "age": 36})
        assert result.success
        assert len(users) == 0

    def test_reports_duplicates(self):
        users = _users()
        users.insert({"id": 1, "name": "Ada", "age": 36})
        assert not users.validate_insert({"id": 1, "name": "Ada", "age": 36}).success


class TestUpdate:
    def test_merges_patch_and_keeps_position(self):
        users = _users()
        users.insert({"id": 1, "name": "Ada", "age": 36})
        users.insert({"id": 2, "name": "Bob", "age": 40})
        updated = users.update(1, {"age": 37})
        assert updated.name == "Ada"
        assert updated.age == 37
        assert [u.id for u in users] == [1, 2]

    def test_merged_document_must_be_valid(self):
        users = _users()
        users.insert({"id": 1, "name": "Ada", "age": 36})
        with pytest.raises(ValidationError):
            users.update(1, {"age": 10})
        assert users.get(1).age == 36

    def test_identity_is_immutable(self):
        users = _users()
        users.insert({"id": 1, "name": "Ada", "age": 36})
        with pytest.raises(ValidationError) as exc_info:
            users.update(1, {"id": 2})
        assert exc_info.value.errors[0].path == ("id",)
        assert users.update(1, {"id": 1, "name": "Ada L."}).name == "Ada L."

    def test_unknown_key(self):
        with pytest.raises(DocumentNotFoundError, match="not found"):
            _users().update(9, {"age": 30})

    def test_try_update(self):
        users = _users()
        users.insert({"id": 1, "name": "Ada", "age": 36})
        assert users.try_update(1, {"age": 40}).success
        failed = users.try_update(1, {"age": 1})
        assert not failed.success
        assert failed.errors[0].path == ("age",)
        assert not users.try_update(5, {"age": 40}).success

    def test_dict_documents(self):
        notes = Collection("notes", Note, primary_key="slug")
        notes.insert({"slug": "a", "body": "one"})
        assert notes.update("a", {"body": "two"}) == {"slug": "a", "body": "two"}


class TestDelete:
    def test_delete_returns_document(self):
        users = _users()
        ada = users.insert({"id": 1, "name": "Ada", "age": 36})
        assert users.delete(1) is ada
        assert 1 not in users

    def test_delete_missing(self):
        users = _users()
        with pytest.raises(DocumentNotFoundError):
            users.delete(1)
        with pytest.raises(LookupError):
            users.delete(1)

    def test_try_delete(self):
        users = _users()
        users.insert({"id": 1, "name": "Ada", "age": 36})
        assert users.try_delete(1).success
        result = users.try_delete(1)
        assert not result.success
        assert "not found" in result.message


class TestFindOne:
    def test_first_match_in_insertion_order(self):
        users = _users()
        users.insert({"id": 1, "name": "Ada", "age": 36, "active": False})
        users.insert({"id": 2, "name": "Bob", "age": 40})
        users.insert({"id": 3, "name": "Cy", "age": 50})
        assert users.find_one({"active": True}).id == 2
        assert users.find_one({"age": {"$gt": 100}}) is None
        assert users.find_one().id == 1


class TestValidators:
    def test_custom_validator(self):
        class Upper:
            def validate(self, candidate):
                if not candidate.get("id"):
                    raise ValidationError([FieldError(("id",), "required")])
                return {**candidate, "name": candidate.get("name", "").upper()}

        items = Collection("items", Upper())
        assert items.insert({"id": "a", "name": "x"})["name"] == "X"
        with pytest.raises(ValidationError):
            items.insert({"name": "y"})

    def test_document_without_identity(self):
        class Anything:
            def validate(self, candidate):
                return candidate

        items = Collection("items", Anything())
        with pytest.raises(ValidationError) as exc_info:
            items.insert({"name": "x"})
        assert exc_info.value.errors[0].code == "missing"


class TestDispose:
    def test_mutations_rejected_after_dispose(self):
        users = _users()
        asyncio.run(users.dispose())
        with pytest.raises(CollectionError):
            users.insert({"id": 1, "name": "Ada", "age": 36})
