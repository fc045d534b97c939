"""Validators: turn a candidate document into an accepted, typed document.

A Validator's ``validate()`` either returns the accepted value or raises
``ValidationError`` carrying one ``FieldError`` per failed check. Pydantic
models, dataclasses, TypedDicts and ``TypeAdapter`` instances are adapted
automatically by ``as_validator()``.
"""

from __future__ import annotations

from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

import pydantic
from pydantic import TypeAdapter

from rivulet.errors import FieldError, ValidationError

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)


@runtime_checkable
class Validator(Protocol[T_co]):
    def validate(self, candidate: Any) -> T_co: ...


class PydanticValidator(Generic[T]):
    """Validator backed by a pydantic ``TypeAdapter``."""

    def __init__(self, model: type[T] | TypeAdapter[T], title: str | None = None) -> None:
        self._adapter: TypeAdapter[T] = model if isinstance(model, TypeAdapter) else TypeAdapter(model)
        self.title = title or getattr(model, "__name__", "document")

    def validate(self, candidate: Any) -> T:
        try:
            return self._adapter.validate_python(candidate)
        except pydantic.ValidationError as e:
            raise ValidationError(field_errors(e), title=self.title) from e

    def dump(self, value: T) -> Any:
        """JSON-compatible form of an accepted value, for storage."""
        return self._adapter.dump_python(value, mode="json")


def field_errors(error: pydantic.ValidationError) -> list[FieldError]:
    return [
        FieldError(path=tuple(item["loc"]), message=item["msg"], code=item["type"])
        for item in error.errors()
    ]


def as_validator(schema: Any) -> Validator[Any]:
    """Accept a Validator as is; wrap anything pydantic understands."""
    if isinstance(schema, TypeAdapter) or isinstance(schema, type):
        return PydanticValidator(schema)
    if isinstance(schema, Validator):
        return schema
    return PydanticValidator(schema)
