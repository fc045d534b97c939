"""Error taxonomy.

Validation failures are raised by the plain collection methods and returned
as tagged results by the ``try_*`` family. Operator failures travel down an
operator chain as error notifications. Subscriber failures are isolated and
logged by the Reactive that delivered the value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


class RivuletError(Exception):
    """Base class for every error raised by rivulet."""


@dataclass(frozen=True, slots=True)
class FieldError:
    """One failed check on a document, addressed by its field path."""

    path: tuple[str | int, ...]
    message: str
    code: str = "invalid"

    @property
    def location(self) -> str:
        return ".".join(str(part) for part in self.path) or "<document>"

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"


class ValidationError(RivuletError, ValueError):
    """A candidate document was rejected by the collection's Validator."""

    def __init__(self, errors: Iterable[FieldError], title: str = "document") -> None:
        self.errors: tuple[FieldError, ...] = tuple(errors)
        self.title = title
        count = len(self.errors)
        details = "; ".join(str(e) for e in self.errors)
        super().__init__(
            f"{count} validation error{'s' if count != 1 else ''} for {title}: {details}"
        )


class QueryError(RivuletError, ValueError):
    """A structured filter could not be compiled."""


class OperatorError(RivuletError):
    """A projection function raised inside an operator.

    The original exception is available as ``__cause__``.
    """

    def __init__(self, operator: str, cause: BaseException) -> None:
        self.operator = operator
        super().__init__(f"{operator} failed: {cause!r}")
        self.__cause__ = cause


class SubscriptionError(RivuletError):
    """A subscriber callback raised while being notified."""

    def __init__(self, callback: object, cause: BaseException) -> None:
        self.callback = callback
        super().__init__(f"subscriber {callback!r} raised {cause!r}")
        self.__cause__ = cause


class CollectionError(RivuletError):
    """Base class for collection mutation failures."""


class DuplicateKeyError(CollectionError):
    """A document with the same identity is already stored."""


class DocumentNotFoundError(CollectionError, LookupError):
    """No document is stored under the requested identity."""
