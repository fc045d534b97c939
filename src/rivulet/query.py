"""Structured filters for collection queries.

A filter is a mapping of field path to condition, all conditions combined
with AND:

    {"active": True}                       exact match
    {"age": {"$gte": 18, "$lt": 65}}       comparison operators
    {"role": {"$in": ["admin", "owner"]}}  set membership
    {"name": {"$regex": "^a", "$options": "i"}}
    {"address.city": "Oslo"}               dotted paths
    {"$or": [{"a": 1}, {"b": 2}]}          logical operators

A plain callable ``doc -> bool`` is accepted as well. Filters are compiled
once, when the query is built, so a malformed filter fails early.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any, Callable

from rivulet.errors import QueryError

Predicate = Callable[[Any], bool]

_MISSING = object()

COMPARATORS = {
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte",
    "$in", "$nin", "$exists", "$regex", "$options", "$all", "$size",
}
LOGICAL = {"$and", "$or", "$not"}

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


def get_field(doc: Any, path: str, default: Any = None) -> Any:
    """Read a dotted path from mappings, sequences or attributes."""
    current = doc
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, Sequence) and not isinstance(current, str) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return default
    return current


def compile_filter(criteria: Mapping[str, Any] | Predicate | None) -> Predicate:
    """Build a predicate from a filter mapping (or pass a callable through)."""
    if criteria is None:
        return _match_all
    if callable(criteria) and not isinstance(criteria, Mapping):
        return criteria
    if not isinstance(criteria, Mapping):
        raise QueryError(f"Filter must be a mapping or a callable, got {type(criteria).__name__}")

    clauses: list[Predicate] = []
    for key, cond in criteria.items():
        if key in LOGICAL:
            clauses.append(_compile_logical(key, cond))
        elif key.startswith("$"):
            raise QueryError(f"Unsupported logical operator: {key}")
        else:
            clauses.append(_compile_field(key, cond))

    if len(clauses) == 1:
        return clauses[0]
    return lambda doc: all(clause(doc) for clause in clauses)


def matches(doc: Any, criteria: Mapping[str, Any] | Predicate | None) -> bool:
    return compile_filter(criteria)(doc)


def _match_all(doc: Any) -> bool:
    return True


def _compile_logical(op: str, clauses: Any) -> Predicate:
    if op == "$not":
        if not isinstance(clauses, Mapping):
            raise QueryError("$not requires a single filter mapping")
        inner = compile_filter(clauses)
        return lambda doc: not inner(doc)
    if not isinstance(clauses, list):
        raise QueryError(f"{op} requires a list of filters")
    compiled = [compile_filter(clause) for clause in clauses]
    if op == "$and":
        return lambda doc: all(p(doc) for p in compiled)
    return lambda doc: any(p(doc) for p in compiled)


def _compile_field(path: str, cond: Any) -> Predicate:
    if isinstance(cond, Mapping) and cond and all(k.startswith("$") for k in cond):
        tests = _compile_operators(cond)

        def check(doc: Any) -> bool:
            value = get_field(doc, path, _MISSING)
            return all(test(value) for test in tests)

        return check

    return lambda doc: _equals(get_field(doc, path, _MISSING), cond)


def _compile_operators(cond: Mapping[str, Any]) -> list[Callable[[Any], bool]]:
    tests: list[Callable[[Any], bool]] = []
    for op, arg in cond.items():
        if op not in COMPARATORS:
            raise QueryError(f"Unsupported operator: {op}")
        if op == "$options":
            if "$regex" not in cond:
                raise QueryError("$options is only valid next to $regex")
            continue
        if op == "$regex":
            tests.append(_compile_regex(arg, cond.get("$options", "")))
        else:
            tests.append(_compile_comparison(op, arg))
    return tests


def _compile_regex(pattern: Any, options: str) -> Callable[[Any], bool]:
    if isinstance(pattern, re.Pattern):
        compiled = pattern
    elif isinstance(pattern, str):
        flags = 0
        for letter in options:
            if letter not in _REGEX_FLAGS:
                raise QueryError(f"Unsupported regex option: {letter!r}")
            flags |= _REGEX_FLAGS[letter]
        try:
            compiled = re.compile(pattern, flags)
        except re.error as e:
            raise QueryError(f"Invalid $regex {pattern!r}: {e}") from e
    else:
        raise QueryError("$regex must be a string or a compiled pattern")
    return lambda value: isinstance(value, str) and compiled.search(value) is not None


def _compile_comparison(op: str, arg: Any) -> Callable[[Any], bool]:
    if op == "$eq":
        return lambda value: _equals(value, arg)
    if op == "$ne":
        return lambda value: not _equals(value, arg)
    if op in ("$gt", "$gte", "$lt", "$lte"):
        compare = {
            "$gt": lambda a, b: a > b,
            "$gte": lambda a, b: a >= b,
            "$lt": lambda a, b: a < b,
            "$lte": lambda a, b: a <= b,
        }[op]

        def ordered(value: Any) -> bool:
            if value is _MISSING or value is None:
                return False
            try:
                return bool(compare(value, arg))
            except TypeError:
                return False

        return ordered
    if op in ("$in", "$nin", "$all"):
        if isinstance(arg, (str, bytes)) or not isinstance(arg, (Sequence, set, frozenset)):
            raise QueryError(f"{op} requires a list of values")
        options = list(arg)
        if op == "$in":
            return lambda value: value is not _MISSING and any(_equals(value, o) for o in options)
        if op == "$nin":
            return lambda value: not any(_equals(value, o) for o in options)
        return lambda value: _is_array(value) and all(o in value for o in options)
    if op == "$exists":
        wanted = bool(arg)
        return lambda value: (value is not _MISSING and value is not None) == wanted
    if op == "$size":
        if not isinstance(arg, int):
            raise QueryError("$size requires an integer")
        return lambda value: _is_array(value) and len(value) == arg
    raise QueryError(f"Unsupported operator: {op}")


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    return value == expected


def _is_array(value: Any) -> bool:
    return isinstance(value, (list, tuple))
