"""Derived values: cold operator nodes.

A Derived wraps a ``connect`` function. Each subscriber gets a private
channel (a plain Reactive) and its own call to ``connect``, which wires the
upstream subscriptions into that channel and returns a teardown. Operator
state therefore lives per subscriber; use ``share()`` to run one pipeline
for everybody.

Reading a Derived with no subscribers opens a transient pipeline, takes
whatever it produces synchronously and tears it down again, so that
``map(source, f).get() == f(source.get())`` holds at any depth.
"""

from __future__ import annotations

from typing import Any, Callable, TypeVar

from rivulet.errors import OperatorError
from rivulet.reactive import EMPTY, OnError, Reactive, Unsubscribe

T = TypeVar("T")

Connect = Callable[[Reactive[Any]], Unsubscribe]


class Derived(Reactive[T]):
    """A read-only Reactive whose values come from an operator pipeline."""

    __slots__ = ("_connect", "_name", "_channels")

    def __init__(self, connect: Connect, name: str = "derived") -> None:
        super().__init__()
        self._connect = connect
        self._name = name
        self._channels: list[Reactive[T]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def subscriber_count(self) -> int:
        return len(self._channels)

    def get(self) -> T | None:
        """Latest value delivered, evaluating the pipeline if nobody listens."""
        if not self._channels:
            self._evaluate()
        return super().get()

    def set(self, value: T) -> None:
        raise TypeError(f"{self._name} is derived and cannot be set directly")

    def error(self, exc: BaseException) -> None:
        raise TypeError(f"{self._name} is derived and cannot be failed directly")

    def subscribe(self, on_value: Callable[[T], Any], on_error: OnError | None = None) -> Unsubscribe:
        channel: Reactive[T] = Reactive()
        channel.subscribe(self._record, _ignore)
        release = channel.subscribe(on_value, on_error)
        self._channels.append(channel)
        teardown = self._open(channel)

        def _unsubscribe() -> None:
            if channel not in self._channels:
                return
            self._channels.remove(channel)
            release()
            teardown()

        return _unsubscribe

    def _record(self, value: T) -> None:
        self._value = value

    def _open(self, channel: Reactive[T]) -> Unsubscribe:
        try:
            return self._connect(channel)
        except Exception as exc:
            channel.error(exc if isinstance(exc, OperatorError) else OperatorError(self._name, exc))
            return _noop

    def _evaluate(self) -> None:
        channel: Reactive[T] = Reactive()
        teardown = self._open(channel)
        teardown()
        if channel._value is not EMPTY:
            self._value = channel._value

    def __repr__(self) -> str:
        value = "<empty>" if self._value is EMPTY else repr(self._value)
        return f"Derived({self._name}, {value}, subscribers={len(self._channels)})"


def _noop() -> None:
    pass


def _ignore(exc: BaseException) -> None:
    # errors are delivered to the subscriber registered next to the recorder
    pass
