"""Reactive values: a current value plus push notification to subscribers.

A Reactive holds its latest value and an insertion-ordered list of
subscribers. ``set()`` stores the value and notifies every subscriber in
attachment order before returning. ``subscribe()`` hands the current value
to the new subscriber immediately (the *replay*); every later ``set()`` is
an *emission*.

Whether a delivery is a replay or an emission travels with it, so operators
downstream can tell a replayed current value from a value emitted while
they were subscribing (see ``replay_scope``).

Re-entrant ``set()`` calls made from inside a subscriber are queued and
delivered once the running notification round has finished, so no
subscriber sees two versions of a change interleaved. A subscriber that
raises is logged and skipped; the rest of the round still runs.
"""

from __future__ import annotations

import contextvars
import logging
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Callable, Generic, TypeVar

from rivulet.errors import SubscriptionError

logger = logging.getLogger("rivulet.reactive")

T = TypeVar("T")
U = TypeVar("U")

Unsubscribe = Callable[[], None]
OnValue = Callable[[Any], Any]
OnError = Callable[[BaseException], Any]

# Marker for "no current value".
EMPTY: Any = object()

# Set while a delivery is the replay of a current value.
_replaying: contextvars.ContextVar[bool] = contextvars.ContextVar("rivulet_replaying", default=False)


def is_replaying() -> bool:
    """True while the value being delivered is a replay, not an emission."""
    return _replaying.get()


@contextmanager
def replay_scope(replay: bool) -> Iterator[None]:
    """Mark deliveries made inside the block as replays (or as emissions)."""
    token = _replaying.set(replay)
    try:
        yield
    finally:
        _replaying.reset(token)


class _Subscriber:
    __slots__ = ("on_value", "on_error", "since", "active")

    def __init__(self, on_value: OnValue, on_error: OnError | None, since: int) -> None:
        self.on_value = on_value
        self.on_error = on_error
        self.since = since
        self.active = True


class Reactive(Generic[T]):
    """A value that pushes every change to its subscribers."""

    __slots__ = ("_value", "_subscribers", "_notifying", "_pending", "_seq", "__weakref__")

    def __init__(self, value: T = EMPTY) -> None:
        self._value = value
        self._subscribers: list[_Subscriber] = []
        self._notifying = False
        self._pending: deque[tuple[int, Any, BaseException | None, bool]] = deque()
        self._seq = 0

    # --- Reading ---

    def get(self) -> T | None:
        """Current value, or None while nothing has been set."""
        return None if self._value is EMPTY else self._value

    @property
    def has_value(self) -> bool:
        return self._value is not EMPTY

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # --- Writing ---

    def set(self, value: T) -> None:
        """Replace the value and notify every subscriber."""
        self._emit(value)

    def error(self, exc: BaseException) -> None:
        """Send an error notification to every subscriber.

        The current value is left untouched.
        """
        self._dispatch(EMPTY, exc)

    def _emit(self, value: T) -> None:
        with replay_scope(False):
            self._publish(value)

    def _publish(self, value: T) -> None:
        # keeps the replay mark of the delivery in progress
        self._value = value
        self._dispatch(value, None)

    def _dispatch(self, value: Any, exc: BaseException | None) -> None:
        self._seq += 1
        self._pending.append((self._seq, value, exc, _replaying.get()))
        if self._notifying:
            return  # drained by the round already running
        self._notifying = True
        try:
            while self._pending:
                seq, value, exc, replay = self._pending.popleft()
                with replay_scope(replay):
                    for sub in list(self._subscribers):
                        if sub.active and seq > sub.since:
                            self._deliver(sub, value, exc)
        finally:
            self._notifying = False
            self._pending.clear()

    def _deliver(self, sub: _Subscriber, value: Any, exc: BaseException | None) -> None:
        callback = sub.on_value if exc is None else sub.on_error
        try:
            if exc is None:
                sub.on_value(value)
            elif sub.on_error is not None:
                sub.on_error(exc)
            else:
                logger.error("Unhandled error notification for %r", sub.on_value, exc_info=exc)
        except Exception as e:
            failure = SubscriptionError(callback, e)
            logger.error("%s", failure, exc_info=failure)

    # --- Subscribing ---

    def subscribe(self, on_value: Callable[[T], Any], on_error: OnError | None = None) -> Unsubscribe:
        """Attach a callback. It is called right away with the current value.

        Returns an idempotent function that detaches it again.
        """
        sub = _Subscriber(on_value, on_error, self._seq)
        self._subscribers.append(sub)
        if len(self._subscribers) == 1:
            seq = self._seq
            self._activate()
            if self._seq != seq:
                # activation already pushed the current value through the queue
                return self._unsubscriber(sub)
        if self._value is not EMPTY:
            with replay_scope(True):
                self._deliver(sub, self._value, None)
        return self._unsubscriber(sub)

    def _unsubscriber(self, sub: _Subscriber) -> Unsubscribe:
        def _unsubscribe() -> None:
            if not sub.active:
                return
            sub.active = False
            self._subscribers.remove(sub)
            if not self._subscribers:
                self._deactivate()

        return _unsubscribe

    def _activate(self) -> None:
        """Hook: the first subscriber is being attached."""

    def _deactivate(self) -> None:
        """Hook: the last subscriber has left."""

    # --- Chaining ---

    def map(self, fn: Callable[[T], U]) -> Reactive[U]:
        from rivulet import operators

        return operators.map(self, fn)

    def filter(self, predicate: Callable[[T], bool]) -> Reactive[T]:
        from rivulet import operators

        return operators.filter(self, predicate)

    def scan(self, fn: Callable[[U, T], U], seed: U) -> Reactive[U]:
        from rivulet import operators

        return operators.scan(self, fn, seed)

    def distinct(self, key: Callable[[T], Any] | None = None) -> Reactive[T]:
        from rivulet import operators

        return operators.distinct(self, key)

    def tap(self, fn: Callable[[T], Any]) -> Reactive[T]:
        from rivulet import operators

        return operators.tap(self, fn)

    def delay(self, seconds: float, scheduler=None) -> Reactive[T]:
        from rivulet import operators

        return operators.delay(self, seconds, scheduler)

    def pairwise(self) -> Reactive[tuple[T, T]]:
        from rivulet import operators

        return operators.pairwise(self)

    def take_while(self, predicate: Callable[[T], bool]) -> Reactive[T]:
        from rivulet import operators

        return operators.take_while(self, predicate)

    def validate_map(self, schema: Any, *, filter_invalid: bool = False) -> Reactive[Any]:
        from rivulet import operators

        return operators.validate_map(self, schema, filter_invalid=filter_invalid)

    def start_with(self, seed: T) -> Reactive[T]:
        from rivulet import operators

        return operators.start_with(self, seed)

    def with_latest_from(self, other: Reactive[U]) -> Reactive[tuple[T, U]]:
        from rivulet import operators

        return operators.with_latest_from(self, other)

    def sample(self, trigger: Reactive[Any]) -> Reactive[T]:
        from rivulet import operators

        return operators.sample(self, trigger)

    def switch_map(self, project: Callable[[T], Reactive[U]]) -> Reactive[U]:
        from rivulet import operators

        return operators.switch_map(self, project)

    def merge_map(self, project: Callable[[T], Reactive[U]]) -> Reactive[U]:
        from rivulet import operators

        return operators.merge_map(self, project)

    def concat_map(self, project: Callable[[T], Reactive[U]]) -> Reactive[U]:
        from rivulet import operators

        return operators.concat_map(self, project)

    def retry(self, count: int) -> Reactive[T]:
        from rivulet import operators

        return operators.retry(self, count)

    def catch_error(self, handler: Callable[[BaseException], Reactive[U]]) -> Reactive[T | U]:
        from rivulet import operators

        return operators.catch_error(self, handler)

    def share(self) -> Reactive[T]:
        from rivulet.share import share

        return share(self)

    def __repr__(self) -> str:
        value = "<empty>" if self._value is EMPTY else repr(self._value)
        return f"{type(self).__name__}({value}, subscribers={len(self._subscribers)})"


def reactive(initial: T) -> Reactive[T]:
    """Create a root Reactive holding ``initial``.

    Usage:
        count = reactive(0)
        seen = []
        unsubscribe = count.subscribe(seen.append)
        # seen == [0]
        count.set(1)
        # seen == [0, 1]
        unsubscribe()
    """
    return Reactive(initial)
