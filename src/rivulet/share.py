"""Sharing: one upstream subscription for many subscribers.

Operator nodes are cold: every subscriber runs its own pipeline. A Shared
node turns that into a single upstream subscription whose values are
broadcast to every subscriber.

States:
    IDLE   - no upstream subscription
    ACTIVE - upstream subscribed, values flow

share():     IDLE -> ACTIVE on the first subscriber, back to IDLE when the
             last one leaves. Subscribing again reconnects.
multicast(): IDLE -> ACTIVE only through connect(); the handle it returns
             disconnects, whoever is still listening.

An upstream error is broadcast and leaves the node IDLE.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable, TypeVar

from rivulet.reactive import EMPTY, OnError, Reactive, Unsubscribe

logger = logging.getLogger("rivulet.share")

T = TypeVar("T")


class ShareState(enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"


class _Link:
    __slots__ = ("unsubscribe", "closed")

    def __init__(self) -> None:
        self.unsubscribe: Unsubscribe | None = None
        self.closed = False

    def bind(self, unsubscribe: Unsubscribe) -> None:
        self.unsubscribe = unsubscribe
        if self.closed:
            unsubscribe()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.unsubscribe is not None:
            self.unsubscribe()


class Shared(Reactive[T]):
    """A hot node broadcasting a single upstream subscription."""

    __slots__ = ("_source", "_link", "_auto")

    def __init__(self, source: Reactive[T], *, auto_connect: bool = True) -> None:
        super().__init__()
        self._source = source
        self._link: _Link | None = None
        self._auto = auto_connect

    @property
    def state(self) -> ShareState:
        return ShareState.IDLE if self._link is None else ShareState.ACTIVE

    def get(self) -> T | None:
        if self._link is None:
            return self._source.get()
        return super().get()

    def set(self, value: T) -> None:
        raise TypeError("shared values follow their source and cannot be set directly")

    def error(self, exc: BaseException) -> None:
        raise TypeError("shared values follow their source and cannot be failed directly")

    def subscribe(self, on_value: Callable[[T], Any], on_error: OnError | None = None) -> Unsubscribe:
        if self._auto and self._link is None and self._subscribers:
            # reconnect after an upstream error
            self._open()
        return super().subscribe(on_value, on_error)

    def connect(self) -> Unsubscribe:
        """Open the upstream subscription if needed.

        Returns an idempotent handle that closes this connection.
        """
        if self._link is None:
            self._open()
        link = self._link

        def _disconnect() -> None:
            if link is not None and link is self._link:
                self._close()

        return _disconnect

    def _activate(self) -> None:
        if self._auto and self._link is None:
            self._open()

    def _deactivate(self) -> None:
        if self._auto:
            self._close()

    def _open(self) -> None:
        link = _Link()
        self._link = link
        self._value = EMPTY
        logger.debug("Connecting %r to %r", self, self._source)

        def on_value(value: T) -> None:
            if not link.closed:
                self._publish(value)

        def on_error(exc: BaseException) -> None:
            if link.closed:
                return
            if link is self._link:
                self._close()
            self._dispatch(EMPTY, exc)

        link.bind(self._source.subscribe(on_value, on_error))

    def _close(self) -> None:
        link, self._link = self._link, None
        if link is not None:
            logger.debug("Disconnecting %r", self)
            link.close()
        self._value = EMPTY

    def __repr__(self) -> str:
        return f"Shared({self.state.value}, subscribers={len(self._subscribers)})"


def share(source: Reactive[T]) -> Shared[T]:
    """Share one upstream subscription, reference-counted by subscribers.

    Usage:
        source = reactive(0)
        hits = []
        expensive = operators.tap(source, hits.append)
        shared = share(expensive)
        shared.subscribe(print)
        shared.subscribe(print)
        source.set(1)
        # hits == [0, 1] - the tap ran once per value for both subscribers
    """
    return Shared(source)


def multicast(source: Reactive[T]) -> Shared[T]:
    """Like share(), but the upstream is opened only by ``connect()``.

    Usage:
        hot = multicast(source)
        hot.subscribe(print)      # nothing flows yet
        disconnect = hot.connect()
        ...
        disconnect()
    """
    return Shared(source, auto_connect=False)
