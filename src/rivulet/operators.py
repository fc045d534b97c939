"""Operators: functions from Reactive values to a new derived Reactive.

Every operator returns a cold ``Derived``: each subscriber runs its own
pipeline with its own state, and unsubscribing releases every upstream
subscription, inner subscription and timer that pipeline owns.

Value-shaped operators (map, filter, distinct, tap, take_while,
validate_map, retry, catch_error) pass the upstream's current value
through, so subscribers see a value immediately. Event-shaped operators
(scan, start_with, pairwise, delay, combine_latest, zip, with_latest_from,
switch_map, merge_map, concat_map) ignore that replay and only react to
emissions. The seed of scan and start_with counts as an emission, so
``pairwise(start_with(r, 0))`` pairs the seed with the first ``set()``.

An exception raised by a projection function becomes an ``OperatorError``
delivered through ``on_error``; the failing pipeline tears itself down.
Only retry and catch_error intercept errors.

Note: this module defines ``map``, ``filter`` and ``zip``; import it as a
module (``from rivulet import operators as op``).
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, TypeVar

from rivulet.derived import Derived
from rivulet.errors import OperatorError, ValidationError
from rivulet.reactive import EMPTY, Reactive, Unsubscribe, is_replaying, replay_scope
from rivulet.scheduler import Scheduler, get_scheduler
from rivulet.validation import as_validator

logger = logging.getLogger("rivulet.operators")

T = TypeVar("T")
U = TypeVar("U")
A = TypeVar("A")


class _Stage:
    """One subscriber's run through an operator.

    Owns the upstream links, forwards values into the subscriber's channel
    and tears everything down on close or failure.
    """

    __slots__ = ("channel", "name", "closed", "_links")

    def __init__(self, channel: Reactive[Any], name: str) -> None:
        self.channel = channel
        self.name = name
        self.closed = False
        self._links: list[Unsubscribe] = []

    def attach(
        self,
        source: Reactive[Any],
        on_emit: Callable[[Any], Any],
        on_replay: Callable[[Any], Any] | None = None,
    ) -> Unsubscribe:
        """Subscribe to ``source``.

        A replay of the source's current value arriving during subscription
        goes to ``on_replay`` (dropped when None). Everything else goes to
        ``on_emit``, including values an upstream operator emits while
        connecting, such as the seed of scan or start_with. Upstream errors
        and exceptions from either handler fail the stage.
        """
        subscribing = True

        def _on_value(value: Any) -> None:
            if self.closed:
                return
            replay = subscribing and is_replaying()
            handler = on_replay if replay else on_emit
            if handler is None:
                return
            try:
                with replay_scope(replay):
                    handler(value)
            except Exception as exc:
                self.fail(exc if isinstance(exc, OperatorError) else OperatorError(self.name, exc))

        unsubscribe = source.subscribe(_on_value, self.fail)
        subscribing = False
        if self.closed:
            unsubscribe()
        else:
            self._links.append(unsubscribe)
        return unsubscribe

    def add_teardown(self, fn: Unsubscribe) -> None:
        self._links.append(fn)

    def release(self, unsubscribe: Unsubscribe) -> None:
        if unsubscribe in self._links:
            self._links.remove(unsubscribe)
        unsubscribe()

    def emit(self, value: Any) -> None:
        # forwarded with the replay mark of the value that caused it
        if not self.closed:
            self.channel._publish(value)

    def seed(self, value: Any) -> None:
        """Emit a value of the operator's own, never counted as a replay."""
        with replay_scope(False):
            self.emit(value)

    def fail(self, exc: BaseException) -> None:
        if self.closed:
            return
        self.close()
        self.channel.error(exc)

    def close(self) -> None:
        self.closed = True
        links, self._links = self._links, []
        for unsubscribe in reversed(links):
            unsubscribe()


def _derive(name: str, start: Callable[[_Stage], None]) -> Derived[Any]:
    def connect(channel: Reactive[Any]) -> Unsubscribe:
        stage = _Stage(channel, name)
        try:
            start(stage)
        except Exception as exc:
            stage.fail(exc if isinstance(exc, OperatorError) else OperatorError(name, exc))
        return stage.close

    return Derived(connect, name)


# ─── Single-source transforms ────────────────────────────────────────────────


def map(source: Reactive[T], fn: Callable[[T], U]) -> Reactive[U]:
    """Transform every value through fn, including the current one."""

    def start(stage: _Stage) -> None:
        def forward(value: T) -> None:
            stage.emit(fn(value))

        stage.attach(source, forward, forward)

    return _derive("map", start)


def filter(source: Reactive[T], predicate: Callable[[T], bool]) -> Reactive[T]:
    """Only pass values where predicate holds.

    Rejected values produce no notification at all; ``get()`` keeps
    returning the last value that passed.
    """

    def start(stage: _Stage) -> None:
        def forward(value: T) -> None:
            if predicate(value):
                stage.emit(value)

        stage.attach(source, forward, forward)

    return _derive("filter", start)


def scan(source: Reactive[T], fn: Callable[[A, T], A], seed: A) -> Reactive[A]:
    """Running accumulation. Subscribers first see ``seed``."""

    def start(stage: _Stage) -> None:
        acc = seed

        def accumulate(value: T) -> None:
            nonlocal acc
            acc = fn(acc, value)
            stage.emit(acc)

        stage.seed(seed)
        stage.attach(source, accumulate)

    return _derive("scan", start)


def distinct(source: Reactive[T], key: Callable[[T], Any] | None = None) -> Reactive[T]:
    """Drop a value equal (``is`` or ``==``) to the one emitted just before it."""

    def start(stage: _Stage) -> None:
        last: Any = EMPTY

        def forward(value: T) -> None:
            nonlocal last
            marker = key(value) if key is not None else value
            if last is not EMPTY and (marker is last or marker == last):
                return
            last = marker
            stage.emit(value)

        stage.attach(source, forward, forward)

    return _derive("distinct", start)


def tap(source: Reactive[T], fn: Callable[[T], Any]) -> Reactive[T]:
    """Call fn for every value passing through, then forward it unchanged.

    fn also sees the current value replayed at subscription, so a tap
    observes exactly what its subscriber receives. If fn raises, the error
    travels downstream.
    """

    def start(stage: _Stage) -> None:
        def forward(value: T) -> None:
            fn(value)
            stage.emit(value)

        stage.attach(source, forward, forward)

    return _derive("tap", start)


def take_while(source: Reactive[T], predicate: Callable[[T], bool]) -> Reactive[T]:
    """Forward values until predicate first fails, then stop for good."""

    def start(stage: _Stage) -> None:
        def forward(value: T) -> None:
            if predicate(value):
                stage.emit(value)
            else:
                stage.close()

        stage.attach(source, forward, forward)

    return _derive("take_while", start)


def validate_map(source: Reactive[Any], schema: Any, *, filter_invalid: bool = False) -> Reactive[Any]:
    """Validate every value against ``schema`` and forward the accepted value.

    ``schema`` is anything ``as_validator()`` takes: a pydantic model, a
    ``TypeAdapter``, a dataclass or a ``Validator``. Coercions and
    validators declared on the model apply, so the forwarded value is the
    validated one. An invalid value fails the pipeline with the
    ``ValidationError`` itself; with ``filter_invalid`` it is dropped
    instead and the pipeline keeps running.
    """
    validator = as_validator(schema)

    def start(stage: _Stage) -> None:
        def forward(value: Any) -> None:
            try:
                accepted = validator.validate(value)
            except ValidationError as exc:
                if filter_invalid:
                    logger.debug("validate_map: dropped invalid value (%s)", exc)
                else:
                    stage.fail(exc)
                return
            stage.emit(accepted)

        stage.attach(source, forward, forward)

    return _derive("validate_map", start)


def start_with(source: Reactive[T], seed: T) -> Reactive[T]:
    """Subscribers see ``seed`` first, then the source's emissions."""

    def start(stage: _Stage) -> None:
        stage.seed(seed)
        stage.attach(source, stage.emit)

    return _derive("start_with", start)


def pairwise(source: Reactive[T]) -> Reactive[tuple[T, T]]:
    """Emit ``(previous, current)`` from the second emission on."""

    def start(stage: _Stage) -> None:
        previous: Any = EMPTY

        def forward(value: T) -> None:
            nonlocal previous
            if previous is not EMPTY:
                stage.emit((previous, value))
            previous = value

        stage.attach(source, forward)

    return _derive("pairwise", start)


def delay(source: Reactive[T], seconds: float, scheduler: Scheduler | None = None) -> Reactive[T]:
    """Forward each emission after ``seconds``, in arrival order.

    ``seconds <= 0`` forwards synchronously. The scheduler defaults to
    ``get_scheduler()`` at subscription time. Pending timers are cancelled
    on unsubscribe.
    """

    def start(stage: _Stage) -> None:
        if seconds <= 0:
            stage.attach(source, stage.emit)
            return

        clock = scheduler if scheduler is not None else get_scheduler()
        queue: deque[list] = deque()

        def fire() -> None:
            if not queue:
                return
            value, _ = queue.popleft()
            stage.emit(value)

        def schedule(value: T) -> None:
            entry = [value, None]
            queue.append(entry)
            entry[1] = clock.call_later(seconds, fire)

        def cancel_all() -> None:
            for _, cancel in queue:
                if cancel is not None:
                    cancel()
            queue.clear()

        stage.add_teardown(cancel_all)
        stage.attach(source, schedule)

    return _derive("delay", start)


# ─── Combination ─────────────────────────────────────────────────────────────


def combine_latest(*sources: Reactive[Any]) -> Reactive[tuple]:
    """Emit a tuple of the latest values whenever any source emits.

    Nothing is emitted until every source has emitted at least once.
    """
    if not sources:
        raise ValueError("combine_latest needs at least one source")

    def start(stage: _Stage) -> None:
        latest: list[Any] = [EMPTY] * len(sources)

        def updater(index: int) -> Callable[[Any], None]:
            def forward(value: Any) -> None:
                latest[index] = value
                if all(v is not EMPTY for v in latest):
                    stage.emit(tuple(latest))

            return forward

        for index, source in enumerate(sources):
            if stage.closed:
                break
            stage.attach(source, updater(index))

    return _derive("combine_latest", start)


def zip(*sources: Reactive[Any]) -> Reactive[tuple]:
    """Pair up emissions by position: one buffered value from every source
    per tuple, each buffer first-in first-out."""
    if not sources:
        raise ValueError("zip needs at least one source")

    def start(stage: _Stage) -> None:
        buffers: list[deque[Any]] = [deque() for _ in sources]

        def collector(index: int) -> Callable[[Any], None]:
            def forward(value: Any) -> None:
                buffers[index].append(value)
                if all(buffers):
                    stage.emit(tuple(buffer.popleft() for buffer in buffers))

            return forward

        for index, source in enumerate(sources):
            if stage.closed:
                break
            stage.attach(source, collector(index))

    return _derive("zip", start)


def with_latest_from(source: Reactive[T], other: Reactive[U]) -> Reactive[tuple[T, U]]:
    """On each source emission, emit ``(value, latest other value)``.

    Emissions of ``other`` alone emit nothing; nothing is emitted until
    ``other`` has emitted once.
    """

    def start(stage: _Stage) -> None:
        latest: Any = EMPTY

        def remember(value: U) -> None:
            nonlocal latest
            latest = value

        def forward(value: T) -> None:
            if latest is not EMPTY:
                stage.emit((value, latest))

        stage.attach(other, remember)
        stage.attach(source, forward)

    return _derive("with_latest_from", start)


def sample(source: Reactive[T], trigger: Reactive[Any]) -> Reactive[T]:
    """Emit the source's latest value each time ``trigger`` emits."""

    def start(stage: _Stage) -> None:
        latest: Any = EMPTY

        def remember(value: T) -> None:
            nonlocal latest
            latest = value

        def fire(_: Any) -> None:
            if latest is not EMPTY:
                stage.emit(latest)

        stage.attach(source, remember, remember)
        stage.attach(trigger, fire)

    return _derive("sample", start)


# ─── Flattening ──────────────────────────────────────────────────────────────


def switch_map(source: Reactive[T], project: Callable[[T], Reactive[U]]) -> Reactive[U]:
    """Follow only the inner Reactive projected from the latest emission.

    The previous inner subscription is released before the next one is
    opened, so a stale inner value can never reach the subscriber.
    """

    def start(stage: _Stage) -> None:
        current: Unsubscribe | None = None

        def switch(value: T) -> None:
            nonlocal current
            if current is not None:
                stage.release(current)
                current = None
            inner = project(value)
            current = stage.attach(inner, stage.emit)

        stage.attach(source, switch)

    return _derive("switch_map", start)


def merge_map(source: Reactive[T], project: Callable[[T], Reactive[U]]) -> Reactive[U]:
    """Subscribe to every projected inner Reactive and interleave their
    emissions in arrival order.

    Inners never complete, so every inner subscription stays open (and
    its link held by the pipeline) until the subscriber unsubscribes or
    the pipeline fails. Use switch_map when only the latest inner matters.
    """

    def start(stage: _Stage) -> None:
        def spawn(value: T) -> None:
            stage.attach(project(value), stage.emit)

        stage.attach(source, spawn)

    return _derive("merge_map", start)


def concat_map(source: Reactive[T], project: Callable[[T], Reactive[U]]) -> Reactive[U]:
    """Run projected inner Reactives one at a time, in source order.

    Source values arriving while an inner is active are queued. An inner's
    contribution is its first emission; it is then released and the next
    queued value is projected.
    """

    def start(stage: _Stage) -> None:
        queue: deque[T] = deque()
        active: Unsubscribe | None = None

        def run_next() -> None:
            nonlocal active
            if active is not None or not queue or stage.closed:
                return
            inner = project(queue.popleft())

            def finish(value: U) -> None:
                nonlocal active
                if active is not None:
                    stage.release(active)
                    active = None
                stage.emit(value)
                run_next()

            active = stage.attach(inner, finish)

        def enqueue(value: T) -> None:
            queue.append(value)
            run_next()

        stage.add_teardown(queue.clear)
        stage.attach(source, enqueue)

    return _derive("concat_map", start)


# ─── Error handling ──────────────────────────────────────────────────────────


def retry(source: Reactive[T], count: int) -> Reactive[T]:
    """Resubscribe to ``source`` when it fails, up to ``count`` times in a row.

    A delivered value resets the count. The failure after the last
    resubscription is passed on to the subscriber.
    """
    if count < 0:
        raise ValueError("retry count must be >= 0")

    def start(stage: _Stage) -> None:
        failures = 0
        link: Unsubscribe | None = None
        subscribing = False
        deferred: BaseException | None = None

        def forward(value: T) -> None:
            nonlocal failures
            failures = 0
            stage.emit(value)

        def drop() -> None:
            nonlocal link
            if link is not None:
                link()
                link = None

        def should_retry(exc: BaseException) -> bool:
            nonlocal failures
            if failures >= count:
                stage.fail(exc)
                return False
            failures += 1
            logger.debug("retry: resubscribing after %r (%d/%d)", exc, failures, count)
            return True

        def on_error(exc: BaseException) -> None:
            nonlocal deferred
            if stage.closed:
                return
            if subscribing:
                deferred = exc
                return
            drop()
            if should_retry(exc):
                connect()

        def connect() -> None:
            nonlocal link, subscribing, deferred
            while not stage.closed:
                subscribing, deferred = True, None
                unsubscribe = source.subscribe(forward, on_error)
                subscribing = False
                if deferred is None:
                    link = unsubscribe
                    return
                unsubscribe()
                if not should_retry(deferred):
                    return

        stage.add_teardown(drop)
        connect()

    return _derive("retry", start)


def catch_error(
    source: Reactive[T], handler: Callable[[BaseException], Reactive[U]]
) -> Reactive[T | U]:
    """On failure, drop ``source`` and continue with ``handler(error)``.

    The fallback's current value is forwarded right away; its own errors
    go to the subscriber.
    """

    def start(stage: _Stage) -> None:
        link: Unsubscribe | None = None
        subscribing = False
        deferred: BaseException | None = None

        def drop() -> None:
            nonlocal link
            if link is not None:
                link()
                link = None

        def recover(exc: BaseException) -> None:
            logger.debug("catch_error: switching to fallback after %r", exc)
            try:
                fallback = handler(exc)
            except Exception as e:
                stage.fail(OperatorError("catch_error", e))
                return
            stage.attach(fallback, stage.emit, stage.emit)

        def on_error(exc: BaseException) -> None:
            nonlocal deferred
            if stage.closed:
                return
            if subscribing:
                deferred = exc
                return
            drop()
            recover(exc)

        stage.add_teardown(drop)
        subscribing = True
        link = source.subscribe(stage.emit, on_error)
        subscribing = False
        if deferred is not None:
            drop()
            recover(deferred)

    return _derive("catch_error", start)
