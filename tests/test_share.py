"""Tests for share() and multicast(): one upstream subscription, many subscribers."""

import pytest

from rivulet import ShareState, multicast, reactive, share
from rivulet import operators as op


class TestShare:
    def test_pipeline_runs_once_for_all_subscribers(self):
        r = reactive(1)
        hits = []
        shared = share(op.tap(r, hits.append))
        a, b = [], []
        shared.subscribe(a.append)
        shared.subscribe(b.append)
        r.set(2)
        assert hits == [1, 2]
        assert a == [1, 2]
        assert b == [1, 2]
        assert r.subscriber_count == 1

    def test_first_subscriber_connects_last_disconnects(self):
        r = reactive(1)
        shared = r.map(lambda v: v * 2).share()
        assert shared.state is ShareState.IDLE
        unsub_a = shared.subscribe(lambda v: None)
        unsub_b = shared.subscribe(lambda v: None)
        assert shared.state is ShareState.ACTIVE
        unsub_a()
        assert r.subscriber_count == 1
        unsub_b()
        assert shared.state is ShareState.IDLE
        assert r.subscriber_count == 0

    def test_reconnects_after_idle(self):
        r = reactive(1)
        shared = share(op.map(r, lambda v: v + 1))
        shared.subscribe(lambda v: None)()
        r.set(5)
        seen = []
        shared.subscribe(seen.append)
        assert seen == [6]
        assert shared.state is ShareState.ACTIVE

    def test_get_reads_through_when_idle(self):
        r = reactive(3)
        shared = share(op.map(r, lambda v: v * 3))
        assert shared.get() == 9

    def test_cannot_be_set(self):
        with pytest.raises(TypeError):
            share(reactive(1)).set(2)

    def test_upstream_error_reaches_every_subscriber(self):
        r = reactive(1)
        shared = share(op.map(r, lambda v: 1 // v))
        errors_a, errors_b = [], []
        shared.subscribe(lambda v: None, errors_a.append)
        shared.subscribe(lambda v: None, errors_b.append)
        r.set(0)
        assert len(errors_a) == 1
        assert errors_a == errors_b
        assert shared.state is ShareState.IDLE
        assert r.subscriber_count == 0

    def test_next_subscriber_reconnects_after_error(self):
        r = reactive(1)
        shared = share(op.map(r, lambda v: 10 // v))
        old = []
        shared.subscribe(old.append, lambda e: None)
        r.set(0)
        r.set(2)
        new = []
        shared.subscribe(new.append)
        assert new == [5]
        assert old == [10, 5]
        assert shared.state is ShareState.ACTIVE


class TestMulticast:
    def test_nothing_flows_before_connect(self):
        r = reactive(1)
        hot = multicast(r)
        seen = []
        hot.subscribe(seen.append)
        r.set(2)
        assert seen == []
        assert hot.state is ShareState.IDLE

    def test_connect_opens_the_pipe(self):
        r = reactive(1)
        hot = multicast(r)
        seen = []
        hot.subscribe(seen.append)
        hot.connect()
        r.set(2)
        assert seen == [1, 2]

    def test_pipe_stays_open_without_subscribers(self):
        r = reactive(1)
        hot = multicast(r)
        disconnect = hot.connect()
        hot.subscribe(lambda v: None)()
        assert r.subscriber_count == 1
        disconnect()
        assert r.subscriber_count == 0
        assert hot.state is ShareState.IDLE

    def test_disconnect_idempotent(self):
        r = reactive(1)
        hot = multicast(r)
        disconnect = hot.connect()
        disconnect()
        again = hot.connect()
        disconnect()  # stale handle leaves the new connection alone
        assert hot.state is ShareState.ACTIVE
        again()
        again()
        assert r.subscriber_count == 0

    def test_connect_twice_shares_connection(self):
        r = reactive(1)
        hot = multicast(r)
        hot.connect()
        hot.connect()
        assert r.subscriber_count == 1
