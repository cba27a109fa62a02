"""
tests/test_hub.py — Live Metrics Fan-out
=========================================
One sample per tick shared by every subscriber; stalled or failing
subscribers are dropped without holding up the rest; shutdown drains.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import FakeMetricsSource, run_async
from opsdash.clock import utcnow
from opsdash.database.models import Role
from opsdash.services.hub import GOING_AWAY, METRICS_EVENT, SubscriptionHub
from opsdash.services.metrics_source import MetricSnapshot
from opsdash.services.session import Claims


def _claims(email="bob@x.com") -> Claims:
    now = utcnow()
    return Claims(subject_id=1, email=email, name="Bob", picture=None, role=Role.USER,
                  issued_at=now, expires_at=now + timedelta(hours=24))


class FakeConnection:
    """Records what the hub sends; can be told to stall or fail."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed_with: int | None = None
        self.stall = False
        self.fail = False

    async def send_json(self, data) -> None:
        if self.fail:
            raise ConnectionResetError("peer gone")
        if self.stall:
            await asyncio.sleep(30)
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def events(self, name=METRICS_EVENT) -> list[dict]:
        return [m for m in self.sent if m.get("event") == name]


@pytest.fixture
def source():
    return FakeMetricsSource()


class TestAccept:
    def test_initial_snapshot_delivered_immediately(self, source):
        async def _inner():
            hub = SubscriptionHub(source.sample, tick_seconds=60)
            conn = FakeConnection()
            sub = await hub.accept(conn, _claims())
            return hub, conn, sub

        hub, conn, sub = run_async(_inner())
        assert hub.size == 1
        assert len(conn.events()) == 1
        assert conn.events()[0]["data"]["sequence"] == 1
        assert sub.last_sequence == 1
        assert sub.last_delivery is not None

    def test_late_joiner_reuses_last_sample(self, source):
        async def _inner():
            hub = SubscriptionHub(source.sample, tick_seconds=60)
            await hub.accept(FakeConnection(), _claims())
            await hub.accept(FakeConnection(), _claims("ann@x.com"))

        run_async(_inner())
        assert source.reads == 1


class TestBroadcast:
    def test_one_sample_per_tick_shared_by_all(self, source):
        a, b = FakeConnection(), FakeConnection()

        async def _inner():
            hub = SubscriptionHub(source.sample, tick_seconds=60)
            await hub.accept(a, _claims())
            await hub.accept(b, _claims("ann@x.com"))
            reads_before = source.reads
            snapshot = await hub.broadcast_tick()
            return snapshot, source.reads - reads_before

        snapshot, reads = run_async(_inner())
        assert reads == 1
        tick_a = [m for m in a.events() if m["data"]["sequence"] == snapshot.sequence]
        tick_b = [m for m in b.events() if m["data"]["sequence"] == snapshot.sequence]
        assert len(tick_a) == len(tick_b) == 1
        assert tick_a[0] == tick_b[0]

    def test_stalled_subscriber_dropped_others_continue(self, source):
        good, slow = FakeConnection(), FakeConnection()

        async def _inner():
            hub = SubscriptionHub(source.sample, tick_seconds=60, send_timeout=0.05)
            await hub.accept(good, _claims())
            await hub.accept(slow, _claims("slow@x.com"))
            slow.stall = True
            loop = asyncio.get_running_loop()
            started = loop.time()
            await hub.broadcast_tick()
            elapsed = loop.time() - started
            await hub.broadcast_tick()
            return hub, elapsed

        hub, elapsed = run_async(_inner())
        assert elapsed < 5
        assert hub.size == 1
        assert slow.closed_with == GOING_AWAY
        assert [m["data"]["sequence"] for m in good.events()] == [1, 2, 3]

    def test_failing_subscriber_dropped(self, source):
        ok, broken = FakeConnection(), FakeConnection()

        async def _inner():
            hub = SubscriptionHub(source.sample, tick_seconds=60)
            await hub.accept(ok, _claims())
            await hub.accept(broken, _claims("x@x.com"))
            broken.fail = True
            await hub.broadcast_tick()
            return hub

        hub = run_async(_inner())
        assert hub.size == 1
        assert len(ok.events()) == 2

    def test_stale_snapshot_never_sent(self, source):
        conn = FakeConnection()

        async def _inner():
            hub = SubscriptionHub(source.sample, tick_seconds=60)
            sub = await hub.accept(conn, _claims())
            newer = MetricSnapshot(sequence=10, sampled_at=utcnow(), host={})
            older = MetricSnapshot(sequence=9, sampled_at=utcnow(), host={})
            await hub._deliver(sub, newer)
            await hub._deliver(sub, older)

        run_async(_inner())
        assert [m["data"]["sequence"] for m in conn.events()] == [1, 10]


class TestDropAndShutdown:
    def test_drop_is_idempotent(self, source):
        conn = FakeConnection()

        async def _inner():
            hub = SubscriptionHub(source.sample, tick_seconds=60)
            sub = await hub.accept(conn, _claims())
            return hub, await hub.drop(sub, "test"), await hub.drop(sub, "test")

        hub, first, second = run_async(_inner())
        assert (first, second) == (True, False)
        assert hub.size == 0
        assert conn.closed_with == GOING_AWAY

    def test_pong_goes_through_send(self, source):
        conn = FakeConnection()

        async def _inner():
            hub = SubscriptionHub(source.sample, tick_seconds=60)
            sub = await hub.accept(conn, _claims())
            return await hub.send(sub, {"event": "pong", "data": {}})

        assert run_async(_inner()) is True
        assert conn.events("pong") == [{"event": "pong", "data": {}}]

    def test_ticker_runs_and_shutdown_drains(self, source):
        a, b = FakeConnection(), FakeConnection()

        async def _inner():
            hub = SubscriptionHub(source.sample, tick_seconds=0.01)
            await hub.accept(a, _claims())
            await hub.accept(b, _claims("ann@x.com"))
            hub.start()
            await asyncio.sleep(0.2)
            await hub.shutdown()
            late = FakeConnection()
            with pytest.raises(RuntimeError):
                await hub.accept(late, _claims("late@x.com"))
            return hub, late

        hub, late = run_async(_inner())
        assert hub.size == 0
        assert len(a.events()) > 1
        assert a.closed_with == b.closed_with == GOING_AWAY
        assert late.closed_with == GOING_AWAY
        sequences = [m["data"]["sequence"] for m in a.events()]
        assert sequences == sorted(sequences)
