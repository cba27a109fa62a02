"""
opsdash.services.hub — Live Metrics Fan-out
============================================

One central timer samples the :class:`MetricsSource` every ``tick_seconds``
and pushes that single snapshot to every registered subscriber.

Rules:

* one sample per tick, shared by all subscribers;
* sends run concurrently, each bounded by ``send_timeout``; a subscriber
  whose send fails or stalls is dropped, the others are unaffected;
* a subscriber never receives a snapshot older than one it already has
  (snapshots carry a sequence number; stale ones are skipped);
* ``shutdown()`` stops the timer and closes every connection.

A *connection* is anything with ``async send_json(data)`` and
``async close(code=...)``; FastAPI's ``WebSocket`` qualifies.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol

from opsdash.clock import new_id, utcnow
from opsdash.services.metrics_source import MetricSnapshot
from opsdash.services.session import Claims

logger = logging.getLogger(__name__)

METRICS_EVENT = "metrics"
GOING_AWAY = 1001


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class Subscriber:
    """One live client.  Created by :meth:`SubscriptionHub.accept`."""

    __slots__ = ("id", "connection", "claims", "created_at", "last_delivery",
                 "last_sequence", "send_lock")

    def __init__(self, connection: Connection, claims: Claims) -> None:
        self.id = new_id("sub")
        self.connection = connection
        self.claims = claims
        self.created_at: datetime = utcnow()
        self.last_delivery: datetime | None = None
        self.last_sequence = 0
        self.send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<Subscriber {self.id} {self.claims.email}>"


class SubscriptionHub:
    """Registry of live subscribers plus the broadcast timer."""

    def __init__(
        self,
        sample: Callable[[], Awaitable[MetricSnapshot]],
        *,
        tick_seconds: float = 5.0,
        send_timeout: float = 2.0,
    ) -> None:
        self._sample = sample
        self.tick_seconds = tick_seconds
        self.send_timeout = send_timeout
        self._subscribers: dict[str, Subscriber] = {}
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._last: MetricSnapshot | None = None
        self._closing = False

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    @property
    def size(self) -> int:
        return len(self._subscribers)

    def subscribers(self) -> list[Subscriber]:
        return list(self._subscribers.values())

    async def accept(self, connection: Connection, claims: Claims) -> Subscriber:
        """Register *connection* and deliver an initial snapshot right away."""
        if self._closing:
            await connection.close(code=GOING_AWAY)
            raise RuntimeError("Hub is shutting down")

        subscriber = Subscriber(connection, claims)
        snapshot = self._last or await self._sample_once()
        async with self._lock:
            self._subscribers[subscriber.id] = subscriber
        logger.info("Subscriber %s connected (%s); %d live",
                    subscriber.id, claims.email, self.size)
        await self._deliver(subscriber, snapshot)
        return subscriber

    async def drop(self, subscriber: Subscriber, reason: str, *, close: bool = True) -> bool:
        """Unregister *subscriber*.  Idempotent; returns False if already gone."""
        async with self._lock:
            removed = self._subscribers.pop(subscriber.id, None)
        if removed is None:
            return False
        logger.info("Subscriber %s dropped (%s); %d live", subscriber.id, reason, self.size)
        if close:
            try:
                await asyncio.wait_for(
                    subscriber.connection.close(code=GOING_AWAY), timeout=self.send_timeout
                )
            except Exception:
                logger.debug("Close failed for %s", subscriber.id, exc_info=True)
        return True

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    async def send(self, subscriber: Subscriber, message: dict[str, Any]) -> bool:
        """Send a non-snapshot message (e.g. ``pong``) in order with snapshots."""
        try:
            async with subscriber.send_lock:
                await asyncio.wait_for(
                    subscriber.connection.send_json(message), timeout=self.send_timeout
                )
        except Exception as exc:
            await self.drop(subscriber, f"send failed: {type(exc).__name__}")
            return False
        return True

    async def _deliver(self, subscriber: Subscriber, snapshot: MetricSnapshot) -> bool:
        try:
            async with subscriber.send_lock:
                if snapshot.sequence <= subscriber.last_sequence:
                    return True
                await asyncio.wait_for(
                    subscriber.connection.send_json(
                        {"event": METRICS_EVENT, "data": snapshot.to_dict()}
                    ),
                    timeout=self.send_timeout,
                )
                subscriber.last_sequence = snapshot.sequence
                subscriber.last_delivery = utcnow()
        except TimeoutError:
            await self.drop(subscriber, "send timed out")
            return False
        except Exception as exc:
            await self.drop(subscriber, f"send failed: {type(exc).__name__}")
            return False
        return True

    async def _sample_once(self) -> MetricSnapshot:
        snapshot = await self._sample()
        self._last = snapshot
        return snapshot

    async def broadcast_tick(self) -> MetricSnapshot:
        """Sample once and fan the snapshot out to everyone registered."""
        snapshot = await self._sample_once()
        async with self._lock:
            targets = list(self._subscribers.values())
        if targets:
            await asyncio.gather(*(self._deliver(s, snapshot) for s in targets))
        logger.debug("Tick %d delivered to %d subscribers", snapshot.sequence, len(targets))
        return snapshot

    @property
    def last_snapshot(self) -> MetricSnapshot | None:
        return self._last

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            try:
                await self.broadcast_tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Broadcast tick failed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.create_task(self._run(), name="metrics-broadcast")
            logger.info("Metrics broadcast started (every %.1fs)", self.tick_seconds)

    async def shutdown(self) -> None:
        """Stop the timer, then drain and close every subscriber."""
        self._closing = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for subscriber in self.subscribers():
            await self.drop(subscriber, "shutdown")
        logger.info("Metrics broadcast stopped")
