"""Realtime broadcast hub.

Connections subscribe to topics (optionally with an equality filter on
payload fields). publish() is synchronous: it enqueues the envelope on each
matching connection's outbox, and one sender task per connection drains that
outbox in FIFO order, so every connection sees a topic's messages in
publish order.

A full outbox or a failed send disconnects the connection. Disconnect drops
every subscription and any queued messages at once; there is no replay.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from chainpulse.channels import Channel
from chainpulse.clock import iso, utcnow
from chainpulse.exceptions import NotFoundError, OperatorActionError
from chainpulse.logger import get_logger
from chainpulse.models import (
    AggregateSnapshot,
    AlertRecord,
    Envelope,
    GlobalMetrics,
    Leaderboard,
    LedgerEvent,
    PriceUpdate,
    Subscription,
    UserScore,
)

log = get_logger(__name__)

TOPIC_USER = "user"
TOPIC_METRICS = "metrics"
TOPIC_LEADERBOARD = "leaderboard"
TOPIC_ALERTS = "alerts"
TOPIC_EVENTS = "events"
TOPIC_PRICE = "price"
TOPICS = (TOPIC_USER, TOPIC_METRICS, TOPIC_LEADERBOARD, TOPIC_ALERTS, TOPIC_EVENTS, TOPIC_PRICE)

Sender = Callable[[str], Awaitable[Any]]


def topic_for_snapshot(snapshot: AggregateSnapshot) -> str:
    if isinstance(snapshot, UserScore):
        return TOPIC_USER
    if isinstance(snapshot, GlobalMetrics):
        return TOPIC_METRICS
    if isinstance(snapshot, Leaderboard):
        return TOPIC_LEADERBOARD
    raise TypeError(f"Not a snapshot: {type(snapshot).__name__}")


@dataclass
class _Connection:
    id: str
    send: Sender
    outbox: asyncio.Queue
    subscriptions: dict[str, Subscription] = field(default_factory=dict)
    sender: asyncio.Task | None = None


class BroadcastHub:
    """In-process fan-out of envelopes to live connections."""

    def __init__(self, outbox_size: int = 256, clock: Callable[[], datetime] = utcnow) -> None:
        self._outbox_size = outbox_size
        self._clock = clock
        self._connections: dict[str, _Connection] = {}
        self._ids = itertools.count(1)

    # ──────────────────────────────────────────────────────────
    # Connections
    # ──────────────────────────────────────────────────────────

    def connect(self, send: Sender, connection_id: str | None = None) -> str:
        """Register a connection and start its sender task."""
        conn_id = connection_id or f"conn-{next(self._ids)}"
        conn = _Connection(id=conn_id, send=send, outbox=asyncio.Queue(maxsize=self._outbox_size))
        conn.sender = asyncio.create_task(self._drain(conn), name=f"sender:{conn_id}")
        self._connections[conn_id] = conn
        log.info("broadcast_connected", connection_id=conn_id)
        return conn_id

    def disconnect(self, connection_id: str) -> bool:
        """Drop a connection with all its subscriptions and queued messages."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return False
        conn.subscriptions.clear()
        if conn.sender is not None and conn.sender is not asyncio.current_task():
            conn.sender.cancel()
        log.info("broadcast_disconnected", connection_id=connection_id)
        return True

    @property
    def connection_ids(self) -> list[str]:
        return list(self._connections)

    # ──────────────────────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────────────────────

    def subscribe(
        self, connection_id: str, topic: str, filter: dict[str, Any] | None = None
    ) -> Subscription:
        """Subscribe (or re-subscribe with a new filter) to `topic`."""
        conn = self._get(connection_id)
        if topic not in TOPICS:
            raise OperatorActionError(
                f"Unknown topic {topic!r}. Use one of: {', '.join(TOPICS)}",
                details={"topic": topic},
            )
        if filter is not None and not isinstance(filter, dict):
            raise OperatorActionError(
                "Subscription filter must be an object of field: value pairs",
                details={"topic": topic, "filter": filter},
            )
        sub = Subscription(
            connection_id=connection_id,
            topic=topic,
            created_at=iso(self._clock()),
            filter=dict(filter) if filter else None,
        )
        conn.subscriptions[topic] = sub
        return sub

    def unsubscribe(self, connection_id: str, topic: str) -> bool:
        conn = self._get(connection_id)
        return conn.subscriptions.pop(topic, None) is not None

    def subscriptions(self, connection_id: str) -> list[Subscription]:
        return list(self._get(connection_id).subscriptions.values())

    # ──────────────────────────────────────────────────────────
    # Publishing
    # ──────────────────────────────────────────────────────────

    def publish(self, topic: str, payload: dict[str, Any], type: str) -> int:
        """Enqueue an envelope for every matching subscriber. Returns the count."""
        envelope = Envelope(topic=topic, type=type, payload=payload, emitted_at=iso(self._clock()))
        delivered = 0
        for conn in list(self._connections.values()):
            sub = conn.subscriptions.get(topic)
            if sub is None or not sub.matches(payload):
                continue
            if self._enqueue(conn, envelope):
                delivered += 1
        return delivered

    def deliver(self, connection_id: str, envelope: Envelope) -> bool:
        """Queue a direct reply for one connection, behind its pending messages."""
        conn = self._connections.get(connection_id)
        return conn is not None and self._enqueue(conn, envelope)

    def publish_snapshot(self, snapshot: AggregateSnapshot) -> int:
        return self.publish(topic_for_snapshot(snapshot), snapshot.to_dict(), "snapshot")

    def publish_alert(self, record: AlertRecord) -> int:
        return self.publish(TOPIC_ALERTS, record.to_dict(), "alert")

    def publish_event(self, event: LedgerEvent) -> int:
        payload = {**event.to_dict(), "address": event.subject_address}
        return self.publish(TOPIC_EVENTS, payload, "event")

    def publish_price(self, update: PriceUpdate) -> int:
        return self.publish(TOPIC_PRICE, update.to_dict(), "price")

    async def relay(self, channel: Channel, publish: Callable[[Any], int]) -> None:
        """Forward every item of an in-process channel to subscribers."""
        queue = channel.subscribe()
        try:
            while True:
                publish(await queue.get())
        finally:
            channel.unsubscribe(queue)

    async def close(self) -> None:
        for conn_id in list(self._connections):
            self.disconnect(conn_id)

    # ──────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────

    def _get(self, connection_id: str) -> _Connection:
        conn = self._connections.get(connection_id)
        if conn is None:
            raise NotFoundError(
                f"Connection {connection_id} not found", details={"connection_id": connection_id}
            )
        return conn

    def _enqueue(self, conn: _Connection, envelope: Envelope) -> bool:
        try:
            conn.outbox.put_nowait(envelope)
        except asyncio.QueueFull:
            log.warning("broadcast_outbox_full", connection_id=conn.id, size=self._outbox_size)
            self.disconnect(conn.id)
            return False
        return True

    async def _drain(self, conn: _Connection) -> None:
        while True:
            envelope: Envelope = await conn.outbox.get()
            try:
                await conn.send(json.dumps(envelope.to_dict(), default=str))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("broadcast_send_failed", connection_id=conn.id, error=str(e))
                self.disconnect(conn.id)
                return
