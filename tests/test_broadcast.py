"""Tests for chainpulse/broadcast.py and chainpulse/server.py."""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal

import pytest
import pytest_asyncio

from chainpulse.aggregator import StateAggregator
from chainpulse.broadcast import (
    TOPIC_ALERTS,
    TOPIC_EVENTS,
    TOPIC_METRICS,
    TOPIC_PRICE,
    TOPIC_USER,
    BroadcastHub,
    topic_for_snapshot,
)
from chainpulse.channels import Channel
from chainpulse.config import AggregatorConfig
from chainpulse.exceptions import NotFoundError, OperatorActionError
from chainpulse.models import AlertRecord, EventKind, GlobalMetrics, Leaderboard, PriceUpdate, UserScore
from chainpulse.server import CONTROL_TOPIC, BroadcastServer
from tests.factories import FakeClock, make_event


class Client:
    """Collects the JSON frames a connection receives."""

    def __init__(self, fail: bool = False) -> None:
        self.frames: list[dict] = []
        self.fail = fail

    async def send(self, message: str) -> None:
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.frames.append(json.loads(message))


async def _flush() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


def _metrics(version: int) -> GlobalMetrics:
    return GlobalMetrics(scope="global", source_version=version, computed_at="t", total_value_locked=Decimal(version))


@pytest_asyncio.fixture
async def hub() -> BroadcastHub:
    h = BroadcastHub(clock=FakeClock())
    yield h
    await h.close()


# ── Hub ───────────────────────────────────────────────────────────────────────


def test_topic_for_snapshot() -> None:
    assert topic_for_snapshot(_metrics(1)) == "metrics"
    assert topic_for_snapshot(UserScore(scope="user:0xa", source_version=1, computed_at="t", address="0xa")) == "user"
    assert topic_for_snapshot(Leaderboard(scope="leaderboard:global", source_version=1, computed_at="t", name="global")) == "leaderboard"


@pytest.mark.asyncio
async def test_publish_order_is_preserved(hub: BroadcastHub) -> None:
    client = Client()
    conn = hub.connect(client.send)
    hub.subscribe(conn, TOPIC_METRICS)

    for version in range(1, 51):
        hub.publish_snapshot(_metrics(version))
    await _flush()

    assert [f["payload"]["source_version"] for f in client.frames] == list(range(1, 51))
    assert client.frames[0]["topic"] == "metrics"
    assert client.frames[0]["type"] == "snapshot"
    assert "emittedAt" in client.frames[0]


@pytest.mark.asyncio
async def test_only_subscribed_topics_are_delivered(hub: BroadcastHub) -> None:
    client = Client()
    conn = hub.connect(client.send)
    hub.subscribe(conn, TOPIC_ALERTS)

    assert hub.publish_snapshot(_metrics(1)) == 0
    record = AlertRecord(id=1, rule_id="TVL_DROP", severity="high", message="m", first_seen_at="t")
    assert hub.publish_alert(record) == 1
    await _flush()

    assert [f["type"] for f in client.frames] == ["alert"]


@pytest.mark.asyncio
async def test_filter_matches_address_case_insensitively(hub: BroadcastHub) -> None:
    mine, everyone = Client(), Client()
    a = hub.connect(mine.send)
    b = hub.connect(everyone.send)
    hub.subscribe(a, TOPIC_EVENTS, {"address": "0xAAA"})
    hub.subscribe(b, TOPIC_EVENTS)

    hub.publish_event(make_event(EventKind.STAKED, subject="0xaaa", amount=1))
    hub.publish_event(make_event(EventKind.STAKED, subject="0xbbb", amount=2))
    await _flush()

    assert [f["payload"]["address"] for f in mine.frames] == ["0xaaa"]
    assert len(everyone.frames) == 2


@pytest.mark.asyncio
async def test_resubscribe_replaces_filter(hub: BroadcastHub) -> None:
    conn = hub.connect(Client().send)
    hub.subscribe(conn, TOPIC_EVENTS, {"address": "0xaaa"})
    hub.subscribe(conn, TOPIC_EVENTS, {"address": "0xbbb"})
    (sub,) = hub.subscriptions(conn)
    assert sub.filter == {"address": "0xbbb"}


@pytest.mark.asyncio
async def test_subscribe_validation(hub: BroadcastHub) -> None:
    conn = hub.connect(Client().send)
    with pytest.raises(OperatorActionError):
        hub.subscribe(conn, "prices")
    with pytest.raises(OperatorActionError):
        hub.subscribe(conn, TOPIC_USER, "0xabc")
    assert hub.subscriptions(conn) == []
    with pytest.raises(NotFoundError):
        hub.subscribe("conn-999", TOPIC_ALERTS)


@pytest.mark.asyncio
async def test_disconnect_drops_subscriptions(hub: BroadcastHub) -> None:
    client = Client()
    conn = hub.connect(client.send)
    hub.subscribe(conn, TOPIC_METRICS)

    assert hub.disconnect(conn) is True
    assert hub.disconnect(conn) is False
    assert hub.publish_snapshot(_metrics(1)) == 0
    await _flush()

    assert client.frames == []
    assert conn not in hub.connection_ids
    with pytest.raises(NotFoundError):
        hub.subscriptions(conn)


@pytest.mark.asyncio
async def test_full_outbox_disconnects_slow_consumer() -> None:
    hub = BroadcastHub(outbox_size=2, clock=FakeClock())
    slow, fast = Client(), Client()
    s = hub.connect(slow.send)
    f = hub.connect(fast.send)
    hub.subscribe(s, TOPIC_METRICS)
    hub.subscribe(f, TOPIC_METRICS, {"source_version": 1})

    # Nothing has been drained yet, so the third message overflows
    counts = [hub.publish_snapshot(_metrics(v)) for v in (1, 2, 3)]

    assert counts == [2, 1, 0]
    assert hub.connection_ids == [f]
    await _flush()
    assert [fr["payload"]["source_version"] for fr in fast.frames] == [1]
    await hub.close()


@pytest.mark.asyncio
async def test_failed_send_disconnects(hub: BroadcastHub) -> None:
    conn = hub.connect(Client(fail=True).send)
    hub.subscribe(conn, TOPIC_METRICS)
    hub.publish_snapshot(_metrics(1))
    await _flush()
    assert hub.connection_ids == []


@pytest.mark.asyncio
async def test_relay_forwards_channel_items(hub: BroadcastHub) -> None:
    client = Client()
    conn = hub.connect(client.send)
    hub.subscribe(conn, TOPIC_METRICS)
    channel: Channel[GlobalMetrics] = Channel("snapshots")

    relay = asyncio.create_task(hub.relay(channel, hub.publish_snapshot))
    await _flush()
    channel.publish(_metrics(7))
    await _flush()
    relay.cancel()
    with pytest.raises(asyncio.CancelledError):
        await relay

    assert [f["payload"]["source_version"] for f in client.frames] == [7]
    assert channel.subscriber_count == 0


@pytest.mark.asyncio
async def test_price_updates_reach_price_subscribers(hub: BroadcastHub) -> None:
    watcher, other = Client(), Client()
    hub.subscribe(hub.connect(watcher.send), TOPIC_PRICE)
    hub.subscribe(hub.connect(other.send), TOPIC_METRICS)
    channel: Channel[PriceUpdate] = Channel("price_updates")

    relay = asyncio.create_task(hub.relay(channel, hub.publish_price))
    await _flush()
    channel.publish(
        PriceUpdate(price=0.88, reserve0=Decimal(100), reserve1=Decimal(88), sampled_at="t", change_24h=-12.0)
    )
    await _flush()
    relay.cancel()
    with pytest.raises(asyncio.CancelledError):
        await relay

    (frame,) = watcher.frames
    assert frame["topic"] == "price"
    assert frame["type"] == "price"
    assert frame["payload"]["price"] == pytest.approx(0.88)
    assert frame["payload"]["reserve1"] == "88"
    assert frame["payload"]["change_24h"] == pytest.approx(-12.0)
    assert frame["payload"]["change_1h"] is None
    assert other.frames == []


# ── Server actions ────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def server(hub, store, cache) -> BroadcastServer:
    aggregator = StateAggregator(store, cache, AggregatorConfig(debounce_seconds=0), clock=FakeClock())
    return BroadcastServer(hub, aggregator)


@pytest.mark.asyncio
async def test_server_subscribe_ack(hub: BroadcastHub, server: BroadcastServer) -> None:
    conn = hub.connect(Client().send)
    reply = await server.handle_message(
        conn, json.dumps({"action": "subscribe", "topic": "user", "filter": {"address": "0xaaa"}})
    )
    assert reply.topic == CONTROL_TOPIC
    assert reply.type == "ack"
    assert reply.payload == {"action": "subscribe", "topic": "user", "filter": {"address": "0xaaa"}}
    assert [s.topic for s in hub.subscriptions(conn)] == ["user"]

    reply = await server.handle_message(conn, json.dumps({"action": "unsubscribe", "topic": "user"}))
    assert reply.payload["removed"] is True
    assert hub.subscriptions(conn) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "message,error",
    [
        ("not json", "invalid_message"),
        ("[1, 2]", "invalid_message"),
        (json.dumps({"action": "dance"}), "unknown_action"),
        (json.dumps({"action": "subscribe", "topic": "prices"}), "operator_action_error"),
        (json.dumps({"action": "subscribe", "topic": "user", "filter": "0xabc"}), "operator_action_error"),
        (json.dumps({"action": "subscribe", "topic": "alerts", "filter": ["high"]}), "operator_action_error"),
        (json.dumps({"action": "snapshot", "scope": "wallet:0x1"}), "invalid_scope"),
        (json.dumps({"action": "snapshot", "scope": "leaderboard:weekly"}), "invalid_scope"),
    ],
)
async def test_server_error_replies(hub: BroadcastHub, server: BroadcastServer, message: str, error: str) -> None:
    conn = hub.connect(Client().send)
    reply = await server.handle_message(conn, message)
    assert reply.type == "error"
    assert reply.payload["error"] == error


@pytest.mark.asyncio
async def test_server_snapshot_pull(hub: BroadcastHub, server: BroadcastServer, store) -> None:
    await store.upsert_event(make_event(EventKind.STAKED, subject="0xaaa", amount=500))
    conn = hub.connect(Client().send)

    reply = await server.handle_message(conn, json.dumps({"action": "snapshot", "scope": "user:0xAAA"}))

    assert reply.type == "snapshot"
    assert reply.topic == "user"
    assert Decimal(reply.payload["staking_score"]) == 500


@pytest.mark.asyncio
async def test_server_reply_is_ordered_with_pushes(hub: BroadcastHub, server: BroadcastServer) -> None:
    client = Client()
    conn = hub.connect(client.send)
    hub.subscribe(conn, TOPIC_METRICS)
    hub.publish_snapshot(_metrics(1))
    reply = await server.handle_message(conn, json.dumps({"action": "unsubscribe", "topic": "metrics"}))
    hub.deliver(conn, reply)
    await _flush()
    assert [f["type"] for f in client.frames] == ["snapshot", "ack"]
