"""Websocket transport for the broadcast hub.

Client → server messages (JSON):
  {"action": "subscribe", "topic": "user", "filter": {"address": "0x..."}}
  {"action": "unsubscribe", "topic": "user"}
  {"action": "snapshot", "scope": "leaderboard:global"}

Server → client messages are envelopes {topic, type, payload, emittedAt}.
Replies to client actions use topic "control" and type "ack" / "error", or
type "snapshot" for snapshot pulls. Replies share the connection's outbox,
so they are ordered with pushed updates.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import websockets

from chainpulse.aggregator import StateAggregator
from chainpulse.broadcast import BroadcastHub, topic_for_snapshot
from chainpulse.clock import iso, utcnow
from chainpulse.exceptions import ChainpulseError, NotFoundError
from chainpulse.logger import get_logger
from chainpulse.models import Envelope, Scope

log = get_logger(__name__)

CONTROL_TOPIC = "control"


class BroadcastServer:
    """Accepts websocket clients and maps their actions onto the hub."""

    def __init__(
        self,
        hub: BroadcastHub,
        aggregator: StateAggregator,
        host: str = "0.0.0.0",
        port: int = 3001,
    ) -> None:
        self._hub = hub
        self._aggregator = aggregator
        self._host = host
        self._port = port

    async def serve(self) -> None:
        """Serve until cancelled."""
        async with websockets.serve(self.handler, self._host, self._port):
            log.info("broadcast_server_listening", host=self._host, port=self._port)
            await asyncio.Future()

    async def handler(self, websocket: Any) -> None:
        conn_id = self._hub.connect(websocket.send)
        try:
            async for message in websocket:
                reply = await self.handle_message(conn_id, message)
                self._hub.deliver(conn_id, reply)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self._hub.disconnect(conn_id)

    async def handle_message(self, conn_id: str, message: str | bytes) -> Envelope:
        """Apply one client action and build the reply envelope."""
        try:
            request = json.loads(message)
            if not isinstance(request, dict):
                raise ValueError("message must be a JSON object")
        except ValueError as e:
            return self._error("invalid_message", str(e))

        action = request.get("action")
        try:
            if action == "subscribe":
                sub = self._hub.subscribe(conn_id, str(request.get("topic")), request.get("filter"))
                return self._ack(action, topic=sub.topic, filter=sub.filter)
            if action == "unsubscribe":
                removed = self._hub.unsubscribe(conn_id, str(request.get("topic")))
                return self._ack(action, topic=request.get("topic"), removed=removed)
            if action == "snapshot":
                return await self._snapshot(str(request.get("scope", "")))
        except ChainpulseError as e:
            return self._error(e.error_code, e.message)
        return self._error("unknown_action", f"Unknown action {action!r}")

    async def _snapshot(self, raw_scope: str) -> Envelope:
        try:
            scope = Scope.parse(raw_scope)
        except ValueError as e:
            return self._error("invalid_scope", str(e))
        try:
            snapshot = await self._aggregator.snapshot(scope)
        except ValueError as e:
            return self._error("invalid_scope", str(e))
        if snapshot is None:
            raise NotFoundError(f"No snapshot for {scope}", details={"scope": str(scope)})
        return Envelope(
            topic=topic_for_snapshot(snapshot),
            type="snapshot",
            payload=snapshot.to_dict(),
            emitted_at=iso(utcnow()),
        )

    def _ack(self, action: str, **fields: Any) -> Envelope:
        return Envelope(
            topic=CONTROL_TOPIC,
            type="ack",
            payload={"action": action, **fields},
            emitted_at=iso(utcnow()),
        )

    def _error(self, code: str, message: str) -> Envelope:
        return Envelope(
            topic=CONTROL_TOPIC,
            type="error",
            payload={"error": code, "message": message},
            emitted_at=iso(utcnow()),
        )
