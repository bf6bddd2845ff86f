"""
Ledger event listener.

One long-lived worker per (contract, event) subscription. Each worker:
  1. opens the push subscription,
  2. back-fills from its watermark + 1 to the chain head with eth_getLogs,
  3. streams pushed logs, decoding and upserting each one.

Redelivery (backfill overlap, reconnect replays) is harmless: the store's
idempotency key turns a second upsert into a no-op. Watermarks advance only
past blocks that are fully processed.

Network failures reconnect with capped exponential backoff and jitter.
StoreError is fatal and propagates out of run().
"""

from __future__ import annotations

import asyncio
import random
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol

from chainpulse.clock import from_timestamp, iso, utcnow
from chainpulse.config import LedgerConfig
from chainpulse.exceptions import DecodeError, TransientIOError
from chainpulse.ledger.abi import EventSignature, signatures_for
from chainpulse.ledger.base import LedgerSource, RawLog
from chainpulse.ledger.decoders import decode_log
from chainpulse.logger import get_logger
from chainpulse.models import AlertCandidate, LedgerEvent
from chainpulse.store import Store

log = get_logger(__name__)

BLOCK_TIME_CACHE_SIZE = 4096


class AlertRaiser(Protocol):
    async def raise_alert(self, candidate: AlertCandidate) -> Any: ...


class LedgerListener:
    """Runs one ingestion worker per configured event signature."""

    def __init__(
        self,
        source: LedgerSource,
        store: Store,
        config: LedgerConfig,
        alerts: AlertRaiser | None = None,
        decode_failure_limit: int = 5,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self._source = source
        self._store = store
        self._config = config
        self._alerts = alerts
        self._decode_failure_limit = decode_failure_limit
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter
        self.decode_failures: dict[str, int] = defaultdict(int)
        self._consecutive_failures: dict[str, int] = defaultdict(int)
        self._block_times: dict[int, str] = {}

    @property
    def signatures(self) -> list[EventSignature]:
        return signatures_for(self._config.contracts)

    async def run(self) -> None:
        """Run every subscription worker until cancelled or a StoreError."""
        signatures = self.signatures
        if not signatures:
            log.warning("listener_no_contracts")
            return
        log.info("listener_start", subscriptions=[s.subscription for s in signatures])
        await asyncio.gather(*(self.run_subscription(s) for s in signatures))

    async def run_subscription(self, signature: EventSignature) -> None:
        """Subscribe → backfill → stream, reconnecting forever on transient errors."""
        address = self._config.contracts[signature.contract]
        attempt = 0

        async def _on_subscribed() -> None:
            nonlocal attempt
            attempt = 0
            await self.backfill(signature)

        while True:
            try:
                async for entry in self._source.subscribe_logs(
                    address, [signature.topic0], on_subscribed=_on_subscribed
                ):
                    await self.handle_entry(signature, entry, streamed=True)
                log.warning("listener_stream_closed", subscription=signature.subscription)
            except TransientIOError as e:
                log.warning(
                    "listener_disconnected",
                    subscription=signature.subscription,
                    error=e.message,
                    attempt=attempt,
                )

            delay = self.backoff_delay(attempt)
            attempt += 1
            await self._sleep(delay)

    def backoff_delay(self, attempt: int) -> float:
        """Capped exponential delay with jitter in [base/2, base]."""
        base = min(
            self._config.reconnect_initial_seconds * (2 ** attempt),
            self._config.reconnect_max_seconds,
        )
        return base / 2 + self._jitter() * base / 2

    async def backfill(self, signature: EventSignature) -> int:
        """
        Replay logs from watermark + 1 to head. Returns committed event count.

        The watermark is persisted after every fetched chunk.
        """
        address = self._config.contracts[signature.contract]
        watermark = await self._store.get_watermark(signature.subscription)
        start = (watermark + 1) if watermark is not None else self._config.start_block
        head = await self._source.block_number()
        if start > head:
            return 0

        committed = 0
        chunk = max(self._config.getlogs_chunk_blocks, 1)
        for from_block in range(start, head + 1, chunk):
            to_block = min(from_block + chunk - 1, head)
            entries = await self._source.get_logs(address, [signature.topic0], from_block, to_block)
            for entry in entries:
                if await self.handle_entry(signature, entry) is not None:
                    committed += 1
            await self._store.set_watermark(signature.subscription, to_block)

        log.info(
            "listener_backfill",
            subscription=signature.subscription,
            from_block=start,
            to_block=head,
            committed=committed,
        )
        return committed

    async def handle_entry(
        self, signature: EventSignature, entry: dict[str, Any], streamed: bool = False
    ) -> LedgerEvent | None:
        """Decode and persist one raw log. Returns the committed event, if new."""
        kind = signature.kind.value
        try:
            raw = RawLog.from_rpc(entry)
            if raw.removed:
                log.info("listener_log_removed", subscription=signature.subscription, tx_hash=raw.tx_hash)
                return None
            event = decode_log(
                raw, signature, observed_at=iso(self._clock()),
                token_decimals=self._config.token_decimals,
                block_time=await self.block_time(raw),
            )
        except DecodeError as e:
            await self._record_decode_failure(signature, e)
            return None

        self._consecutive_failures[kind] = 0
        committed = await self._store.upsert_event(event)
        if committed is None:
            log.debug("listener_duplicate", subscription=signature.subscription, tx_hash=event.tx_hash)

        if streamed and raw.block_number > 0:
            # Earlier blocks are complete once the feed moves on to a later one.
            await self._store.set_watermark(signature.subscription, raw.block_number - 1)
        return committed

    async def block_time(self, raw: RawLog) -> str | None:
        """Ledger time of the log's block, fetched once per block when the log lacks it."""
        if raw.block_timestamp is not None:
            return from_timestamp(raw.block_timestamp)
        cached = self._block_times.get(raw.block_number)
        if cached is not None:
            return cached
        try:
            seconds = await self._source.block_timestamp(raw.block_number)
        except TransientIOError as e:
            log.warning("listener_block_time_unavailable", block=raw.block_number, error=str(e))
            return None
        if len(self._block_times) >= BLOCK_TIME_CACHE_SIZE:
            self._block_times.clear()
        self._block_times[raw.block_number] = from_timestamp(seconds)
        return self._block_times[raw.block_number]

    async def _record_decode_failure(self, signature: EventSignature, error: DecodeError) -> None:
        kind = signature.kind.value
        self.decode_failures[kind] += 1
        self._consecutive_failures[kind] += 1
        consecutive = self._consecutive_failures[kind]
        log.warning(
            "listener_decode_failed",
            subscription=signature.subscription,
            error=error.message,
            consecutive=consecutive,
            total=self.decode_failures[kind],
        )
        if consecutive == self._decode_failure_limit and self._alerts is not None:
            await self._alerts.raise_alert(
                AlertCandidate(
                    rule_id="DECODE_FAILURES",
                    severity="critical",
                    message=f"{consecutive} consecutive {kind} events failed to decode",
                    subject=kind,
                    evidence={
                        "kind": kind,
                        "consecutive": consecutive,
                        "total": self.decode_failures[kind],
                        "last_error": error.message,
                    },
                )
            )
