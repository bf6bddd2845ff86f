"""Periodic samplers feeding the alert engine.

  MarketSampler   — pair reserves → price; price-delta and liquidity rules;
                    each sample is pushed on `updates` for the price topic
  SystemSampler   — CPU/memory (psutil), API health checks (httpx), block sync lag
  FailureSampler  — failed-transaction rate to the watched contracts

Each sampler records what it measured in the store, evaluates its rules and
raises candidates through AlertEngine. A failing cycle is logged and the
loop carries on; only StoreError escapes.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable

import httpx
import psutil

from chainpulse.alert import AlertEngine
from chainpulse.channels import Channel
from chainpulse.clock import iso, utcnow
from chainpulse.config import AlertConfig, LedgerConfig
from chainpulse.exceptions import ChainpulseError, StoreError
from chainpulse.ledger.base import LedgerSource
from chainpulse.ledger.decoders import wei_to_decimal
from chainpulse.logger import get_logger
from chainpulse.models import AlertCandidate, AlertRecord, PriceUpdate
from chainpulse.rules import (
    PRICE_WINDOWS_MINUTES,
    api_error_rule,
    api_latency_rule,
    block_sync_rule,
    cpu_rule,
    failure_rate_rule,
    liquidity_rule,
    memory_rule,
    pct_change,
    price_rules,
)
from chainpulse.store import Store

log = get_logger(__name__)

# Price and metric samples older than this are pruned each system cycle
SAMPLE_RETENTION = timedelta(hours=48)


class Sampler:
    """Base polling loop. Subclasses implement sample()."""

    name = "sampler"

    def __init__(
        self,
        engine: AlertEngine,
        store: Store,
        alert_config: AlertConfig,
        interval_seconds: float,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._engine = engine
        self._store = store
        self._alert_config = alert_config
        self._interval = interval_seconds
        self._clock = clock
        self._sleep = sleep

    async def sample(self) -> list[AlertRecord]:
        raise NotImplementedError

    async def run(self) -> None:
        log.info("sampler_start", sampler=self.name, interval_seconds=self._interval)
        while True:
            try:
                await self.sample()
            except StoreError:
                raise
            except ChainpulseError as e:
                log.warning("sampler_cycle_failed", sampler=self.name, **e.to_dict())
            except Exception as e:
                log.exception("sampler_cycle_error", sampler=self.name, error=str(e))
            await self._sleep(self._interval)

    async def _raise(self, candidates: list[AlertCandidate | None]) -> list[AlertRecord]:
        return await self._engine.raise_all(candidates)


class MarketSampler(Sampler):
    """Price and liquidity of the token/quote pair."""

    name = "market"

    def __init__(
        self,
        engine: AlertEngine,
        store: Store,
        alert_config: AlertConfig,
        source: LedgerSource,
        ledger_config: LedgerConfig,
        interval_seconds: float = 30.0,
        **kwargs,
    ) -> None:
        super().__init__(engine, store, alert_config, interval_seconds, **kwargs)
        self._source = source
        self._pair = ledger_config.pair_address
        self._decimals = ledger_config.token_decimals
        self.updates: Channel[PriceUpdate] = Channel("price_updates")

    async def sample(self) -> list[AlertRecord]:
        if not self._pair:
            return []
        raw0, raw1 = await self._source.get_reserves(self._pair)
        reserve0 = wei_to_decimal(raw0, self._decimals)
        reserve1 = wei_to_decimal(raw1, 18)
        return await self.evaluate(reserve0, reserve1)

    async def evaluate(self, reserve0: Decimal, reserve1: Decimal) -> list[AlertRecord]:
        """Apply market rules to one reserves reading and record it."""
        if reserve0 <= 0:
            log.warning("market_empty_reserves", pair=self._pair)
            return []

        now = self._clock()
        price = float(reserve1 / reserve0)
        references = {
            window: await self._store.price_at(iso(now - timedelta(minutes=minutes)))
            for window, minutes in PRICE_WINDOWS_MINUTES.items()
        }
        previous = await self._store.latest_price_sample()
        await self._store.record_price_sample(price, reserve0, reserve1, iso(now))
        self.updates.publish(
            PriceUpdate(
                price=price,
                reserve0=reserve0,
                reserve1=reserve1,
                sampled_at=iso(now),
                change_1h=_change(references.get("1h"), price),
                change_24h=_change(references.get("24h"), price),
            )
        )

        candidates: list[AlertCandidate | None] = list(price_rules(price, references, self._alert_config))
        if previous is not None:
            candidates.append(
                liquidity_rule(
                    (previous["reserve0"], previous["reserve1"]),
                    (reserve0, reserve1),
                    self._alert_config,
                )
            )
        log.debug("market_sampled", price=price)
        return await self._raise(candidates)


def _change(reference: float | None, current: float) -> float | None:
    return pct_change(reference, current) if reference is not None else None


class SystemSampler(Sampler):
    """Host resources, API latency, and ingestion lag."""

    name = "system"

    def __init__(
        self,
        engine: AlertEngine,
        store: Store,
        alert_config: AlertConfig,
        source: LedgerSource | None = None,
        health_urls: list[str] | None = None,
        client: httpx.AsyncClient | None = None,
        interval_seconds: float = 60.0,
        **kwargs,
    ) -> None:
        super().__init__(engine, store, alert_config, interval_seconds, **kwargs)
        self._source = source
        self._health_urls = list(health_urls or [])
        self._client = client

    async def sample(self) -> list[AlertRecord]:
        now = iso(self._clock())
        cpu = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory().percent
        await self._store.record_metric("cpu_pct", cpu, now)
        await self._store.record_metric("memory_pct", memory, now)
        pruned = await self._store.prune_samples(iso(self._clock() - SAMPLE_RETENTION))
        if pruned:
            log.debug("samples_pruned", rows=pruned)

        candidates: list[AlertCandidate | None] = [
            cpu_rule(cpu, self._alert_config),
            memory_rule(memory, self._alert_config),
        ]
        for url in self._health_urls:
            candidates.append(await self._check_endpoint(url))
        if self._source is not None:
            candidates.append(await self._block_sync())
        return await self._raise(candidates)

    async def _check_endpoint(self, url: str) -> AlertCandidate | None:
        started = time.monotonic()
        try:
            if self._client is not None:
                resp = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=15.0) as client:
                    resp = await client.get(url)
        except httpx.HTTPError as e:
            return api_error_rule(url, f"{type(e).__name__}: {e}")

        latency_ms = (time.monotonic() - started) * 1000
        await self._store.record_metric(f"latency_ms:{url}", latency_ms, iso(self._clock()))
        if resp.status_code >= 500:
            return api_error_rule(url, f"HTTP {resp.status_code}")
        return api_latency_rule(url, latency_ms, self._alert_config)

    async def _block_sync(self) -> AlertCandidate | None:
        assert self._source is not None
        watermarks = await self._store.list_watermarks()
        if not watermarks:
            return None
        head = await self._source.block_number()
        lowest = min(int(w["block_number"]) for w in watermarks)
        return block_sync_rule(head, lowest, self._alert_config)


class FailureSampler(Sampler):
    """Share of failed transactions sent to the watched contracts."""

    name = "failure_rate"

    def __init__(
        self,
        engine: AlertEngine,
        store: Store,
        alert_config: AlertConfig,
        source: LedgerSource,
        contracts: dict[str, str],
        interval_seconds: float = 60.0,
        **kwargs,
    ) -> None:
        super().__init__(engine, store, alert_config, interval_seconds, **kwargs)
        self._source = source
        self._watched = {a for a in contracts.values() if a}

    async def sample(self) -> list[AlertRecord]:
        if not self._watched:
            return []
        failed, total = await self._source.failure_counts(
            self._alert_config.failure_window_blocks, self._watched
        )
        if total:
            await self._store.record_metric("failure_rate", failed / total, iso(self._clock()))
        return await self._raise([failure_rate_rule(failed, total, self._alert_config)])
