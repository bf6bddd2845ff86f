"""Wires the workers together for `chainpulse run`.

  LedgerListener ──upsert──▶ Store ──changes──▶ StateAggregator ──updates──▶ BroadcastHub
                                 │                       │
                                 └──────▶ AlertEngine ◀──┘ ──published──▶ BroadcastHub
  Samplers ──────────────────────────────▶ AlertEngine
  MarketSampler ──updates──────────────────────────────────────────────▶ BroadcastHub

All workers share one event loop. A StoreError from any of them stops the
whole pipeline; every other failure is handled inside the worker that hit it.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Coroutine

import httpx

from chainpulse.aggregator import StateAggregator
from chainpulse.alert import AlertEngine
from chainpulse.broadcast import BroadcastHub
from chainpulse.cache import SnapshotCache
from chainpulse.config import ChainpulseConfig
from chainpulse.ledger.base import LedgerSource
from chainpulse.ledger.client import RpcLedgerSource
from chainpulse.listener import LedgerListener
from chainpulse.logger import get_logger
from chainpulse.monitors import FailureSampler, MarketSampler, SystemSampler
from chainpulse.server import BroadcastServer
from chainpulse.sinks import build_sinks
from chainpulse.store import Store

log = get_logger(__name__)


def _expand(path: str) -> str:
    if path and path != ":memory:":
        return str(Path(path).expanduser())
    return path


def store_from_config(config: ChainpulseConfig) -> Store:
    return Store(_expand(config.store.path))


def cache_from_config(config: ChainpulseConfig) -> SnapshotCache:
    return SnapshotCache(_expand(config.cache.path), ttl_seconds=config.cache.ttl_seconds)


class Pipeline:
    """Owns every long-lived component and the tasks that drive them."""

    def __init__(
        self,
        config: ChainpulseConfig,
        source: LedgerSource | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.store = store_from_config(config)
        self.cache = cache_from_config(config)
        self.client = client or httpx.AsyncClient(timeout=config.sinks.timeout_seconds)
        self.source: LedgerSource = source or RpcLedgerSource(
            config.ledger.http_url,
            config.ledger.ws_url,
            timeout=config.ledger.request_timeout_seconds,
            chunk_blocks=config.ledger.getlogs_chunk_blocks,
        )
        self.engine = AlertEngine(
            self.store,
            config.alert,
            sinks=build_sinks(config.sinks, client=self.client),
            sink_timeout=config.sinks.timeout_seconds,
        )
        self.listener = LedgerListener(
            self.source,
            self.store,
            config.ledger,
            alerts=self.engine,
            decode_failure_limit=config.alert.decode_failure_limit,
        )
        self.aggregator = StateAggregator(
            self.store, self.cache, config.aggregator, ttl_seconds=config.cache.ttl_seconds
        )
        self.hub = BroadcastHub(outbox_size=config.broadcast.outbox_size)
        self.server = BroadcastServer(
            self.hub, self.aggregator, config.broadcast.host, config.broadcast.port
        )
        self.market = MarketSampler(
            self.engine, self.store, config.alert, self.source, config.ledger,
            interval_seconds=config.monitor.market_interval_seconds,
        )
        self.samplers = [
            self.market,
            SystemSampler(
                self.engine, self.store, config.alert, source=self.source,
                health_urls=config.monitor.api_health_urls, client=self.client,
                interval_seconds=config.monitor.system_interval_seconds,
            ),
            FailureSampler(
                self.engine, self.store, config.alert, self.source, config.ledger.contracts,
                interval_seconds=config.monitor.failure_interval_seconds,
            ),
        ]

    async def open(self) -> None:
        await self.store.connect()
        await self.cache.connect()

    async def close(self) -> None:
        await self.hub.close()
        await self.engine.drain()
        await self.source.close()
        await self.client.aclose()
        await self.cache.close()
        await self.store.close()

    async def __aenter__(self) -> "Pipeline":
        await self.open()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def workers(self, serve: bool = True, monitors: bool = True) -> dict[str, Coroutine]:
        """Named coroutines making up a running pipeline."""
        workers: dict[str, Coroutine] = {
            "listener": self.listener.run(),
            "aggregator": self.aggregator.run(),
            "reconciliation": self.aggregator.run_reconciliation(),
            "alert_events": self.engine.run(),
            "alert_snapshots": self.engine.run_snapshots(self.aggregator.updates),
            "relay_snapshots": self.hub.relay(self.aggregator.updates, self.hub.publish_snapshot),
            "relay_alerts": self.hub.relay(self.engine.published, self.hub.publish_alert),
            "relay_events": self.hub.relay(self.store.changes, self.hub.publish_event),
            "relay_price": self.hub.relay(self.market.updates, self.hub.publish_price),
        }
        if serve:
            workers["server"] = self.server.serve()
        if monitors:
            for sampler in self.samplers:
                workers[f"sampler:{sampler.name}"] = sampler.run()
        return workers

    async def run(self, serve: bool = True, monitors: bool = True) -> None:
        """
        Run every worker until cancelled or one of them fails.

        The listener returning normally (no contracts configured) does not
        stop the others. The first exception cancels all workers and is
        re-raised.
        """
        tasks = {
            asyncio.create_task(coro, name=name): name
            for name, coro in self.workers(serve=serve, monitors=monitors).items()
        }
        log.info("pipeline_start", workers=sorted(tasks.values()))
        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
                for task in done:
                    if not task.cancelled() and task.exception() is not None:
                        log.error("pipeline_worker_failed", worker=tasks[task], error=str(task.exception()))
                        raise task.exception()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            log.info("pipeline_stop")
