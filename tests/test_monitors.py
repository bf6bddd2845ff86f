"""Tests for chainpulse/monitors.py — market, system and failure samplers."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

import chainpulse.monitors as monitors
from chainpulse.alert import AlertEngine
from chainpulse.clock import iso
from chainpulse.config import AlertConfig, LedgerConfig
from chainpulse.exceptions import StoreError, TransientIOError
from chainpulse.monitors import FailureSampler, MarketSampler, Sampler, SystemSampler
from chainpulse.store import Store
from tests.factories import CONTRACTS, T0, FakeClock

PAIR = "0x00000000000000000000000000000000000000b1"


class FakeSource:
    def __init__(self, head: int = 0, reserves=(0, 0), failures=(0, 0)) -> None:
        self.head = head
        self.reserves = reserves
        self.failures = failures
        self.failure_calls: list[tuple[int, set[str]]] = []

    async def block_number(self) -> int:
        return self.head

    async def get_reserves(self, pair_address: str) -> tuple[int, int]:
        return self.reserves

    async def failure_counts(self, n_blocks: int, watched: set[str]) -> tuple[int, int]:
        self.failure_calls.append((n_blocks, watched))
        return self.failures


def _engine(store: Store, clock: FakeClock) -> AlertEngine:
    return AlertEngine(store, AlertConfig(), clock=clock)


# ── Market ────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_market_price_drop_against_references(store: Store) -> None:
    clock = FakeClock()
    await store.record_price_sample(1.0, Decimal(100), Decimal(100), iso(T0 - timedelta(hours=25)))
    sampler = MarketSampler(
        _engine(store, clock), store, AlertConfig(), FakeSource(),
        LedgerConfig(pair_address=PAIR), clock=clock,
    )

    records = await sampler.evaluate(Decimal(100), Decimal(88))

    by_rule = {r.rule_id: r.severity for r in records}
    assert by_rule["PRICE_DROP_24H"] == "critical"
    assert "PRICE_DROP_1H" in by_rule
    assert "LIQUIDITY_DROP" not in by_rule
    latest = await store.latest_price_sample()
    assert latest["price"] == pytest.approx(0.88)


@pytest.mark.asyncio
async def test_market_sample_is_published_with_changes(store: Store) -> None:
    clock = FakeClock()
    await store.record_price_sample(1.0, Decimal(100), Decimal(100), iso(T0 - timedelta(hours=25)))
    sampler = MarketSampler(
        _engine(store, clock), store, AlertConfig(), FakeSource(),
        LedgerConfig(pair_address=PAIR), clock=clock,
    )
    updates = sampler.updates.subscribe()

    await sampler.evaluate(Decimal(100), Decimal(88))

    update = updates.get_nowait()
    assert update.price == pytest.approx(0.88)
    assert update.reserve0 == Decimal(100)
    assert update.change_1h == pytest.approx(-12.0)
    assert update.change_24h == pytest.approx(-12.0)
    assert update.sampled_at == iso(T0)
    assert updates.empty()


@pytest.mark.asyncio
async def test_market_without_history_only_records(store: Store) -> None:
    clock = FakeClock()
    sampler = MarketSampler(
        _engine(store, clock), store, AlertConfig(), FakeSource(),
        LedgerConfig(pair_address=PAIR), clock=clock,
    )
    assert await sampler.evaluate(Decimal(100), Decimal(50)) == []
    assert await store.price_at(iso(T0)) == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_market_liquidity_drop(store: Store) -> None:
    clock = FakeClock()
    sampler = MarketSampler(
        _engine(store, clock), store, AlertConfig(), FakeSource(),
        LedgerConfig(pair_address=PAIR), clock=clock,
    )
    await sampler.evaluate(Decimal(1000), Decimal(1000))
    clock.advance(seconds=30)
    records = await sampler.evaluate(Decimal(500), Decimal(500))
    assert [r.rule_id for r in records] == ["LIQUIDITY_DROP"]


@pytest.mark.asyncio
async def test_market_sample_reads_reserves(store: Store) -> None:
    clock = FakeClock()
    source = FakeSource(reserves=(2 * 10**18, 10**18))
    sampler = MarketSampler(
        _engine(store, clock), store, AlertConfig(), source,
        LedgerConfig(pair_address=PAIR, token_decimals=18), clock=clock,
    )
    await sampler.sample()
    assert (await store.latest_price_sample())["price"] == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_market_empty_reserves_skipped(store: Store) -> None:
    clock = FakeClock()
    sampler = MarketSampler(
        _engine(store, clock), store, AlertConfig(), FakeSource(),
        LedgerConfig(pair_address=PAIR), clock=clock,
    )
    assert await sampler.evaluate(Decimal(0), Decimal(10)) == []
    assert await store.latest_price_sample() is None


# ── System ────────────────────────────────────────────────────────────────────


@pytest.fixture
def busy_host(monkeypatch):
    monkeypatch.setattr(monitors.psutil, "cpu_percent", lambda interval=None: 95.0)
    monkeypatch.setattr(monitors.psutil, "virtual_memory", lambda: SimpleNamespace(percent=40.0))


@pytest.mark.asyncio
async def test_system_sampler_host_metrics(store: Store, busy_host) -> None:
    clock = FakeClock()
    await store.record_metric("cpu_pct", 10.0, iso(T0 - timedelta(days=3)))
    sampler = SystemSampler(_engine(store, clock), store, AlertConfig(), clock=clock)

    records = await sampler.sample()

    assert [r.rule_id for r in records] == ["HIGH_CPU_USAGE"]
    assert await store.latest_metric("cpu_pct") == 95.0
    assert await store.latest_metric("memory_pct") == 40.0
    # The three-day-old sample is gone
    assert await store.prune_samples(iso(T0 - timedelta(days=1))) == 0


@pytest.mark.asyncio
async def test_system_sampler_api_health_checks(store: Store, busy_host, respx_mock) -> None:
    respx_mock.get("https://api.example/health").mock(return_value=httpx.Response(200))
    respx_mock.get("https://api.example/broken").mock(return_value=httpx.Response(502))
    respx_mock.get("https://api.example/down").mock(side_effect=httpx.ConnectError("refused"))
    clock = FakeClock()
    sampler = SystemSampler(
        _engine(store, clock), store, AlertConfig(),
        health_urls=["https://api.example/health", "https://api.example/broken", "https://api.example/down"],
        clock=clock,
    )

    records = await sampler.sample()

    errors = sorted(r.subject for r in records if r.rule_id == "API_ERROR")
    assert errors == ["https://api.example/broken", "https://api.example/down"]
    assert await store.latest_metric("latency_ms:https://api.example/health") is not None


@pytest.mark.asyncio
async def test_system_sampler_block_sync(store: Store, busy_host) -> None:
    clock = FakeClock()
    await store.set_watermark("staking:Staked", 180)
    await store.set_watermark("token:Transfer", 150)
    sampler = SystemSampler(
        _engine(store, clock), store, AlertConfig(), source=FakeSource(head=200), clock=clock
    )

    records = await sampler.sample()

    (sync,) = [r for r in records if r.rule_id == "BLOCK_SYNC_DELAY"]
    assert sync.evidence == {"head": 200, "watermark": 150, "delay": 50}


# ── Failure rate ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_failure_sampler(store: Store) -> None:
    clock = FakeClock()
    source = FakeSource(failures=(3, 10))
    sampler = FailureSampler(_engine(store, clock), store, AlertConfig(), source, dict(CONTRACTS), clock=clock)

    (record,) = await sampler.sample()

    assert record.rule_id == "HIGH_FAILURE_RATE"
    assert source.failure_calls == [(10, set(CONTRACTS.values()))]
    assert await store.latest_metric("failure_rate") == pytest.approx(0.3)


# ── Loop ──────────────────────────────────────────────────────────────────────


class FlakySampler(Sampler):
    name = "flaky"

    def __init__(self, outcomes, **kwargs) -> None:
        super().__init__(None, None, AlertConfig(), 1.0, **kwargs)
        self.outcomes = list(outcomes)
        self.calls = 0

    async def sample(self):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return []


@pytest.mark.asyncio
async def test_sampler_loop_survives_cycle_failures() -> None:
    sleeps = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 3:
            raise asyncio.CancelledError

    sampler = FlakySampler([TransientIOError("node down"), ValueError("bad"), None], sleep=fake_sleep)
    with pytest.raises(asyncio.CancelledError):
        await sampler.run()
    assert sampler.calls == 3


@pytest.mark.asyncio
async def test_sampler_loop_stops_on_store_error() -> None:
    async def fake_sleep(seconds: float) -> None:
        return None

    sampler = FlakySampler([StoreError("disk full")], sleep=fake_sleep)
    with pytest.raises(StoreError):
        await sampler.run()
