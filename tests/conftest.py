"""Pytest fixtures shared across all chainpulse tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from chainpulse.cache import SnapshotCache
from chainpulse.config import (
    AggregatorConfig,
    AlertConfig,
    CacheConfig,
    ChainpulseConfig,
    LedgerConfig,
    StoreConfig,
)
from chainpulse.store import Store
from tests.factories import CONTRACTS, FakeClock


# ── Config fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def sample_config() -> ChainpulseConfig:
    """Config pointing at in-memory databases with fast timings."""
    return ChainpulseConfig(
        ledger=LedgerConfig(
            ws_url="wss://node.example/ws",
            http_url="https://node.example/rpc",
            contracts=dict(CONTRACTS),
            pair_address="0x00000000000000000000000000000000000000b1",
            start_block=100,
            getlogs_chunk_blocks=10,
        ),
        store=StoreConfig(path=":memory:"),
        cache=CacheConfig(path=":memory:", ttl_seconds=300),
        aggregator=AggregatorConfig(debounce_seconds=0.05, retry_backoff_seconds=0.01),
        alert=AlertConfig(cooldown_minutes=60),
    )


# ── Storage fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def store() -> Store:
    """Fresh in-memory event store."""
    s = Store(":memory:")
    await s.connect()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def cache(clock: FakeClock) -> SnapshotCache:
    """In-memory snapshot cache driven by the fake clock."""
    c = SnapshotCache(":memory:", ttl_seconds=300, clock=clock)
    await c.connect()
    yield c
    await c.close()
