"""Tests for chainpulse/aggregator.py — debounced, single-flight recompute."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from chainpulse.aggregator import StateAggregator, scopes_for
from chainpulse.cache import SnapshotCache
from chainpulse.config import AggregatorConfig
from chainpulse.exceptions import StoreError
from chainpulse.models import GLOBAL_SCOPE, EventKind, GlobalMetrics, Leaderboard, Scope, UserScore
from chainpulse.store import Store
from tests.factories import T0, FakeClock, make_event

GLOBAL_BOARD = Scope.leaderboard("global")
STAKING_BOARD = Scope.leaderboard("staking")


def _aggregator(store, cache, clock=None, **config) -> StateAggregator:
    config.setdefault("debounce_seconds", 0.05)
    config.setdefault("retry_backoff_seconds", 0.01)
    return StateAggregator(
        store, cache, AggregatorConfig(**config), ttl_seconds=300, clock=clock or FakeClock()
    )


async def _ingest(store: Store, aggregator: StateAggregator, *events) -> None:
    for event in events:
        committed = await store.upsert_event(event)
        aggregator.on_event(committed)


# ── Trigger sets ──────────────────────────────────────────────────────────────


def test_scopes_for_staked_touches_user_boards_and_global() -> None:
    scopes = scopes_for(make_event(EventKind.STAKED, subject="0xaaa"))
    assert set(scopes) == {Scope.user("0xaaa"), GLOBAL_BOARD, STAKING_BOARD, GLOBAL_SCOPE}


def test_scopes_for_transfer_is_empty() -> None:
    assert scopes_for(make_event(EventKind.TRANSFER)) == []


def test_scopes_for_swap_is_global_only() -> None:
    assert scopes_for(make_event(EventKind.SWAPPED)) == [GLOBAL_SCOPE]


# ── Recompute ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_scenario_a_staking_score(store: Store, cache: SnapshotCache) -> None:
    """A single Staked(500) gives the user a staking score of 500."""
    aggregator = _aggregator(store, cache)
    await store.upsert_event(make_event(EventKind.STAKED, subject="0xAAA", amount=500))

    snapshot = await aggregator.recompute(Scope.user("0xAAA"))

    assert isinstance(snapshot, UserScore)
    assert snapshot.staking_score == Decimal(500)
    assert snapshot.source_version == 1
    assert (await cache.get("user:0xaaa")).staking_score == Decimal(500)


@pytest.mark.asyncio
async def test_scenario_b_one_leaderboard_recompute(store: Store, cache: SnapshotCache) -> None:
    """Two stakes inside the debounce window → one leaderboard execution, bigger stake first."""
    aggregator = _aggregator(store, cache)
    await _ingest(
        store, aggregator,
        make_event(EventKind.STAKED, subject="0xaaa", amount=500),
        make_event(EventKind.STAKED, subject="0xbbb", amount=5000),
    )
    await aggregator.drain()

    assert aggregator.executions[GLOBAL_BOARD] == 1
    board = await cache.get(str(GLOBAL_BOARD))
    assert isinstance(board, Leaderboard)
    assert board.addresses() == ["0xbbb", "0xaaa"]
    assert board.source_version == 2


@pytest.mark.asyncio
async def test_debounce_collapses_requests(store: Store, cache: SnapshotCache) -> None:
    aggregator = _aggregator(store, cache)
    tasks = [aggregator.request(GLOBAL_SCOPE) for _ in range(5)]
    assert all(t is tasks[0] for t in tasks)

    await store.upsert_event(make_event(EventKind.STAKED, amount=10))
    snapshot = await tasks[0]

    assert aggregator.executions[GLOBAL_SCOPE] == 1
    # The execution reads the data committed during the window
    assert snapshot.total_value_locked == Decimal(10)


@pytest.mark.asyncio
async def test_single_flight_per_scope(store: Store, cache: SnapshotCache) -> None:
    aggregator = _aggregator(store, cache)
    running = 0
    peak = 0
    original = aggregator._compute_global

    async def slow_compute(scope, version, now):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1
        return await original(scope, version, now)

    aggregator._compute_global = slow_compute
    await asyncio.gather(*(aggregator.recompute(GLOBAL_SCOPE) for _ in range(4)))

    assert peak == 1
    assert aggregator.executions[GLOBAL_SCOPE] == 4


@pytest.mark.asyncio
async def test_published_on_updates(store: Store, cache: SnapshotCache) -> None:
    aggregator = _aggregator(store, cache)
    queue = aggregator.updates.subscribe()
    await aggregator.recompute(GLOBAL_SCOPE)
    assert isinstance(queue.get_nowait(), GlobalMetrics)


@pytest.mark.asyncio
async def test_stale_result_is_discarded(store: Store, cache: SnapshotCache) -> None:
    aggregator = _aggregator(store, cache)
    await store.upsert_event(make_event(EventKind.STAKED, amount=10))
    await cache.set_if_newer(
        GlobalMetrics(
            scope="global", source_version=99, computed_at="x",
            total_value_locked=Decimal(1), total_users=1,
            total_burned=Decimal(0), daily_volume=Decimal(0),
        )
    )
    queue = aggregator.updates.subscribe()

    assert await aggregator.recompute(GLOBAL_SCOPE) is None
    assert queue.empty()
    assert (await cache.get("global")).source_version == 99


@pytest.mark.asyncio
async def test_snapshot_falls_back_to_recompute(store: Store, cache: SnapshotCache) -> None:
    aggregator = _aggregator(store, cache)
    await store.upsert_event(make_event(EventKind.STAKED, subject="0xaaa", amount=7))
    snapshot = await aggregator.snapshot(Scope.user("0xaaa"))
    assert snapshot.staked_amount == Decimal(7)
    assert aggregator.executions[Scope.user("0xaaa")] == 1

    await aggregator.snapshot(Scope.user("0xaaa"))
    assert aggregator.executions[Scope.user("0xaaa")] == 1


@pytest.mark.asyncio
async def test_user_rank_comes_from_cached_leaderboard(store: Store, cache: SnapshotCache) -> None:
    aggregator = _aggregator(store, cache)
    await store.upsert_event(make_event(EventKind.STAKED, subject="0xaaa", amount=500))
    await store.upsert_event(make_event(EventKind.STAKED, subject="0xbbb", amount=5000))

    await aggregator.recompute(GLOBAL_BOARD)
    user = await aggregator.recompute(Scope.user("0xaaa"))
    assert user.rank == 2


@pytest.mark.asyncio
async def test_staking_leaderboard_uses_stake_only(store: Store, cache: SnapshotCache) -> None:
    aggregator = _aggregator(store, cache, referral_weight=100_000)
    await store.upsert_event(make_event(EventKind.STAKED, subject="0xaaa", amount=500))
    await store.upsert_event(make_event(EventKind.STAKED, subject="0xbbb", amount=100))
    await store.upsert_event(
        make_event(EventKind.REFERRAL_PAID, subject="0xbbb", counterparty="0xccc", amount=1, level=1)
    )

    staking = await aggregator.recompute(STAKING_BOARD)
    overall = await aggregator.recompute(GLOBAL_BOARD)
    assert staking.addresses() == ["0xaaa", "0xbbb"]
    assert overall.addresses() == ["0xbbb", "0xaaa"]


@pytest.mark.asyncio
async def test_global_metrics(store: Store, cache: SnapshotCache) -> None:
    clock = FakeClock()
    aggregator = _aggregator(store, cache, clock=clock)
    await store.upsert_event(make_event(EventKind.STAKED, subject="0xaaa", amount=500))
    await store.upsert_event(make_event(EventKind.STAKED, subject="0xbbb", amount=300))
    await store.upsert_event(make_event(EventKind.UNSTAKED, subject="0xaaa", amount=100))
    await store.upsert_event(make_event(EventKind.BURNED, subject="0xaaa", amount=40))
    await store.upsert_event(make_event(EventKind.SWAPPED, amount=20, observed_at=T0 - timedelta(hours=1)))
    await store.upsert_event(make_event(EventKind.SWAPPED, amount=99, observed_at=T0 - timedelta(hours=30)))
    await store.upsert_event(make_event(EventKind.NODE_ACTIVATED, subject="0xaaa", token_id=1, tier=2))

    metrics = await aggregator.recompute(GLOBAL_SCOPE)
    assert metrics.total_value_locked == Decimal(700)
    assert metrics.total_users == 2
    assert metrics.total_burned == Decimal(40)
    assert metrics.daily_volume == Decimal(20)
    assert metrics.total_nodes == 1


# ── Failure handling ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_failed_scope_retries_and_goes_stale(store: Store, cache: SnapshotCache) -> None:
    clock = FakeClock()
    aggregator = _aggregator(store, cache, clock=clock, retry_backoff_seconds=60)
    calls = 0

    async def broken(scope, version, now):
        nonlocal calls
        calls += 1
        raise RuntimeError("boom")

    aggregator._compute_global = broken
    assert await aggregator.request(GLOBAL_SCOPE) is None
    assert calls == 2  # first attempt plus one immediate retry
    assert not aggregator.is_stale(GLOBAL_SCOPE)

    clock.advance(seconds=601)
    assert aggregator.is_stale(GLOBAL_SCOPE)
    assert aggregator.stale_scopes() == [GLOBAL_SCOPE]

    # Other scopes are unaffected
    assert await aggregator.recompute(GLOBAL_BOARD) is not None
    for task in list(aggregator._background):
        task.cancel()


@pytest.mark.asyncio
async def test_store_error_stops_run(store: Store, cache: SnapshotCache) -> None:
    aggregator = _aggregator(store, cache, debounce_seconds=0)

    async def broken(scope, version, now):
        raise StoreError("disk full")

    aggregator._compute_global = broken
    runner = asyncio.create_task(aggregator.run())
    await asyncio.sleep(0)
    await store.upsert_event(make_event(EventKind.SWAPPED, amount=1))

    with pytest.raises(StoreError):
        await asyncio.wait_for(runner, timeout=1)
