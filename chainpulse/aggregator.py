"""
State aggregator: derives per-user scores, global metrics and leaderboards.

Recompute policy:
  - request(scope) debounces: requests for one scope within debounce_seconds
    collapse into a single execution that reads the latest committed data.
  - recompute(scope) is single-flight: one lock per scope, so a scope never
    has two executions running at once.
  - A failed execution is retried once immediately, then re-requested after
    an exponential backoff. Other scopes are unaffected.
  - Results go to the snapshot cache with their source_version (highest event
    seq incorporated); the cache refuses older versions.

Every successful recompute is published on `updates`.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from chainpulse.cache import SnapshotCache
from chainpulse.channels import Channel
from chainpulse.clock import iso, utcnow
from chainpulse.config import AggregatorConfig
from chainpulse.exceptions import StaleScopeError, StoreError
from chainpulse.logger import get_logger
from chainpulse.models import (
    GLOBAL_SCOPE,
    SCOPE_GLOBAL,
    SCOPE_LEADERBOARD,
    SCOPE_USER,
    AggregateSnapshot,
    EventKind,
    GlobalMetrics,
    Leaderboard,
    LedgerEvent,
    Scope,
    UserScore,
)
from chainpulse.scoring import (
    compute_global,
    fold_position,
    fold_positions,
    is_eligible,
    rank_entries,
    score_position,
)
from chainpulse.store import Store

log = get_logger(__name__)

USER_TRIGGERS = frozenset({
    EventKind.STAKED,
    EventKind.UNSTAKED,
    EventKind.REWARD_CLAIMED,
    EventKind.REFERRAL_PAID,
    EventKind.NODE_ACTIVATED,
})
GLOBAL_TRIGGERS = frozenset({
    EventKind.STAKED,
    EventKind.UNSTAKED,
    EventKind.SWAPPED,
    EventKind.BURNED,
    EventKind.NODE_ACTIVATED,
})

# Event kinds that feed each derivation
_USER_INPUTS = USER_TRIGGERS | {EventKind.TEAM_LEVEL_UP}
_GLOBAL_INPUTS = GLOBAL_TRIGGERS

LEADERBOARD_GLOBAL = "global"
LEADERBOARD_STAKING = "staking"
LEADERBOARDS = (LEADERBOARD_GLOBAL, LEADERBOARD_STAKING)


def scopes_for(event: LedgerEvent) -> list[Scope]:
    """Scopes whose trigger set contains this event's kind."""
    scopes: list[Scope] = []
    if event.kind in USER_TRIGGERS:
        scopes.append(Scope.user(event.subject_address))
        scopes.extend(Scope.leaderboard(name) for name in LEADERBOARDS)
    if event.kind in GLOBAL_TRIGGERS:
        scopes.append(GLOBAL_SCOPE)
    return scopes


class StateAggregator:
    """Debounced, single-flight recompute of derived state."""

    def __init__(
        self,
        store: Store,
        cache: SnapshotCache,
        config: AggregatorConfig,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._cache = cache
        self._config = config
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._sleep = sleep
        self.updates: Channel[AggregateSnapshot] = Channel("snapshots")
        self.executions: Counter[Scope] = Counter()
        self._locks: dict[Scope, asyncio.Lock] = {}
        self._pending: dict[Scope, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._last_success: dict[Scope, datetime] = {}
        self._failing_since: dict[Scope, datetime] = {}
        self._failures: Counter[Scope] = Counter()
        self._fatal: asyncio.Future | None = None

    # ──────────────────────────────────────────────────────────
    # Workers
    # ──────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Consume event-committed notifications until cancelled or fatal."""
        queue = self._store.changes.subscribe()
        self._fatal = asyncio.get_running_loop().create_future()
        log.info("aggregator_start", debounce_seconds=self._config.debounce_seconds)
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait(
                    {getter, self._fatal}, return_when=asyncio.FIRST_COMPLETED
                )
                if self._fatal in done:
                    getter.cancel()
                    self._fatal.result()
                self.on_event(getter.result())
        finally:
            self._store.changes.unsubscribe(queue)

    async def run_reconciliation(self) -> None:
        """Periodic full reconciliation timer."""
        while True:
            await self._sleep(self._config.reconcile_interval_seconds)
            await self.reconcile()

    def on_event(self, event: LedgerEvent) -> None:
        for scope in scopes_for(event):
            self.request(scope)

    async def reconcile(self) -> list[AggregateSnapshot | None]:
        """Recompute every known scope. Returns the executions' results."""
        scopes = [GLOBAL_SCOPE, *(Scope.user(a) for a in await self._store.list_subjects())]
        scopes.extend(Scope.leaderboard(name) for name in LEADERBOARDS)
        pruned = await self._cache.prune()
        log.info("aggregator_reconcile", scopes=len(scopes), cache_pruned=pruned)
        return list(await asyncio.gather(*(self.request(s) for s in scopes)))

    # ──────────────────────────────────────────────────────────
    # Scheduling
    # ──────────────────────────────────────────────────────────

    def request(self, scope: Scope) -> asyncio.Task:
        """
        Schedule a debounced recompute of `scope`.

        Requests arriving before the scheduled execution starts return the
        same task. Once it starts, a new request schedules a fresh execution.
        """
        task = self._pending.get(scope)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._debounced(scope), name=f"recompute:{scope}")
        self._pending[scope] = task
        self._track(task)
        return task

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for all scheduled and in-flight executions (tests, shutdown)."""
        while True:
            tasks = [t for t in self._background if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _debounced(self, scope: Scope) -> AggregateSnapshot | None:
        await self._sleep(self._config.debounce_seconds)
        if self._pending.get(scope) is asyncio.current_task():
            del self._pending[scope]
        try:
            return await self._run_with_retry(scope)
        except StoreError as e:
            if self._fatal is not None and not self._fatal.done():
                self._fatal.set_exception(e)
            raise

    async def _run_with_retry(self, scope: Scope) -> AggregateSnapshot | None:
        for attempt in (1, 2):
            try:
                snapshot = await self.recompute(scope)
            except StoreError:
                raise
            except Exception as e:
                log.warning(
                    "aggregator_recompute_failed",
                    scope=str(scope),
                    attempt=attempt,
                    error=str(e),
                )
                continue
            self._failures.pop(scope, None)
            self._failing_since.pop(scope, None)
            return snapshot

        self._failures[scope] += 1
        self._failing_since.setdefault(scope, self._clock())
        self._schedule_retry(scope)
        return None

    def _schedule_retry(self, scope: Scope) -> None:
        delay = min(
            self._config.retry_backoff_seconds * (2 ** (self._failures[scope] - 1)),
            self._config.retry_backoff_max_seconds,
        )
        log.info("aggregator_retry_scheduled", scope=str(scope), delay_seconds=delay)

        async def _later() -> None:
            await self._sleep(delay)
            self.request(scope)

        self._track(asyncio.create_task(_later(), name=f"retry:{scope}"))

    # ──────────────────────────────────────────────────────────
    # Recompute
    # ──────────────────────────────────────────────────────────

    async def recompute(self, scope: Scope) -> AggregateSnapshot | None:
        """
        Compute, cache and publish the snapshot for `scope` now.

        Returns None if the cache already holds a newer version.
        """
        lock = self._locks.setdefault(scope, asyncio.Lock())
        async with lock:
            self.executions[scope] += 1
            version = await self._store.latest_seq()
            now = self._clock()

            if scope.kind == SCOPE_USER:
                snapshot: AggregateSnapshot = await self._compute_user(scope, version, now)
            elif scope.kind == SCOPE_GLOBAL:
                snapshot = await self._compute_global(scope, version, now)
            elif scope.kind == SCOPE_LEADERBOARD:
                snapshot = await self._compute_leaderboard(scope, version, now)
            else:
                raise ValueError(f"Unknown scope kind: {scope.kind}")

            try:
                await self._cache.set_if_newer(snapshot)
            except StaleScopeError as e:
                log.info("aggregator_stale_result", **e.details)
                return None

            self._last_success[scope] = now
            self.updates.publish(snapshot)
            log.debug("aggregator_snapshot_updated", scope=str(scope), source_version=version)
            return snapshot

    def is_stale(self, scope: Scope) -> bool:
        """True when a failing scope has gone more than 2×TTL without success."""
        failing_since = self._failing_since.get(scope)
        if failing_since is None:
            return False
        reference = self._last_success.get(scope, failing_since)
        return self._clock() - reference > timedelta(seconds=2 * self._ttl_seconds)

    def stale_scopes(self) -> list[Scope]:
        return [s for s in self._failing_since if self.is_stale(s)]

    async def snapshot(self, scope: Scope) -> AggregateSnapshot | None:
        """Cached snapshot for `scope`, recomputing on a cache miss."""
        cached = await self._cache.get(str(scope))
        if cached is not None:
            return cached
        return await self.recompute(scope)

    async def _compute_user(self, scope: Scope, version: int, now: datetime) -> UserScore:
        events = await self._store.list_events(
            address=scope.key, kinds=_USER_INPUTS, up_to_seq=version
        )
        pos = fold_position(scope.key, events)
        breakdown = score_position(pos, self._config)

        rank = None
        board = await self._cache.get(str(Scope.leaderboard(LEADERBOARD_GLOBAL)))
        if isinstance(board, Leaderboard):
            rank = next((e.rank for e in board.entries if e.address == pos.address), None)

        return UserScore(
            scope=str(scope),
            source_version=version,
            computed_at=iso(now),
            address=pos.address,
            staking_score=breakdown.staking,
            lp_score=breakdown.lp,
            referral_score=breakdown.referral,
            node_score=breakdown.node,
            total_score=breakdown.total,
            rank=rank,
            join_time=pos.join_time,
            active_lines=pos.active_lines,
            staked_amount=pos.staked + pos.lp_amount,
        )

    async def _compute_global(self, scope: Scope, version: int, now: datetime) -> GlobalMetrics:
        events = await self._store.list_events(kinds=_GLOBAL_INPUTS, up_to_seq=version)
        totals = compute_global(events, now)
        return GlobalMetrics(
            scope=str(scope),
            source_version=version,
            computed_at=iso(now),
            total_value_locked=totals.total_value_locked,
            total_users=totals.total_users,
            total_burned=totals.total_burned,
            daily_volume=totals.daily_volume,
            total_nodes=totals.total_nodes,
        )

    async def _compute_leaderboard(self, scope: Scope, version: int, now: datetime) -> Leaderboard:
        events = await self._store.list_events(kinds=_USER_INPUTS, up_to_seq=version)
        positions = [
            p for p in fold_positions(events).values()
            if not self.is_stale(Scope.user(p.address))
        ]

        if scope.key == LEADERBOARD_GLOBAL:
            scored = [
                (p, score_position(p, self._config).total)
                for p in positions if is_eligible(p, self._config)
            ]
            size = self._config.leaderboard_size
        elif scope.key == LEADERBOARD_STAKING:
            scored = [
                (p, score_position(p, self._config).staking)
                for p in positions if p.staked > 0
            ]
            size = self._config.staking_leaderboard_size
        else:
            raise ValueError(f"Unknown leaderboard: {scope.key!r}")

        return Leaderboard(
            scope=str(scope),
            source_version=version,
            computed_at=iso(now),
            name=scope.key,
            entries=rank_entries(scored, size),
        )
