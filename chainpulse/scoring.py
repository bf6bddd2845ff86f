"""Score and metric derivation from committed ledger events.

Per-user score:
  total = staking_weight × staked + lp_weight × lp + referral_weight × referrals
          + Σ node_tier_score(tier)

All functions here are pure — no I/O, no side effects. The aggregator feeds
them events read from the store and wraps the results in snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from chainpulse.clock import iso
from chainpulse.config import AggregatorConfig
from chainpulse.models import EventKind, LeaderboardEntry, LedgerEvent

ZERO = Decimal(0)

# Sorts after any ISO timestamp, so users without a join time rank last on ties
_NO_JOIN_TIME = "\uffff"


@dataclass
class Position:
    """A user's standing folded from their ledger events."""

    address: str
    staked: Decimal = ZERO
    lp_amount: Decimal = ZERO
    rewards_claimed: Decimal = ZERO
    referees: set[str] = field(default_factory=set)
    direct_lines: set[str] = field(default_factory=set)
    node_tiers: dict[int, int] = field(default_factory=dict)  # token_id → tier
    team_level: int = 0
    join_time: str | None = None           # ledger block time of the first stake

    @property
    def referral_count(self) -> int:
        return len(self.referees)

    @property
    def active_lines(self) -> int:
        return len(self.direct_lines)


def fold_position(address: str, events: Iterable[LedgerEvent]) -> Position:
    """Replay `address`'s events (as subject) in seq order into a Position."""
    address = address.lower()
    pos = Position(address=address)

    for ev in events:
        if ev.subject_address != address:
            continue

        if ev.kind == EventKind.STAKED:
            if ev.payload.get("is_lp"):
                pos.lp_amount += ev.amount
            else:
                pos.staked += ev.amount
            joined = ev.payload.get("block_time") or ev.observed_at
            if pos.join_time is None or joined < pos.join_time:
                pos.join_time = joined

        elif ev.kind == EventKind.UNSTAKED:
            # Withdrawals drain single-sided stake first, then LP.
            remaining = ev.amount
            take = min(remaining, pos.staked)
            pos.staked -= take
            remaining -= take
            pos.lp_amount = max(pos.lp_amount - remaining, ZERO)

        elif ev.kind == EventKind.REWARD_CLAIMED:
            pos.rewards_claimed += ev.amount

        elif ev.kind == EventKind.REFERRAL_PAID and ev.counterparty_address:
            pos.referees.add(ev.counterparty_address)
            if int(ev.payload.get("level", 1)) == 1:
                pos.direct_lines.add(ev.counterparty_address)

        elif ev.kind == EventKind.NODE_ACTIVATED:
            pos.node_tiers[int(ev.payload.get("token_id", 0))] = int(ev.payload.get("tier", 0))

        elif ev.kind == EventKind.TEAM_LEVEL_UP:
            pos.team_level = max(pos.team_level, int(ev.payload.get("team_level", 0)))

    return pos


def fold_positions(events: Iterable[LedgerEvent]) -> dict[str, Position]:
    """Group events by subject and fold each group."""
    grouped: dict[str, list[LedgerEvent]] = {}
    for ev in events:
        grouped.setdefault(ev.subject_address, []).append(ev)
    return {addr: fold_position(addr, evs) for addr, evs in grouped.items()}


def node_score(tier: int, tier_scores: dict[int, int]) -> Decimal:
    """Score for one activated node; unknown tiers score 0."""
    return Decimal(tier_scores.get(tier, 0))


@dataclass
class ScoreBreakdown:
    staking: Decimal
    lp: Decimal
    referral: Decimal
    node: Decimal

    @property
    def total(self) -> Decimal:
        return self.staking + self.lp + self.referral + self.node


def score_position(pos: Position, config: AggregatorConfig) -> ScoreBreakdown:
    return ScoreBreakdown(
        staking=Decimal(str(config.staking_weight)) * pos.staked,
        lp=Decimal(str(config.lp_weight)) * pos.lp_amount,
        referral=Decimal(str(config.referral_weight)) * pos.referral_count,
        node=sum(
            (node_score(tier, config.node_tier_scores) for tier in pos.node_tiers.values()),
            ZERO,
        ),
    )


def is_eligible(pos: Position, config: AggregatorConfig) -> bool:
    """Leaderboard eligibility floors."""
    return (
        pos.staked + pos.lp_amount >= Decimal(str(config.min_staked))
        and pos.active_lines >= config.min_active_lines
        and (pos.staked + pos.lp_amount) > 0
    )


def rank_entries(
    scored: Iterable[tuple[Position, Decimal]],
    size: int,
) -> list[LeaderboardEntry]:
    """
    Order (position, score) pairs into a top-`size` leaderboard.

    Ties are broken by earliest join_time, then address.
    """
    ordered = sorted(
        scored,
        key=lambda ps: (-ps[1], ps[0].join_time or _NO_JOIN_TIME, ps[0].address),
    )
    return [
        LeaderboardEntry(
            rank=i + 1,
            address=pos.address,
            score=score,
            staked_amount=pos.staked + pos.lp_amount,
            join_time=pos.join_time,
        )
        for i, (pos, score) in enumerate(ordered[:size])
    ]


@dataclass
class GlobalTotals:
    total_value_locked: Decimal = ZERO
    total_users: int = 0
    total_burned: Decimal = ZERO
    daily_volume: Decimal = ZERO
    total_nodes: int = 0


def compute_global(events: Iterable[LedgerEvent], now: datetime) -> GlobalTotals:
    """System-wide totals. daily_volume covers swaps observed in the last 24h."""
    totals = GlobalTotals()
    stakers: set[str] = set()
    nodes: set[int] = set()
    day_ago = iso(now - timedelta(hours=24))

    for ev in events:
        if ev.kind == EventKind.STAKED:
            totals.total_value_locked += ev.amount
            stakers.add(ev.subject_address)
        elif ev.kind == EventKind.UNSTAKED:
            totals.total_value_locked -= ev.amount
        elif ev.kind == EventKind.BURNED:
            totals.total_burned += ev.amount
        elif ev.kind == EventKind.SWAPPED:
            if ev.observed_at >= day_ago:
                totals.daily_volume += ev.amount
        elif ev.kind == EventKind.NODE_ACTIVATED:
            nodes.add(int(ev.payload.get("token_id", 0)))

    totals.total_value_locked = max(totals.total_value_locked, ZERO)
    totals.total_users = len(stakers)
    totals.total_nodes = len(nodes)
    return totals
