"""
Shared data models for chainpulse.

These dataclasses are the canonical data shapes passed between workers:
the listener produces LedgerEvents, the aggregator produces snapshots,
the alert engine produces AlertRecords, the broadcast layer wraps all of
them in Envelopes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, NamedTuple, Union

SEVERITIES = ("info", "warning", "high", "critical")


def severity_rank(severity: str) -> int:
    """Position of a severity in SEVERITIES; unknown values rank lowest."""
    try:
        return SEVERITIES.index(severity)
    except ValueError:
        return -1


def escalate(severity: str, steps: int = 1) -> str:
    """Raise a severity by `steps` levels, capped at critical."""
    idx = max(severity_rank(severity), 0) + steps
    return SEVERITIES[min(idx, len(SEVERITIES) - 1)]


class EventKind(str, Enum):
    """Canonical ledger event kinds."""

    STAKED = "Staked"
    UNSTAKED = "Unstaked"
    REWARD_CLAIMED = "RewardClaimed"
    REFERRAL_PAID = "ReferralPaid"
    TEAM_LEVEL_UP = "TeamLevelUp"
    NODE_ACTIVATED = "NodeActivated"
    SWAPPED = "Swapped"
    OWNERSHIP_CHANGED = "OwnershipChanged"
    TRANSFER = "Transfer"
    BURNED = "Burned"


@dataclass(frozen=True)
class LedgerEvent:
    """One observed ledger occurrence. Never mutated after commit."""

    kind: EventKind
    subject_address: str
    amount: Decimal
    tx_hash: str
    block_number: int
    observed_at: str                        # ISO8601 UTC, ingestion time
    counterparty_address: str | None = None
    log_index: int = 0
    payload: dict[str, Any] = field(default_factory=dict)
    seq: int | None = None                  # assigned by the store on commit

    @property
    def idempotency_key(self) -> tuple[str, str, str]:
        return (self.tx_hash.lower(), self.kind.value, self.subject_address.lower())

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "kind": self.kind.value,
            "subject_address": self.subject_address,
            "counterparty_address": self.counterparty_address,
            "amount": str(self.amount),
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "log_index": self.log_index,
            "observed_at": self.observed_at,
            "payload": self.payload,
        }


# ── Scopes ────────────────────────────────────────────────────────────────────

SCOPE_USER = "user"
SCOPE_GLOBAL = "global"
SCOPE_LEADERBOARD = "leaderboard"


@dataclass(frozen=True)
class Scope:
    """Recompute scope: user:<address>, global, or leaderboard:<name>."""

    kind: str
    key: str = ""

    @classmethod
    def parse(cls, raw: str) -> Scope:
        kind, _, key = raw.partition(":")
        kind = kind.strip().lower()
        if kind == SCOPE_GLOBAL and not key:
            return cls(SCOPE_GLOBAL)
        if kind == SCOPE_USER and key:
            return cls(SCOPE_USER, key.strip().lower())
        if kind == SCOPE_LEADERBOARD and key:
            return cls(SCOPE_LEADERBOARD, key.strip().lower())
        raise ValueError(f"Invalid scope {raw!r}. Use user:<address>, global, or leaderboard:<name>")

    @classmethod
    def user(cls, address: str) -> Scope:
        return cls(SCOPE_USER, address.lower())

    @classmethod
    def leaderboard(cls, name: str) -> Scope:
        return cls(SCOPE_LEADERBOARD, name)

    def __str__(self) -> str:
        return f"{self.kind}:{self.key}" if self.key else self.kind


GLOBAL_SCOPE = Scope(SCOPE_GLOBAL)


# ── Aggregate snapshots ───────────────────────────────────────────────────────


@dataclass
class UserScore:
    """Per-user score snapshot."""

    scope: str
    source_version: int
    computed_at: str
    address: str
    staking_score: Decimal = Decimal(0)
    lp_score: Decimal = Decimal(0)
    referral_score: Decimal = Decimal(0)
    node_score: Decimal = Decimal(0)
    total_score: Decimal = Decimal(0)
    rank: int | None = None
    join_time: str | None = None
    active_lines: int = 0
    staked_amount: Decimal = Decimal(0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "user_score",
            "scope": self.scope,
            "source_version": self.source_version,
            "computed_at": self.computed_at,
            "address": self.address,
            "staking_score": str(self.staking_score),
            "lp_score": str(self.lp_score),
            "referral_score": str(self.referral_score),
            "node_score": str(self.node_score),
            "total_score": str(self.total_score),
            "rank": self.rank,
            "join_time": self.join_time,
            "active_lines": self.active_lines,
            "staked_amount": str(self.staked_amount),
        }


@dataclass
class GlobalMetrics:
    """System-wide metrics snapshot."""

    scope: str
    source_version: int
    computed_at: str
    total_value_locked: Decimal = Decimal(0)
    total_users: int = 0
    total_burned: Decimal = Decimal(0)
    daily_volume: Decimal = Decimal(0)
    total_nodes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "global_metrics",
            "scope": self.scope,
            "source_version": self.source_version,
            "computed_at": self.computed_at,
            "total_value_locked": str(self.total_value_locked),
            "total_users": self.total_users,
            "total_burned": str(self.total_burned),
            "daily_volume": str(self.daily_volume),
            "total_nodes": self.total_nodes,
        }


@dataclass
class LeaderboardEntry:
    rank: int
    address: str
    score: Decimal
    staked_amount: Decimal
    join_time: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "address": self.address,
            "score": str(self.score),
            "staked_amount": str(self.staked_amount),
            "join_time": self.join_time,
        }


@dataclass
class Leaderboard:
    """Ordered top-N view for one leaderboard name."""

    scope: str
    source_version: int
    computed_at: str
    name: str
    entries: list[LeaderboardEntry] = field(default_factory=list)

    def addresses(self) -> list[str]:
        return [e.address for e in self.entries]

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "leaderboard",
            "scope": self.scope,
            "source_version": self.source_version,
            "computed_at": self.computed_at,
            "name": self.name,
            "entries": [e.to_dict() for e in self.entries],
        }


AggregateSnapshot = Union[UserScore, GlobalMetrics, Leaderboard]


def snapshot_from_dict(data: dict[str, Any]) -> AggregateSnapshot:
    """Rebuild a snapshot from its to_dict() form (cache reads)."""
    kind = data.get("type")
    if kind == "user_score":
        return UserScore(
            scope=data["scope"],
            source_version=int(data["source_version"]),
            computed_at=data["computed_at"],
            address=data["address"],
            staking_score=Decimal(data["staking_score"]),
            lp_score=Decimal(data["lp_score"]),
            referral_score=Decimal(data["referral_score"]),
            node_score=Decimal(data["node_score"]),
            total_score=Decimal(data["total_score"]),
            rank=data.get("rank"),
            join_time=data.get("join_time"),
            active_lines=int(data.get("active_lines", 0)),
            staked_amount=Decimal(data.get("staked_amount", "0")),
        )
    if kind == "global_metrics":
        return GlobalMetrics(
            scope=data["scope"],
            source_version=int(data["source_version"]),
            computed_at=data["computed_at"],
            total_value_locked=Decimal(data["total_value_locked"]),
            total_users=int(data["total_users"]),
            total_burned=Decimal(data["total_burned"]),
            daily_volume=Decimal(data["daily_volume"]),
            total_nodes=int(data.get("total_nodes", 0)),
        )
    if kind == "leaderboard":
        return Leaderboard(
            scope=data["scope"],
            source_version=int(data["source_version"]),
            computed_at=data["computed_at"],
            name=data["name"],
            entries=[
                LeaderboardEntry(
                    rank=int(e["rank"]),
                    address=e["address"],
                    score=Decimal(e["score"]),
                    staked_amount=Decimal(e["staked_amount"]),
                    join_time=e.get("join_time"),
                )
                for e in data.get("entries", [])
            ],
        )
    raise ValueError(f"Unknown snapshot type: {kind!r}")


# ── Market ────────────────────────────────────────────────────────────────────


@dataclass
class PriceUpdate:
    """One market sample of the token/quote pair, as pushed to subscribers."""

    price: float
    reserve0: Decimal
    reserve1: Decimal
    sampled_at: str
    change_1h: float | None = None
    change_24h: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "price": self.price,
            "reserve0": str(self.reserve0),
            "reserve1": str(self.reserve1),
            "change_1h": self.change_1h,
            "change_24h": self.change_24h,
            "sampled_at": self.sampled_at,
        }


# ── Alerts ────────────────────────────────────────────────────────────────────


class DedupKey(NamedTuple):
    """Identity of an alert condition for cool-down suppression."""

    rule_id: str
    subject: str
    evidence: str


@dataclass
class AlertCandidate:
    """Output of a rule: a condition that may become an AlertRecord."""

    rule_id: str
    severity: str
    message: str
    subject: str | None = None
    evidence: dict[str, Any] = field(default_factory=dict)
    dedup_token: str = ""       # normalized evidence; "" = one alert per rule+subject

    def dedup_key(self) -> DedupKey:
        return DedupKey(self.rule_id, self.subject or "", self.dedup_token)


@dataclass
class AlertRecord:
    """A persisted rule violation."""

    id: int
    rule_id: str
    severity: str
    message: str
    first_seen_at: str          # ISO8601 UTC
    subject: str | None = None
    evidence: dict[str, Any] = field(default_factory=dict)
    dedup_token: str = ""
    resolved: bool = False
    resolved_by: str | None = None
    resolved_at: str | None = None
    action_taken: str | None = None
    dispatched: dict[str, bool] = field(default_factory=dict)

    def dedup_key(self) -> DedupKey:
        return DedupKey(self.rule_id, self.subject or "", self.dedup_token)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "severity": self.severity,
            "subject": self.subject,
            "message": self.message,
            "evidence": self.evidence,
            "first_seen_at": self.first_seen_at,
            "resolved": self.resolved,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at,
            "action_taken": self.action_taken,
            "dispatched": self.dispatched,
        }

    def to_sink_payload(self) -> dict[str, Any]:
        """Fixed outbound schema shared by every alert sink."""
        return {
            "ruleId": self.rule_id,
            "severity": self.severity,
            "subject": self.subject,
            "message": self.message,
            "evidence": self.evidence,
            "timestamp": self.first_seen_at,
        }


# ── Broadcast ─────────────────────────────────────────────────────────────────


@dataclass
class Subscription:
    """One connection's interest in one topic. Never persisted."""

    connection_id: str
    topic: str
    created_at: str
    filter: dict[str, Any] | None = None

    def matches(self, payload: dict[str, Any]) -> bool:
        """Equality filter on payload fields; addresses compare case-insensitively."""
        if not self.filter:
            return True
        for key, expected in self.filter.items():
            actual = payload.get(key)
            if isinstance(expected, str) and isinstance(actual, str):
                if actual.lower() != expected.lower():
                    return False
            elif actual != expected:
                return False
        return True


@dataclass
class Envelope:
    """Server-push message sent to broadcast subscribers."""

    topic: str
    type: str                   # "snapshot" | "alert" | "event" | "price"
    payload: dict[str, Any]
    emitted_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "type": self.type,
            "payload": self.payload,
            "emittedAt": self.emitted_at,
        }
