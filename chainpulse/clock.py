"""UTC time helpers. All persisted timestamps use iso() so they sort lexically."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return iso(utcnow())


def parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def from_timestamp(seconds: int) -> str:
    """iso() of a unix timestamp (ledger block times)."""
    return iso(datetime.fromtimestamp(seconds, tz=timezone.utc))
