"""Canonical event store for chainpulse.

Append-only ledger event log plus the small amount of operational state the
pipeline must survive restarts with: per-subscription watermarks, alert
records, and market/metric samples. All operations are async (aiosqlite).

Schema:
  - ledger_events: normalized ledger events, UNIQUE on the idempotency key
  - watermarks: lastProcessedBlock per listener subscription
  - alerts: alert records (mutated only by operator resolve)
  - price_samples: pair price/reserve history for price-delta rules
  - metric_samples: numeric metric history (cpu, memory, tvl, latency)

Every committed event is published on `Store.changes`, the change-notification
feed the aggregator and alert engine consume.
"""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

from chainpulse.channels import Channel
from chainpulse.clock import now_iso
from chainpulse.exceptions import DuplicateKeyError, NotFoundError, StoreError
from chainpulse.models import AlertCandidate, AlertRecord, DedupKey, EventKind, LedgerEvent

DEFAULT_STORE_PATH = Path.home() / ".chainpulse" / "events.db"

# SQL schema, applied on connect if tables don't exist
_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS ledger_events (
    seq                  INTEGER PRIMARY KEY AUTOINCREMENT,
    kind                 TEXT NOT NULL,
    subject_address      TEXT NOT NULL,
    counterparty_address TEXT,
    amount               TEXT NOT NULL,
    tx_hash              TEXT NOT NULL,
    block_number         INTEGER NOT NULL,
    log_index            INTEGER NOT NULL DEFAULT 0,
    observed_at          TEXT NOT NULL,
    payload              TEXT NOT NULL DEFAULT '{}',
    UNIQUE(tx_hash, kind, subject_address)
);

CREATE TABLE IF NOT EXISTS watermarks (
    subscription TEXT PRIMARY KEY,
    block_number INTEGER NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS alerts (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id       TEXT NOT NULL,
    severity      TEXT NOT NULL CHECK (severity IN ('info', 'warning', 'high', 'critical')),
    subject       TEXT NOT NULL DEFAULT '',
    message       TEXT NOT NULL,
    evidence      TEXT NOT NULL DEFAULT '{}',
    dedup_token   TEXT NOT NULL DEFAULT '',
    first_seen_at TEXT NOT NULL,
    resolved      INTEGER NOT NULL DEFAULT 0,
    resolved_by   TEXT,
    resolved_at   TEXT,
    action_taken  TEXT,
    dispatched    TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS price_samples (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    price      REAL NOT NULL,
    reserve0   TEXT NOT NULL DEFAULT '0',
    reserve1   TEXT NOT NULL DEFAULT '0',
    sampled_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metric_samples (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    name       TEXT NOT NULL,
    value      REAL NOT NULL,
    sampled_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_subject ON ledger_events(subject_address);
CREATE INDEX IF NOT EXISTS idx_events_kind ON ledger_events(kind);
CREATE INDEX IF NOT EXISTS idx_alerts_dedup ON alerts(rule_id, subject, dedup_token, resolved);
CREATE INDEX IF NOT EXISTS idx_alerts_seen ON alerts(first_seen_at);
CREATE INDEX IF NOT EXISTS idx_prices_at ON price_samples(sampled_at);
CREATE INDEX IF NOT EXISTS idx_metrics_name ON metric_samples(name, sampled_at);
"""

SCHEMA_VERSION = 1


class Store:
    """
    Async SQLite canonical store.

    Usage:
        store = Store(":memory:")
        await store.connect()
        committed = await store.upsert_event(event)
        await store.close()

    Or as async context manager:
        async with Store(path) as store:
            ...
    """

    def __init__(self, db_path: str = str(DEFAULT_STORE_PATH)) -> None:
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        # Serializes execute+commit pairs on the shared connection
        self._write_lock = asyncio.Lock()
        self.changes: Channel[LedgerEvent] = Channel("ledger_events")

    async def connect(self) -> None:
        """Open DB connection and run schema migrations."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._apply_schema()
        except Exception as e:
            raise StoreError(f"Failed to connect to event store: {e}") from e

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "Store":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ──────────────────────────────────────────────────────────
    # Ledger events
    # ──────────────────────────────────────────────────────────

    async def upsert_event(self, event: LedgerEvent) -> LedgerEvent | None:
        """
        Insert an event unless its idempotency key already exists.

        Returns the committed event (with `seq` set) on first observation,
        None when the key was already present. Committed events are published
        on `self.changes`.
        """
        try:
            committed = await self.insert_event(event)
        except DuplicateKeyError:
            return None
        self.changes.publish(committed)
        return committed

    async def insert_event(self, event: LedgerEvent) -> LedgerEvent:
        """
        Insert a new event and return it with its `seq`.

        Raises:
            DuplicateKeyError: the idempotency key is already stored.
            StoreError: any other database failure.
        """
        assert self._conn is not None
        tx_hash, kind, subject = event.idempotency_key
        counterparty = event.counterparty_address.lower() if event.counterparty_address else None

        try:
            async with self._write_lock:
                async with self._conn.execute(
                    """
                    INSERT INTO ledger_events
                    (kind, subject_address, counterparty_address, amount, tx_hash,
                     block_number, log_index, observed_at, payload)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(tx_hash, kind, subject_address) DO NOTHING
                    """,
                    (
                        kind,
                        subject,
                        counterparty,
                        str(event.amount),
                        tx_hash,
                        event.block_number,
                        event.log_index,
                        event.observed_at,
                        json.dumps(event.payload, sort_keys=True, default=str),
                    ),
                ) as cursor:
                    inserted = cursor.rowcount
                    seq = cursor.lastrowid
                await self._conn.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"Failed to insert ledger event: {e}") from e

        if inserted == 0:
            raise DuplicateKeyError(
                "Ledger event already stored",
                details={"tx_hash": tx_hash, "kind": kind, "subject": subject},
            )

        return LedgerEvent(
            kind=event.kind,
            subject_address=subject,
            counterparty_address=counterparty,
            amount=event.amount,
            tx_hash=tx_hash,
            block_number=event.block_number,
            log_index=event.log_index,
            observed_at=event.observed_at,
            payload=dict(event.payload),
            seq=seq,
        )

    async def latest_seq(self) -> int:
        """Highest committed sequence number (0 when empty)."""
        assert self._conn is not None
        async with self._conn.execute("SELECT MAX(seq) AS seq FROM ledger_events") as cursor:
            row = await cursor.fetchone()
        return int(row["seq"] or 0) if row else 0

    async def count_events(self) -> int:
        assert self._conn is not None
        async with self._conn.execute("SELECT COUNT(*) AS cnt FROM ledger_events") as cursor:
            row = await cursor.fetchone()
        return int(row["cnt"]) if row else 0

    async def list_events(
        self,
        address: str | None = None,
        kinds: Iterable[EventKind] | None = None,
        up_to_seq: int | None = None,
        since: str | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[LedgerEvent]:
        """List committed events with optional filters, ordered by seq."""
        assert self._conn is not None

        query = "SELECT * FROM ledger_events"
        params: list[Any] = []
        conditions: list[str] = []

        if address:
            conditions.append("(subject_address = ? OR counterparty_address = ?)")
            params.extend([address.lower(), address.lower()])
        kind_values = [k.value for k in kinds] if kinds is not None else None
        if kind_values is not None:
            if not kind_values:
                return []
            conditions.append(f"kind IN ({','.join('?' * len(kind_values))})")
            params.extend(kind_values)
        if up_to_seq is not None:
            conditions.append("seq <= ?")
            params.append(up_to_seq)
        if since:
            conditions.append("observed_at >= ?")
            params.append(since)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY seq DESC" if newest_first else " ORDER BY seq ASC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        events = []
        async with self._conn.execute(query, params) as cursor:
            async for row in cursor:
                events.append(_row_to_event(row))
        return events

    async def count_transfers(self, from_addr: str, to_addr: str, since: str) -> int:
        """Transfers from `from_addr` to `to_addr` observed at or after `since`."""
        assert self._conn is not None
        async with self._conn.execute(
            """
            SELECT COUNT(*) AS cnt FROM ledger_events
            WHERE kind = ? AND subject_address = ? AND counterparty_address = ?
            AND observed_at >= ?
            """,
            (EventKind.TRANSFER.value, from_addr.lower(), to_addr.lower(), since),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row["cnt"]) if row else 0

    async def list_subjects(self) -> list[str]:
        """Every address that appears as an event subject."""
        assert self._conn is not None
        subjects = []
        async with self._conn.execute(
            "SELECT DISTINCT subject_address FROM ledger_events ORDER BY subject_address"
        ) as cursor:
            async for row in cursor:
                subjects.append(row["subject_address"])
        return subjects

    # ──────────────────────────────────────────────────────────
    # Watermarks
    # ──────────────────────────────────────────────────────────

    async def get_watermark(self, subscription: str) -> int | None:
        """Last fully processed block for a listener subscription."""
        assert self._conn is not None
        async with self._conn.execute(
            "SELECT block_number FROM watermarks WHERE subscription = ?",
            (subscription,),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row["block_number"]) if row else None

    async def set_watermark(self, subscription: str, block_number: int) -> None:
        """Advance a watermark. Never moves backwards."""
        assert self._conn is not None
        try:
            async with self._write_lock:
                await self._conn.execute(
                    """
                    INSERT INTO watermarks (subscription, block_number, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(subscription) DO UPDATE SET
                        block_number = excluded.block_number,
                        updated_at = excluded.updated_at
                    WHERE excluded.block_number > watermarks.block_number
                    """,
                    (subscription, block_number, now_iso()),
                )
                await self._conn.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"Failed to persist watermark: {e}") from e

    async def list_watermarks(self) -> list[dict[str, Any]]:
        assert self._conn is not None
        rows = []
        async with self._conn.execute(
            "SELECT * FROM watermarks ORDER BY subscription"
        ) as cursor:
            async for row in cursor:
                rows.append(dict(row))
        return rows

    # ──────────────────────────────────────────────────────────
    # Alerts
    # ──────────────────────────────────────────────────────────

    async def save_alert(self, candidate: AlertCandidate, first_seen_at: str) -> AlertRecord:
        """Persist a new unresolved alert. Returns the record with its id."""
        assert self._conn is not None
        async with self._write_lock:
            async with self._conn.execute(
                """
                INSERT INTO alerts
                (rule_id, severity, subject, message, evidence, dedup_token, first_seen_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    candidate.rule_id,
                    candidate.severity,
                    candidate.subject or "",
                    candidate.message,
                    json.dumps(candidate.evidence, sort_keys=True, default=str),
                    candidate.dedup_token,
                    first_seen_at,
                ),
            ) as cursor:
                row_id = cursor.lastrowid
            await self._conn.commit()

        return AlertRecord(
            id=row_id,
            rule_id=candidate.rule_id,
            severity=candidate.severity,
            subject=candidate.subject,
            message=candidate.message,
            evidence=json.loads(json.dumps(candidate.evidence, default=str)),
            dedup_token=candidate.dedup_token,
            first_seen_at=first_seen_at,
        )

    async def find_unresolved_alert(self, key: DedupKey, since: str) -> AlertRecord | None:
        """Most recent unresolved alert for `key` first seen at or after `since`."""
        assert self._conn is not None
        async with self._conn.execute(
            """
            SELECT * FROM alerts
            WHERE rule_id = ? AND subject = ? AND dedup_token = ?
            AND resolved = 0 AND first_seen_at >= ?
            ORDER BY first_seen_at DESC LIMIT 1
            """,
            (key.rule_id, key.subject, key.evidence, since),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_alert(row) if row else None

    async def get_alert(self, alert_id: int) -> AlertRecord:
        """Raises NotFoundError if no alert has this id."""
        assert self._conn is not None
        async with self._conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)) as cursor:
            row = await cursor.fetchone()
        if not row:
            raise NotFoundError(f"Alert {alert_id} not found", details={"alert_id": alert_id})
        return _row_to_alert(row)

    async def mark_alert_resolved(
        self, alert_id: int, action_taken: str, operator: str, resolved_at: str
    ) -> bool:
        """Resolve an unresolved alert. Returns False if it was not unresolved."""
        assert self._conn is not None
        async with self._write_lock:
            async with self._conn.execute(
                """
                UPDATE alerts
                SET resolved = 1, resolved_by = ?, resolved_at = ?, action_taken = ?
                WHERE id = ? AND resolved = 0
                """,
                (operator, resolved_at, action_taken, alert_id),
            ) as cursor:
                updated = cursor.rowcount == 1
            await self._conn.commit()
        return updated

    async def update_alert_dispatch(self, alert_id: int, dispatched: dict[str, bool]) -> None:
        """Record per-sink delivery results."""
        assert self._conn is not None
        async with self._write_lock:
            await self._conn.execute(
                "UPDATE alerts SET dispatched = ? WHERE id = ?",
                (json.dumps(dispatched, sort_keys=True), alert_id),
            )
            await self._conn.commit()

    async def list_alerts(
        self,
        severity: str | None = None,
        resolved: bool | None = None,
        limit: int = 50,
    ) -> list[AlertRecord]:
        """List recent alerts, newest first."""
        assert self._conn is not None

        query = "SELECT * FROM alerts"
        params: list[Any] = []
        conditions: list[str] = []

        if severity:
            conditions.append("severity = ?")
            params.append(severity)
        if resolved is not None:
            conditions.append("resolved = ?")
            params.append(1 if resolved else 0)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY first_seen_at DESC, id DESC LIMIT ?"
        params.append(limit)

        rows = []
        async with self._conn.execute(query, params) as cursor:
            async for row in cursor:
                rows.append(_row_to_alert(row))
        return rows

    # ──────────────────────────────────────────────────────────
    # Market and metric samples
    # ──────────────────────────────────────────────────────────

    async def record_price_sample(
        self, price: float, reserve0: Decimal, reserve1: Decimal, sampled_at: str
    ) -> None:
        assert self._conn is not None
        async with self._write_lock:
            await self._conn.execute(
                "INSERT INTO price_samples (price, reserve0, reserve1, sampled_at) VALUES (?, ?, ?, ?)",
                (price, str(reserve0), str(reserve1), sampled_at),
            )
            await self._conn.commit()

    async def price_at(self, at: str) -> float | None:
        """Most recent price sampled at or before `at`."""
        assert self._conn is not None
        async with self._conn.execute(
            "SELECT price FROM price_samples WHERE sampled_at <= ? ORDER BY sampled_at DESC, id DESC LIMIT 1",
            (at,),
        ) as cursor:
            row = await cursor.fetchone()
        return float(row["price"]) if row else None

    async def latest_price_sample(self) -> dict[str, Any] | None:
        assert self._conn is not None
        async with self._conn.execute(
            "SELECT * FROM price_samples ORDER BY sampled_at DESC, id DESC LIMIT 1"
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        d = dict(row)
        d["reserve0"] = Decimal(d["reserve0"])
        d["reserve1"] = Decimal(d["reserve1"])
        return d

    async def record_metric(self, name: str, value: float, sampled_at: str) -> None:
        assert self._conn is not None
        async with self._write_lock:
            await self._conn.execute(
                "INSERT INTO metric_samples (name, value, sampled_at) VALUES (?, ?, ?)",
                (name, value, sampled_at),
            )
            await self._conn.commit()

    async def latest_metric(self, name: str) -> float | None:
        assert self._conn is not None
        async with self._conn.execute(
            "SELECT value FROM metric_samples WHERE name = ? ORDER BY sampled_at DESC, id DESC LIMIT 1",
            (name,),
        ) as cursor:
            row = await cursor.fetchone()
        return float(row["value"]) if row else None

    async def prune_samples(self, before: str) -> int:
        """Delete price/metric samples older than `before`. Returns rows deleted."""
        assert self._conn is not None
        deleted = 0
        async with self._write_lock:
            for table in ("price_samples", "metric_samples"):
                async with self._conn.execute(
                    f"DELETE FROM {table} WHERE sampled_at < ?", (before,)
                ) as cursor:
                    deleted += cursor.rowcount
            await self._conn.commit()
        return deleted

    # ──────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────

    async def _apply_schema(self) -> None:
        """Apply schema migrations idempotently."""
        assert self._conn is not None
        await self._conn.executescript(_SCHEMA)
        await self._conn.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        await self._conn.commit()


def _row_to_event(row: aiosqlite.Row) -> LedgerEvent:
    return LedgerEvent(
        kind=EventKind(row["kind"]),
        subject_address=row["subject_address"],
        counterparty_address=row["counterparty_address"],
        amount=Decimal(row["amount"]),
        tx_hash=row["tx_hash"],
        block_number=int(row["block_number"]),
        log_index=int(row["log_index"]),
        observed_at=row["observed_at"],
        payload=json.loads(row["payload"] or "{}"),
        seq=int(row["seq"]),
    )


def _row_to_alert(row: aiosqlite.Row) -> AlertRecord:
    return AlertRecord(
        id=int(row["id"]),
        rule_id=row["rule_id"],
        severity=row["severity"],
        subject=row["subject"] or None,
        message=row["message"],
        evidence=json.loads(row["evidence"] or "{}"),
        dedup_token=row["dedup_token"],
        first_seen_at=row["first_seen_at"],
        resolved=bool(row["resolved"]),
        resolved_by=row["resolved_by"],
        resolved_at=row["resolved_at"],
        action_taken=row["action_taken"],
        dispatched=json.loads(row["dispatched"] or "{}"),
    )
