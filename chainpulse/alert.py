"""Alert engine: deduplication, persistence, and sink dispatch.

Lifecycle per dedup key (rule_id, subject, dedup_token):
  Quiet → Triggered (record created, dispatched)
  Triggered → Suppressed (same key again within the cool-down window)
  Suppressed → Quiet (window expires)
  Triggered → Resolved (operator action)

The check-and-create step is serialized with a single lock, so two
concurrent occurrences of one condition can never both create a record.
Dispatch runs in background tasks bounded by the sink timeout; it never
blocks the caller and never rolls back the record.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from chainpulse.channels import Channel
from chainpulse.clock import iso, utcnow
from chainpulse.config import AlertConfig
from chainpulse.exceptions import (
    AlreadyResolvedError,
    OperatorActionError,
    RuleEvaluationError,
    SinkDispatchError,
)
from chainpulse.logger import get_logger
from chainpulse.models import (
    SEVERITIES,
    AggregateSnapshot,
    AlertCandidate,
    AlertRecord,
    EventKind,
    GlobalMetrics,
    LedgerEvent,
)
from chainpulse.rules import large_transfer_rule, ownership_rule, tvl_rule, wash_trading_rule
from chainpulse.sinks import AlertSink
from chainpulse.store import Store

log = get_logger(__name__)

TEST_ALERT_KINDS = ("price_alert", "stake_alert", "referral_alert", "node_alert", "system_alert")


class AlertEngine:
    """Creates, suppresses, dispatches and resolves alerts."""

    def __init__(
        self,
        store: Store,
        config: AlertConfig,
        sinks: list[AlertSink] | None = None,
        sink_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._config = config
        self._sinks = list(sinks or [])
        self._sink_timeout = sink_timeout
        self._clock = clock
        self._lock = asyncio.Lock()
        self._dispatches: set[asyncio.Task] = set()
        self.published: Channel[AlertRecord] = Channel("alerts")

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self._config.cooldown_minutes)

    # ──────────────────────────────────────────────────────────
    # Raising
    # ──────────────────────────────────────────────────────────

    async def raise_alert(self, candidate: AlertCandidate) -> AlertRecord | None:
        """
        Persist and dispatch `candidate` unless its key is in cool-down.

        Returns the new record, or None when suppressed.
        """
        key = candidate.dedup_key()
        async with self._lock:
            now = self._clock()
            existing = await self._store.find_unresolved_alert(key, since=iso(now - self.cooldown))
            if existing is not None:
                log.debug("alert_suppressed", rule_id=key.rule_id, subject=key.subject, alert_id=existing.id)
                return None
            record = await self._store.save_alert(candidate, first_seen_at=iso(now))

        log.info(
            "alert_raised",
            alert_id=record.id,
            rule_id=record.rule_id,
            severity=record.severity,
            subject=record.subject,
        )
        self.published.publish(record)
        self._start_dispatch(record)
        return record

    async def raise_all(self, candidates: list[AlertCandidate | None]) -> list[AlertRecord]:
        records = []
        for candidate in candidates:
            if candidate is None:
                continue
            record = await self.raise_alert(candidate)
            if record is not None:
                records.append(record)
        return records

    # ──────────────────────────────────────────────────────────
    # Operator surface
    # ──────────────────────────────────────────────────────────

    async def resolve(self, alert_id: int, action_taken: str, operator: str) -> AlertRecord:
        """
        Mark an alert resolved.

        Raises:
            NotFoundError: no alert with this id.
            AlreadyResolvedError: the alert was resolved before.
        """
        record = await self._store.get_alert(alert_id)
        if record.resolved:
            raise AlreadyResolvedError(
                f"Alert {alert_id} was already resolved by {record.resolved_by}",
                details={"alert_id": alert_id, "resolved_at": record.resolved_at},
            )
        updated = await self._store.mark_alert_resolved(
            alert_id, action_taken=action_taken, operator=operator, resolved_at=iso(self._clock())
        )
        if not updated:
            raise AlreadyResolvedError(f"Alert {alert_id} was already resolved", details={"alert_id": alert_id})
        log.info("alert_resolved", alert_id=alert_id, operator=operator)
        return await self._store.get_alert(alert_id)

    async def create_test_alert(
        self, kind: str, severity: str, title: str, message: str
    ) -> AlertRecord:
        """Create and dispatch a synthetic alert. Never suppressed."""
        if kind not in TEST_ALERT_KINDS:
            raise OperatorActionError(
                f"Unknown alert kind {kind!r}. Use one of: {', '.join(TEST_ALERT_KINDS)}",
                details={"kind": kind},
            )
        if severity not in SEVERITIES:
            raise OperatorActionError(
                f"Unknown severity {severity!r}. Use one of: {', '.join(SEVERITIES)}",
                details={"severity": severity},
            )
        record = await self.raise_alert(
            AlertCandidate(
                rule_id="TEST_ALERT",
                severity=severity,
                message=f"{title}: {message}" if title else message,
                subject=kind,
                evidence={"kind": kind, "title": title, "test": True},
                dedup_token=uuid.uuid4().hex,
            )
        )
        if record is None:
            raise OperatorActionError("Test alert was suppressed", details={"kind": kind})
        return record

    async def list_alerts(
        self, severity: str | None = None, resolved: bool | None = None, limit: int = 50
    ) -> list[AlertRecord]:
        return await self._store.list_alerts(severity=severity, resolved=resolved, limit=limit)

    # ──────────────────────────────────────────────────────────
    # Consumers
    # ──────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Evaluate event rules for every committed ledger event."""
        queue = self._store.changes.subscribe()
        log.info("alert_engine_start", sinks=[s.name for s in self._sinks])
        try:
            while True:
                event = await queue.get()
                await self.on_event(event)
        finally:
            self._store.changes.unsubscribe(queue)

    async def run_snapshots(self, updates: Channel[AggregateSnapshot]) -> None:
        """Evaluate snapshot rules for every aggregator output."""
        queue = updates.subscribe()
        try:
            while True:
                snapshot = await queue.get()
                await self.on_snapshot(snapshot)
        finally:
            updates.unsubscribe(queue)

    async def on_event(self, event: LedgerEvent) -> list[AlertRecord]:
        candidates: list[AlertCandidate | None] = []
        if event.kind == EventKind.TRANSFER:
            candidates.append(self._evaluate("LARGE_TRANSFER", large_transfer_rule, event, self._config))
            if event.counterparty_address:
                since = iso(self._clock() - timedelta(minutes=self._config.wash_trading_window_minutes))
                count = await self._store.count_transfers(
                    event.subject_address, event.counterparty_address, since
                )
                candidates.append(
                    self._evaluate(
                        "WASH_TRADING_DETECTED", wash_trading_rule,
                        event.subject_address, event.counterparty_address, count, self._config,
                    )
                )
        elif event.kind == EventKind.OWNERSHIP_CHANGED:
            candidates.append(self._evaluate("OWNERSHIP_TRANSFERRED", ownership_rule, event))
        return await self.raise_all(candidates)

    async def on_snapshot(self, snapshot: AggregateSnapshot) -> list[AlertRecord]:
        if not isinstance(snapshot, GlobalMetrics):
            return []
        current = float(snapshot.total_value_locked)
        previous = await self._store.latest_metric("tvl")
        await self._store.record_metric("tvl", current, iso(self._clock()))
        if previous is None:
            return []
        return await self.raise_all([self._evaluate("TVL_DROP", tvl_rule, previous, current, self._config)])

    # ──────────────────────────────────────────────────────────
    # Dispatch
    # ──────────────────────────────────────────────────────────

    async def dispatch(self, record: AlertRecord) -> dict[str, bool]:
        """Send `record` to every sink concurrently. Returns {sink name: delivered}."""
        if not self._sinks:
            return {}
        payload = record.to_sink_payload()
        results = await asyncio.gather(*(self._send_one(s, payload) for s in self._sinks))
        outcome = {sink.name: ok for sink, ok in zip(self._sinks, results)}
        await self._store.update_alert_dispatch(record.id, outcome)
        record.dispatched = outcome
        return outcome

    async def drain(self) -> None:
        """Wait for in-flight dispatches (tests, shutdown)."""
        while True:
            tasks = [t for t in self._dispatches if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def _start_dispatch(self, record: AlertRecord) -> None:
        if not self._sinks:
            return
        task = asyncio.create_task(self.dispatch(record), name=f"dispatch:{record.id}")
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)

    async def _send_one(self, sink: AlertSink, payload: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(sink.send(payload), timeout=self._sink_timeout)
        except asyncio.TimeoutError:
            log.warning("alert_sink_timeout", sink=sink.name, timeout_seconds=self._sink_timeout)
            return False
        except SinkDispatchError as e:
            log.warning("alert_sink_failed", sink=sink.name, error=e.message)
            return False
        return True

    def _evaluate(self, rule_id: str, rule: Callable[..., AlertCandidate | None], *args: Any) -> AlertCandidate | None:
        """Run one rule; a failing rule is logged and yields no candidate."""
        try:
            return rule(*args)
        except Exception as e:
            err = RuleEvaluationError(f"Rule {rule_id} failed: {e}", details={"rule_id": rule_id})
            log.error("alert_rule_failed", **err.to_dict())
            return None
