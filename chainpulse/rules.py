"""Alert rules.

Every rule is a pure function from window data to AlertCandidate | None (or a
list of candidates). No I/O: the alert engine and samplers gather the window
data, call the rules, and hand candidates to AlertEngine.raise_alert().

Dedup tokens:
  - price rules: the severity, so an escalated move is a new condition
  - per-transaction rules: the tx hash
  - threshold metrics: "" (one open alert per rule + subject)
"""

from __future__ import annotations

from decimal import Decimal

from chainpulse.config import AlertConfig
from chainpulse.models import AlertCandidate, EventKind, LedgerEvent, escalate

# (rule_id, window, config threshold attribute, base severity)
PRICE_RULES: tuple[tuple[str, str, str, str], ...] = (
    ("PRICE_DROP_30M", "30m", "price_drop_30m_pct", "warning"),
    ("PRICE_DROP_1H", "1h", "price_drop_1h_pct", "high"),
    ("PRICE_DROP_24H", "24h", "price_drop_24h_pct", "critical"),
    ("PRICE_PUMP_1H", "1h", "price_pump_1h_pct", "warning"),
    ("PRICE_PUMP_24H", "24h", "price_pump_24h_pct", "high"),
)

PRICE_WINDOWS_MINUTES = {"30m": 30, "1h": 60, "24h": 24 * 60}


def pct_change(previous: float, current: float) -> float | None:
    if not previous:
        return None
    return (current - previous) / previous * 100.0


# ── Market ────────────────────────────────────────────────────────────────────


def price_rules(
    current: float,
    references: dict[str, float | None],
    config: AlertConfig,
) -> list[AlertCandidate]:
    """
    Price-movement candidates for each window with a reference price.

    A drop rule fires when the change is below its (negative) threshold, a
    pump rule when above its (positive) threshold. Severity escalates one
    level when the move is at least twice the threshold.
    """
    candidates = []
    for rule_id, window, attr, severity in PRICE_RULES:
        reference = references.get(window)
        if reference is None:
            continue
        change = pct_change(reference, current)
        if change is None:
            continue
        threshold = getattr(config, attr)

        if threshold < 0:
            triggered, doubled = change < threshold, change <= 2 * threshold
        else:
            triggered, doubled = change > threshold, change >= 2 * threshold
        if not triggered:
            continue

        if doubled:
            severity = escalate(severity)
        candidates.append(
            AlertCandidate(
                rule_id=rule_id,
                severity=severity,
                message=f"Price moved {change:+.2f}% over {window} (threshold {threshold:+.1f}%)",
                evidence={
                    "window": window,
                    "change_pct": round(change, 4),
                    "threshold_pct": threshold,
                    "reference_price": reference,
                    "current_price": current,
                },
                dedup_token=severity,
            )
        )
    return candidates


def liquidity_rule(
    previous: tuple[Decimal, Decimal],
    current: tuple[Decimal, Decimal],
    config: AlertConfig,
) -> AlertCandidate | None:
    """LIQUIDITY_DROP when either pair reserve fell past the threshold since the last sample."""
    changes = [pct_change(float(p), float(c)) for p, c in zip(previous, current)]
    worst = min((c for c in changes if c is not None), default=None)
    if worst is None or worst >= config.liquidity_drop_pct:
        return None
    return AlertCandidate(
        rule_id="LIQUIDITY_DROP",
        severity="high",
        message=f"Pair reserves dropped {worst:.2f}% since last sample",
        evidence={
            "reserve0_change_pct": changes[0],
            "reserve1_change_pct": changes[1],
            "reserve0": str(current[0]),
            "reserve1": str(current[1]),
        },
    )


def tvl_rule(previous: float, current: float, config: AlertConfig) -> AlertCandidate | None:
    change = pct_change(previous, current)
    if change is None or change >= config.tvl_drop_pct:
        return None
    return AlertCandidate(
        rule_id="TVL_DROP",
        severity="high",
        message=f"Total value locked dropped {change:.2f}%",
        evidence={"previous": previous, "current": current, "change_pct": round(change, 4)},
    )


# ── Transactions ──────────────────────────────────────────────────────────────


def large_transfer_rule(event: LedgerEvent, config: AlertConfig) -> AlertCandidate | None:
    if event.kind != EventKind.TRANSFER:
        return None
    amount = event.amount
    if amount >= Decimal(str(config.whale_transfer)):
        severity, label = "critical", "Whale transfer"
    elif amount >= Decimal(str(config.large_transfer)):
        severity, label = "high", "Large transfer"
    else:
        return None
    return AlertCandidate(
        rule_id="LARGE_TRANSFER",
        severity=severity,
        message=f"{label} of {amount} tokens from {event.subject_address}",
        subject=event.subject_address,
        evidence={
            "from": event.subject_address,
            "to": event.counterparty_address,
            "amount": str(amount),
            "tx_hash": event.tx_hash,
            "block_number": event.block_number,
        },
        dedup_token=event.tx_hash,
    )


def wash_trading_rule(
    from_addr: str, to_addr: str, count: int, config: AlertConfig
) -> AlertCandidate | None:
    if count < config.wash_trading_count:
        return None
    return AlertCandidate(
        rule_id="WASH_TRADING_DETECTED",
        severity="critical",
        message=(
            f"{count} transfers from {from_addr} to {to_addr} "
            f"within {config.wash_trading_window_minutes} minutes"
        ),
        subject=f"{from_addr}->{to_addr}",
        evidence={"from": from_addr, "to": to_addr, "count": count},
    )


def ownership_rule(event: LedgerEvent) -> AlertCandidate | None:
    if event.kind != EventKind.OWNERSHIP_CHANGED:
        return None
    contract = event.payload.get("contract", "")
    return AlertCandidate(
        rule_id="OWNERSHIP_TRANSFERRED",
        severity="critical",
        message=f"Ownership of {contract} transferred to {event.subject_address}",
        subject=contract or None,
        evidence={
            "contract": contract,
            "previous_owner": event.counterparty_address,
            "new_owner": event.subject_address,
            "tx_hash": event.tx_hash,
        },
        dedup_token=event.tx_hash,
    )


def failure_rate_rule(failed: int, total: int, config: AlertConfig) -> AlertCandidate | None:
    if total <= 0:
        return None
    rate = failed / total
    if rate <= config.failure_rate:
        return None
    return AlertCandidate(
        rule_id="HIGH_FAILURE_RATE",
        severity="high",
        message=(
            f"{rate:.1%} of transactions to watched contracts failed "
            f"over the last {config.failure_window_blocks} blocks"
        ),
        evidence={"failure_rate": round(rate, 4), "failed": failed, "total": total},
    )


# ── System ────────────────────────────────────────────────────────────────────


def cpu_rule(cpu_pct: float, config: AlertConfig) -> AlertCandidate | None:
    if cpu_pct <= config.cpu_ceiling_pct:
        return None
    return AlertCandidate(
        rule_id="HIGH_CPU_USAGE",
        severity="warning",
        message=f"CPU usage at {cpu_pct:.1f}%",
        evidence={"cpu_pct": cpu_pct, "ceiling_pct": config.cpu_ceiling_pct},
    )


def memory_rule(memory_pct: float, config: AlertConfig) -> AlertCandidate | None:
    if memory_pct <= config.memory_ceiling_pct:
        return None
    return AlertCandidate(
        rule_id="HIGH_MEMORY_USAGE",
        severity="warning",
        message=f"Memory usage at {memory_pct:.1f}%",
        evidence={"memory_pct": memory_pct, "ceiling_pct": config.memory_ceiling_pct},
    )


def api_latency_rule(url: str, latency_ms: float, config: AlertConfig) -> AlertCandidate | None:
    if latency_ms <= config.api_latency_ms:
        return None
    return AlertCandidate(
        rule_id="SLOW_API_RESPONSE",
        severity="warning",
        message=f"{url} answered in {latency_ms:.0f} ms",
        subject=url,
        evidence={"url": url, "latency_ms": round(latency_ms, 1)},
    )


def api_error_rule(url: str, error: str) -> AlertCandidate:
    return AlertCandidate(
        rule_id="API_ERROR",
        severity="high",
        message=f"{url} health check failed: {error}",
        subject=url,
        evidence={"url": url, "error": error},
    )


def block_sync_rule(head: int, watermark: int, config: AlertConfig) -> AlertCandidate | None:
    delay = head - watermark
    if delay <= config.block_delay:
        return None
    return AlertCandidate(
        rule_id="BLOCK_SYNC_DELAY",
        severity="high",
        message=f"Ingestion is {delay} blocks behind the chain head",
        evidence={"head": head, "watermark": watermark, "delay": delay},
    )
