"""Output format routing for the chainpulse CLI.

Converts result dicts to the requested format: json, jsonl, table, csv.

- JSON: 2-space indent, utf-8
- JSONL: one JSON object per line
- Table: Rich-formatted; severities coloured
- CSV: header row always present

All functions return strings. The caller writes to stdout.
"""

from __future__ import annotations

import csv
import io
import json
from decimal import Decimal
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

VALID_FORMATS = {"json", "jsonl", "table", "csv"}

_LIST_KEYS = ("events", "alerts", "entries", "watermarks")


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that keeps Decimal amounts exact (as strings)."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        return super().default(obj)


def format_output(data: Any, fmt: str) -> str:
    """
    Format data for stdout output.

    Raises:
        ValueError: If fmt is not a recognised format.
    """
    fmt = fmt.lower()
    if fmt not in VALID_FORMATS:
        raise ValueError(f"Unknown format {fmt!r}. Valid: {sorted(VALID_FORMATS)}")

    if fmt == "jsonl":
        return format_jsonl(data)
    elif fmt == "table":
        return format_table(data)
    elif fmt == "csv":
        return format_csv(data)
    return format_json(data)


# ── JSON ─────────────────────────────────────────────────────────────────────


def format_json(data: Any) -> str:
    return json.dumps(data, indent=2, cls=DecimalEncoder, ensure_ascii=False)


def format_jsonl(data: Any) -> str:
    """One object per line; a result dict wrapping a list emits the list."""
    rows = _rows(data)
    if not rows and not isinstance(data, list):
        return json.dumps(data, cls=DecimalEncoder)
    return "\n".join(json.dumps(row, cls=DecimalEncoder) for row in rows)


# ── Table ────────────────────────────────────────────────────────────────────


def format_table(data: Any) -> str:
    buf = io.StringIO()
    console = Console(file=buf, highlight=False, markup=True, width=140)

    if isinstance(data, dict) and "alerts" in data:
        _render_alerts_table(console, data)
    elif isinstance(data, dict) and "events" in data:
        _render_events_table(console, data)
    elif isinstance(data, dict) and "entries" in data:
        _render_leaderboard_table(console, data)
    elif isinstance(data, dict) and "watermarks" in data:
        _render_watermarks_table(console, data)
    else:
        console.print_json(json.dumps(data, cls=DecimalEncoder))

    return buf.getvalue()


def _short(address: str) -> str:
    return f"{address[:8]}…{address[-6:]}" if len(address) > 16 else address


def _severity_color(severity: str) -> str:
    return {"critical": "bold red", "high": "red", "warning": "yellow"}.get(severity, "dim")


def _render_alerts_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(title="Alerts", header_style="bold red")
    table.add_column("ID", justify="right")
    table.add_column("Rule")
    table.add_column("Severity", justify="center")
    table.add_column("Subject", style="cyan")
    table.add_column("Message")
    table.add_column("First seen")
    table.add_column("Resolved", justify="center")
    for a in data.get("alerts", []):
        severity = a.get("severity", "")
        table.add_row(
            str(a.get("id", "")),
            a.get("rule_id", ""),
            Text(severity, style=_severity_color(severity)),
            _short(a.get("subject") or ""),
            a.get("message", ""),
            str(a.get("first_seen_at", ""))[:19],
            "✅" if a.get("resolved") else "—",
        )
    console.print(table)
    console.print(f"Total: [bold]{data.get('count', len(data.get('alerts', [])))}[/bold] alerts")


def _render_events_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(title="Ledger Events", header_style="bold blue")
    table.add_column("Seq", justify="right")
    table.add_column("Block", justify="right")
    table.add_column("Kind")
    table.add_column("Subject", style="cyan", no_wrap=True)
    table.add_column("Counterparty", no_wrap=True)
    table.add_column("Amount", justify="right")
    table.add_column("Tx", no_wrap=True)
    for e in data.get("events", []):
        table.add_row(
            str(e.get("seq", "")),
            str(e.get("block_number", "")),
            e.get("kind", ""),
            _short(e.get("subject_address", "")),
            _short(e.get("counterparty_address") or "") or "—",
            str(e.get("amount", "")),
            _short(e.get("tx_hash", "")),
        )
    console.print(table)


def _render_leaderboard_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(
        title=f"Leaderboard — {data.get('name', '')} (v{data.get('source_version', 0)})",
        header_style="bold blue",
    )
    table.add_column("#", justify="right")
    table.add_column("Address", style="cyan", no_wrap=True)
    table.add_column("Score", justify="right")
    for entry in data.get("entries", []):
        table.add_row(str(entry.get("rank", "")), entry.get("address", ""), str(entry.get("score", "")))
    console.print(table)


def _render_watermarks_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(title="Watermarks", header_style="bold blue")
    table.add_column("Subscription")
    table.add_column("Block", justify="right")
    table.add_column("Updated")
    for w in data.get("watermarks", []):
        table.add_row(w.get("subscription", ""), str(w.get("block_number", "")), str(w.get("updated_at", ""))[:19])
    console.print(table)


# ── CSV ──────────────────────────────────────────────────────────────────────


def format_csv(data: Any) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    rows = _rows(data)

    if not rows:
        writer.writerow(["value"])
        writer.writerow([json.dumps(data, cls=DecimalEncoder)])
        return buf.getvalue()

    flat_rows = [_flatten_dict(r) for r in rows]
    headers = list(flat_rows[0].keys())
    writer.writerow(headers)
    for row in flat_rows:
        writer.writerow([row.get(h, "") for h in headers])
    return buf.getvalue()


def _rows(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in _LIST_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
    return []


def _flatten_dict(d: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten a nested dict for CSV output."""
    result: dict[str, Any] = {}
    for k, v in d.items():
        full_key = f"{prefix}.{k}" if prefix else k
        if isinstance(v, dict):
            result.update(_flatten_dict(v, full_key))
        elif isinstance(v, (list, tuple)):
            result[full_key] = json.dumps(v, cls=DecimalEncoder)
        elif isinstance(v, Decimal):
            result[full_key] = str(v)
        else:
            result[full_key] = v
    return result


def mask_secret(value: str) -> str:
    """'abcdefg123' → 'abcd****'; short or empty values → '****'."""
    if not value or len(value) <= 4:
        return "****"
    return value[:4] + "****"
