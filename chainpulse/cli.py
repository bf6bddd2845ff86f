"""Click CLI entry point for chainpulse.

All commands are thin orchestration wrappers — the work lives in store,
cache, aggregator, alert and pipeline.

Exit codes:
  0 — success
  1 — generic error
  2 — ledger / network unavailable
  4 — operator action error (alert not found, already resolved, bad input)
  5 — config error
  6 — store error
  130 — `run` interrupted
"""

from __future__ import annotations

import asyncio
import json
import shutil
import sys
from pathlib import Path
from typing import Any

import click

from chainpulse import __version__
from chainpulse.aggregator import LEADERBOARD_GLOBAL, LEADERBOARDS, StateAggregator
from chainpulse.alert import TEST_ALERT_KINDS, AlertEngine
from chainpulse.config import (
    ChainpulseConfig,
    get_default_config_path,
    load_config,
    save_config,
)
from chainpulse.exceptions import ChainpulseError, NotFoundError
from chainpulse.logger import setup_logging
from chainpulse.models import GLOBAL_SCOPE, SCOPE_LEADERBOARD, SEVERITIES, EventKind, Scope
from chainpulse.output import format_output, mask_secret
from chainpulse.pipeline import Pipeline, cache_from_config, store_from_config
from chainpulse.sinks import build_sinks

FORMATS = ["json", "jsonl", "table", "csv"]


# ── Error handler ─────────────────────────────────────────────────────────────


def _output_error(err: ChainpulseError | Exception) -> None:
    """Write error JSON to stderr and exit with the error's code."""
    if isinstance(err, ChainpulseError):
        payload = err.to_dict()
        exit_code = err.exit_code
    else:
        payload = {"error": "unknown_error", "message": str(err), "details": {}}
        exit_code = 1
    sys.stderr.write(json.dumps(payload) + "\n")
    sys.stderr.flush()
    sys.exit(exit_code)


def _run_async(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except ChainpulseError as e:
        _output_error(e)


def _parse_scope(raw: str) -> Scope:
    try:
        scope = Scope.parse(raw)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    if scope.kind == SCOPE_LEADERBOARD and scope.key not in LEADERBOARDS:
        raise click.BadParameter(f"Unknown leaderboard {scope.key!r}. Use one of: {', '.join(LEADERBOARDS)}")
    return scope


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    envvar="CHAINPULSE_CONFIG_PATH",
    default=None,
    help="Config file path (default: ~/.chainpulse/config.toml)",
)
@click.option("--format", "output_format", type=click.Choice(FORMATS), default="json")
@click.option("--log-level", default=None, help="Override logging.level")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, output_format: str, log_level: str | None) -> None:
    """chainpulse — ledger ingestion, scoring and alerting for a token ecosystem."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ChainpulseError as e:
        if ctx.invoked_subcommand != "config":
            _output_error(e)
        # `config init` must work even when the current file is broken
        config = ChainpulseConfig()

    setup_logging(log_level or config.logging.level, config.logging.json)
    ctx.obj["config"] = config
    ctx.obj["format"] = output_format
    ctx.obj["config_path"] = config_path


# ── Run ───────────────────────────────────────────────────────────────────────


@cli.command("run")
@click.option("--no-server", is_flag=True, help="Do not start the websocket broadcast server")
@click.option("--no-monitors", is_flag=True, help="Do not start the market/system samplers")
@click.pass_context
def run_command(ctx: click.Context, no_server: bool, no_monitors: bool) -> None:
    """Run ingestion, aggregation, alerting and broadcast until interrupted."""
    config: ChainpulseConfig = ctx.obj["config"]

    async def _run() -> None:
        async with Pipeline(config) as pipeline:
            await pipeline.run(serve=not no_server, monitors=not no_monitors)

    try:
        _run_async(_run())
    except KeyboardInterrupt:
        sys.exit(130)


# ── Events ────────────────────────────────────────────────────────────────────


@cli.group()
def events() -> None:
    """Inspect the canonical event store."""


@events.command("list")
@click.option("--address", default=None, help="Subject or counterparty address")
@click.option(
    "--kind",
    "kinds",
    multiple=True,
    type=click.Choice([k.value for k in EventKind]),
    help="Event kind (repeatable)",
)
@click.option("--limit", default=50, type=int, show_default=True)
@click.option("--format", "fmt", type=click.Choice(FORMATS), default=None)
@click.pass_context
def events_list(
    ctx: click.Context,
    address: str | None,
    kinds: tuple[str, ...],
    limit: int,
    fmt: str | None,
) -> None:
    """List the most recent ledger events."""
    config: ChainpulseConfig = ctx.obj["config"]
    fmt = fmt or ctx.obj["format"]

    async def _run() -> dict[str, Any]:
        async with store_from_config(config) as store:
            rows = await store.list_events(
                address=address,
                kinds=[EventKind(k) for k in kinds] if kinds else None,
                limit=limit,
                newest_first=True,
            )
            return {
                "count": len(rows),
                "total": await store.count_events(),
                "events": [e.to_dict() for e in rows],
            }

    click.echo(format_output(_run_async(_run()), fmt))


# ── Snapshots ─────────────────────────────────────────────────────────────────


@cli.command("snapshot")
@click.argument("scope")
@click.option("--format", "fmt", type=click.Choice(FORMATS), default=None)
@click.pass_context
def snapshot_command(ctx: click.Context, scope: str, fmt: str | None) -> None:
    """Show the cached snapshot for SCOPE (user:<address>, global, leaderboard:<name>)."""
    config: ChainpulseConfig = ctx.obj["config"]
    fmt = fmt or ctx.obj["format"]
    parsed = _parse_scope(scope)

    async def _run() -> dict[str, Any]:
        async with store_from_config(config) as store, cache_from_config(config) as cache:
            aggregator = StateAggregator(store, cache, config.aggregator, ttl_seconds=config.cache.ttl_seconds)
            snapshot = await aggregator.snapshot(parsed)
            if snapshot is None:
                raise NotFoundError(f"No snapshot for {parsed}", details={"scope": str(parsed)})
            return snapshot.to_dict()

    click.echo(format_output(_run_async(_run()), fmt))


@cli.command("recompute")
@click.argument("scope", required=False)
@click.option("--all", "recompute_all", is_flag=True, help="Recompute every known scope")
@click.pass_context
def recompute_command(ctx: click.Context, scope: str | None, recompute_all: bool) -> None:
    """Recompute SCOPE (or every scope with --all) now, bypassing the debounce."""
    config: ChainpulseConfig = ctx.obj["config"]
    if not scope and not recompute_all:
        raise click.UsageError("Provide SCOPE or --all")
    scopes = [_parse_scope(scope)] if scope else []

    async def _run() -> dict[str, Any]:
        async with store_from_config(config) as store, cache_from_config(config) as cache:
            aggregator = StateAggregator(store, cache, config.aggregator, ttl_seconds=config.cache.ttl_seconds)
            targets = list(scopes)
            if recompute_all:
                # Leaderboards first so user snapshots pick up fresh ranks
                targets = [Scope.leaderboard(name) for name in LEADERBOARDS]
                targets += [Scope.user(a) for a in await store.list_subjects()]
                targets.append(GLOBAL_SCOPE)
            results = []
            for target in targets:
                snapshot = await aggregator.recompute(target)
                results.append({
                    "scope": str(target),
                    "source_version": snapshot.source_version if snapshot else None,
                    "updated": snapshot is not None,
                })
            return {"count": len(results), "scopes": results}

    click.echo(format_output(_run_async(_run()), "json"))


@cli.command("leaderboard")
@click.option("--name", type=click.Choice(list(LEADERBOARDS)), default=LEADERBOARD_GLOBAL, show_default=True)
@click.option("--format", "fmt", type=click.Choice(FORMATS), default=None)
@click.pass_context
def leaderboard_command(ctx: click.Context, name: str, fmt: str | None) -> None:
    """Shortcut for `snapshot leaderboard:<name>`."""
    ctx.invoke(snapshot_command, scope=f"leaderboard:{name}", fmt=fmt)


# ── Alerts ────────────────────────────────────────────────────────────────────


@cli.group()
def alerts() -> None:
    """List, resolve and test alerts."""


@alerts.command("list")
@click.option("--severity", type=click.Choice(list(SEVERITIES)), default=None)
@click.option("--resolved/--unresolved", "resolved", default=None)
@click.option("--limit", default=50, type=int, show_default=True)
@click.option("--format", "fmt", type=click.Choice(FORMATS), default=None)
@click.pass_context
def alerts_list(
    ctx: click.Context, severity: str | None, resolved: bool | None, limit: int, fmt: str | None
) -> None:
    """List alerts, newest first."""
    config: ChainpulseConfig = ctx.obj["config"]
    fmt = fmt or ctx.obj["format"]

    async def _run() -> dict[str, Any]:
        async with store_from_config(config) as store:
            engine = AlertEngine(store, config.alert)
            rows = await engine.list_alerts(severity=severity, resolved=resolved, limit=limit)
            return {"count": len(rows), "alerts": [r.to_dict() for r in rows]}

    click.echo(format_output(_run_async(_run()), fmt))


@alerts.command("resolve")
@click.argument("alert_id", type=int)
@click.option("--action", "action_taken", required=True, help="What was done about it")
@click.option("--operator", required=True, help="Who resolved it")
@click.pass_context
def alerts_resolve(ctx: click.Context, alert_id: int, action_taken: str, operator: str) -> None:
    """Mark an alert resolved."""
    config: ChainpulseConfig = ctx.obj["config"]

    async def _run() -> dict[str, Any]:
        async with store_from_config(config) as store:
            engine = AlertEngine(store, config.alert)
            record = await engine.resolve(alert_id, action_taken=action_taken, operator=operator)
            return {"status": "resolved", "alert": record.to_dict()}

    click.echo(format_output(_run_async(_run()), "json"))


@alerts.command("test")
@click.option("--kind", type=click.Choice(list(TEST_ALERT_KINDS)), default="system_alert", show_default=True)
@click.option("--severity", type=click.Choice(list(SEVERITIES)), default="info", show_default=True)
@click.option("--title", default="Test alert")
@click.option("--message", default="Manually triggered test alert")
@click.pass_context
def alerts_test(ctx: click.Context, kind: str, severity: str, title: str, message: str) -> None:
    """Create a synthetic alert and send it to every configured sink."""
    config: ChainpulseConfig = ctx.obj["config"]

    async def _run() -> dict[str, Any]:
        async with store_from_config(config) as store:
            engine = AlertEngine(
                store,
                config.alert,
                sinks=build_sinks(config.sinks),
                sink_timeout=config.sinks.timeout_seconds,
            )
            record = await engine.create_test_alert(kind, severity, title, message)
            await engine.drain()
            return {"status": "created", "alert": record.to_dict()}

    click.echo(format_output(_run_async(_run()), "json"))


# ── Watermarks ────────────────────────────────────────────────────────────────


@cli.command("watermarks")
@click.option("--format", "fmt", type=click.Choice(FORMATS), default=None)
@click.pass_context
def watermarks_command(ctx: click.Context, fmt: str | None) -> None:
    """Show the last fully processed block per subscription."""
    config: ChainpulseConfig = ctx.obj["config"]
    fmt = fmt or ctx.obj["format"]

    async def _run() -> dict[str, Any]:
        async with store_from_config(config) as store:
            rows = await store.list_watermarks()
            return {"count": len(rows), "watermarks": rows}

    click.echo(format_output(_run_async(_run()), fmt))


# ── Config commands ───────────────────────────────────────────────────────────


@cli.group("config")
def config_group() -> None:
    """Manage chainpulse configuration."""


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing config")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Write a default config file."""
    provided = ctx.obj.get("config_path")
    config_path = Path(provided).expanduser() if provided else get_default_config_path()

    if config_path.exists() and not force:
        click.echo(
            json.dumps(
                {
                    "status": "already_exists",
                    "config_path": str(config_path),
                    "hint": "Use --force to reinitialize",
                }
            )
        )
        return

    result: dict[str, Any] = {"status": "initialized", "config_path": str(config_path)}
    if config_path.exists():
        backup = str(config_path) + ".bak"
        shutil.copy2(config_path, backup)
        result.update(status="reinitialized", backup=backup)

    save_config(ChainpulseConfig(), str(config_path))
    click.echo(json.dumps(result))


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show the resolved configuration (secrets masked)."""
    config: ChainpulseConfig = ctx.obj["config"]
    provided = ctx.obj.get("config_path")

    result = {
        "config_path": str(Path(provided).expanduser() if provided else get_default_config_path()),
        "ledger": {
            "ws_url": config.ledger.ws_url,
            "http_url": config.ledger.http_url,
            "contracts": config.ledger.contracts,
            "pair_address": config.ledger.pair_address,
            "start_block": config.ledger.start_block,
        },
        "store": {"path": config.store.path},
        "cache": {"path": config.cache.path, "ttl_seconds": config.cache.ttl_seconds},
        "aggregator": {
            "debounce_seconds": config.aggregator.debounce_seconds,
            "leaderboard_size": config.aggregator.leaderboard_size,
            "min_staked": config.aggregator.min_staked,
            "min_active_lines": config.aggregator.min_active_lines,
        },
        "alert": {"cooldown_minutes": config.alert.cooldown_minutes},
        "sinks": {
            "webhook_url": config.sinks.webhook_url,
            "webhook_secret": mask_secret(config.sinks.webhook_secret),
            "telegram_bot_token": mask_secret(config.sinks.telegram_bot_token),
            "telegram_chat_id": config.sinks.telegram_chat_id,
        },
        "broadcast": {"host": config.broadcast.host, "port": config.broadcast.port},
        "logging": {"level": config.logging.level, "json": config.logging.json},
    }
    click.echo(format_output(result, "json"))


def main() -> None:
    try:
        cli()
    except ChainpulseError as e:
        _output_error(e)


if __name__ == "__main__":
    main()
