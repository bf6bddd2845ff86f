"""
Config loading for chainpulse.

Sources (in precedence order, highest first):
  1. Environment variables (CHAINPULSE_*)
  2. ~/.chainpulse/config.toml
  3. Built-in defaults

Usage:
    from chainpulse.config import load_config
    config = load_config()
    print(config.ledger.ws_url)
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import toml

from chainpulse.exceptions import ConfigInvalidError

# Default config directory and file
DEFAULT_CONFIG_DIR = Path.home() / ".chainpulse"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"

# Environment variable → config key mapping
# Format: (env_var_name, dotted_config_path, type_converter)
_ENV_OVERRIDES: list[tuple[str, str, type]] = [
    ("CHAINPULSE_LEDGER_WS_URL", "ledger.ws_url", str),
    ("CHAINPULSE_LEDGER_HTTP_URL", "ledger.http_url", str),
    ("CHAINPULSE_PAIR_ADDRESS", "ledger.pair_address", str),
    ("CHAINPULSE_START_BLOCK", "ledger.start_block", int),
    ("CHAINPULSE_STORE_PATH", "store.path", str),
    ("CHAINPULSE_CACHE_PATH", "cache.path", str),
    ("CHAINPULSE_CACHE_TTL_SECONDS", "cache.ttl_seconds", int),
    ("CHAINPULSE_DEBOUNCE_SECONDS", "aggregator.debounce_seconds", float),
    ("CHAINPULSE_COOLDOWN_MINUTES", "alert.cooldown_minutes", int),
    ("CHAINPULSE_WEBHOOK_URL", "sinks.webhook_url", str),
    ("CHAINPULSE_WEBHOOK_SECRET", "sinks.webhook_secret", str),
    ("CHAINPULSE_TELEGRAM_BOT_TOKEN", "sinks.telegram_bot_token", str),
    ("CHAINPULSE_TELEGRAM_CHAT_ID", "sinks.telegram_chat_id", str),
    ("CHAINPULSE_BROADCAST_PORT", "broadcast.port", int),
    ("CHAINPULSE_LOG_LEVEL", "logging.level", str),
]

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

DEFAULT_CONTRACTS: dict[str, str] = {
    "token": "",
    "staking": "",
    "referral": "",
    "exchange": "",
    "node_nft": "",
}


@dataclass
class LedgerConfig:
    """Ledger node endpoints and watched contracts."""

    ws_url: str = "wss://bsc-ws-node.nariox.org:443"
    http_url: str = "https://bsc-dataseed1.binance.org/"
    contracts: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CONTRACTS))
    pair_address: str = ""
    start_block: int = 0
    token_decimals: int = 18
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    request_timeout_seconds: float = 30.0
    getlogs_chunk_blocks: int = 2000


@dataclass
class StoreConfig:
    """Canonical event store (SQLite)."""

    path: str = str(DEFAULT_CONFIG_DIR / "events.db")


@dataclass
class CacheConfig:
    """Snapshot cache (SQLite key → JSON blob with TTL)."""

    path: str = str(DEFAULT_CONFIG_DIR / "cache.db")
    ttl_seconds: int = 300


@dataclass
class AggregatorConfig:
    """Recompute policy and score weights."""

    debounce_seconds: float = 10.0
    reconcile_interval_seconds: float = 300.0
    retry_backoff_seconds: float = 5.0
    retry_backoff_max_seconds: float = 120.0
    leaderboard_size: int = 100
    staking_leaderboard_size: int = 10
    min_staked: float = 0.0
    min_active_lines: int = 0
    staking_weight: float = 1.0
    lp_weight: float = 2.0
    referral_weight: float = 100.0
    node_tier_scores: dict[int, int] = field(
        default_factory=lambda: {1: 50, 2: 40, 3: 30, 4: 20, 5: 10}
    )


@dataclass
class AlertConfig:
    """Rule thresholds and suppression window."""

    cooldown_minutes: int = 60
    price_drop_30m_pct: float = -3.0
    price_drop_1h_pct: float = -5.0
    price_drop_24h_pct: float = -10.0
    price_pump_1h_pct: float = 20.0
    price_pump_24h_pct: float = 50.0
    large_transfer: float = 100_000.0
    whale_transfer: float = 1_000_000.0
    failure_rate: float = 0.1
    failure_window_blocks: int = 10
    liquidity_drop_pct: float = -20.0
    tvl_drop_pct: float = -15.0
    cpu_ceiling_pct: float = 80.0
    memory_ceiling_pct: float = 85.0
    api_latency_ms: float = 3000.0
    block_delay: int = 10
    wash_trading_count: int = 5
    wash_trading_window_minutes: int = 60
    decode_failure_limit: int = 5


@dataclass
class SinkConfig:
    """Outbound alert delivery."""

    webhook_url: str = ""
    webhook_secret: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    timeout_seconds: float = 5.0


@dataclass
class BroadcastConfig:
    """Websocket server for live subscribers."""

    host: str = "0.0.0.0"
    port: int = 3001
    outbox_size: int = 256


@dataclass
class MonitorConfig:
    """Sampler intervals."""

    market_interval_seconds: float = 30.0
    system_interval_seconds: float = 60.0
    failure_interval_seconds: float = 60.0
    api_health_urls: list[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = True


@dataclass
class ChainpulseConfig:
    """Full configuration object. Passed via Click context and to every worker."""

    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    alert: AlertConfig = field(default_factory=AlertConfig)
    sinks: SinkConfig = field(default_factory=SinkConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_config(path: str | None = None) -> ChainpulseConfig:
    """
    Load configuration from TOML file + environment variable overrides.

    Args:
        path: Override config file path. If None, uses CHAINPULSE_CONFIG_PATH
              env var or default (~/.chainpulse/config.toml).

    Returns:
        ChainpulseConfig with all values resolved.

    Raises:
        ConfigInvalidError: Config file exists but is invalid TOML or values.
    """
    config_path = _resolve_config_path(path)

    raw: dict = {}
    if config_path.exists():
        try:
            raw = toml.load(str(config_path))
        except toml.TomlDecodeError as e:
            raise ConfigInvalidError(f"Invalid TOML in {config_path}: {e}") from e

    config = _dict_to_config(raw)
    _apply_env_overrides(config)
    _validate_config(config)

    return config


def save_config(config: ChainpulseConfig, path: str | None = None) -> Path:
    """Serialize ChainpulseConfig to TOML and write to disk."""
    config_path = _resolve_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = dataclasses.asdict(config)
    # TOML table keys must be strings
    data["aggregator"]["node_tier_scores"] = {
        str(tier): score for tier, score in config.aggregator.node_tier_scores.items()
    }

    with open(config_path, "w") as f:
        toml.dump(data, f)

    return config_path


def get_default_config_path() -> Path:
    """Return the default config file path."""
    return DEFAULT_CONFIG_PATH


# ──────────────────────────────────────────────────────────────
# Private helpers
# ──────────────────────────────────────────────────────────────


def _resolve_config_path(path: str | None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get("CHAINPULSE_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def _dict_to_config(raw: dict) -> ChainpulseConfig:
    """Build ChainpulseConfig from raw TOML dict, applying defaults for missing keys."""
    config = ChainpulseConfig()

    for section in dataclasses.fields(config):
        section_raw = raw.get(section.name, {})
        if not isinstance(section_raw, dict):
            raise ConfigInvalidError(f"[{section.name}] must be a table")
        _load_section(section.name, getattr(config, section.name), section_raw)

    contracts = raw.get("ledger", {}).get("contracts")
    if contracts is not None:
        merged = dict(DEFAULT_CONTRACTS)
        merged.update({str(k): str(v).lower() for k, v in contracts.items()})
        config.ledger.contracts = merged

    tiers = raw.get("aggregator", {}).get("node_tier_scores")
    if tiers is not None:
        try:
            config.aggregator.node_tier_scores = {int(k): int(v) for k, v in tiers.items()}
        except (ValueError, TypeError, AttributeError) as e:
            raise ConfigInvalidError(f"aggregator.node_tier_scores is invalid: {e}") from e

    return config


def _load_section(name: str, section: Any, raw: dict) -> None:
    """Copy scalar/list values into a section, coerced to the default's type."""
    for f in dataclasses.fields(section):
        if f.name not in raw:
            continue
        current = getattr(section, f.name)
        if isinstance(current, dict):
            continue  # handled explicitly by the caller
        value = raw[f.name]
        try:
            if isinstance(current, bool):
                value = bool(value)
            elif isinstance(current, int):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
            elif isinstance(current, list):
                value = [str(v) for v in value]
            else:
                value = str(value)
        except (ValueError, TypeError) as e:
            raise ConfigInvalidError(f"Invalid value for {name}.{f.name}: {value!r}") from e
        setattr(section, f.name, value)


def _apply_env_overrides(config: ChainpulseConfig) -> None:
    """Apply environment variable overrides to a loaded config."""
    json_logs = os.environ.get("CHAINPULSE_LOG_JSON")
    if json_logs is not None:
        config.logging.json = json_logs.lower() in ("1", "true", "yes")

    for env_var, dotted_key, converter in _ENV_OVERRIDES:
        val = os.environ.get(env_var)
        if val is None:
            continue
        section, key = dotted_key.split(".", 1)
        section_obj = getattr(config, section)
        try:
            setattr(section_obj, key, converter(val))
        except (ValueError, TypeError) as e:
            raise ConfigInvalidError(
                f"Invalid value for {env_var}={val!r}: {e}"
            ) from e


def _validate_config(config: ChainpulseConfig) -> None:
    """Validate config values. Raises ConfigInvalidError on invalid values."""
    if config.cache.ttl_seconds <= 0:
        raise ConfigInvalidError(
            f"cache.ttl_seconds must be positive, got {config.cache.ttl_seconds}"
        )
    if config.aggregator.debounce_seconds < 0:
        raise ConfigInvalidError(
            f"aggregator.debounce_seconds must be non-negative, "
            f"got {config.aggregator.debounce_seconds}"
        )
    if config.aggregator.leaderboard_size <= 0:
        raise ConfigInvalidError(
            f"aggregator.leaderboard_size must be positive, "
            f"got {config.aggregator.leaderboard_size}"
        )
    if config.alert.cooldown_minutes < 0:
        raise ConfigInvalidError(
            f"alert.cooldown_minutes must be non-negative, got {config.alert.cooldown_minutes}"
        )
    if config.alert.whale_transfer < config.alert.large_transfer:
        raise ConfigInvalidError(
            "alert.whale_transfer must be >= alert.large_transfer"
        )
    if config.ledger.reconnect_max_seconds < config.ledger.reconnect_initial_seconds:
        raise ConfigInvalidError(
            "ledger.reconnect_max_seconds must be >= ledger.reconnect_initial_seconds"
        )
    if config.logging.level.upper() not in VALID_LOG_LEVELS:
        raise ConfigInvalidError(
            f"logging.level must be one of {sorted(VALID_LOG_LEVELS)}, "
            f"got {config.logging.level!r}"
        )
