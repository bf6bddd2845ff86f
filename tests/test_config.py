"""Tests for chainpulse/config.py."""

from __future__ import annotations

from pathlib import Path

import pytest

from chainpulse.config import (
    ChainpulseConfig,
    get_default_config_path,
    load_config,
    save_config,
)
from chainpulse.exceptions import ConfigInvalidError

# ── load_config ───────────────────────────────────────────────────────────────


def test_load_config_returns_defaults_when_no_file(tmp_path: Path) -> None:
    """load_config should return defaults when config file doesn't exist."""
    config = load_config(str(tmp_path / "nonexistent.toml"))
    assert isinstance(config, ChainpulseConfig)
    assert config.cache.ttl_seconds == 300
    assert config.aggregator.debounce_seconds == 10.0
    assert config.alert.cooldown_minutes == 60
    assert config.aggregator.node_tier_scores[1] == 50


def test_load_config_from_valid_toml(tmp_path: Path) -> None:
    config_file = tmp_path / "config.toml"
    config_file.write_text("""
[ledger]
ws_url = "wss://node.example/ws"
start_block = 4200

[ledger.contracts]
staking = "0x00000000000000000000000000000000000000A2"

[aggregator]
debounce_seconds = 2
node_tier_scores = { "1" = 500, "2" = 400 }

[alert]
cooldown_minutes = 15

[monitor]
api_health_urls = ["https://api.example/health"]
""")
    config = load_config(str(config_file))
    assert config.ledger.ws_url == "wss://node.example/ws"
    assert config.ledger.start_block == 4200
    assert config.ledger.contracts["staking"] == "0x00000000000000000000000000000000000000a2"
    assert config.ledger.contracts["token"] == ""
    assert config.aggregator.debounce_seconds == 2.0
    assert config.aggregator.node_tier_scores == {1: 500, 2: 400}
    assert config.alert.cooldown_minutes == 15
    assert config.monitor.api_health_urls == ["https://api.example/health"]


@pytest.mark.parametrize("body", ["= broken", "dangling_key\n"])
def test_load_config_invalid_toml(tmp_path: Path, body: str) -> None:
    config_file = tmp_path / "config.toml"
    config_file.write_text(body)
    with pytest.raises(ConfigInvalidError):
        load_config(str(config_file))


@pytest.mark.parametrize(
    "body",
    [
        "[cache]\nttl_seconds = 0\n",
        "[aggregator]\ndebounce_seconds = -1\n",
        "[alert]\ncooldown_minutes = -5\n",
        "[alert]\nlarge_transfer = 10.0\nwhale_transfer = 5.0\n",
        "[logging]\nlevel = \"LOUD\"\n",
        "[alert]\ncooldown_minutes = \"soon\"\n",
        "cache = 3\n",
    ],
)
def test_load_config_invalid_values(tmp_path: Path, body: str) -> None:
    config_file = tmp_path / "config.toml"
    config_file.write_text(body)
    with pytest.raises(ConfigInvalidError):
        load_config(str(config_file))


# ── Environment overrides ─────────────────────────────────────────────────────


def test_env_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path / "config.toml"
    config_file.write_text("[alert]\ncooldown_minutes = 15\n")
    monkeypatch.setenv("CHAINPULSE_COOLDOWN_MINUTES", "30")
    monkeypatch.setenv("CHAINPULSE_STORE_PATH", str(tmp_path / "events.db"))
    monkeypatch.setenv("CHAINPULSE_LOG_JSON", "false")

    config = load_config(str(config_file))
    assert config.alert.cooldown_minutes == 30
    assert config.store.path == str(tmp_path / "events.db")
    assert config.logging.json is False


def test_env_override_invalid_type(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHAINPULSE_BROADCAST_PORT", "not-a-port")
    with pytest.raises(ConfigInvalidError):
        load_config(str(tmp_path / "config.toml"))


def test_config_path_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path / "custom.toml"
    config_file.write_text("[broadcast]\nport = 4000\n")
    monkeypatch.setenv("CHAINPULSE_CONFIG_PATH", str(config_file))
    assert load_config().broadcast.port == 4000


# ── save_config ───────────────────────────────────────────────────────────────


def test_save_then_load(tmp_path: Path) -> None:
    config = ChainpulseConfig()
    config.sinks.webhook_url = "https://hooks.example/x"
    config.aggregator.node_tier_scores = {1: 70, 3: 10}
    path = save_config(config, str(tmp_path / "sub" / "config.toml"))

    loaded = load_config(str(path))
    assert loaded.sinks.webhook_url == "https://hooks.example/x"
    assert loaded.aggregator.node_tier_scores == {1: 70, 3: 10}


def test_default_config_path() -> None:
    path = get_default_config_path()
    assert path.name == "config.toml"
    assert path.parent.name == ".chainpulse"
