"""Tests for configuration loading and validation."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from perp_arena.config.config import (
    Config,
    LiquidityConfig,
    MarketConfig,
    PopulationConfig,
    SettlementConfig,
    StorageConfig,
    load_config,
)


def test_packaged_config_loads():
    config = load_config()
    assert config.market.default_asset in config.market.assets
    assert config.settlement.tick_interval_seconds == 1.0
    assert config.population.rotation_interval_seconds == 3.0
    assert config.sync.flush_interval_seconds == 2.0
    assert config.settlement.pnl_history_max == 30
    assert config.liquidity.min_apr == 50.0
    assert config.liquidity.max_apr == 150.0


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        Config.from_yaml(Path("/nonexistent/arena.yaml"))


def test_env_expansion_and_overrides(tmp_path, monkeypatch):
    path = tmp_path / "arena.yaml"
    path.write_text(
        "market:\n"
        "  default_asset: ${ARENA_TEST_ASSET}\n"
        "settlement:\n"
        "  earnings_multiplier: 2.0\n"
    )
    monkeypatch.setenv("ARENA_TEST_ASSET", "BTC")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///arena.db")
    monkeypatch.setenv("ARENA_SEED", "11")

    config = Config.from_yaml(path)

    assert config.market.default_asset == "BTC"
    assert config.settlement.earnings_multiplier == 2.0
    assert config.storage.database_url == "sqlite:///arena.db"
    assert config.system.seed == 11


def test_default_asset_must_exist():
    with pytest.raises(ValidationError, match="default_asset"):
        MarketConfig(default_asset="DOGE")


def test_leverage_band_validated():
    with pytest.raises(ValidationError, match="min_leverage"):
        SettlementConfig(min_leverage=10, max_leverage=5)


def test_population_ranges_validated():
    with pytest.raises(ValidationError, match="target_min"):
        PopulationConfig(target_min=50, target_max=10)


def test_apr_band_validated():
    with pytest.raises(ValidationError, match="min_apr"):
        LiquidityConfig(min_apr=200.0, max_apr=150.0)


def test_auto_resolution_choices():
    assert SettlementConfig(auto_resolution="id_hash").auto_resolution == "id_hash"
    with pytest.raises(ValidationError):
        SettlementConfig(auto_resolution="coin_flip")


def test_database_url_scheme():
    assert StorageConfig(database_url="").database_url is None
    with pytest.raises(ValidationError, match="postgresql"):
        StorageConfig(database_url="mysql://localhost/arena")


def test_cross_section_validation():
    config = Config()
    config.population.max_leverage = 60
    config.settlement.max_leverage = 50
    with pytest.raises(ValueError, match="population.max_leverage"):
        config.validate_config()
