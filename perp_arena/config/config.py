"""
Configuration models for the perpetual futures battle arena.

Uses Pydantic for validation and type safety.
"""
from typing import Dict, Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import os
import re
import yaml
from pathlib import Path


class AssetSpec(BaseModel):
    """Synthetic market parameters for one asset."""
    start_price: float = Field(gt=0.0)
    volatility: float = Field(gt=0.0, le=0.5, description="Full width of the per-tick uniform fractional move")
    min_price: float = Field(gt=0.0, description="Floor preventing a non-positive price")


def _default_assets() -> Dict[str, AssetSpec]:
    return {
        "BTC": AssetSpec(start_price=65000.0, volatility=0.003, min_price=1.0),
        "ETH": AssetSpec(start_price=3500.0, volatility=0.004, min_price=1.0),
        "SOL": AssetSpec(start_price=150.0, volatility=0.006, min_price=1.0),
        # Low-priced asset needs a sub-unit floor
        "MON": AssetSpec(start_price=0.02, volatility=0.015, min_price=0.001),
    }


class SystemConfig(BaseSettings):
    """System metadata."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "Perp Arena"
    version: str = "1.0.0"
    seed: Optional[int] = Field(default=None, description="Seed for the shared random source (None = nondeterministic)")


class MarketConfig(BaseSettings):
    """Synthetic price process configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    default_asset: str = "MON"
    history_length: int = Field(default=30, ge=2, le=1000)
    trend_threshold: float = Field(default=0.001, ge=0.0, le=0.1, description="Fractional move classifying UP/DOWN")
    assets: Dict[str, AssetSpec] = Field(default_factory=_default_assets)

    @model_validator(mode="after")
    def validate_default_asset(self):
        if self.default_asset not in self.assets:
            raise ValueError(f"default_asset {self.default_asset!r} missing from assets table")
        return self


class SettlementConfig(BaseSettings):
    """Settlement engine configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    tick_interval_seconds: float = Field(default=1.0, gt=0.0, le=60.0)
    pnl_history_sample_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    pnl_history_max: int = Field(default=30, ge=1, le=1000)
    market_persist_rate: float = Field(default=0.033, ge=0.0, le=1.0, description="Probability a tick persists the market snapshot")
    earnings_multiplier: float = Field(default=1.5, ge=0.0, le=100.0)
    # deploy_trend: AUTO side resolved once at deploy and stored.
    # id_hash: per-position PnL uses an id-derived bias while aggregates follow the live trend.
    auto_resolution: Literal["deploy_trend", "id_hash"] = "deploy_trend"
    min_leverage: int = Field(default=1, ge=1, le=100)
    max_leverage: int = Field(default=50, ge=1, le=100)
    min_collateral: float = Field(default=100.0, ge=0.0)
    mint_cost: float = Field(default=500.0, ge=0.0)

    @model_validator(mode="after")
    def validate_leverage_band(self):
        if self.min_leverage > self.max_leverage:
            raise ValueError("min_leverage must not exceed max_leverage")
        return self


class PopulationConfig(BaseSettings):
    """Synthetic bot population configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    rotation_interval_seconds: float = Field(default=3.0, gt=0.0, le=600.0)
    min_max_age_seconds: float = Field(default=30.0, gt=0.0)
    max_max_age_seconds: float = Field(default=120.0, gt=0.0)
    target_min: int = Field(default=60, ge=0)
    target_max: int = Field(default=140, ge=0)
    hard_cap: int = Field(default=200, ge=0, le=5000)
    batch_size: int = Field(default=3, ge=1, le=100)
    grace_seconds: float = Field(default=5.0, ge=0.0, le=300.0)
    initial_per_side: int = Field(default=60, ge=0, le=2000)
    min_leverage: int = Field(default=5, ge=1, le=100)
    max_leverage: int = Field(default=49, ge=1, le=100)
    min_collateral: int = Field(default=1000, ge=1)
    max_collateral: int = Field(default=8999, ge=1)
    entry_jitter_pct: float = Field(default=0.05, ge=0.0, le=0.5)
    id_prefix: str = "bot"

    @model_validator(mode="after")
    def validate_ranges(self):
        if self.min_max_age_seconds > self.max_max_age_seconds:
            raise ValueError("min_max_age_seconds must not exceed max_max_age_seconds")
        if self.target_min > self.target_max:
            raise ValueError("target_min must not exceed target_max")
        if self.min_leverage > self.max_leverage:
            raise ValueError("min_leverage must not exceed max_leverage")
        if self.min_collateral > self.max_collateral:
            raise ValueError("min_collateral must not exceed max_collateral")
        return self


class SyncConfig(BaseSettings):
    """Reconciliation / flush configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    flush_interval_seconds: float = Field(default=2.0, gt=0.0, le=600.0)


class LiquidityConfig(BaseSettings):
    """Staking pool configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    pool_id: str = "mon-lp-1"
    base_apr: float = Field(default=100.0, ge=0.0)
    min_apr: float = Field(default=50.0, ge=0.0)
    max_apr: float = Field(default=150.0, ge=0.0)
    fee_share: float = Field(default=0.7, ge=0.0, le=1.0)
    fee_rate: float = Field(default=0.001, ge=0.0, le=1.0, description="Daily fee as a fraction of active collateral")
    accrual_interval_seconds: float = Field(default=1.0, gt=0.0, le=3600.0)
    reconcile_interval_seconds: float = Field(default=30.0, gt=0.0)

    @model_validator(mode="after")
    def validate_apr_band(self):
        if self.min_apr > self.max_apr:
            raise ValueError("min_apr must not exceed max_apr")
        return self


class WalletConfig(BaseSettings):
    """Wallet defaults."""
    model_config = SettingsConfigDict(extra="ignore")

    initial_mon_balance: float = Field(default=10000.0, ge=0.0)
    referral_rate: float = Field(default=0.05, ge=0.0, le=1.0)


class StorageConfig(BaseSettings):
    """Persistence configuration. No database_url means in-memory only."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    database_url: Optional[str] = None

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if v is None or v == "":
            return None
        if not (v.startswith("postgresql") or v.startswith("sqlite")):
            raise ValueError("database_url must be a postgresql:// or sqlite:// URL")
        return v


class MonitoringConfig(BaseSettings):
    """Logging and battle-log configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None
    log_dir: Optional[str] = Field(default=None, description="Directory for per-run log files when log_file is unset")
    battle_log_capacity: int = Field(default=100, ge=1, le=10000)


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    market: MarketConfig = Field(default_factory=MarketConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    population: PopulationConfig = Field(default_factory=PopulationConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    liquidity: LiquidityConfig = Field(default_factory=LiquidityConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url and not (config_dict.get("storage") or {}).get("database_url"):
            config_dict.setdefault("storage", {})
            config_dict["storage"]["database_url"] = db_url

        seed = os.getenv("ARENA_SEED")
        if seed and (config_dict.get("system") or {}).get("seed") is None:
            config_dict.setdefault("system", {})
            config_dict["system"]["seed"] = int(seed)

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Cross-section checks that a single model cannot see."""
        if self.population.max_leverage > self.settlement.max_leverage:
            raise ValueError("population.max_leverage exceeds settlement.max_leverage")
        if self.population.hard_cap < self.population.target_min:
            raise ValueError("population.hard_cap below population.target_min")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses perp_arena/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    from perp_arena.config.dotenv_loader import load_dotenv_files

    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
