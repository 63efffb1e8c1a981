"""
Configuration models for the copy-trading engine.

Uses Pydantic for validation and type safety. All percentage fields are in
percent units (1.5 means 1.5%) and are divided by 100 where they are used.
"""
from typing import Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

from copytrade.config.dotenv_loader import load_dotenv_files
from copytrade.constants import (
    CLOSE_REASON_TOLERANCE_PCT,
    HISTORY_CHUNK_DAYS,
    HISTORY_PAGE_LIMIT,
    LEGACY_DEFAULT_LEVERAGE,
    LINK_PRICE_TOLERANCE_PCT,
    MATCH_TOLERANCE_MINUTES,
    MIN_PRICE_MOVE_PCT,
    QUANTITY_MAX_RATIO,
    QUANTITY_MIN_RATIO,
    QUANTITY_UPDATE_THRESHOLD_PCT,
    RECONCILE_LOOKBACK_DAYS,
)


class SystemConfig(BaseSettings):
    """System metadata."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "Copy Trading Engine"
    version: str = "1.0.0"


class ExchangeConfig(BaseSettings):
    """Exchange configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    dialect: Literal["bitget", "bybit"] = "bitget"

    # Credentials (loaded from env or yaml)
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    passphrase: Optional[str] = None  # Bitget only
    use_testnet: bool = False

    request_timeout_ms: int = Field(default=30000, ge=1000, le=120000, description="Transport timeout passed to ccxt")

    def has_credentials(self) -> bool:
        """True when key and secret are set and not unexpanded ${VAR} placeholders."""
        return bool(self.api_key and self.api_secret and not self.api_key.startswith("${"))


class DataConfig(BaseSettings):
    """Storage configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None


class ReconciliationConfig(BaseSettings):
    """Reconciliation configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    lookback_days: int = Field(default=RECONCILE_LOOKBACK_DAYS, ge=1, le=365, description="History window pulled from the exchange")
    match_tolerance_minutes: int = Field(default=MATCH_TOLERANCE_MINUTES, ge=1, le=60, description="Max close-time delta for a history match")
    page_limit: int = Field(default=HISTORY_PAGE_LIMIT, ge=10, le=100, description="History page size requested from the exchange")
    history_chunk_days: int = Field(default=HISTORY_CHUNK_DAYS, ge=1, le=90, description="Time span of one paginated history query; Bybit caps closed-pnl queries at 7 days")
    close_reason_tolerance_pct: float = Field(default=float(CLOSE_REASON_TOLERANCE_PCT), ge=0.0, le=5.0, description="Band around TP/SL levels for close-reason inference")
    quantity_min_ratio: float = Field(default=float(QUANTITY_MIN_RATIO), gt=0.0, le=1.0)
    quantity_max_ratio: float = Field(default=float(QUANTITY_MAX_RATIO), ge=1.0, le=10.0)
    import_missing: bool = Field(default=True, description="Insert history entries with no internal counterpart")
    delete_unverified: bool = Field(default=True, description="Delete closed positions the exchange cannot confirm")

    @model_validator(mode="after")
    def _check_ratio_band(self):
        if self.quantity_min_ratio >= self.quantity_max_ratio:
            raise ValueError("quantity_min_ratio must be below quantity_max_ratio")
        return self


class LinkingConfig(BaseSettings):
    """Orphan position to signal linking."""
    model_config = SettingsConfigDict(extra="ignore")

    time_tolerance_minutes: int = Field(default=MATCH_TOLERANCE_MINUTES, ge=1, le=60)
    price_tolerance_pct: float = Field(default=float(LINK_PRICE_TOLERANCE_PCT), ge=0.0, le=20.0)


class RepairConfig(BaseSettings):
    """Quantity/leverage repair job."""
    model_config = SettingsConfigDict(extra="ignore")

    min_price_move_pct: float = Field(default=float(MIN_PRICE_MOVE_PCT), ge=0.0, le=5.0, description="Skip quantity derivation below this entry/close move")
    quantity_update_threshold_pct: float = Field(default=float(QUANTITY_UPDATE_THRESHOLD_PCT), ge=0.0, le=100.0)
    legacy_default_leverage: int = Field(default=LEGACY_DEFAULT_LEVERAGE, ge=1, le=125, description="Leverage value written by older releases when unknown")


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    accounts: dict[str, ExchangeConfig] = Field(
        default_factory=dict,
        description="Per-user exchange credentials keyed by user id; required for all-user jobs",
    )
    data: DataConfig = Field(default_factory=DataConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    linking: LinkingConfig = Field(default_factory=LinkingConfig)
    repair: RepairConfig = Field(default_factory=RepairConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "prod"] = "prod"

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, v):
        return str(v).strip().lower() if v is not None else "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR; unknown variables are left as-is
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        data_section = config_dict.get("data") or {}
        yaml_db_url = data_section.get("database_url")
        if not yaml_db_url or str(yaml_db_url).startswith("${"):
            data_section["database_url"] = os.getenv("DATABASE_URL")
            config_dict["data"] = data_section

        return cls(**config_dict)

    def exchange_for(self, user_id: str) -> ExchangeConfig:
        """The user's own account, or the single configured account when none is listed."""
        return self.accounts.get(user_id, self.exchange)

    def validate_config(self) -> None:
        """Cross-section checks that pydantic field bounds cannot express."""
        if self.environment == "prod" and not self.data.database_url:
            raise ValueError("DATABASE_URL must be set in prod")
        if self.environment == "prod" and self.data.database_url and self.data.database_url.startswith("sqlite"):
            raise ValueError("SQLite is not allowed in prod; use a postgresql:// DATABASE_URL")


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses copytrade/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
