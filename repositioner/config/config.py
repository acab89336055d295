"""
Configuration models for the reposition engine.

Uses Pydantic for validation and type safety.
"""
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from repositioner.config.dotenv_loader import load_dotenv_files

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


class SystemConfig(BaseSettings):
    """System metadata."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "Reposition Engine"
    version: str = "1.0.0"


class RpcConfig(BaseSettings):
    """Ledger RPC connection."""
    model_config = SettingsConfigDict(extra="ignore")

    rpc_url: str = "https://api.mainnet-beta.solana.com"
    commitment: Literal["processed", "confirmed", "finalized"] = "confirmed"
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    max_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=1.0, ge=0, le=30)


class PoolServiceConfig(BaseSettings):
    """DLMM pool service (bin pricing and position decoding live there)."""
    model_config = SettingsConfigDict(extra="ignore")

    base_url: str = "https://dlmm-api.meteora.ag"
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)


class PriceConfig(BaseSettings):
    """Spot price upstream."""
    model_config = SettingsConfigDict(extra="ignore")

    api_url: str = "https://api.jup.ag/price/v3"
    api_key: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0, le=30)
    max_delay_seconds: float = Field(default=5.0, ge=0, le=60)
    # Reference quote-token price used only by the pool-ratio estimator
    fallback_quote_price_usd: Decimal = Field(default=Decimal("200"), gt=0)


class TokenConfig(BaseSettings):
    """The pair tracked by the engine (token X / token Y of the pool)."""
    model_config = SettingsConfigDict(extra="ignore")

    token_x_symbol: str = "zBTC"
    token_x_mint: str = "zBTCug3er3tLyffELcvDNrKkCymbPWysGcWihESYfLg"
    token_x_decimals: int = Field(default=8, ge=0, le=18)
    token_y_symbol: str = "SOL"
    token_y_mint: str = "So11111111111111111111111111111111111111112"
    token_y_decimals: int = Field(default=9, ge=0, le=18)


class HealthConfig(BaseSettings):
    """Position health classification."""
    model_config = SettingsConfigDict(extra="ignore")

    default_range_tolerance_bins: int = Field(default=10, ge=1, le=1000)
    at_edge_extra_bins: int = Field(default=1, ge=0, le=100)


class RepositionConfig(BaseSettings):
    """Reposition analysis and proposal building."""
    model_config = SettingsConfigDict(extra="ignore")

    default_bin_range: int = Field(default=10, ge=1, le=500)
    default_slippage_bps: int = Field(default=100, ge=1, le=10000)
    max_slippage_bps: int = Field(default=5000, ge=1, le=10000)
    proposal_ttl_seconds: int = Field(default=60, ge=10, le=3600)
    signature_max_age_seconds: int = Field(default=300, ge=10, le=3600)
    require_fresh_timestamp: bool = True
    rate_limit_per_minute: int = Field(default=10, ge=1, le=1000)
    default_gas_estimate_sol: Decimal = Field(default=Decimal("0.01"), ge=0)
    base_fee_lamports: int = Field(default=5000, ge=0)
    default_compute_units: int = Field(default=200_000, ge=1)

    @model_validator(mode="after")
    def validate_slippage_bounds(self):
        if self.default_slippage_bps > self.max_slippage_bps:
            raise ValueError("default_slippage_bps must not exceed max_slippage_bps")
        return self


class AccessConfig(BaseSettings):
    """Subscription / credit gate policy."""
    model_config = SettingsConfigDict(extra="ignore")

    # Availability over strict enforcement: lookup failures allow the call
    fail_open_on_error: bool = True
    # Tools in neither set are allowed (and logged) unless this is set
    deny_uncategorized: bool = False
    accept_credits: bool = True
    credits_per_reposition: Decimal = Field(default=Decimal("1"), gt=0)
    upgrade_url: str = "https://hypebiscus.com/subscribe"


class CacheConfig(BaseSettings):
    """Short-lived lookup cache."""
    model_config = SettingsConfigDict(extra="ignore")

    user_ttl_seconds: int = Field(default=30, ge=1, le=600)
    max_entries: int = Field(default=1000, ge=10)


class DatabaseConfig(BaseSettings):
    """Storage."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None

    @field_validator("database_url")
    @classmethod
    def validate_scheme(cls, v):
        if v and not (v.startswith("postgresql") or v.startswith("sqlite")):
            raise ValueError("database_url must be a postgresql:// or sqlite:// URL")
        return v


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
    rpc: RpcConfig = Field(default_factory=RpcConfig)
    pool_service: PoolServiceConfig = Field(default_factory=PoolServiceConfig)
    price: PriceConfig = Field(default_factory=PriceConfig)
    tokens: TokenConfig = Field(default_factory=TokenConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    reposition: RepositionConfig = Field(default_factory=RepositionConfig)
    access: AccessConfig = Field(default_factory=AccessConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "test", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} references."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, "")

        config_dict = yaml.safe_load(pattern.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        # Unset ${VAR} expands to nothing, which means "use the default"
        for section in config_dict.values():
            if isinstance(section, dict):
                for key in [k for k, v in section.items() if v is None or v == ""]:
                    del section[key]

        if not config_dict.get("database", {}).get("database_url"):
            db_url = os.getenv("DATABASE_URL")
            if db_url:
                config_dict.setdefault("database", {})["database_url"] = db_url

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform additional validation checks."""
        if self.environment == "prod":
            if not self.database.database_url or not self.database.database_url.startswith("postgresql"):
                raise ValueError("Production requires a PostgreSQL DATABASE_URL")
            if not self.reposition.require_fresh_timestamp:
                raise ValueError("Production requires fresh timestamps on reposition requests")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses repositioner/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    load_dotenv_files()

    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
