"""
Configuration models for the paper perpetual-futures account.

Uses Pydantic for validation and type safety.
"""
from typing import List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
from decimal import Decimal
import os
import re

from paper_perps.constants import (
    BINANCE_STREAM_URL,
    BINANCE_WS_URL,
    DEFAULT_DB_PATH,
    INITIAL_BALANCE,
    MAX_LEVERAGE,
    STORE_KEY,
    SUPPORTED_SYMBOLS,
)


class AccountConfig(BaseSettings):
    """Paper account configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    initial_balance: Decimal = Field(default=INITIAL_BALANCE, gt=0)
    symbols: List[str] = Field(default_factory=lambda: list(SUPPORTED_SYMBOLS))
    max_leverage: int = Field(default=MAX_LEVERAGE, ge=1, le=125)
    default_leverage: int = Field(default=10, ge=1, le=125)

    @field_validator("symbols")
    @classmethod
    def validate_symbols(cls, v):
        normalized = [s.strip().upper() for s in v]
        if not normalized:
            raise ValueError("At least one symbol must be configured")
        if len(set(normalized)) != len(normalized):
            raise ValueError(f"Duplicate symbols in account config: {normalized}")
        return normalized


class StorageConfig(BaseSettings):
    """Account state persistence."""
    model_config = SettingsConfigDict(extra="ignore")

    db_path: str = DEFAULT_DB_PATH
    store_key: str = STORE_KEY


class FeedConfig(BaseSettings):
    """Live price feed (Binance trade stream)."""
    model_config = SettingsConfigDict(extra="ignore")

    ws_base_url: str = BINANCE_WS_URL
    stream_base_url: str = BINANCE_STREAM_URL
    max_retries: int = Field(default=10, ge=1, le=100)
    backoff_base_seconds: float = Field(default=2.0, ge=0.1, le=60.0)
    ping_interval: float = Field(default=20.0, ge=5.0, le=120.0)


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    account: AccountConfig = Field(default_factory=AccountConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "paper"] = "paper"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")
        
        with open(yaml_path, "r") as f:
            raw_content = f.read()
        
        # Regex to find ${VAR} or $VAR
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')
        
        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Return original if not found
        
        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}
        
        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]
        
        return cls(**config_dict)

    def validate_config(self) -> None:
        """Cross-section checks that single-field validators cannot express."""
        if self.account.default_leverage > self.account.max_leverage:
            raise ValueError(
                f"default_leverage ({self.account.default_leverage}) exceeds "
                f"max_leverage ({self.account.max_leverage})"
            )


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.
    
    Args:
        config_path: Path to config.yaml file. If None, uses paper_perps/config/config.yaml
    
    Returns:
        Validated Config object
    
    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"
    
    config = Config.from_yaml(config_path)
    config.validate_config()
    
    return config
