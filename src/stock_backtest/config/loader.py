"""Configuration loading and strategy factory."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from stock_backtest.data.cache import CacheSettings
from stock_backtest.data.models import normalize_timestamp
from stock_backtest.strategies.base import TradingStrategy
from stock_backtest.strategies.simple import BuyAndHoldStrategy, ThresholdStrategy


class ConfigError(Exception):
    """Raised when configuration is invalid."""

    pass


# Registry of available strategy types
STRATEGY_TYPES: dict[str, type[TradingStrategy]] = {
    "buy_and_hold": BuyAndHoldStrategy,
    "threshold": ThresholdStrategy,
}

ENV_API_KEY = "STOCK_BACKTEST_API_KEY"
ENV_BASE_URL = "STOCK_BACKTEST_BASE_URL"


class CacheConfig(BaseModel):
    """Cache section of the config file."""

    max_entries: int = Field(default=128, ge=1)
    max_age_seconds: float | None = Field(default=86400.0, gt=0)
    fetch_timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=2, ge=0)
    retry_backoff: float = Field(default=0.5, ge=0)

    def to_settings(self) -> CacheSettings:
        return CacheSettings(**self.model_dump())


class UpstreamConfig(BaseModel):
    """Upstream data source section."""

    base_url: str = "http://127.0.0.1:9000/v1"
    api_key: str | None = None
    timeout: float = Field(default=30.0, gt=0)


class DatabaseConfig(BaseModel):
    """Durable store section."""

    path: Path = Path("data/market.db")


class BacktestConfig(BaseModel):
    """Backtest run section."""

    assets: list[str] = Field(default_factory=list)
    start: float | None = None
    end: float | None = None
    as_of: float | None = None
    log_dir: Path | None = Path("logs")
    cancel_unresolved: bool = False

    @field_validator("start", "end", "as_of", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> float | None:
        if value is None:
            return None
        return normalize_timestamp(value)


class StrategyConfig(BaseModel):
    """Strategy section."""

    type: str
    name: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)


class AppConfig(BaseModel):
    """Top-level configuration file."""

    cache: CacheConfig = Field(default_factory=CacheConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)
    strategy: StrategyConfig | None = None


def load_yaml_config(path: Path) -> dict[str, Any]:
    """
    Load YAML configuration file.

    Args:
        path: Path to YAML file

    Returns:
        Parsed configuration dict

    Raises:
        ConfigError: If file doesn't exist or is invalid
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ConfigError(f"Config must be a dict, got {type(config)}")

    return config


def parse_app_config(data: dict[str, Any]) -> AppConfig:
    """
    Validate a configuration dict.

    Environment variables override upstream credentials.

    Raises:
        ConfigError: If validation fails
    """
    try:
        config = AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")

    api_key = os.environ.get(ENV_API_KEY)
    base_url = os.environ.get(ENV_BASE_URL)
    if api_key:
        config.upstream.api_key = api_key
    if base_url:
        config.upstream.base_url = base_url

    return config


def load_app_config(path: Path | None = None) -> AppConfig:
    """
    Load and validate the application config.

    Args:
        path: Path to YAML file (defaults only if None)

    Returns:
        Validated AppConfig
    """
    data = load_yaml_config(path) if path is not None else {}
    return parse_app_config(data)


def create_strategy_from_config(config: dict[str, Any] | StrategyConfig) -> TradingStrategy:
    """
    Create a strategy instance from configuration.

    Args:
        config: Strategy configuration with 'type' and 'params'

    Returns:
        Configured TradingStrategy instance

    Raises:
        ConfigError: If configuration is invalid
    """
    if isinstance(config, dict):
        if not config.get("type"):
            raise ConfigError("Strategy config must have 'type' field")
        try:
            config = StrategyConfig.model_validate(config)
        except ValidationError as e:
            raise ConfigError(f"Invalid strategy config: {e}")

    if config.type not in STRATEGY_TYPES:
        available = ", ".join(STRATEGY_TYPES.keys())
        raise ConfigError(f"Unknown strategy type '{config.type}'. Available: {available}")

    strategy_class = STRATEGY_TYPES[config.type]
    name = config.name or config.type

    try:
        return strategy_class(name=name, config=dict(config.params))
    except ValueError as e:
        raise ConfigError(f"Invalid strategy config: {e}")


def load_strategy_from_file(path: Path) -> TradingStrategy:
    """
    Load a strategy from a YAML file.

    The file may hold the strategy at top level or under a `strategy` key.

    Raises:
        ConfigError: If file is invalid
    """
    config = load_yaml_config(path)
    if "strategy" in config and isinstance(config["strategy"], dict):
        config = config["strategy"]
    return create_strategy_from_config(config)
