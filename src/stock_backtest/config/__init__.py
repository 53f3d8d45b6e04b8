"""Configuration loading and management."""

from .loader import (
    STRATEGY_TYPES,
    AppConfig,
    BacktestConfig,
    CacheConfig,
    ConfigError,
    DatabaseConfig,
    StrategyConfig,
    UpstreamConfig,
    create_strategy_from_config,
    load_app_config,
    load_strategy_from_file,
    load_yaml_config,
    parse_app_config,
)

__all__ = [
    "STRATEGY_TYPES",
    "AppConfig",
    "BacktestConfig",
    "CacheConfig",
    "ConfigError",
    "DatabaseConfig",
    "StrategyConfig",
    "UpstreamConfig",
    "load_yaml_config",
    "load_app_config",
    "parse_app_config",
    "create_strategy_from_config",
    "load_strategy_from_file",
]
