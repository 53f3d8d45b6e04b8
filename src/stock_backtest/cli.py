"""Command-line interface for the stock backtesting system."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import structlog

from stock_backtest.config import (
    AppConfig,
    ConfigError,
    create_strategy_from_config,
    load_app_config,
)
from stock_backtest.data import (
    DataCache,
    MarketDataClient,
    MarketDataDatabase,
    TimeSeriesStore,
    UpstreamUnavailableError,
    normalize_timestamp,
)
from stock_backtest.engine import StrategyError, run_backtest


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for console output."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )


def create_main_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        description="Multi-asset stock backtesting system",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to YAML config file (defaults are used if omitted)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Fetch command
    fetch_parser = subparsers.add_parser(
        "fetch",
        help="Fetch series through the cache into the local database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Warm the cache for two assets
  stock-backtest fetch AAPL MSFT

  # Require data current as of a date
  stock-backtest -c config/backtest.yaml fetch AAPL --as-of 2024-06-01
        """,
    )
    add_fetch_args(fetch_parser)

    # Backtest command
    backtest_parser = subparsers.add_parser(
        "backtest",
        help="Replay a strategy over cached series",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the backtest described in a config file
  stock-backtest -c config/backtest.yaml backtest

  # Override assets and window
  stock-backtest -c config/backtest.yaml backtest --assets AAPL MSFT --start 2024-01-01
        """,
    )
    add_backtest_args(backtest_parser)

    # Serve command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the HTTP data proxy",
    )
    add_serve_args(serve_parser)

    return parser


def add_fetch_args(parser: argparse.ArgumentParser) -> None:
    """Add fetch arguments."""
    parser.add_argument(
        "assets",
        nargs="+",
        help="Assets to fetch",
    )
    parser.add_argument(
        "--as-of",
        type=str,
        help="Data must be current as of this time (epoch or ISO-8601)",
    )


def add_backtest_args(parser: argparse.ArgumentParser) -> None:
    """Add backtesting arguments."""
    parser.add_argument(
        "--assets",
        nargs="+",
        help="Assets to replay (overrides config)",
    )
    parser.add_argument(
        "--start",
        type=str,
        help="First timestamp to replay (epoch or ISO-8601)",
    )
    parser.add_argument(
        "--end",
        type=str,
        help="Last timestamp to replay (epoch or ISO-8601)",
    )
    parser.add_argument(
        "--as-of",
        type=str,
        help="Data must be current as of this time (epoch or ISO-8601)",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        help="Directory for per-step logs (overrides config)",
    )
    parser.add_argument(
        "--cancel-unresolved",
        action="store_true",
        help="Cancel orders still pending at the end of the run",
    )


def add_serve_args(parser: argparse.ArgumentParser) -> None:
    """Add server arguments."""
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port (default: 8000)",
    )


def parse_time_arg(value: str | None, name: str) -> float | None:
    """Parse an optional timestamp argument, exiting on bad input."""
    if value is None:
        return None
    try:
        return normalize_timestamp(value)
    except ValueError as e:
        print(f"Error: Invalid --{name}: {e}")
        sys.exit(1)


def _given_or(value: float | None, default: float | None) -> float | None:
    # 0 is a valid timestamp, only None means "not given"
    return default if value is None else value


def open_database(config: AppConfig) -> MarketDataDatabase:
    """Create and initialize the configured database."""
    db = MarketDataDatabase(config.database.path)
    db.initialize()
    return db


async def fetch_assets(config: AppConfig, assets: list[str], as_of: float | None) -> int:
    """
    Fetch assets through a database-backed cache.

    Returns:
        Number of assets that could not be loaded
    """
    store = TimeSeriesStore(open_database(config))
    failures = 0

    async with MarketDataClient(
        base_url=config.upstream.base_url,
        api_key=config.upstream.api_key,
        timeout=config.upstream.timeout,
    ) as client:
        cache = DataCache(store, client, config.cache.to_settings())
        for asset in assets:
            try:
                series = await cache.fetch(asset, as_of=as_of)
            except UpstreamUnavailableError as e:
                print(f"   {asset}: FAILED ({e})")
                failures += 1
                continue
            print(f"   {asset}: {len(series)} records, last {series.last_timestamp}")

        if cache.staleness_warnings:
            print(f"\nWARNING: {len(cache.staleness_warnings)} assets served from stale data")

    return failures


async def backtest_from_config(config: AppConfig, args: argparse.Namespace) -> None:
    """Run the configured backtest."""
    if config.strategy is None:
        raise ConfigError("Config has no 'strategy' section")

    strategy = create_strategy_from_config(config.strategy)
    settings = config.backtest
    assets = args.assets or settings.assets
    if not assets:
        raise ConfigError("No assets given (use --assets or backtest.assets)")

    db = open_database(config)
    async with MarketDataClient(
        base_url=config.upstream.base_url,
        api_key=config.upstream.api_key,
        timeout=config.upstream.timeout,
    ) as client:
        cache = DataCache(TimeSeriesStore(db), client, config.cache.to_settings())
        await run_backtest(
            cache,
            strategy,
            assets,
            as_of=_given_or(parse_time_arg(args.as_of, "as-of"), settings.as_of),
            start=_given_or(parse_time_arg(args.start, "start"), settings.start),
            end=_given_or(parse_time_arg(args.end, "end"), settings.end),
            db=db,
            log_dir=args.log_dir or settings.log_dir,
            cancel_unresolved=args.cancel_unresolved or settings.cancel_unresolved,
        )


def cmd_fetch(config: AppConfig, args: argparse.Namespace) -> None:
    """Fetch assets into the local store."""
    as_of = parse_time_arg(args.as_of, "as-of")

    print("\nFetching market data")
    print(f"   Upstream: {config.upstream.base_url}")
    print(f"   Database: {config.database.path}")
    print()

    failures = asyncio.run(fetch_assets(config, args.assets, as_of))
    if failures:
        sys.exit(1)


def cmd_backtest(config: AppConfig, args: argparse.Namespace) -> None:
    """Run backtester."""
    print("\nRunning Backtest...")
    print(f"   Database: {config.database.path}")
    print()

    try:
        asyncio.run(backtest_from_config(config, args))
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except UpstreamUnavailableError as e:
        print(f"Error: Could not load data: {e}")
        sys.exit(1)
    except StrategyError as e:
        print(f"Error: {e}")
        sys.exit(1)


def cmd_serve(config: AppConfig, args: argparse.Namespace) -> None:
    """Run the data proxy."""
    from stock_backtest.server import run_server

    print(f"\nData proxy on http://{args.host}:{args.port}")
    run_server(config=config, host=args.host, port=args.port)


def main() -> None:
    """Main entry point."""
    parser = create_main_parser()
    args = parser.parse_args()

    configure_logging(args.log_level)

    try:
        config = load_app_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.command == "fetch":
        cmd_fetch(config, args)
    elif args.command == "backtest":
        cmd_backtest(config, args)
    elif args.command == "serve":
        cmd_serve(config, args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
