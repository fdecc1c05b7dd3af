#!/usr/bin/env python3
"""APR Oracle Relay.

Fetches the stETH APR from the Lido API and, whenever it has materially
changed, publishes it to the configured ledger contract. Also serves the
latest readings on GET /apy.

Configure via environment variables, a .env file or CLI flags.
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from .src.AprOracle import AprOracle
from .src.RelayConfig import ConfigError, RelayConfig

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# CLI destination -> environment variable name
SETTINGS = {
    "rpc_url": "RPC_URL",
    "private_key": "PRIVATE_KEY",
    "chain_id": "CHAIN_ID",
    "contract_address": "CONTRACT_ADDRESS",
    "tick_interval": "TICK_INTERVAL",
    "epsilon": "EPSILON",
    "fetch_timeout": "FETCH_TIMEOUT",
    "confirmation_timeout": "CONFIRMATION_TIMEOUT",
    "confirmations": "CONFIRMATIONS",
    "api_url": "APR_API_URL",
    "primary_metric": "PRIMARY_METRIC",
    "allow_zero": "ALLOW_ZERO_APR",
    "apr_unit": "APR_UNIT",
    "decimals": "APR_DECIMALS",
    "host": "HOST",
    "port": "PORT",
}


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser. Defaults are resolved later from the environment."""
    parser = argparse.ArgumentParser(
        description="APR Oracle Relay: publish yield changes on-chain",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Relay with settings from .env, serving /apy on 127.0.0.1:3030
  python -m apr_oracle.main

  # Single tick, no HTTP endpoint
  python -m apr_oracle.main --once

  # Poll every 5 seconds and publish the SMA instead of the last value
  python -m apr_oracle.main --tick-interval 5 --primary-metric sma

Environment variables (CLI args take precedence):
  RPC_URL, PRIVATE_KEY, CHAIN_ID, CONTRACT_ADDRESS (required),
  TICK_INTERVAL, EPSILON, FETCH_TIMEOUT, CONFIRMATION_TIMEOUT, CONFIRMATIONS,
  APR_API_URL, PRIMARY_METRIC, ALLOW_ZERO_APR, APR_UNIT, APR_DECIMALS,
  HOST, PORT
""",
    )

    parser.add_argument("--env-file", dest="env_file", default=".env",
                        help="Path of a .env file to load (default: .env)")
    parser.add_argument("--rpc-url", dest="rpc_url", help="Ledger JSON-RPC endpoint")
    parser.add_argument("--private-key", dest="private_key",
                        help="Signing key (prefer the PRIVATE_KEY variable)")
    parser.add_argument("--chain-id", dest="chain_id", help="Numeric network identifier")
    parser.add_argument("--contract-address", dest="contract_address",
                        help="Address of the APR contract")
    parser.add_argument("--tick-interval", dest="tick_interval",
                        help="Seconds between ticks (minimum: 1, default: 60)")
    parser.add_argument("--epsilon",
                        help="Minimum APR change that triggers a publish (default: 1e-9)")
    parser.add_argument("--fetch-timeout", dest="fetch_timeout",
                        help="Provider request timeout in seconds (default: 10.0)")
    parser.add_argument("--confirmation-timeout", dest="confirmation_timeout",
                        help="Seconds to wait for a confirmed receipt (default: 120)")
    parser.add_argument("--confirmations",
                        help="Blocks required to consider a publish final (default: 1)")
    parser.add_argument("--api-url", dest="api_url",
                        help="Provider base URL (default: https://eth-api.lido.fi)")
    parser.add_argument("--primary-metric", dest="primary_metric", choices=["current", "sma"],
                        help="Metric that drives publishing (default: current)")
    parser.add_argument("--allow-zero", dest="allow_zero", action="store_const", const="true",
                        help="Accept an exact 0.0 APR as a legitimate reading")
    parser.add_argument("--apr-unit", dest="apr_unit", choices=["percent", "ratio"],
                        help="Unit the provider reports APR in (default: percent)")
    parser.add_argument("--decimals",
                        help="On-chain fixed-point decimals (default: 18)")
    parser.add_argument("--host", help="Query endpoint bind address (default: 127.0.0.1)")
    parser.add_argument("--port", help="Query endpoint port (default: 3030)")
    parser.add_argument("--no-server", dest="serve", action="store_false",
                        help="Do not start the HTTP query endpoint")
    parser.add_argument("--once", action="store_true",
                        help="Run a single tick and exit")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable verbose (DEBUG) logging")
    return parser


def collect_settings(args: argparse.Namespace, environ=None) -> dict[str, str | None]:
    """Merge CLI values over environment values, keyed by variable name.

    :param args: Parsed CLI arguments.
    :param environ: Environment mapping (default: os.environ).
    :returns: Dict mapping environment variable names to raw values.
    """
    environ = os.environ if environ is None else environ
    settings: dict[str, str | None] = {}
    for dest, name in SETTINGS.items():
        value = getattr(args, dest, None)
        settings[name] = str(value) if value is not None else environ.get(name)
    return settings


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the APR Oracle Relay CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.env_file and os.path.exists(args.env_file):
        load_dotenv(args.env_file, override=False)
        logger.debug(f"Loaded environment from {args.env_file}")

    try:
        config = RelayConfig.from_mapping(collect_settings(args))
        oracle = AprOracle(config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)

    # Log configuration
    logger.info("=" * 60)
    logger.info("APR Oracle Relay")
    logger.info("=" * 60)
    logger.info(f"RPC URL:           {config.rpc_url}")
    logger.info(f"Chain ID:          {config.chain_id}")
    logger.info(f"Contract:          {config.contract_address}")
    logger.info(f"Provider:          {config.api_url}")
    logger.info(f"Primary Metric:    {config.primary_metric}")
    logger.info(f"Tick Interval:     {config.tick_interval}s")
    logger.info(f"Epsilon:           {config.epsilon:g}")
    logger.info(f"Fetch Timeout:     {config.effective_fetch_timeout()}s")
    logger.info(f"Confirmations:     {config.confirmations} (timeout {config.confirmation_timeout}s)")
    logger.info(f"Query Endpoint:    {'disabled' if not args.serve else f'{config.host}:{config.port}'}")
    logger.info("=" * 60)

    try:
        if args.once:
            result = asyncio.run(oracle.run_once())
            logger.info(f"Tick finished: {result.outcome.value}")
        else:
            asyncio.run(oracle.run(serve=args.serve))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
