"""
Fetch Trade History - Command-line runner.

============================================================
USAGE
============================================================
python scripts/fetch_trade_history.py <WALLET>
python scripts/fetch_trade_history.py <WALLET> --from-date 2024-06-01 --to-date 2024-07-01
python scripts/fetch_trade_history.py <WALLET> --rpc-url https://... --output trades.json

Reads SOLANA_RPC_URL and PERPS_HISTORY_* from the environment or a .env file.
============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from perps_history import (
    HistoryConfig,
    PerpsHistoryError,
    TradeHistoryPipeline,
    TradeReport,
)


logger = logging.getLogger(__name__)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="fetch-trade-history",
        description="Reconstruct a wallet's Jupiter Perpetuals trade history",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s 7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU
  %(prog)s <WALLET> --from-date 2024-06-01 --to-date 2024-07-01
  %(prog)s <WALLET> --attribution primary --timeout 120
        """
    )

    parser.add_argument("wallet", help="Wallet public key (base58)")

    # --------------------------------------------------------
    # Range
    # --------------------------------------------------------
    range_group = parser.add_argument_group("Date Range (UTC)")
    range_group.add_argument(
        "--from-date",
        type=str,
        default=None,
        help="Inclusive start date (YYYY-MM-DD)",
    )
    range_group.add_argument(
        "--to-date",
        type=str,
        default=None,
        help="Exclusive end date (YYYY-MM-DD)",
    )

    # --------------------------------------------------------
    # Provider
    # --------------------------------------------------------
    provider_group = parser.add_argument_group("Provider Options")
    provider_group.add_argument(
        "--rpc-url",
        type=str,
        default=None,
        help="Solana RPC endpoint (default: SOLANA_RPC_URL)",
    )
    provider_group.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Parallel getTransaction calls",
    )
    provider_group.add_argument(
        "--page-size",
        type=int,
        default=None,
        help="Signatures per page (max 1000)",
    )
    provider_group.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds before the run returns partial results",
    )
    provider_group.add_argument(
        "--attribution",
        type=str,
        choices=["all", "primary"],
        default=None,
        help="Multi-position transactions: attribute to all or primary position",
    )

    # --------------------------------------------------------
    # Output
    # --------------------------------------------------------
    output_group = parser.add_argument_group("Output Options")
    output_group.add_argument(
        "--output", "-o",
        type=str,
        default=None,
        help="Write JSON to this file instead of stdout",
    )
    output_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    return parser


def build_config(args: argparse.Namespace) -> HistoryConfig:
    """Environment defaults overridden by CLI flags."""
    config = HistoryConfig.from_env()
    if args.rpc_url:
        config.rpc_url = args.rpc_url
    if args.concurrency is not None:
        config.fetcher.transaction_concurrency = args.concurrency
    if args.page_size is not None:
        config.retrieval.page_size = args.page_size
    if args.attribution:
        config.retrieval.attribution_policy = args.attribution
    if args.timeout is not None:
        config.run_timeout_seconds = args.timeout
    return config


def write_report(report: TradeReport, path: Optional[str]) -> None:
    payload = json.dumps(report.to_dict(), indent=2)
    if path:
        with open(path, "w", encoding="utf-8") as f:
            f.write(payload)
        logger.info(f"Report written to {path}")
    else:
        print(payload)


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace) -> int:
    config = build_config(args)

    async with TradeHistoryPipeline(config) as pipeline:
        try:
            report = await pipeline.run(args.wallet, args.from_date, args.to_date)
        except PerpsHistoryError as e:
            logger.error(f"Run failed: {e}")
            return 1

    write_report(report, args.output)
    if report.partial:
        logger.warning(f"Partial report: {len(report.failures)} item failures")
        return 2
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (0 complete, 2 partial, 1 failed)
    """
    load_dotenv()

    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s | %(levelname)-5s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    try:
        return asyncio.run(async_main(args))
    except PerpsHistoryError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
