"""
Perps History Package - Trade history reconstruction for Jupiter Perpetuals.

Turns a wallet's on-chain transactions into position lifecycles
(open -> increase/decrease -> close/liquidate) with PnL, fees and leverage.

Features:
- Deterministic position address derivation (no indexer needed)
- Rate-limit aware retrieval with bounded concurrency and backoff
- Best-effort decoding; item failures recorded, never fatal
- Pure lifecycle reconstruction with account-reuse generations
- Partial, explicitly flagged reports on timeout

Quick Start:
    from perps_history import TradeHistoryPipeline, HistoryConfig

    async def history(wallet: str):
        config = HistoryConfig.from_env()
        async with TradeHistoryPipeline(config) as pipeline:
            report = await pipeline.run(wallet, from_date="2024-06-01", timeout=120)

        for position in report.to_dict()["positions"]:
            print(f"{position['trade_id']} {position['symbol']} {position['status']}")
            print(f"  PnL: {position.get('realized_pnl')}")

Pipeline:
    AddressDiscovery -> SignatureRetriever -> TransactionDecoder
        -> LifecycleReconstructor -> ReportAssembler
"""

from perps_history.config import (
    FetcherConfig,
    HistoryConfig,
    RetrievalConfig,
    RetryConfig,
    get_config,
    set_config,
)
from perps_history.decoder import AttributionPolicy, TransactionDecoder
from perps_history.discovery import AddressDiscovery
from perps_history.exceptions import (
    DecodeError,
    DiscoveryError,
    FetchError,
    InconsistentLifecycleError,
    InvalidInputError,
    MalformedError,
    NotFoundError,
    PerpsHistoryError,
    ProviderUnavailableError,
    RateLimitedError,
    TransientNetworkError,
)
from perps_history.fetcher import RateLimitedFetcher, RetryPolicy, TokenPool
from perps_history.lifecycle import LifecycleReconstructor
from perps_history.models import (
    Action,
    EventKind,
    PositionLifecycle,
    PositionStatus,
    RawEvent,
    RequestType,
    Side,
    SignatureInfo,
    TradeReport,
)
from perps_history.oracle import DecodingOracle, JupiterPerpsOracle
from perps_history.pipeline import TradeHistoryPipeline, fetch_trade_history
from perps_history.report import ReportAssembler
from perps_history.rpc import SolanaRpcClient
from perps_history.signatures import SignatureRetriever


__version__ = "1.0.0"

__all__ = [
    # Pipeline
    "TradeHistoryPipeline",
    "fetch_trade_history",

    # Components
    "AddressDiscovery",
    "SignatureRetriever",
    "TransactionDecoder",
    "AttributionPolicy",
    "LifecycleReconstructor",
    "ReportAssembler",

    # Fetching
    "RateLimitedFetcher",
    "RetryPolicy",
    "TokenPool",
    "SolanaRpcClient",

    # Decoding
    "DecodingOracle",
    "JupiterPerpsOracle",

    # Models
    "Action",
    "EventKind",
    "PositionLifecycle",
    "PositionStatus",
    "RawEvent",
    "RequestType",
    "Side",
    "SignatureInfo",
    "TradeReport",

    # Config
    "HistoryConfig",
    "RetryConfig",
    "FetcherConfig",
    "RetrievalConfig",
    "get_config",
    "set_config",

    # Exceptions
    "PerpsHistoryError",
    "FetchError",
    "RateLimitedError",
    "TransientNetworkError",
    "NotFoundError",
    "MalformedError",
    "DecodeError",
    "InvalidInputError",
    "InconsistentLifecycleError",
    "DiscoveryError",
    "ProviderUnavailableError",
]
