"""
Trade History Pipeline - End-to-end run for one wallet.

    wallet -> AddressDiscovery -> SignatureRetriever -> TransactionDecoder
           -> LifecycleReconstructor -> ReportAssembler -> TradeReport

Input is validated before any network call. A run timeout cancels in-flight
requests; whatever was decoded up to that point is still reconstructed and
the report is flagged partial. DiscoveryError and ProviderUnavailableError
abort the run.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from perps_history.config import HistoryConfig, get_config
from perps_history.decoder import TransactionDecoder, classify_events
from perps_history.discovery import AddressDiscovery, parse_wallet
from perps_history.exceptions import PerpsHistoryError
from perps_history.fetcher import RateLimitedFetcher, RetryPolicy
from perps_history.lifecycle import LifecycleReconstructor
from perps_history.models import (
    DiscoveryResult,
    ItemFailure,
    RawEvent,
    SignatureInfo,
    TradeReport,
)
from perps_history.oracle import DecodingOracle, JupiterPerpsOracle
from perps_history.report import Clock, ReportAssembler, utc_now
from perps_history.rpc import SolanaRpcClient
from perps_history.signatures import DateLike, SignatureRetriever, resolve_date_range


logger = logging.getLogger(__name__)


@dataclass
class RunProgress:
    """Work materialized so far; survives cancellation of the run."""
    stage: str = "pending"
    discovery: Optional[DiscoveryResult] = None
    signatures: list[SignatureInfo] = field(default_factory=list)
    events: list[RawEvent] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)
    completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "addresses": len(self.discovery.addresses) if self.discovery else 0,
            "signatures": len(self.signatures),
            "events": len(self.events),
            "failures": len(self.failures),
            "completed": self.completed,
        }


class TradeHistoryPipeline:
    """
    Reconstructs a wallet's perpetuals trade history.

    Usage:
        async with TradeHistoryPipeline() as pipeline:
            report = await pipeline.run("7xKX...", from_date="2024-01-01")
            print(report.to_dict())
    """

    def __init__(
        self,
        config: Optional[HistoryConfig] = None,
        rpc: Optional[SolanaRpcClient] = None,
        oracle: Optional[DecodingOracle] = None,
        fetcher: Optional[RateLimitedFetcher] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config or get_config()
        self.config.validate()

        self._owns_rpc = rpc is None
        self.rpc = rpc or SolanaRpcClient(
            self.config.rpc_url,
            timeout=self.config.fetcher.request_timeout_seconds,
        )
        self.oracle = oracle or JupiterPerpsOracle()
        self.fetcher = fetcher or RateLimitedFetcher(
            RetryPolicy.from_config(self.config.retry),
            name="rpc",
        )
        self.discovery = AddressDiscovery(self.rpc, self.fetcher, self.oracle, self.config)
        self.retriever = SignatureRetriever(self.rpc, self.fetcher, self.config)
        self.reconstructor = LifecycleReconstructor()
        self.assembler = ReportAssembler(clock)

    async def run(
        self,
        wallet_address: str,
        from_date: Optional[DateLike] = None,
        to_date: Optional[DateLike] = None,
        timeout: Optional[float] = None,
    ) -> TradeReport:
        """
        Run the full pipeline for one wallet.

        Args:
            wallet_address: Wallet public key (base58)
            from_date: Inclusive lower bound, calendar date in UTC
            to_date: Exclusive upper bound, calendar date in UTC
            timeout: Seconds before the run is cut short (None = config default)

        Raises:
            InvalidInputError: Bad wallet address or date range
            DiscoveryError: No candidate addresses could be derived
            ProviderUnavailableError: A whole stage failed
        """
        parse_wallet(wallet_address)
        resolve_date_range(from_date, to_date)
        if timeout is None:
            timeout = self.config.run_timeout_seconds

        progress = RunProgress()
        timed_out = False
        try:
            await asyncio.wait_for(
                self._execute(wallet_address, from_date, to_date, progress),
                timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(
                f"[pipeline] Run for {wallet_address[:8]}... timed out during "
                f"{progress.stage}; reporting partial results {progress.to_dict()}"
            )
            progress.failures.append(ItemFailure(
                progress.stage,
                wallet_address,
                PerpsHistoryError(f"Run timed out after {timeout}s", context=progress.to_dict()),
            ))

        events = progress.events
        if not progress.completed:
            requests = progress.discovery.requests if progress.discovery else None
            events = sorted(classify_events(events, requests), key=lambda e: e.sort_key)

        lifecycles = self.reconstructor.reconstruct(events)
        report = self.assembler.assemble(
            wallet_address,
            lifecycles,
            partial=timed_out or bool(progress.failures),
            failures=progress.failures,
        )
        logger.info(
            f"[pipeline] {wallet_address[:8]}...: {len(report.positions)} positions "
            f"from {len(events)} events (partial={report.partial})"
        )
        return report

    async def _execute(
        self,
        wallet_address: str,
        from_date: Optional[DateLike],
        to_date: Optional[DateLike],
        progress: RunProgress,
    ) -> None:
        progress.stage = "discovery"
        discovery = await self.discovery.discover(wallet_address)
        progress.discovery = discovery
        progress.failures.extend(discovery.failures)

        if not discovery.addresses:
            logger.info(f"[pipeline] {wallet_address[:8]}... has no position accounts")
            progress.completed = True
            return

        progress.stage = "signatures"
        signatures = await self.retriever.retrieve(
            discovery.address_keys,
            from_date,
            to_date,
            sink=progress.signatures,
            failures=progress.failures,
        )

        progress.stage = "decoding"
        decoder = TransactionDecoder(
            self.rpc,
            self.fetcher,
            self.oracle,
            self.config,
            position_keys=discovery.position_keys,
        )
        events = await decoder.decode(
            signatures,
            request_map=discovery.requests,
            sink=progress.events,
            failures=progress.failures,
        )

        progress.stage = "reconstruction"
        progress.events = events
        progress.completed = True

    async def close(self) -> None:
        if self._owns_rpc:
            await self.rpc.close()

    async def __aenter__(self) -> "TradeHistoryPipeline":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


async def fetch_trade_history(
    wallet_address: str,
    from_date: Optional[DateLike] = None,
    to_date: Optional[DateLike] = None,
    config: Optional[HistoryConfig] = None,
    timeout: Optional[float] = None,
) -> TradeReport:
    """One-shot convenience wrapper around TradeHistoryPipeline."""
    async with TradeHistoryPipeline(config) as pipeline:
        return await pipeline.run(wallet_address, from_date, to_date, timeout)
