"""
Perps History Configuration - RPC endpoint, concurrency and retry settings.

Defaults reflect what the public Solana RPC providers tolerate:
5-8 concurrent account lookups, ~300 signatures per page, and a small
inter-call delay to smooth provider-side rate accounting.
Environment overrides are read by HistoryConfig.from_env().
"""

import os
from dataclasses import dataclass, field
from typing import Any, Optional

from perps_history.exceptions import InvalidInputError


DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
MAX_SIGNATURE_PAGE_SIZE = 1000


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry settings shared by every RPC call.

    Rate-limit and transient network failures are retried; not-found and
    malformed requests fail fast.
    """

    max_attempts: int = 3
    """Total attempts per request, including the first."""

    base_delay_seconds: float = 0.5
    """Delay before the first retry."""

    backoff_factor: float = 2.0
    """Multiplier applied to the delay after each retry."""

    max_delay_seconds: float = 10.0
    """Upper bound for a single backoff delay."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_seconds": self.base_delay_seconds,
            "backoff_factor": self.backoff_factor,
            "max_delay_seconds": self.max_delay_seconds,
        }


# ============================================================
# FETCHER CONFIGURATION
# ============================================================

@dataclass
class FetcherConfig:
    """Concurrency limits per pipeline stage."""

    discovery_concurrency: int = 6
    """Parallel account lookups during address discovery."""

    signature_concurrency: int = 4
    """Parallel getSignaturesForAddress calls."""

    transaction_concurrency: int = 8
    """Parallel getTransaction calls."""

    min_delay_seconds: float = 0.05
    """Minimum spacing between successive call starts within a stage."""

    request_timeout_seconds: float = 30.0
    """Per-HTTP-request timeout."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "discovery_concurrency": self.discovery_concurrency,
            "signature_concurrency": self.signature_concurrency,
            "transaction_concurrency": self.transaction_concurrency,
            "min_delay_seconds": self.min_delay_seconds,
            "request_timeout_seconds": self.request_timeout_seconds,
        }


# ============================================================
# RETRIEVAL CONFIGURATION
# ============================================================

@dataclass
class RetrievalConfig:
    """Signature pagination and decoding behaviour."""

    page_size: int = 300
    """Signatures per getSignaturesForAddress page."""

    max_pages_per_address: Optional[int] = None
    """Hard stop for very active accounts (None = unlimited)."""

    include_failed_transactions: bool = False
    """Failed transactions carry no events; skip them by default."""

    require_existing_accounts: bool = True
    """Drop derived addresses that do not currently exist on-chain."""

    attribution_policy: str = "all"
    """Multi-position transactions: 'all' affected positions or 'primary' only."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_size": self.page_size,
            "max_pages_per_address": self.max_pages_per_address,
            "include_failed_transactions": self.include_failed_transactions,
            "require_existing_accounts": self.require_existing_accounts,
            "attribution_policy": self.attribution_policy,
        }


# ============================================================
# MAIN CONFIGURATION
# ============================================================

@dataclass
class HistoryConfig:
    """Main configuration for a trade history run."""

    rpc_url: str = DEFAULT_RPC_URL
    retry: RetryConfig = field(default_factory=RetryConfig)
    fetcher: FetcherConfig = field(default_factory=FetcherConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    run_timeout_seconds: Optional[float] = None

    def validate(self) -> None:
        """Reject settings the pipeline cannot honour."""
        if not self.rpc_url.startswith(("http://", "https://")):
            raise InvalidInputError("rpc_url must be an http(s) URL", "rpc_url", self.rpc_url)
        if self.retry.max_attempts < 1:
            raise InvalidInputError("max_attempts must be >= 1", "max_attempts", self.retry.max_attempts)
        if not 1 <= self.retrieval.page_size <= MAX_SIGNATURE_PAGE_SIZE:
            raise InvalidInputError(
                f"page_size must be between 1 and {MAX_SIGNATURE_PAGE_SIZE}",
                "page_size",
                self.retrieval.page_size,
            )
        if self.retrieval.attribution_policy not in ("all", "primary"):
            raise InvalidInputError(
                "attribution_policy must be 'all' or 'primary'",
                "attribution_policy",
                self.retrieval.attribution_policy,
            )
        for name in ("discovery_concurrency", "signature_concurrency", "transaction_concurrency"):
            if getattr(self.fetcher, name) < 1:
                raise InvalidInputError(f"{name} must be >= 1", name, getattr(self.fetcher, name))

    @classmethod
    def from_env(cls) -> "HistoryConfig":
        """Build configuration from environment variables."""
        config = cls(rpc_url=os.environ.get("SOLANA_RPC_URL", DEFAULT_RPC_URL))

        page_size = os.environ.get("PERPS_HISTORY_PAGE_SIZE")
        if page_size:
            config.retrieval.page_size = int(page_size)

        concurrency = os.environ.get("PERPS_HISTORY_TX_CONCURRENCY")
        if concurrency:
            config.fetcher.transaction_concurrency = int(concurrency)

        max_attempts = os.environ.get("PERPS_HISTORY_MAX_ATTEMPTS")
        if max_attempts:
            config.retry.max_attempts = int(max_attempts)

        policy = os.environ.get("PERPS_HISTORY_ATTRIBUTION")
        if policy:
            config.retrieval.attribution_policy = policy.lower()

        timeout = os.environ.get("PERPS_HISTORY_TIMEOUT")
        if timeout:
            config.run_timeout_seconds = float(timeout)

        return config

    def to_dict(self) -> dict[str, Any]:
        return {
            "rpc_url": self.rpc_url,
            "retry": self.retry.to_dict(),
            "fetcher": self.fetcher.to_dict(),
            "retrieval": self.retrieval.to_dict(),
            "run_timeout_seconds": self.run_timeout_seconds,
        }


# Default configuration instance
_default_config: Optional[HistoryConfig] = None


def get_config() -> HistoryConfig:
    """Get the default configuration."""
    global _default_config
    if _default_config is None:
        _default_config = HistoryConfig.from_env()
    return _default_config


def set_config(config: HistoryConfig) -> None:
    """Set the default configuration."""
    global _default_config
    _default_config = config
