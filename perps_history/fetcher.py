"""
Rate-limited Fetcher - Bounded-concurrency request executor with retry/backoff.

All RPC traffic goes through RateLimitedFetcher:
- A TokenPool bounds in-flight requests and spaces call starts.
- A RetryPolicy retries rate-limit and transient failures with
  exponential backoff; other failures fail fast.
- The token is released while an item backs off, so a retrying
  item never blocks unrelated items sharing the pool.
- Batch failures are per item; a batch never aborts.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, Optional, Sequence, TypeVar

from perps_history.config import RetryConfig
from perps_history.exceptions import (
    FetchError,
    PerpsHistoryError,
    RateLimitedError,
    TransientNetworkError,
)
from perps_history.models import FetchResult


logger = logging.getLogger(__name__)

T = TypeVar("T")

RequestFactory = Callable[[], Awaitable[T]]
SleepFunc = Callable[[float], Awaitable[Any]]


def is_retriable(error: BaseException) -> bool:
    """Default predicate: rate-limit and transient network errors."""
    return isinstance(error, PerpsHistoryError) and error.retriable


# ============================================================
# RETRY POLICY
# ============================================================

@dataclass
class RetryPolicy:
    """
    Exponential backoff parameters applied uniformly by the fetcher.

    Delay before retry n (1-based) is base_delay * backoff_factor ** (n - 1),
    capped at max_delay. A rate-limit error's retry-after hint raises the
    delay to at least the hint.
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    backoff_factor: float = 2.0
    max_delay: float = 10.0
    retriable: Callable[[BaseException], bool] = is_retriable

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            backoff_factor=config.backoff_factor,
            max_delay=config.max_delay_seconds,
        )

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return attempt < self.max_attempts and self.retriable(error)

    def delay_for(self, attempt: int, error: Optional[BaseException] = None) -> float:
        delay = self.base_delay * (self.backoff_factor ** (attempt - 1))
        if isinstance(error, RateLimitedError) and error.retry_after_seconds:
            delay = max(delay, error.retry_after_seconds)
        return min(delay, self.max_delay)


# ============================================================
# TOKEN POOL
# ============================================================

class TokenPool:
    """
    Explicit bounded-resource token pool passed to every fetch call.

    Acquisition is FIFO (asyncio.Semaphore waiters queue), and call starts
    are spaced by at least min_delay seconds.
    """

    def __init__(
        self,
        size: int,
        min_delay: float = 0.0,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if size < 1:
            raise ValueError("TokenPool size must be >= 1")
        self.size = size
        self.min_delay = min_delay
        self._semaphore = asyncio.Semaphore(size)
        self._sleep = sleep
        self._clock = clock
        self._next_start = 0.0
        self._in_flight = 0
        self.peak_in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def _pace(self) -> None:
        if self.min_delay <= 0:
            return
        # Reserve a start slot before suspending so reservation order is FIFO.
        now = self._clock()
        start = max(now, self._next_start)
        self._next_start = start + self.min_delay
        if start > now:
            await self._sleep(start - now)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        async with self._semaphore:
            await self._pace()
            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
            try:
                yield
            finally:
                self._in_flight -= 1

    def __repr__(self) -> str:
        return f"<TokenPool(size={self.size}, min_delay={self.min_delay}, in_flight={self._in_flight})>"


# ============================================================
# FETCHER
# ============================================================

@dataclass
class FetcherStats:
    """Counters for one fetcher instance."""
    calls: int = 0
    retries: int = 0
    failures: int = 0
    rate_limited: int = 0
    errors_by_type: dict[str, int] = field(default_factory=dict)

    def record_error(self, error: PerpsHistoryError) -> None:
        name = error.__class__.__name__
        self.errors_by_type[name] = self.errors_by_type.get(name, 0) + 1
        if isinstance(error, RateLimitedError):
            self.rate_limited += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "retries": self.retries,
            "failures": self.failures,
            "rate_limited": self.rate_limited,
            "errors_by_type": dict(self.errors_by_type),
        }


class RateLimitedFetcher(Generic[T]):
    """
    Executes request factories under a TokenPool with a RetryPolicy.

    Usage:
        fetcher = RateLimitedFetcher(RetryPolicy(max_attempts=3))
        pool = TokenPool(size=8, min_delay=0.05)

        results = await fetcher.execute(
            [lambda s=s: rpc.get_transaction(s) for s in signatures],
            pool,
        )
        ok = [r.value for r in results if r.ok]
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: SleepFunc = asyncio.sleep,
        name: str = "fetcher",
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.name = name
        self.stats = FetcherStats()
        self._sleep = sleep

    async def _run(
        self,
        request: RequestFactory,
        pool: TokenPool,
        label: str,
    ) -> tuple[Any, Optional[PerpsHistoryError], int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with pool.acquire():
                    self.stats.calls += 1
                    return await request(), None, attempt
            except PerpsHistoryError as e:
                error = e
            except asyncio.TimeoutError as e:
                error = TransientNetworkError(f"Request timed out: {label}", original_error=e)
            except Exception as e:
                error = FetchError(f"Unexpected error: {e}", original_error=e)

            self.stats.record_error(error)

            if not self.policy.should_retry(error, attempt):
                self.stats.failures += 1
                if error.retriable:
                    logger.warning(
                        f"[{self.name}] {label} failed after {attempt} attempts: {error}"
                    )
                else:
                    logger.debug(f"[{self.name}] {label} failed (not retriable): {error}")
                return None, error, attempt

            delay = self.policy.delay_for(attempt, error)
            self.stats.retries += 1
            logger.debug(
                f"[{self.name}] Retry {attempt}/{self.policy.max_attempts - 1} "
                f"for {label} in {delay:.2f}s: {error}"
            )
            # Backoff happens outside the pool so other items keep flowing.
            await self._sleep(delay)

    async def call(
        self,
        request: RequestFactory,
        pool: TokenPool,
        label: str = "request",
    ) -> Any:
        """Run a single request; raise its typed error once retries are exhausted."""
        value, error, _ = await self._run(request, pool, label)
        if error is not None:
            raise error
        return value

    async def execute(
        self,
        requests: Sequence[RequestFactory],
        pool: TokenPool,
        labels: Optional[Sequence[str]] = None,
        on_result: Optional[Callable[[FetchResult], None]] = None,
    ) -> list[FetchResult]:
        """
        Run a batch under the pool.

        Returns results aligned with `requests`. `on_result` is invoked as
        each item completes, in completion order.
        """
        async def run_one(index: int, request: RequestFactory) -> FetchResult:
            label = labels[index] if labels else f"item {index}"
            value, error, attempts = await self._run(request, pool, label)
            result = FetchResult(index=index, value=value, error=error, attempts=attempts)
            if on_result is not None:
                on_result(result)
            return result

        if not requests:
            return []

        results = await asyncio.gather(
            *(run_one(i, request) for i, request in enumerate(requests))
        )
        return list(results)

    def __repr__(self) -> str:
        return f"<RateLimitedFetcher(name={self.name}, attempts={self.policy.max_attempts})>"
