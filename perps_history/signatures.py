"""
Signature Retriever - Paginated transaction listing for a set of addresses.

Each address is paged backward from its newest transaction with a
`before` cursor. Pages of one address are fetched sequentially so the
provider's order is preserved; addresses run concurrently under one pool.

Date bounds are calendar dates in UTC:
- from_date: inclusive, from 00:00:00 of that day
- to_date:   exclusive, from 00:00:00 of that day
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Iterable, Optional, Union

from perps_history.config import HistoryConfig, get_config
from perps_history.exceptions import InvalidInputError, PerpsHistoryError, ProviderUnavailableError
from perps_history.fetcher import RateLimitedFetcher, TokenPool
from perps_history.models import ItemFailure, SignatureInfo
from perps_history.rpc import SolanaRpcClient


logger = logging.getLogger(__name__)

STAGE = "signatures"

DateLike = Union[date, str]


def parse_date(value: Optional[DateLike], field_name: str) -> Optional[date]:
    """Accept a date, a datetime (its UTC date) or an ISO 'YYYY-MM-DD' string."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError as e:
            raise InvalidInputError(
                f"{field_name} must be YYYY-MM-DD, got {value!r}",
                field_name,
                value,
            ) from e
    raise InvalidInputError(f"{field_name} must be a date", field_name, value)


def date_to_timestamp(value: date) -> int:
    """Unix seconds at 00:00 UTC of the given date."""
    return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp())


def resolve_date_range(
    from_date: Optional[DateLike] = None,
    to_date: Optional[DateLike] = None,
) -> tuple[Optional[int], Optional[int]]:
    """
    Validate bounds and convert them to unix-second boundaries.

    Raises:
        InvalidInputError: Unparseable date or to_date not after from_date
    """
    start = parse_date(from_date, "from_date")
    end = parse_date(to_date, "to_date")
    if start is not None and end is not None and end <= start:
        raise InvalidInputError(
            f"to_date ({end}) must be after from_date ({start})",
            "to_date",
            end,
        )
    return (
        date_to_timestamp(start) if start is not None else None,
        date_to_timestamp(end) if end is not None else None,
    )


def merge_signatures(
    per_address: Iterable[list[SignatureInfo]],
    to_timestamp: Optional[int] = None,
    include_failed: bool = False,
) -> list[SignatureInfo]:
    """
    Deduplicate by signature, apply the upper bound and sort ascending.

    Ordering is (block_time, slot, signature). Entries the provider returned
    without a block time are placed by slot: block time never decreases with
    slot, so such an entry is no earlier than the closest timed entry in a
    lower slot. That lower bound is also what the to_date filter uses, so an
    untimed entry is only dropped when it provably falls after the range.
    """
    merged: dict[str, SignatureInfo] = {}
    for items in per_address:
        for item in items:
            if item.signature in merged:
                continue
            if item.failed and not include_failed:
                continue
            merged[item.signature] = item

    by_slot = sorted(merged.values(), key=lambda s: (s.slot, s.signature))
    floor = _neighbour_times(by_slot)
    ceiling = _neighbour_times(by_slot[::-1])

    ordered = []
    for item in by_slot:
        lower_bound = item.block_time if item.block_time is not None else floor[item.signature]
        if to_timestamp is not None and lower_bound is not None and lower_bound >= to_timestamp:
            continue
        ordered.append(item)

    def order_key(item: SignatureInfo) -> tuple[int, int, str]:
        if item.block_time is not None:
            return (item.block_time, item.slot, item.signature)
        estimate = floor[item.signature]
        if estimate is None:
            estimate = ceiling[item.signature]
        return (estimate or 0, item.slot, item.signature)

    return sorted(ordered, key=order_key)


def _neighbour_times(items: list[SignatureInfo]) -> dict[str, Optional[int]]:
    """Block time of the last timed entry seen before each untimed one."""
    last: Optional[int] = None
    times: dict[str, Optional[int]] = {}
    for item in items:
        if item.block_time is not None:
            last = item.block_time
        else:
            times[item.signature] = last
    return times


class SignatureRetriever:
    """
    Collects the transaction signatures touching a set of addresses.

    Usage:
        retriever = SignatureRetriever(rpc, fetcher)
        signatures = await retriever.retrieve(addresses, from_date="2024-01-01")
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        fetcher: RateLimitedFetcher,
        config: Optional[HistoryConfig] = None,
    ) -> None:
        self.rpc = rpc
        self.fetcher = fetcher
        self.config = config or get_config()

    async def retrieve(
        self,
        addresses: Iterable[str],
        from_date: Optional[DateLike] = None,
        to_date: Optional[DateLike] = None,
        sink: Optional[list[SignatureInfo]] = None,
        failures: Optional[list[ItemFailure]] = None,
    ) -> list[SignatureInfo]:
        """
        Retrieve, merge and order signatures for all addresses.

        Args:
            addresses: Account addresses to page through
            from_date: Inclusive lower bound (calendar date, UTC)
            to_date: Exclusive upper bound (calendar date, UTC)
            sink: Receives every collected item as pages arrive
            failures: Receives per-address failures

        Raises:
            InvalidInputError: Bad date range
            ProviderUnavailableError: Every address failed
        """
        from_ts, to_ts = resolve_date_range(from_date, to_date)
        unique = list(dict.fromkeys(addresses))
        if not unique:
            return []

        pool = TokenPool(
            self.config.fetcher.signature_concurrency,
            self.config.fetcher.min_delay_seconds,
        )
        failures = failures if failures is not None else []
        failed_before = len(failures)

        results = await asyncio.gather(
            *(self._paginate(address, from_ts, pool, sink, failures) for address in unique)
        )

        if all(items is None for items in results):
            raise ProviderUnavailableError(
                f"Signature listing failed for all {len(unique)} addresses",
                stage=STAGE,
                failed_items=len(failures) - failed_before,
                original_error=failures[-1].error if failures else None,
            )

        merged = merge_signatures(
            (items for items in results if items),
            to_timestamp=to_ts,
            include_failed=self.config.retrieval.include_failed_transactions,
        )
        logger.info(
            f"[{STAGE}] {len(merged)} signatures from {len(unique)} addresses "
            f"({len(failures) - failed_before} failures)"
        )
        return merged

    async def _paginate(
        self,
        address: str,
        from_ts: Optional[int],
        pool: TokenPool,
        sink: Optional[list[SignatureInfo]],
        failures: list[ItemFailure],
    ) -> Optional[list[SignatureInfo]]:
        """Page one address backward; None if its first page could not be fetched."""
        page_size = self.config.retrieval.page_size
        max_pages = self.config.retrieval.max_pages_per_address

        collected: list[SignatureInfo] = []
        before: Optional[str] = None
        pages = 0

        while True:
            try:
                page = await self.fetcher.call(
                    lambda b=before: self.rpc.get_signatures_for_address(address, before=b, limit=page_size),
                    pool,
                    label=f"getSignaturesForAddress({address[:8]}, page {pages})",
                )
            except PerpsHistoryError as e:
                failures.append(ItemFailure(STAGE, address, e))
                if pages == 0:
                    return None
                logger.warning(f"[{STAGE}] {address[:8]}... truncated after {pages} pages: {e}")
                return collected

            pages += 1
            if not page:
                break

            reached_start = False
            batch = []
            for entry in page:
                item = SignatureInfo.from_rpc(entry)
                if from_ts is not None and item.block_time is not None and item.block_time < from_ts:
                    reached_start = True
                    continue
                batch.append(item)

            collected.extend(batch)
            if sink is not None:
                sink.extend(batch)

            if reached_start or len(page) < page_size:
                break
            if max_pages is not None and pages >= max_pages:
                logger.warning(f"[{STAGE}] {address[:8]}... stopped at page limit {max_pages}")
                break
            before = page[-1]["signature"]

        logger.debug(f"[{STAGE}] {address[:8]}...: {len(collected)} signatures in {pages} pages")
        return collected
