"""
Transaction Decoder - Fetches transaction bodies and decodes them into events.

Best effort: a transaction that cannot be fetched after retries,
or whose program data does not decode, is recorded as an ItemFailure and
skipped. Only a batch in which every fetch exhausts its retries on
rate-limit or network errors aborts the run; not-found and malformed
responses stay item-level.

Output is always re-sorted by (timestamp, signature, log_index); fetch
completion order is never trusted.
"""

import logging
from dataclasses import replace
from enum import Enum
from typing import Any, Iterable, Optional

from perps_history.config import HistoryConfig, get_config
from perps_history.exceptions import DecodeError, ProviderUnavailableError
from perps_history.fetcher import RateLimitedFetcher, TokenPool
from perps_history.models import (
    EventKind,
    FetchResult,
    ItemFailure,
    PositionRequestInfo,
    RawEvent,
    RequestChange,
    RequestType,
    SignatureInfo,
)
from perps_history.oracle import DecodingOracle, JupiterPerpsOracle
from perps_history.rpc import SolanaRpcClient


logger = logging.getLogger(__name__)

STAGE = "decoding"


class AttributionPolicy(Enum):
    """Which positions a multi-position transaction is attributed to."""
    ALL = "all"
    PRIMARY = "primary"


def attribute(events: list[RawEvent], policy: AttributionPolicy) -> list[RawEvent]:
    """Apply the attribution policy to the events of one transaction."""
    if policy is AttributionPolicy.ALL or not events:
        return events
    primary = events[0].position_key
    return [e for e in events if e.position_key == primary]


def _is_trigger_decrease(event: RawEvent) -> bool:
    if not event.is_trigger:
        return False
    if event.kind.is_request:
        return event.request_change is RequestChange.DECREASE
    return event.kind.is_decrease


def classify_events(
    events: list[RawEvent],
    request_map: Optional[dict[str, PositionRequestInfo]] = None,
) -> list[RawEvent]:
    """
    Attach request types.

    Liquidations are always `liquidation`. Otherwise an event keeps the type
    the oracle derived, then takes the type of its request account when one
    is known. Trigger decreases with no known request stay unresolved, both
    fills and the request events that created or cancelled them; every other
    event defaults to `market`.
    """
    known: dict[str, RequestType] = {}
    for key, info in (request_map or {}).items():
        if info.request_type is not None:
            known[key] = info.request_type
    for event in events:
        if event.kind is EventKind.REQUEST_CREATED and event.request_key and event.request_type:
            known.setdefault(event.request_key, event.request_type)

    classified = []
    for event in events:
        request_type = event.request_type
        if event.kind is EventKind.LIQUIDATE:
            request_type = RequestType.LIQUIDATION
        elif request_type is None and event.request_key in known:
            request_type = known[event.request_key]
        elif request_type is None and not _is_trigger_decrease(event):
            request_type = RequestType.MARKET

        classified.append(event if request_type is event.request_type else replace(event, request_type=request_type))
    return classified


class TransactionDecoder:
    """
    Turns signatures into ordered, classified RawEvents.

    Usage:
        decoder = TransactionDecoder(rpc, fetcher, position_keys=discovery.position_keys)
        events = await decoder.decode(signatures, request_map=discovery.requests)
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        fetcher: RateLimitedFetcher,
        oracle: Optional[DecodingOracle] = None,
        config: Optional[HistoryConfig] = None,
        position_keys: Optional[Iterable[str]] = None,
    ) -> None:
        self.rpc = rpc
        self.fetcher = fetcher
        self.oracle = oracle or JupiterPerpsOracle()
        self.config = config or get_config()
        self.policy = AttributionPolicy(self.config.retrieval.attribution_policy)
        self.position_keys = set(position_keys) if position_keys is not None else None

    def _decode_one(self, transaction: dict[str, Any]) -> list[RawEvent]:
        events = self.oracle.decode_transaction(transaction)
        if self.position_keys is not None:
            events = [e for e in events if e.position_key in self.position_keys]
        return attribute(events, self.policy)

    async def decode(
        self,
        signatures: list[SignatureInfo],
        request_map: Optional[dict[str, PositionRequestInfo]] = None,
        sink: Optional[list[RawEvent]] = None,
        failures: Optional[list[ItemFailure]] = None,
    ) -> list[RawEvent]:
        """
        Fetch and decode every signature.

        Args:
            signatures: Ordered signatures from SignatureRetriever
            request_map: Pending request accounts from AddressDiscovery
            sink: Receives events as each transaction decodes
            failures: Receives fetch and decode failures

        Raises:
            ProviderUnavailableError: Every getTransaction call exhausted its retries
        """
        if not signatures:
            return []

        failures = failures if failures is not None else []
        decoded: list[RawEvent] = []
        fetch_failures = 0
        unreachable = 0

        def on_result(result: FetchResult) -> None:
            nonlocal fetch_failures, unreachable
            signature = signatures[result.index].signature
            if not result.ok:
                fetch_failures += 1
                if result.error.retriable:
                    unreachable += 1
                failures.append(ItemFailure(STAGE, signature, result.error))
                return
            try:
                events = self._decode_one(result.value)
            except DecodeError as e:
                logger.debug(f"[{STAGE}] Skipping undecodable transaction {signature[:16]}...: {e}")
                failures.append(ItemFailure(STAGE, signature, e))
                return
            decoded.extend(events)
            if sink is not None:
                sink.extend(events)

        pool = TokenPool(
            self.config.fetcher.transaction_concurrency,
            self.config.fetcher.min_delay_seconds,
        )
        await self.fetcher.execute(
            [lambda s=sig.signature: self.rpc.get_transaction(s) for sig in signatures],
            pool,
            labels=[f"getTransaction({sig.signature[:16]})" for sig in signatures],
            on_result=on_result,
        )

        # Missing or malformed bodies are item-level; only a provider that never
        # answered any request aborts the run.
        if unreachable == len(signatures):
            raise ProviderUnavailableError(
                f"getTransaction unreachable for all {len(signatures)} signatures",
                stage=STAGE,
                failed_items=unreachable,
            )

        events = classify_events(decoded, request_map)
        events.sort(key=lambda e: e.sort_key)

        logger.info(
            f"[{STAGE}] {len(events)} events from {len(signatures)} transactions "
            f"({fetch_failures} fetch failures)"
        )
        return events
