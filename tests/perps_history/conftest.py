"""
Shared fixtures for perps_history tests.

Provides:
- Borsh encoders that mirror the schema layouts
- Transaction builders (self-CPI and log-line event encodings)
- An in-memory RPC provider with scripted failures
- Fast configuration and fetcher instances (no real sleeping)
"""

import base64
import struct
from typing import Any, Optional

import base58
import pytest
from solders.pubkey import Pubkey

from perps_history import schema
from perps_history.config import FetcherConfig, HistoryConfig, RetrievalConfig, RetryConfig
from perps_history.exceptions import NotFoundError
from perps_history.fetcher import RateLimitedFetcher, RetryPolicy
from perps_history.models import EventKind, RawEvent, RequestType, Side


SOL_CUSTODY = "7xS2gz2bTp3fwCC7knJvUWTEU9Tycczu6VhJYKgi1wdz"
USDC_CUSTODY = "G18jKKXQwBbrHeiK3C9MRXhkHsLHf7XgCSisykV46EZa"
FILLER_KEY = "11111111111111111111111111111111"

USD = 1_000_000


# =============================================================
# BORSH ENCODING
# =============================================================

def encode_value(field_type: str, value: Any) -> bytes:
    if field_type.startswith("option<"):
        if value is None:
            return b"\x00"
        return b"\x01" + encode_value(field_type[7:-1], value)
    if field_type == "pubkey":
        return bytes(Pubkey.from_string(value))
    if field_type == "u8":
        return struct.pack("<B", value)
    if field_type == "bool":
        return struct.pack("<?", value)
    if field_type == "u64":
        return struct.pack("<Q", value)
    if field_type == "i64":
        return struct.pack("<q", value)
    raise ValueError(f"Unsupported type {field_type}")


def default_value(field_type: str) -> Any:
    if field_type.startswith("option<"):
        return None
    if field_type == "pubkey":
        return FILLER_KEY
    if field_type == "bool":
        return False
    return 0


def encode_layout(layout: schema.Layout, values: dict[str, Any]) -> bytes:
    return b"".join(
        encode_value(field_type, values.get(name, default_value(field_type)))
        for name, field_type in layout
    )


def event_payload(name: str, **values: Any) -> bytes:
    """Discriminator + body for a named event."""
    layout = schema.EVENT_LAYOUTS.get(name, [])
    return schema.event_discriminator(name) + encode_layout(layout, values)


def position_request_data(**values: Any) -> bytes:
    return schema.POSITION_REQUEST_DISCRIMINATOR + encode_layout(
        schema.POSITION_REQUEST_LAYOUT, values
    )


# =============================================================
# TRANSACTION BUILDERS
# =============================================================

def build_transaction(
    signature: str,
    payloads: list[bytes],
    block_time: Optional[int] = 1_700_000_000,
    slot: int = 250_000_000,
    via: str = "cpi",
    err: Optional[dict] = None,
    program_id: str = schema.PERPS_PROGRAM_ID,
) -> dict[str, Any]:
    """A getTransaction(json) body carrying the given event payloads."""
    account_keys = [FILLER_KEY, program_id]
    meta: dict[str, Any] = {"err": err, "innerInstructions": [], "logMessages": []}

    if via == "cpi":
        meta["innerInstructions"] = [{
            "index": 0,
            "instructions": [
                {
                    "programIdIndex": 1,
                    "accounts": [],
                    "data": base58.b58encode(schema.EVENT_IX_TAG + payload).decode(),
                }
                for payload in payloads
            ],
        }]
    else:
        meta["logMessages"] = [f"Program {program_id} invoke [1]"] + [
            "Program data: " + base64.b64encode(payload).decode() for payload in payloads
        ] + [f"Program {program_id} success"]

    return {
        "slot": slot,
        "blockTime": block_time,
        "meta": meta,
        "transaction": {
            "signatures": [signature],
            "message": {"accountKeys": account_keys, "instructions": []},
        },
    }


def make_event(
    kind: EventKind,
    timestamp: int,
    signature: str,
    size: float = 0,
    price: float = 0,
    fee: float = 0,
    collateral: float = 0,
    side: Side = Side.LONG,
    position_key: str = "PositionKeyAAAA1111",
    request_type: Optional[RequestType] = RequestType.MARKET,
    log_index: int = 0,
    **extra: Any,
) -> RawEvent:
    """RawEvent with USD amounts given as plain numbers."""
    return RawEvent(
        kind=kind,
        position_key=position_key,
        timestamp=timestamp,
        signature=signature,
        side=side,
        size_delta=int(size * USD),
        price=int(price * USD),
        fee=int(fee * USD),
        collateral_delta=int(collateral * USD),
        request_type=request_type,
        log_index=log_index,
        custody=SOL_CUSTODY,
        collateral_custody=SOL_CUSTODY if side is Side.LONG else USDC_CUSTODY,
        **extra,
    )


# =============================================================
# FAKE RPC PROVIDER
# =============================================================

class FakeRpc:
    """
    In-memory stand-in for SolanaRpcClient.

    `failures[method]` is a list of exceptions raised, in order, before the
    method starts answering normally.
    """

    def __init__(self) -> None:
        self.accounts: dict[str, dict[str, Any]] = {}
        self.program_accounts: list[dict[str, Any]] = []
        self.signatures: dict[str, list[dict[str, Any]]] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple[str, Any]] = []

    def _maybe_fail(self, method: str) -> None:
        queue = self.failures.get(method)
        if queue:
            raise queue.pop(0)

    def add_signatures(self, address: str, entries: list[tuple[str, int]], err_for: tuple = ()) -> None:
        """Register (signature, block_time) pairs, newest first as the provider returns them."""
        ordered = sorted(entries, key=lambda e: e[1], reverse=True)
        self.signatures[address] = [
            {
                "signature": sig,
                "slot": block_time,
                "blockTime": block_time,
                "err": {"InstructionError": [0, "Custom"]} if sig in err_for else None,
            }
            for sig, block_time in ordered
        ]

    async def get_multiple_accounts(self, addresses: list[str], encoding: str = "base64"):
        self.calls.append(("getMultipleAccounts", list(addresses)))
        self._maybe_fail("getMultipleAccounts")
        return [self.accounts.get(a) for a in addresses]

    async def get_program_accounts(self, program_id: str, filters: list, encoding: str = "base64"):
        self.calls.append(("getProgramAccounts", filters))
        self._maybe_fail("getProgramAccounts")
        return list(self.program_accounts)

    async def get_signatures_for_address(self, address: str, before: Optional[str] = None, limit: int = 300):
        self.calls.append(("getSignaturesForAddress", (address, before, limit)))
        self._maybe_fail("getSignaturesForAddress")
        entries = self.signatures.get(address, [])
        start = 0
        if before is not None:
            start = next(i for i, e in enumerate(entries) if e["signature"] == before) + 1
        return entries[start:start + limit]

    async def get_transaction(self, signature: str):
        self.calls.append(("getTransaction", signature))
        self._maybe_fail(f"getTransaction:{signature}")
        self._maybe_fail("getTransaction")
        if signature not in self.transactions:
            raise NotFoundError(f"Transaction not found: {signature}", method="getTransaction")
        return dict(self.transactions[signature], signature=signature)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)


# =============================================================
# FIXTURES
# =============================================================

class RecordingSleep:
    """Async sleep replacement recording requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def wallet() -> str:
    return str(Pubkey.new_unique())


@pytest.fixture
def fake_rpc() -> FakeRpc:
    return FakeRpc()


@pytest.fixture
def recorded_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def config() -> HistoryConfig:
    return HistoryConfig(
        retry=RetryConfig(max_attempts=3, base_delay_seconds=0.5, backoff_factor=2.0),
        fetcher=FetcherConfig(min_delay_seconds=0.0),
        retrieval=RetrievalConfig(page_size=3),
    )


@pytest.fixture
def fetcher(config: HistoryConfig, recorded_sleep: RecordingSleep) -> RateLimitedFetcher:
    return RateLimitedFetcher(RetryPolicy.from_config(config.retry), sleep=recorded_sleep, name="test")
