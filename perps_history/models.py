"""
Perps History Models - Typed records flowing through the pipeline.

Amounts on RawEvent are exchange-native fixed-point integers (6 decimals
for USD values and prices). Conversion to decimal USD happens in the
reconstructor and report layers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from perps_history.exceptions import InconsistentLifecycleError, PerpsHistoryError


T = TypeVar("T")


class Side(Enum):
    """Position direction."""
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1


class EventKind(Enum):
    """Decoded program event variants."""
    OPEN = "open"
    INCREASE = "increase"
    DECREASE = "decrease"
    INSTANT_INCREASE = "instant_increase"
    INSTANT_DECREASE = "instant_decrease"
    LIQUIDATE = "liquidate"
    REQUEST_CREATED = "request_created"
    REQUEST_CANCELLED = "request_cancelled"

    @property
    def is_increase(self) -> bool:
        return self in (EventKind.OPEN, EventKind.INCREASE, EventKind.INSTANT_INCREASE)

    @property
    def is_decrease(self) -> bool:
        return self in (EventKind.DECREASE, EventKind.INSTANT_DECREASE)

    @property
    def is_request(self) -> bool:
        return self in (EventKind.REQUEST_CREATED, EventKind.REQUEST_CANCELLED)


class RequestType(Enum):
    """How the order behind an event was placed."""
    MARKET = "market"
    LIMIT = "limit"
    STOP_LOSS = "stop-loss"
    TAKE_PROFIT = "take-profit"
    LIQUIDATION = "liquidation"


class RequestChange(Enum):
    """Whether a position request adds to or removes from a position."""
    INCREASE = "increase"
    DECREASE = "decrease"


class PositionStatus(Enum):
    """Lifecycle status."""
    ACTIVE = "active"
    CLOSED = "closed"
    LIQUIDATED = "liquidated"

    @property
    def is_terminal(self) -> bool:
        return self is not PositionStatus.ACTIVE


class Action(Enum):
    """Trade direction of a single event."""
    BUY = "buy"
    SELL = "sell"


class AddressKind(Enum):
    """Role of a discovered on-chain address."""
    POSITION = "position"
    REQUEST = "request"


# ─────────────────────────────────────────────────────────────
# Retrieval records
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SignatureInfo:
    """One entry of getSignaturesForAddress."""
    signature: str
    slot: int
    block_time: Optional[int] = None
    failed: bool = False

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> "SignatureInfo":
        """Create from an RPC response entry."""
        return cls(
            signature=data["signature"],
            slot=int(data.get("slot") or 0),
            block_time=data.get("blockTime"),
            failed=data.get("err") is not None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "slot": self.slot,
            "block_time": self.block_time,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class DiscoveredAddress:
    """A position or request account reachable from a wallet."""
    address: str
    kind: AddressKind
    custody: Optional[str] = None
    collateral_custody: Optional[str] = None
    side: Optional[Side] = None
    exists: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "kind": self.kind.value,
            "custody": self.custody,
            "collateral_custody": self.collateral_custody,
            "side": self.side.value if self.side else None,
            "exists": self.exists,
        }


@dataclass(frozen=True)
class PositionRequestInfo:
    """Parsed PositionRequest account state used for type attribution."""
    request_key: str
    position_key: str
    request_change: RequestChange
    request_type: Optional[RequestType]
    side: Optional[Side] = None
    trigger_price: Optional[int] = None


@dataclass
class DiscoveryResult:
    """Output of AddressDiscovery for one wallet."""
    wallet_address: str
    addresses: list[DiscoveredAddress] = field(default_factory=list)
    requests: dict[str, PositionRequestInfo] = field(default_factory=dict)
    candidates_derived: int = 0
    failures: list["ItemFailure"] = field(default_factory=list)

    @property
    def address_keys(self) -> list[str]:
        return [a.address for a in self.addresses]

    @property
    def position_keys(self) -> set[str]:
        keys = {a.address for a in self.addresses if a.kind is AddressKind.POSITION}
        keys.update(r.position_key for r in self.requests.values())
        return keys

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "addresses": [a.to_dict() for a in self.addresses],
            "requests": sorted(self.requests),
            "candidates_derived": self.candidates_derived,
            "failures": [f.to_dict() for f in self.failures],
        }


@dataclass(frozen=True)
class ItemFailure:
    """An item-level failure recorded instead of aborting the run."""
    stage: str
    item: str
    error: PerpsHistoryError

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "item": self.item,
            "error": self.error.to_dict(),
        }


@dataclass
class FetchResult(Generic[T]):
    """Per-item outcome of a fetcher batch."""
    index: int
    value: Optional[T] = None
    error: Optional[PerpsHistoryError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


# ─────────────────────────────────────────────────────────────
# Domain events
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RawEvent:
    """
    A decoded program event attributed to one position.

    size_delta, price, fee and collateral_delta are unsigned fixed-point
    integers; the direction of the size change follows from `kind`.
    """
    kind: EventKind
    position_key: str
    timestamp: int
    signature: str
    side: Side
    size_delta: int = 0
    price: int = 0
    fee: int = 0
    collateral_delta: int = 0
    request_type: Optional[RequestType] = None

    slot: int = 0
    log_index: int = 0
    owner: Optional[str] = None
    custody: Optional[str] = None
    collateral_custody: Optional[str] = None
    request_key: Optional[str] = None
    request_change: Optional[RequestChange] = None
    position_size_after: Optional[int] = None
    is_trigger: bool = False
    pnl_delta: Optional[int] = None

    @property
    def sort_key(self) -> tuple[int, str, int]:
        return (self.timestamp, self.signature, self.log_index)

    @property
    def signed_size_delta(self) -> int:
        if self.kind.is_increase:
            return self.size_delta
        if self.kind.is_decrease or self.kind is EventKind.LIQUIDATE:
            return -self.size_delta
        return 0

    @property
    def action(self) -> Action:
        """Buy/sell from the trader's point of view."""
        if self.kind.is_request:
            adds = self.request_change is not RequestChange.DECREASE
        else:
            adds = self.kind.is_increase
        if self.side is Side.LONG:
            return Action.BUY if adds else Action.SELL
        return Action.SELL if adds else Action.BUY

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "position_key": self.position_key,
            "timestamp": self.timestamp,
            "signature": self.signature,
            "side": self.side.value,
            "size_delta": self.size_delta,
            "price": self.price,
            "fee": self.fee,
            "collateral_delta": self.collateral_delta,
            "request_type": self.request_type.value if self.request_type else None,
            "slot": self.slot,
            "log_index": self.log_index,
            "request_key": self.request_key,
            "position_size_after": self.position_size_after,
        }


# ─────────────────────────────────────────────────────────────
# Lifecycles and report
# ─────────────────────────────────────────────────────────────

@dataclass
class PositionLifecycle:
    """
    One open-to-terminal history of a position account.

    Identified by (position_key, generation); the exchange reuses position
    accounts, so one key can carry several generations.
    """
    position_key: str
    generation: int
    side: Side
    custody: Optional[str] = None
    collateral_custody: Optional[str] = None
    status: PositionStatus = PositionStatus.ACTIVE
    events: list[RawEvent] = field(default_factory=list)

    open_size: int = 0
    size_usd: Decimal = Decimal("0")
    collateral_usd: Decimal = Decimal("0")
    peak_size_usd: Decimal = Decimal("0")
    collateral_at_peak_usd: Decimal = Decimal("0")
    entry_price: Optional[Decimal] = None
    exit_price: Optional[Decimal] = None
    pnl_contributions: Decimal = Decimal("0")
    total_fees: Decimal = Decimal("0")
    entry_time: Optional[int] = None
    exit_time: Optional[int] = None
    warnings: list[InconsistentLifecycleError] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def last_activity(self) -> int:
        return self.events[-1].timestamp if self.events else (self.entry_time or 0)

    @property
    def leverage(self) -> Optional[Decimal]:
        if self.collateral_at_peak_usd <= 0:
            return None
        return self.peak_size_usd / self.collateral_at_peak_usd

    @property
    def realized_pnl(self) -> Optional[Decimal]:
        if not self.is_terminal:
            return None
        return self.pnl_contributions - self.total_fees

    def warn(self, message: str, signature: Optional[str] = None, **context: Any) -> None:
        self.warnings.append(InconsistentLifecycleError(
            message=message,
            position_key=self.position_key,
            generation=self.generation,
            signature=signature,
            context=context,
        ))


@dataclass
class TradeReport:
    """Final output for one wallet."""
    wallet_address: str
    sync_timestamp: datetime
    positions: list[PositionLifecycle] = field(default_factory=list)
    partial: bool = False
    failures: list[ItemFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        # Imported here to keep models free of formatting concerns.
        from perps_history.report import format_position

        return {
            "wallet_address": self.wallet_address,
            "sync_timestamp": self.sync_timestamp.astimezone(timezone.utc).isoformat(),
            "positions": [format_position(p) for p in self.positions],
            "partial": self.partial,
            "failures": [f.to_dict() for f in self.failures],
        }
