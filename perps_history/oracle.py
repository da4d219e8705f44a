"""
Decoding Oracle - Turns raw transactions and accounts into typed records.

The oracle is the only component that knows the exchange's binary schema.
The pipeline depends on the DecodingOracle interface; JupiterPerpsOracle
implements it for the Jupiter Perpetuals program using perps_history.schema.

Events are read from two places:
- self-CPI inner instructions: EVENT_IX_TAG + discriminator + borsh body
- "Program data:" log lines: base64(discriminator + borsh body)
"""

import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import base58

from perps_history import schema
from perps_history.exceptions import DecodeError
from perps_history.models import (
    EventKind,
    PositionRequestInfo,
    RawEvent,
    RequestChange,
    RequestType,
    Side,
)


logger = logging.getLogger(__name__)

PROGRAM_DATA_PREFIX = "Program data: "


class DecodingOracle(ABC):
    """
    Abstract interface to the exchange's fixed, versioned schema.

    Implementations must:
    1. decode_transaction() - extract zero or more RawEvent from a tx body
    2. parse_position_request() - classify a pending request account
    3. expose the program constants needed to derive position addresses
    """

    @property
    @abstractmethod
    def program_id(self) -> str:
        """Program that owns position and request accounts."""
        pass

    @property
    @abstractmethod
    def pool(self) -> str:
        """Pool account used in position address seeds."""
        pass

    @property
    @abstractmethod
    def schema_version(self) -> str:
        pass

    @abstractmethod
    def markets(self) -> list[schema.Market]:
        """Every (custody, collateral custody, side) slot a wallet can hold."""
        pass

    @abstractmethod
    def decode_transaction(self, transaction: dict[str, Any]) -> list[RawEvent]:
        """
        Decode a getTransaction body into events.

        Returns an empty list for transactions with no program events.

        Raises:
            DecodeError: If a recognized event does not match its layout
        """
        pass

    @abstractmethod
    def parse_position_request(self, address: str, data: bytes) -> PositionRequestInfo:
        """
        Parse a PositionRequest account.

        Raises:
            DecodeError: If the data is not a PositionRequest account
        """
        pass

    @abstractmethod
    def position_request_filters(self, owner: str) -> list[dict[str, Any]]:
        """getProgramAccounts filters selecting an owner's request accounts."""
        pass


def classify_request(
    request_change: RequestChange,
    order_type: int,
    side: Optional[Side],
    trigger_above_threshold: Optional[bool],
) -> Optional[RequestType]:
    """
    Map request fields to a request type.

    Trigger decreases fire above or below a threshold: above is profit for
    longs and loss for shorts. Unknown thresholds stay unresolved (None).
    """
    if order_type == schema.REQUEST_TYPE_MARKET:
        return RequestType.MARKET
    if request_change is RequestChange.INCREASE:
        return RequestType.LIMIT
    if trigger_above_threshold is None or side is None:
        return None
    if side is Side.LONG:
        return RequestType.TAKE_PROFIT if trigger_above_threshold else RequestType.STOP_LOSS
    return RequestType.STOP_LOSS if trigger_above_threshold else RequestType.TAKE_PROFIT


def _side(value: int, layout: str) -> Side:
    if value == schema.SIDE_LONG:
        return Side.LONG
    if value == schema.SIDE_SHORT:
        return Side.SHORT
    raise DecodeError(f"Unknown position side {value}", layout=layout)


def _request_change(value: int, layout: str) -> RequestChange:
    if value == schema.REQUEST_CHANGE_INCREASE:
        return RequestChange.INCREASE
    if value == schema.REQUEST_CHANGE_DECREASE:
        return RequestChange.DECREASE
    raise DecodeError(f"Unknown request change {value}", layout=layout)


class JupiterPerpsOracle(DecodingOracle):
    """Decoding oracle for the Jupiter Perpetuals program."""

    def __init__(
        self,
        program_id: str = schema.PERPS_PROGRAM_ID,
        pool: str = schema.JLP_POOL,
    ) -> None:
        self._program_id = program_id
        self._pool = pool

    @property
    def program_id(self) -> str:
        return self._program_id

    @property
    def pool(self) -> str:
        return self._pool

    @property
    def schema_version(self) -> str:
        return schema.SCHEMA_VERSION

    def markets(self) -> list[schema.Market]:
        return schema.supported_markets()

    def position_request_filters(self, owner: str) -> list[dict[str, Any]]:
        return [
            {"memcmp": {
                "offset": 0,
                "bytes": base58.b58encode(schema.POSITION_REQUEST_DISCRIMINATOR).decode(),
            }},
            {"memcmp": {"offset": schema.POSITION_REQUEST_OWNER_OFFSET, "bytes": owner}},
        ]

    # ─────────────────────────────────────────────────────────────
    # Transactions
    # ─────────────────────────────────────────────────────────────

    def decode_transaction(self, transaction: dict[str, Any]) -> list[RawEvent]:
        meta = transaction.get("meta") or {}
        if meta.get("err") is not None:
            return []

        body = transaction.get("transaction") or {}
        signature = transaction.get("signature") or (body.get("signatures") or [""])[0]
        slot = int(transaction.get("slot") or 0)
        block_time = transaction.get("blockTime")

        events: list[RawEvent] = []
        for index, payload in enumerate(self._event_payloads(transaction)):
            name = schema.EVENT_NAMES_BY_DISCRIMINATOR.get(payload[:8])
            if name is None or name in schema.IGNORED_EVENTS:
                continue
            fields = schema.decode_layout(name, schema.EVENT_LAYOUTS[name], payload[8:])
            event = self._to_event(name, fields, signature, slot, block_time, index)
            if event is not None:
                events.append(event)
        return events

    def _account_keys(self, transaction: dict[str, Any]) -> list[str]:
        message = (transaction.get("transaction") or {}).get("message") or {}
        keys = [
            key.get("pubkey", "") if isinstance(key, dict) else str(key)
            for key in message.get("accountKeys", [])
        ]
        loaded = (transaction.get("meta") or {}).get("loadedAddresses") or {}
        keys.extend(loaded.get("writable", []))
        keys.extend(loaded.get("readonly", []))
        return keys

    def _event_payloads(self, transaction: dict[str, Any]) -> list[bytes]:
        """Event bodies (discriminator first), preferring self-CPI over logs."""
        meta = transaction.get("meta") or {}
        keys = self._account_keys(transaction)

        payloads: list[bytes] = []
        for group in meta.get("innerInstructions") or []:
            for ix in group.get("instructions", []):
                index = ix.get("programIdIndex")
                if index is None or index >= len(keys) or keys[index] != self._program_id:
                    continue
                try:
                    raw = base58.b58decode(ix.get("data", ""))
                except ValueError:
                    continue
                if raw[:8] == schema.EVENT_IX_TAG:
                    payloads.append(raw[8:])

        if payloads:
            return payloads

        for line in meta.get("logMessages") or []:
            if not line.startswith(PROGRAM_DATA_PREFIX):
                continue
            try:
                payloads.append(base64.b64decode(line[len(PROGRAM_DATA_PREFIX):], validate=True))
            except ValueError:
                continue
        return payloads

    def _to_event(
        self,
        name: str,
        fields: dict[str, Any],
        signature: str,
        slot: int,
        block_time: Optional[int],
        log_index: int,
    ) -> Optional[RawEvent]:
        timestamp = block_time if block_time is not None else fields.get("updateTime", 0)
        common: dict[str, Any] = {
            "position_key": fields.get("positionKey"),
            "timestamp": int(timestamp),
            "signature": signature,
            "slot": slot,
            "log_index": log_index,
            "owner": fields.get("owner"),
            "custody": fields.get("positionCustody"),
            "collateral_custody": fields.get("positionCollateralCustody"),
        }

        if name == "IncreasePositionEvent":
            is_trigger = fields["orderType"] == schema.REQUEST_TYPE_TRIGGER
            opens = fields["positionSizeUsd"] == fields["sizeUsdDelta"]
            return RawEvent(
                kind=EventKind.OPEN if opens else EventKind.INCREASE,
                side=_side(fields["positionSide"], name),
                size_delta=fields["sizeUsdDelta"],
                price=fields["price"],
                fee=fields["feeUsd"],
                collateral_delta=fields["collateralUsdDelta"],
                request_type=RequestType.LIMIT if is_trigger else None,
                request_key=fields["positionRequestKey"],
                request_change=RequestChange.INCREASE,
                position_size_after=fields["positionSizeUsd"],
                is_trigger=is_trigger,
                **common,
            )

        if name == "InstantIncreasePositionEvent":
            return RawEvent(
                kind=EventKind.INSTANT_INCREASE,
                side=_side(fields["positionSide"], name),
                size_delta=fields["sizeUsdDelta"],
                price=fields["price"],
                fee=fields["feeUsd"],
                collateral_delta=fields["collateralUsdDelta"],
                request_type=RequestType.MARKET,
                request_change=RequestChange.INCREASE,
                position_size_after=fields["positionSizeUsd"],
                **common,
            )

        if name in ("DecreasePositionEvent", "InstantDecreasePositionEvent"):
            instant = name.startswith("Instant")
            is_trigger = not instant and fields["orderType"] == schema.REQUEST_TYPE_TRIGGER
            pnl = fields["pnlDelta"] if fields["hasProfit"] else -fields["pnlDelta"]
            return RawEvent(
                kind=EventKind.INSTANT_DECREASE if instant else EventKind.DECREASE,
                side=_side(fields["positionSide"], name),
                size_delta=fields["sizeUsdDelta"],
                price=fields["price"],
                fee=fields["feeUsd"],
                collateral_delta=fields["collateralUsdDelta"],
                request_type=RequestType.MARKET if instant else None,
                request_key=fields.get("positionRequestKey"),
                request_change=RequestChange.DECREASE,
                position_size_after=fields["positionSizeUsd"],
                is_trigger=is_trigger,
                pnl_delta=pnl,
                **common,
            )

        if name == "LiquidateFullPositionEvent":
            pnl = fields["pnlDelta"] if fields["hasProfit"] else -fields["pnlDelta"]
            return RawEvent(
                kind=EventKind.LIQUIDATE,
                side=_side(fields["positionSide"], name),
                size_delta=fields["positionSizeUsd"],
                price=fields["price"],
                fee=fields["feeUsd"] + fields["liquidationFeeUsd"],
                request_type=RequestType.LIQUIDATION,
                request_change=RequestChange.DECREASE,
                position_size_after=0,
                pnl_delta=pnl,
                **common,
            )

        if name == "CreatePositionRequestEvent":
            side = _side(fields["positionSide"], name)
            change = _request_change(fields["requestChange"], name)
            return RawEvent(
                kind=EventKind.REQUEST_CREATED,
                side=side,
                size_delta=fields["sizeUsdDelta"],
                price=fields["triggerPrice"] or 0,
                collateral_delta=fields["collateralDelta"],
                request_type=classify_request(
                    change, fields["requestType"], side, fields["triggerAboveThreshold"],
                ),
                request_key=fields["positionRequestKey"],
                request_change=change,
                is_trigger=fields["requestType"] == schema.REQUEST_TYPE_TRIGGER,
                **common,
            )

        if name == "ClosePositionRequestEvent":
            # Requests are also closed after they fill; only unfilled closes are cancellations.
            if fields["executed"]:
                return None
            side = _side(fields["side"], name)
            change = _request_change(fields["requestChange"], name)
            return RawEvent(
                kind=EventKind.REQUEST_CANCELLED,
                side=side,
                size_delta=fields["amount"],
                request_type=classify_request(change, fields["requestType"], side, None),
                request_key=fields["positionRequestKey"],
                request_change=change,
                is_trigger=fields["requestType"] == schema.REQUEST_TYPE_TRIGGER,
                **common,
            )

        return None

    # ─────────────────────────────────────────────────────────────
    # Accounts
    # ─────────────────────────────────────────────────────────────

    def parse_position_request(self, address: str, data: bytes) -> PositionRequestInfo:
        if data[:8] != schema.POSITION_REQUEST_DISCRIMINATOR:
            raise DecodeError(
                f"Account {address} is not a PositionRequest",
                layout="PositionRequest",
                offset=0,
            )
        fields = schema.decode_layout("PositionRequest", schema.POSITION_REQUEST_LAYOUT, data[8:])
        side = _side(fields["side"], "PositionRequest")
        change = _request_change(fields["requestChange"], "PositionRequest")
        return PositionRequestInfo(
            request_key=address,
            position_key=fields["position"],
            request_change=change,
            request_type=classify_request(
                change, fields["requestType"], side, fields["triggerAboveThreshold"],
            ),
            side=side,
            trigger_price=fields["triggerPrice"],
        )

    def __repr__(self) -> str:
        return f"<JupiterPerpsOracle(program={self._program_id}, schema={self.schema_version})>"
