"""
Jupiter Perpetuals Schema - Exchange constants and Borsh layouts.

This is the versioned description of how the perpetuals program encodes
its accounts and events. The decoding oracle reads it; nothing else in
the pipeline interprets raw bytes.

Layouts are ordered (field_name, field_type) pairs. Supported types:
u8, bool, u64, i64, u128, pubkey and option<T> of those.
"""

import hashlib
import struct
from dataclasses import dataclass
from typing import Any, Optional

from solders.pubkey import Pubkey

from perps_history.exceptions import DecodeError


SCHEMA_VERSION = "jupiter-perpetuals/1"

PERPS_PROGRAM_ID = "PERPHjGBqRHArX4DySjwM6UJHiR3sWAatqfdBS2qQJu"
JLP_POOL = "5BUwFW4nRbftYTDMbgxykoFWqWHPzahFSNAaaaJtVKsq"

USD_DECIMALS = 6

# Anchor self-CPI event marker, sha256("anchor:event")[:8] little-endian
EVENT_IX_TAG = bytes.fromhex("e445a52e51cb9a1d")

POSITION_SEED = b"position"

# On-chain enum encodings
SIDE_LONG = 1
SIDE_SHORT = 2
REQUEST_CHANGE_INCREASE = 1
REQUEST_CHANGE_DECREASE = 2
REQUEST_TYPE_MARKET = 0
REQUEST_TYPE_TRIGGER = 1


@dataclass(frozen=True)
class CustodyInfo:
    """A pool custody: one tradable or collateral asset."""
    address: str
    symbol: str
    mint: str
    decimals: int
    stable: bool = False


CUSTODIES: dict[str, CustodyInfo] = {
    c.address: c for c in (
        CustodyInfo(
            "7xS2gz2bTp3fwCC7knJvUWTEU9Tycczu6VhJYKgi1wdz", "SOL",
            "So11111111111111111111111111111111111111112", 9,
        ),
        CustodyInfo(
            "AQCGyheWPLeo6Qp9WpYS9m3Qj479t7R636N9ey1rEjEn", "ETH",
            "7vfCXTUXx5WJV5JADk17DUJ4ksgau7utNKj4b963voxs", 8,
        ),
        CustodyInfo(
            "5Pv3gM9JrFFH883SWAhvJC9RPYmo8UNxuFtv5bMMALkm", "BTC",
            "3NZ9JMVBmGAqocybic2c7LQCJScmgsAZ6vQqTDzcqmJh", 8,
        ),
        CustodyInfo(
            "G18jKKXQwBbrHeiK3C9MRXhkHsLHf7XgCSisykV46EZa", "USDC",
            "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", 6, stable=True,
        ),
        CustodyInfo(
            "4vkNeXiYEUizLdrpdPS1eC2mccyM4NUPRtERrk6ZETkk", "USDT",
            "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB", 6, stable=True,
        ),
    )
}

TRADABLE_CUSTODIES = [c.address for c in CUSTODIES.values() if not c.stable]
STABLE_CUSTODIES = [c.address for c in CUSTODIES.values() if c.stable]


@dataclass(frozen=True)
class Market:
    """One (custody, collateral custody, side) position slot."""
    custody: str
    collateral_custody: str
    side: int


def supported_markets() -> list[Market]:
    """Every position slot a wallet can hold: longs on own asset, shorts on stables."""
    markets = []
    for custody in TRADABLE_CUSTODIES:
        markets.append(Market(custody, custody, SIDE_LONG))
        for stable in STABLE_CUSTODIES:
            markets.append(Market(custody, stable, SIDE_SHORT))
    return markets


def custody_symbol(address: Optional[str]) -> Optional[str]:
    info = CUSTODIES.get(address or "")
    return info.symbol if info else None


# ─────────────────────────────────────────────────────────────
# Discriminators
# ─────────────────────────────────────────────────────────────

def event_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"event:{name}".encode()).digest()[:8]


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


# ─────────────────────────────────────────────────────────────
# Layouts
# ─────────────────────────────────────────────────────────────

Layout = list[tuple[str, str]]

_POSITION_HEADER: Layout = [
    ("positionKey", "pubkey"),
    ("positionSide", "u8"),
    ("positionCustody", "pubkey"),
    ("positionCollateralCustody", "pubkey"),
    ("positionSizeUsd", "u64"),
    ("positionMint", "pubkey"),
]

EVENT_LAYOUTS: dict[str, Layout] = {
    "IncreasePositionEvent": _POSITION_HEADER + [
        ("positionRequestKey", "pubkey"),
        ("positionRequestMint", "pubkey"),
        ("owner", "pubkey"),
        ("orderType", "u8"),
        ("sizeUsdDelta", "u64"),
        ("collateralUsdDelta", "u64"),
        ("collateralTokenDelta", "u64"),
        ("price", "u64"),
        ("priceSlippage", "option<u64>"),
        ("feeToken", "u64"),
        ("feeUsd", "u64"),
        ("openTime", "i64"),
        ("referral", "option<pubkey>"),
        ("updateTime", "i64"),
    ],
    "DecreasePositionEvent": _POSITION_HEADER + [
        ("positionRequestKey", "pubkey"),
        ("positionRequestMint", "pubkey"),
        ("owner", "pubkey"),
        ("orderType", "u8"),
        ("hasProfit", "bool"),
        ("pnlDelta", "u64"),
        ("transferAmountUsd", "u64"),
        ("transferToken", "option<u64>"),
        ("sizeUsdDelta", "u64"),
        ("collateralUsdDelta", "u64"),
        ("price", "u64"),
        ("priceSlippage", "option<u64>"),
        ("feeUsd", "u64"),
        ("openTime", "i64"),
        ("referral", "option<pubkey>"),
        ("updateTime", "i64"),
    ],
    "InstantIncreasePositionEvent": _POSITION_HEADER + [
        ("owner", "pubkey"),
        ("sizeUsdDelta", "u64"),
        ("collateralUsdDelta", "u64"),
        ("collateralTokenDelta", "u64"),
        ("price", "u64"),
        ("priceSlippage", "u64"),
        ("feeToken", "u64"),
        ("feeUsd", "u64"),
        ("openTime", "i64"),
        ("referral", "option<pubkey>"),
        ("updateTime", "i64"),
    ],
    "InstantDecreasePositionEvent": _POSITION_HEADER + [
        ("owner", "pubkey"),
        ("hasProfit", "bool"),
        ("pnlDelta", "u64"),
        ("transferAmountUsd", "u64"),
        ("transferToken", "option<u64>"),
        ("sizeUsdDelta", "u64"),
        ("collateralUsdDelta", "u64"),
        ("price", "u64"),
        ("priceSlippage", "u64"),
        ("feeUsd", "u64"),
        ("openTime", "i64"),
        ("referral", "option<pubkey>"),
        ("updateTime", "i64"),
    ],
    "LiquidateFullPositionEvent": _POSITION_HEADER + [
        ("positionCollateralMint", "pubkey"),
        ("hasProfit", "bool"),
        ("pnlDelta", "u64"),
        ("transferAmountToken", "u64"),
        ("price", "u64"),
        ("feeUsd", "u64"),
        ("liquidationFeeUsd", "u64"),
        ("openTime", "i64"),
        ("updateTime", "i64"),
    ],
    "CreatePositionRequestEvent": [
        ("owner", "pubkey"),
        ("positionKey", "pubkey"),
        ("positionSide", "u8"),
        ("positionMint", "pubkey"),
        ("positionCustody", "pubkey"),
        ("positionCollateralCustody", "pubkey"),
        ("positionRequestKey", "pubkey"),
        ("positionRequestMint", "pubkey"),
        ("sizeUsdDelta", "u64"),
        ("collateralDelta", "u64"),
        ("priceSlippage", "option<u64>"),
        ("jupiterMinimumOut", "option<u64>"),
        ("preSwapAmount", "option<u64>"),
        ("requestChange", "u8"),
        ("requestType", "u8"),
        ("triggerPrice", "option<u64>"),
        ("triggerAboveThreshold", "option<bool>"),
        ("openTime", "i64"),
        ("updateTime", "i64"),
    ],
    "ClosePositionRequestEvent": [
        ("entirePosition", "option<bool>"),
        ("executed", "bool"),
        ("requestChange", "u8"),
        ("requestType", "u8"),
        ("side", "u8"),
        ("positionRequestKey", "pubkey"),
        ("positionKey", "pubkey"),
        ("owner", "pubkey"),
        ("mint", "pubkey"),
        ("amount", "u64"),
    ],
}

# Swap legs bundled with position changes; recognized and ignored.
IGNORED_EVENTS = (
    "IncreasePositionPreSwapEvent",
    "DecreasePositionPostSwapEvent",
    "PoolSwapEvent",
    "PoolSwapExactOutEvent",
)

POSITION_REQUEST_LAYOUT: Layout = [
    ("owner", "pubkey"),
    ("pool", "pubkey"),
    ("custody", "pubkey"),
    ("position", "pubkey"),
    ("mint", "pubkey"),
    ("openTime", "i64"),
    ("updateTime", "i64"),
    ("sizeUsdDelta", "u64"),
    ("collateralDelta", "u64"),
    ("requestChange", "u8"),
    ("requestType", "u8"),
    ("side", "u8"),
    ("priceSlippage", "option<u64>"),
    ("jupiterMinimumOut", "option<u64>"),
    ("preSwapAmount", "option<u64>"),
    ("triggerPrice", "option<u64>"),
    ("triggerAboveThreshold", "option<bool>"),
    ("entirePosition", "option<bool>"),
    ("executed", "bool"),
    ("counter", "u64"),
    ("bump", "u8"),
    ("referral", "option<pubkey>"),
]

POSITION_REQUEST_OWNER_OFFSET = 8

EVENT_NAMES_BY_DISCRIMINATOR: dict[bytes, str] = {
    event_discriminator(name): name
    for name in list(EVENT_LAYOUTS) + list(IGNORED_EVENTS)
}

POSITION_REQUEST_DISCRIMINATOR = account_discriminator("PositionRequest")


# ─────────────────────────────────────────────────────────────
# Borsh decoding
# ─────────────────────────────────────────────────────────────

_FIXED = {
    "u8": ("<B", 1),
    "bool": ("<?", 1),
    "u64": ("<Q", 8),
    "i64": ("<q", 8),
}


class BorshReader:
    """Sequential little-endian reader over a byte buffer."""

    def __init__(self, data: bytes, layout_name: str = "") -> None:
        self._data = data
        self._offset = 0
        self._layout_name = layout_name

    @property
    def offset(self) -> int:
        return self._offset

    def _take(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise DecodeError(
                f"Buffer too short: need {size} bytes at {self._offset}, have {len(self._data)}",
                layout=self._layout_name,
                offset=self._offset,
            )
        chunk = self._data[self._offset:end]
        self._offset = end
        return chunk

    def read(self, field_type: str) -> Any:
        if field_type.startswith("option<") and field_type.endswith(">"):
            tag = self._take(1)[0]
            if tag == 0:
                return None
            if tag != 1:
                raise DecodeError(
                    f"Invalid option tag {tag}",
                    layout=self._layout_name,
                    offset=self._offset - 1,
                )
            return self.read(field_type[7:-1])
        if field_type == "pubkey":
            return str(Pubkey.from_bytes(self._take(32)))
        if field_type == "u128":
            return int.from_bytes(self._take(16), "little")
        if field_type in _FIXED:
            fmt, size = _FIXED[field_type]
            return struct.unpack(fmt, self._take(size))[0]
        raise DecodeError(f"Unsupported field type: {field_type}", layout=self._layout_name)


def decode_layout(layout_name: str, layout: Layout, data: bytes) -> dict[str, Any]:
    """Decode `data` according to `layout`; trailing bytes are tolerated."""
    reader = BorshReader(data, layout_name)
    return {name: reader.read(field_type) for name, field_type in layout}
