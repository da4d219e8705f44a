"""
Report Assembler - Maps lifecycles onto the output record shape.

No business logic: ordering, formatting and the generation timestamp only.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from perps_history.lifecycle import to_usd
from perps_history.models import ItemFailure, PositionLifecycle, RawEvent, TradeReport
from perps_history.schema import custody_symbol


USD_QUANTUM = Decimal("0.000001")
LEVERAGE_QUANTUM = Decimal("0.01")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _decimal(value: Optional[Decimal], quantum: Decimal = USD_QUANTUM) -> Optional[str]:
    if value is None:
        return None
    return format(value.quantize(quantum), "f")


def _iso(timestamp: Optional[int]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def format_event(event: RawEvent) -> dict[str, Any]:
    # A cancelled trigger decrease whose creation fell outside the range has
    # no threshold to classify it by; its type stays null.
    request_type = event.request_type
    return {
        "timestamp": _iso(event.timestamp),
        "transaction_signature": event.signature,
        "event_name": event.kind.value,
        "action": event.action.value,
        "type": request_type.value if request_type else None,
        "size_usd": _decimal(to_usd(event.size_delta)),
        "price": _decimal(to_usd(event.price)) if event.price else None,
        "fee_usd": _decimal(to_usd(event.fee)),
    }


def format_position(lifecycle: PositionLifecycle) -> dict[str, Any]:
    """
    Output record for one lifecycle.

    Terminal positions report size and collateral at peak exposure; active
    positions report current values and carry no exit fields.
    """
    terminal = lifecycle.is_terminal
    record: dict[str, Any] = {
        "trade_id": f"{lifecycle.position_key[:8]}-{lifecycle.generation}",
        "position_key": lifecycle.position_key,
        "symbol": custody_symbol(lifecycle.custody),
        "direction": lifecycle.side.value,
        "status": lifecycle.status.value,
        "collateral_token": custody_symbol(lifecycle.collateral_custody),
        "size_usd": _decimal(lifecycle.peak_size_usd if terminal else lifecycle.size_usd),
        "collateral_usd": _decimal(
            lifecycle.collateral_at_peak_usd if terminal else lifecycle.collateral_usd
        ),
        "leverage": _decimal(lifecycle.leverage, LEVERAGE_QUANTUM),
        "entry_price": _decimal(lifecycle.entry_price),
        "total_fees": _decimal(lifecycle.total_fees),
        "entry_time": _iso(lifecycle.entry_time),
    }
    if terminal:
        record["exit_price"] = _decimal(lifecycle.exit_price)
        record["realized_pnl"] = _decimal(lifecycle.realized_pnl)
        record["exit_time"] = _iso(lifecycle.exit_time)

    record["events"] = [format_event(e) for e in lifecycle.events]
    record["warnings"] = [
        {"message": w.message, "signature": w.signature, "context": w.context}
        for w in lifecycle.warnings
    ]
    return record


class ReportAssembler:
    """
    Orders lifecycles and stamps the report.

    Usage:
        report = ReportAssembler().assemble(wallet, lifecycles)
        payload = report.to_dict()
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock

    def assemble(
        self,
        wallet_address: str,
        lifecycles: Iterable[PositionLifecycle],
        partial: bool = False,
        failures: Iterable[ItemFailure] = (),
    ) -> TradeReport:
        """Most recent activity first; ties broken by key then generation."""
        ordered = sorted(lifecycles, key=lambda lc: (lc.position_key, lc.generation))
        ordered.sort(key=lambda lc: lc.last_activity, reverse=True)
        return TradeReport(
            wallet_address=wallet_address,
            sync_timestamp=self._clock(),
            positions=ordered,
            partial=partial,
            failures=list(failures),
        )
