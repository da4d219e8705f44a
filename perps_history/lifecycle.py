"""
Lifecycle Reconstructor - Folds ordered events into position lifecycles.

Pure and deterministic: no I/O, no state kept between calls.

State machine per position key:

    UNINITIALIZED --open/instant_increase--> ACTIVE
    ACTIVE --increase/decrease (size > 0)--> ACTIVE
    ACTIVE --decrease to zero--------------> CLOSED
    ACTIVE --liquidate---------------------> LIQUIDATED
    ACTIVE --open (close never seen)-------> CLOSED, with a warning

CLOSED and LIQUIDATED are terminal. The exchange reuses position accounts,
so the next event on a terminal key starts a new generation in the arena.
"""

import logging
from dataclasses import replace
from decimal import Decimal
from typing import Iterable, Optional

from perps_history.models import (
    EventKind,
    PositionLifecycle,
    PositionStatus,
    RawEvent,
    RequestType,
)
from perps_history.schema import USD_DECIMALS


logger = logging.getLogger(__name__)

USD_SCALE = Decimal(10) ** USD_DECIMALS

ArenaKey = tuple[str, int]


def to_usd(value: Optional[int]) -> Decimal:
    """Exchange fixed-point integer to decimal USD."""
    if not value:
        return Decimal("0")
    return Decimal(value) / USD_SCALE


class LifecycleReconstructor:
    """
    Builds PositionLifecycle records from decoded events.

    Usage:
        lifecycles = LifecycleReconstructor().reconstruct(events)
        closed = [lc for lc in lifecycles if lc.is_terminal]
    """

    def reconstruct(self, events: Iterable[RawEvent]) -> list[PositionLifecycle]:
        """Group by position key, order each group, and fold it."""
        groups: dict[str, list[RawEvent]] = {}
        for event in events:
            groups.setdefault(event.position_key, []).append(event)

        arena: dict[ArenaKey, PositionLifecycle] = {}
        for position_key in sorted(groups):
            ordered = sorted(groups[position_key], key=lambda e: e.sort_key)
            self._fold(position_key, ordered, arena)

        lifecycles = list(arena.values())
        logger.debug(
            f"[reconstructor] {len(lifecycles)} lifecycles from {len(groups)} position keys"
        )
        return lifecycles

    # ─────────────────────────────────────────────────────────────
    # Folding
    # ─────────────────────────────────────────────────────────────

    def _fold(
        self,
        position_key: str,
        events: list[RawEvent],
        arena: dict[ArenaKey, PositionLifecycle],
    ) -> None:
        current: Optional[PositionLifecycle] = None
        pending_requests: list[RawEvent] = []
        generation = 0

        for event in events:
            if current is not None and current.is_terminal:
                current = None
            elif current is not None and event.kind is EventKind.OPEN:
                self._close_unseen(current, event)
                current = None

            if event.kind.is_request:
                if current is None:
                    pending_requests.append(event)
                else:
                    current.events.append(event)
                continue

            if current is None:
                current = self._start(position_key, generation, event, pending_requests)
                arena[(position_key, generation)] = current
                generation += 1
                pending_requests = []

            self._apply(current, event)

        if pending_requests:
            logger.debug(
                f"[reconstructor] {position_key[:8]}...: {len(pending_requests)} "
                f"request events with no following fill"
            )

    def _start(
        self,
        position_key: str,
        generation: int,
        event: RawEvent,
        pending_requests: list[RawEvent],
    ) -> PositionLifecycle:
        lifecycle = PositionLifecycle(
            position_key=position_key,
            generation=generation,
            side=event.side,
            custody=event.custody,
            collateral_custody=event.collateral_custody,
            events=list(pending_requests),
            entry_time=event.timestamp,
        )
        if event.kind not in (EventKind.OPEN, EventKind.INSTANT_INCREASE):
            lifecycle.warn(
                "missing_open: history starts after the position was opened",
                signature=event.signature,
                first_event=event.kind.value,
            )
            # Seed the size the exchange held before this event.
            if event.position_size_after is not None:
                lifecycle.open_size = max(event.position_size_after - event.signed_size_delta, 0)
                lifecycle.size_usd = to_usd(lifecycle.open_size)
                lifecycle.peak_size_usd = lifecycle.size_usd
        return lifecycle

    def _apply(self, lifecycle: PositionLifecycle, event: RawEvent) -> None:
        event = self._resolve_type(lifecycle, event)
        lifecycle.events.append(event)
        lifecycle.total_fees += to_usd(event.fee)

        if event.side is not lifecycle.side:
            lifecycle.warn(
                f"Event side {event.side.value} differs from position side {lifecycle.side.value}",
                signature=event.signature,
            )

        if event.kind.is_increase:
            self._increase(lifecycle, event)
        elif event.kind.is_decrease:
            self._decrease(lifecycle, event)
        elif event.kind is EventKind.LIQUIDATE:
            self._liquidate(lifecycle, event)

    def _resolve_type(self, lifecycle: PositionLifecycle, event: RawEvent) -> RawEvent:
        """Classify a trigger decrease by whether it filled in profit."""
        if event.request_type is not None:
            return event
        if not (event.kind.is_decrease and event.is_trigger):
            return replace(event, request_type=RequestType.MARKET)

        price = to_usd(event.price)
        entry = lifecycle.entry_price
        if entry is None or price <= 0:
            return replace(event, request_type=RequestType.STOP_LOSS)
        favourable = (price - entry) * lifecycle.side.sign > 0
        return replace(
            event,
            request_type=RequestType.TAKE_PROFIT if favourable else RequestType.STOP_LOSS,
        )

    # ─────────────────────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────────────────────

    def _increase(self, lifecycle: PositionLifecycle, event: RawEvent) -> None:
        added = to_usd(event.size_delta)
        price = to_usd(event.price)
        current = to_usd(lifecycle.open_size)

        if price > 0:
            if lifecycle.entry_price is None or current <= 0:
                lifecycle.entry_price = price
            else:
                # Average over token quantity, not over USD notional.
                quantity = current / lifecycle.entry_price + added / price
                lifecycle.entry_price = (current + added) / quantity

        lifecycle.open_size += event.size_delta
        lifecycle.size_usd = to_usd(lifecycle.open_size)
        lifecycle.collateral_usd += to_usd(event.collateral_delta)
        self._track_peak(lifecycle)
        self._check_reported_size(lifecycle, event)

    def _decrease(self, lifecycle: PositionLifecycle, event: RawEvent) -> None:
        delta = event.size_delta
        if delta > lifecycle.open_size:
            lifecycle.warn(
                "Decrease exceeds open size; clamped",
                signature=event.signature,
                size_delta=delta,
                open_size=lifecycle.open_size,
            )
            delta = lifecycle.open_size

        price = to_usd(event.price)
        lifecycle.pnl_contributions += self._contribution(lifecycle, to_usd(delta), price, event)
        lifecycle.open_size -= delta
        lifecycle.size_usd = to_usd(lifecycle.open_size)
        lifecycle.collateral_usd = max(
            lifecycle.collateral_usd - to_usd(event.collateral_delta), Decimal("0")
        )

        reported_zero = event.position_size_after == 0
        if lifecycle.open_size == 0 or reported_zero:
            if lifecycle.open_size != 0:
                lifecycle.warn(
                    "Exchange reports the position closed but running size is nonzero",
                    signature=event.signature,
                    residual_size=lifecycle.open_size,
                )
            self._terminate(lifecycle, PositionStatus.CLOSED, event, price)
        else:
            self._check_reported_size(lifecycle, event)

    def _liquidate(self, lifecycle: PositionLifecycle, event: RawEvent) -> None:
        price = to_usd(event.price)
        remaining = lifecycle.open_size
        if event.size_delta and event.size_delta != remaining:
            lifecycle.warn(
                "Liquidated size differs from running size",
                signature=event.signature,
                liquidated_size=event.size_delta,
                open_size=remaining,
            )
        if price <= 0:
            lifecycle.warn("Liquidation carries no exit price", signature=event.signature)

        lifecycle.pnl_contributions += self._contribution(lifecycle, to_usd(remaining), price, event)
        lifecycle.open_size = 0
        lifecycle.size_usd = Decimal("0")
        self._terminate(lifecycle, PositionStatus.LIQUIDATED, event, price)

    def _close_unseen(self, lifecycle: PositionLifecycle, event: RawEvent) -> None:
        """End a lifecycle whose closing fill is missing from the history."""
        lifecycle.warn(
            "missing_close: position reopened before its close was seen",
            signature=event.signature,
            residual_size=lifecycle.open_size,
        )
        lifecycle.status = PositionStatus.CLOSED
        lifecycle.exit_price = None
        lifecycle.exit_time = lifecycle.last_activity

    def _terminate(
        self,
        lifecycle: PositionLifecycle,
        status: PositionStatus,
        event: RawEvent,
        price: Decimal,
    ) -> None:
        lifecycle.status = status
        lifecycle.exit_price = price if price > 0 else None
        lifecycle.exit_time = event.timestamp

    # ─────────────────────────────────────────────────────────────
    # Metrics
    # ─────────────────────────────────────────────────────────────

    def _contribution(
        self,
        lifecycle: PositionLifecycle,
        closed_usd: Decimal,
        price: Decimal,
        event: RawEvent,
    ) -> Decimal:
        """PnL of closing `closed_usd` of notional at `price`."""
        entry = lifecycle.entry_price
        if entry and price > 0:
            return closed_usd * (price - entry) / entry * lifecycle.side.sign
        if event.pnl_delta is not None:
            return to_usd(event.pnl_delta)
        if closed_usd > 0:
            lifecycle.warn("Cannot price realized PnL for this fill", signature=event.signature)
        return Decimal("0")

    def _track_peak(self, lifecycle: PositionLifecycle) -> None:
        if lifecycle.size_usd > lifecycle.peak_size_usd:
            lifecycle.peak_size_usd = lifecycle.size_usd
            lifecycle.collateral_at_peak_usd = lifecycle.collateral_usd

    def _check_reported_size(self, lifecycle: PositionLifecycle, event: RawEvent) -> None:
        reported = event.position_size_after
        if reported is not None and reported != lifecycle.open_size:
            lifecycle.warn(
                "Running size differs from exchange-reported size",
                signature=event.signature,
                running_size=lifecycle.open_size,
                reported_size=reported,
            )
