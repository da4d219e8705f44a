"""
Tests for TransactionDecoder and request classification.

Tests cover:
- Fetch + decode with item-level failure isolation
- Chronological re-sort independent of completion order
- Attribution policy for multi-position transactions
- Request type classification
"""

import pytest
from solders.pubkey import Pubkey

from conftest import USD, build_transaction, event_payload, make_event
from perps_history import schema
from perps_history.decoder import AttributionPolicy, TransactionDecoder, attribute, classify_events
from perps_history.exceptions import DecodeError, NotFoundError, ProviderUnavailableError, TransientNetworkError
from perps_history.models import EventKind, PositionRequestInfo, RequestChange, RequestType, SignatureInfo


POSITION_A = str(Pubkey.new_unique())
POSITION_B = str(Pubkey.new_unique())
REQUEST = str(Pubkey.new_unique())


def open_payload(position: str, size: int = 100 * USD) -> bytes:
    return event_payload(
        "IncreasePositionEvent",
        positionKey=position,
        positionSide=schema.SIDE_LONG,
        positionSizeUsd=size,
        sizeUsdDelta=size,
        price=100 * USD,
    )


def trigger_close_payload(position: str, request_key: str) -> bytes:
    return event_payload(
        "DecreasePositionEvent",
        positionKey=position,
        positionSide=schema.SIDE_LONG,
        positionRequestKey=request_key,
        orderType=schema.REQUEST_TYPE_TRIGGER,
        sizeUsdDelta=100 * USD,
        price=90 * USD,
    )


def sig(signature: str, block_time: int) -> SignatureInfo:
    return SignatureInfo(signature=signature, slot=block_time, block_time=block_time)


@pytest.fixture
def decoder(fake_rpc, fetcher, config) -> TransactionDecoder:
    return TransactionDecoder(fake_rpc, fetcher, config=config)


# =============================================================
# TEST: Decode
# =============================================================

class TestDecode:
    """TransactionDecoder.decode."""

    @pytest.mark.asyncio
    async def test_output_is_chronological(self, decoder, fake_rpc):
        fake_rpc.transactions["late"] = build_transaction("late", [open_payload(POSITION_B)], block_time=200)
        fake_rpc.transactions["early"] = build_transaction("early", [open_payload(POSITION_A)], block_time=100)

        events = await decoder.decode([sig("late", 200), sig("early", 100)])

        assert [e.signature for e in events] == ["early", "late"]
        assert [e.timestamp for e in events] == [100, 200]

    @pytest.mark.asyncio
    async def test_fetch_failure_is_skipped_and_recorded(self, decoder, fake_rpc):
        fake_rpc.transactions["ok"] = build_transaction("ok", [open_payload(POSITION_A)])
        failures = []

        events = await decoder.decode([sig("ok", 1), sig("missing", 2)], failures=failures)

        assert [e.signature for e in events] == ["ok"]
        assert [(f.stage, f.item) for f in failures] == [("decoding", "missing")]

    @pytest.mark.asyncio
    async def test_transient_fetch_failure_retried(self, decoder, fake_rpc, recorded_sleep):
        fake_rpc.transactions["flaky"] = build_transaction("flaky", [open_payload(POSITION_A)])
        fake_rpc.failures["getTransaction:flaky"] = [TransientNetworkError("reset")]

        events = await decoder.decode([sig("flaky", 1)])

        assert len(events) == 1
        assert recorded_sleep.delays == [0.5]

    @pytest.mark.asyncio
    async def test_undecodable_transaction_is_skipped(self, decoder, fake_rpc):
        fake_rpc.transactions["bad"] = build_transaction("bad", [open_payload(POSITION_A)[:40]])
        fake_rpc.transactions["good"] = build_transaction("good", [open_payload(POSITION_B)])
        failures = []

        events = await decoder.decode([sig("bad", 1), sig("good", 2)], failures=failures)

        assert [e.position_key for e in events] == [POSITION_B]
        assert failures[0].item == "bad"
        assert isinstance(failures[0].error, DecodeError)

    @pytest.mark.asyncio
    async def test_unreachable_provider_is_fatal(self, decoder, fake_rpc):
        # Two signatures, three attempts each.
        fake_rpc.failures["getTransaction"] = [TransientNetworkError("reset") for _ in range(6)]

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await decoder.decode([sig("a", 1), sig("b", 2)])

        assert exc_info.value.failed_items == 2
        assert exc_info.value.stage == "decoding"

    @pytest.mark.asyncio
    async def test_missing_bodies_are_item_level(self, decoder, fake_rpc):
        failures = []

        events = await decoder.decode([sig("a", 1), sig("b", 2)], failures=failures)

        assert events == []
        assert sorted(f.item for f in failures) == ["a", "b"]
        assert all(isinstance(f.error, NotFoundError) for f in failures)
        assert fake_rpc.count("getTransaction") == 2

    @pytest.mark.asyncio
    async def test_unrelated_transactions_yield_nothing(self, decoder, fake_rpc):
        fake_rpc.transactions["noise"] = build_transaction("noise", [])

        assert await decoder.decode([sig("noise", 1)]) == []

    @pytest.mark.asyncio
    async def test_empty_input(self, decoder, fake_rpc):
        assert await decoder.decode([]) == []
        assert fake_rpc.calls == []

    @pytest.mark.asyncio
    async def test_sink_receives_events(self, decoder, fake_rpc):
        fake_rpc.transactions["t"] = build_transaction("t", [open_payload(POSITION_A)])
        sink = []

        await decoder.decode([sig("t", 1)], sink=sink)

        assert len(sink) == 1

    @pytest.mark.asyncio
    async def test_filters_foreign_positions(self, fake_rpc, fetcher, config):
        decoder = TransactionDecoder(fake_rpc, fetcher, config=config, position_keys={POSITION_A})
        fake_rpc.transactions["t"] = build_transaction("t", [open_payload(POSITION_B), open_payload(POSITION_A)])

        events = await decoder.decode([sig("t", 1)])

        assert [e.position_key for e in events] == [POSITION_A]

    @pytest.mark.asyncio
    async def test_request_map_classifies_trigger_close(self, decoder, fake_rpc):
        fake_rpc.transactions["close"] = build_transaction("close", [trigger_close_payload(POSITION_A, REQUEST)])
        request_map = {
            REQUEST: PositionRequestInfo(
                request_key=REQUEST,
                position_key=POSITION_A,
                request_change=RequestChange.DECREASE,
                request_type=RequestType.STOP_LOSS,
            ),
        }

        events = await decoder.decode([sig("close", 1)], request_map=request_map)

        assert events[0].request_type is RequestType.STOP_LOSS


# =============================================================
# TEST: Attribution policy
# =============================================================

class TestAttribution:
    """Multi-position transactions."""

    def test_all_keeps_every_position(self):
        events = [
            make_event(EventKind.OPEN, 1, "t", size=1, price=1, position_key="A"),
            make_event(EventKind.OPEN, 1, "t", size=1, price=1, position_key="B", log_index=1),
        ]

        assert attribute(events, AttributionPolicy.ALL) == events

    def test_primary_keeps_first_position(self):
        events = [
            make_event(EventKind.DECREASE, 1, "t", size=1, price=1, position_key="A"),
            make_event(EventKind.OPEN, 1, "t", size=1, price=1, position_key="B", log_index=1),
            make_event(EventKind.INCREASE, 1, "t", size=1, price=1, position_key="A", log_index=2),
        ]

        kept = attribute(events, AttributionPolicy.PRIMARY)

        assert [e.position_key for e in kept] == ["A", "A"]

    @pytest.mark.asyncio
    async def test_policy_read_from_config(self, fake_rpc, fetcher, config):
        config.retrieval.attribution_policy = "primary"
        decoder = TransactionDecoder(fake_rpc, fetcher, config=config)
        fake_rpc.transactions["t"] = build_transaction("t", [open_payload(POSITION_A), open_payload(POSITION_B)])

        events = await decoder.decode([sig("t", 1)])

        assert decoder.policy is AttributionPolicy.PRIMARY
        assert [e.position_key for e in events] == [POSITION_A]


# =============================================================
# TEST: Classification
# =============================================================

class TestClassifyEvents:
    """classify_events."""

    def test_liquidation_always_liquidation(self):
        event = make_event(EventKind.LIQUIDATE, 1, "t", size=1, price=1, request_type=None)

        assert classify_events([event])[0].request_type is RequestType.LIQUIDATION

    def test_default_is_market(self):
        event = make_event(EventKind.DECREASE, 1, "t", size=1, price=1, request_type=None)

        assert classify_events([event])[0].request_type is RequestType.MARKET

    def test_unresolved_trigger_decrease_left_open(self):
        event = make_event(EventKind.DECREASE, 1, "t", size=1, price=1, request_type=None, is_trigger=True)

        assert classify_events([event])[0].request_type is None

    def test_request_created_in_batch_resolves_fill(self):
        created = make_event(
            EventKind.REQUEST_CREATED, 1, "req", request_type=RequestType.TAKE_PROFIT,
            request_key=REQUEST,
        )
        fill = make_event(
            EventKind.DECREASE, 5, "fill", size=1, price=1, request_type=None,
            request_key=REQUEST, is_trigger=True,
        )

        classified = classify_events([created, fill])

        assert classified[1].request_type is RequestType.TAKE_PROFIT

    def test_existing_type_kept(self):
        event = make_event(EventKind.OPEN, 1, "t", size=1, price=1, request_type=RequestType.LIMIT)

        assert classify_events([event])[0] is event

    def test_cancelled_trigger_decrease_left_open(self):
        cancelled = make_event(
            EventKind.REQUEST_CANCELLED, 1, "cancel", request_type=None,
            request_key=REQUEST, request_change=RequestChange.DECREASE, is_trigger=True,
        )

        assert classify_events([cancelled])[0].request_type is None

    def test_cancelled_market_request_is_market(self):
        cancelled = make_event(
            EventKind.REQUEST_CANCELLED, 1, "cancel", request_type=None,
            request_key=REQUEST, request_change=RequestChange.DECREASE,
        )

        assert classify_events([cancelled])[0].request_type is RequestType.MARKET
