"""
Tests for SolanaRpcClient failure classification and request shapes.
"""

from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from perps_history.exceptions import (
    MalformedError,
    NotFoundError,
    RateLimitedError,
    TransientNetworkError,
)
from perps_history.rpc import SolanaRpcClient


def mock_session(status=200, json_data=None, headers=None, text=""):
    """aiohttp-like session whose post() yields one canned response."""
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    response.json = AsyncMock(return_value=json_data)
    response.text = AsyncMock(return_value=text)

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.closed = False
    session.post = MagicMock(return_value=context)
    return session


def sent_payload(session):
    return session.post.call_args.kwargs["json"]


# =============================================================
# TEST: HTTP-level classification
# =============================================================

class TestHttpClassification:
    """HTTP status codes map onto the error taxonomy."""

    @pytest.mark.asyncio
    async def test_429_is_rate_limited_with_hint(self):
        session = mock_session(status=429, headers={"Retry-After": "2"})
        client = SolanaRpcClient(session=session)

        with pytest.raises(RateLimitedError) as exc_info:
            await client.call("getSlot", [])

        assert exc_info.value.retry_after_seconds == 2.0
        assert exc_info.value.retriable

    @pytest.mark.asyncio
    async def test_5xx_is_transient(self):
        client = SolanaRpcClient(session=mock_session(status=503, text="unavailable"))

        with pytest.raises(TransientNetworkError) as exc_info:
            await client.call("getSlot", [])

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_4xx_is_malformed(self):
        client = SolanaRpcClient(session=mock_session(status=400, text="bad request"))

        with pytest.raises(MalformedError):
            await client.call("getSlot", [])

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        session = mock_session()
        session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))
        client = SolanaRpcClient(session=session)

        with pytest.raises(TransientNetworkError):
            await client.call("getSlot", [])

    @pytest.mark.asyncio
    async def test_invalid_json_is_malformed(self):
        session = mock_session()
        response = await session.post().__aenter__()
        response.json = AsyncMock(side_effect=ValueError("not json"))
        client = SolanaRpcClient(session=session)

        with pytest.raises(MalformedError):
            await client.call("getSlot", [])


# =============================================================
# TEST: JSON-RPC error classification
# =============================================================

class TestRpcErrorClassification:
    """JSON-RPC error objects map onto the error taxonomy."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, expected", [
        ({"code": -32429, "message": "rate limited"}, RateLimitedError),
        ({"code": -32000, "message": "Too many requests for a specific RPC call"}, RateLimitedError),
        ({"code": -32005, "message": "Node is behind by 120 slots"}, TransientNetworkError),
        ({"code": -32603, "message": "Internal error"}, TransientNetworkError),
        ({"code": -32602, "message": "Invalid params"}, MalformedError),
        ({"code": -32000, "message": "Account not found"}, NotFoundError),
    ])
    async def test_error_codes(self, error, expected):
        session = mock_session(json_data={"jsonrpc": "2.0", "id": 1, "error": error})
        client = SolanaRpcClient(session=session)

        with pytest.raises(expected):
            await client.call("getAccountInfo", ["x"])


# =============================================================
# TEST: Provider operations
# =============================================================

class TestProviderOperations:
    """Request shapes and result handling."""

    @pytest.mark.asyncio
    async def test_signatures_request_uses_cursor(self):
        session = mock_session(json_data={"result": [{"signature": "s1"}]})
        client = SolanaRpcClient(session=session)

        result = await client.get_signatures_for_address("addr", before="cursor", limit=300)

        payload = sent_payload(session)
        assert payload["method"] == "getSignaturesForAddress"
        assert payload["params"] == ["addr", {"limit": 300, "before": "cursor"}]
        assert result == [{"signature": "s1"}]

    @pytest.mark.asyncio
    async def test_first_page_has_no_cursor(self):
        session = mock_session(json_data={"result": []})
        client = SolanaRpcClient(session=session)

        await client.get_signatures_for_address("addr", limit=10)

        assert sent_payload(session)["params"] == ["addr", {"limit": 10}]

    @pytest.mark.asyncio
    async def test_null_transaction_is_not_found(self):
        client = SolanaRpcClient(session=mock_session(json_data={"result": None}))

        with pytest.raises(NotFoundError):
            await client.get_transaction("sig")

    @pytest.mark.asyncio
    async def test_transaction_carries_signature(self):
        session = mock_session(json_data={"result": {"slot": 5, "meta": {}}})
        client = SolanaRpcClient(session=session)

        tx = await client.get_transaction("sig-1")

        assert tx["signature"] == "sig-1"
        assert sent_payload(session)["params"][1]["maxSupportedTransactionVersion"] == 0

    @pytest.mark.asyncio
    async def test_multiple_accounts_aligned(self):
        session = mock_session(json_data={"result": {"value": [None, {"data": ["", "base64"]}]}})
        client = SolanaRpcClient(session=session)

        accounts = await client.get_multiple_accounts(["a", "b"])

        assert accounts[0] is None
        assert accounts[1] is not None

    @pytest.mark.asyncio
    async def test_multiple_accounts_misaligned_is_malformed(self):
        client = SolanaRpcClient(session=mock_session(json_data={"result": {"value": [None]}}))

        with pytest.raises(MalformedError):
            await client.get_multiple_accounts(["a", "b"])

    @pytest.mark.asyncio
    async def test_multiple_accounts_limit(self):
        session = mock_session()
        client = SolanaRpcClient(session=session)

        with pytest.raises(MalformedError):
            await client.get_multiple_accounts([str(i) for i in range(101)])

        session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_injected_session_not_closed(self):
        session = mock_session()
        session.close = AsyncMock()

        async with SolanaRpcClient(session=session):
            pass

        session.close.assert_not_called()
