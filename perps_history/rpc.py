"""
Solana RPC Client - JSON-RPC access to the provider.

Classifies every failure by response shape:
- HTTP 429 / "too many requests"          -> RateLimitedError
- 5xx, timeouts, connection errors, node lag -> TransientNetworkError
- null transaction / missing account       -> NotFoundError
- other 4xx, invalid params, bad JSON      -> MalformedError

Retries are not done here; the RateLimitedFetcher owns retry policy.
"""

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from perps_history.config import DEFAULT_RPC_URL
from perps_history.exceptions import (
    MalformedError,
    NotFoundError,
    RateLimitedError,
    TransientNetworkError,
)


logger = logging.getLogger(__name__)

# JSON-RPC error codes the provider uses for conditions worth retrying
RATE_LIMIT_CODES = {-32429, 429}
TRANSIENT_CODES = {
    -32004,  # block not available for slot
    -32005,  # node is behind
    -32007,  # slot skipped / ledger jump
    -32014,  # block status not yet available
    -32603,  # internal error
}

MAX_ACCOUNTS_PER_CALL = 100


class SolanaRpcClient:
    """
    Async JSON-RPC client for a Solana provider.

    Usage:
        async with SolanaRpcClient("https://api.mainnet-beta.solana.com") as rpc:
            sigs = await rpc.get_signatures_for_address(address, limit=300)
    """

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._request_id = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def call(self, method: str, params: list[Any]) -> Any:
        """Make one JSON-RPC call and return its `result`."""
        session = await self._get_session()
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_request_id(),
            "method": method,
            "params": params,
        }

        try:
            async with session.post(self.rpc_url, json=payload) as response:
                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    raise RateLimitedError(
                        "Too many requests",
                        method=method,
                        retry_after_seconds=_parse_retry_after(retry_after),
                    )

                if response.status >= 500:
                    body = await response.text()
                    raise TransientNetworkError(
                        f"HTTP {response.status}",
                        method=method,
                        status_code=response.status,
                        response_body=body,
                    )

                if response.status >= 400:
                    body = await response.text()
                    raise MalformedError(
                        f"HTTP {response.status}",
                        method=method,
                        status_code=response.status,
                        response_body=body,
                    )

                try:
                    data = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError) as e:
                    raise MalformedError(
                        "Response is not valid JSON",
                        method=method,
                        status_code=response.status,
                        original_error=e,
                    )

        except aiohttp.ClientError as e:
            raise TransientNetworkError(
                f"Network error: {e}",
                method=method,
                original_error=e,
            )
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(
                "Request timed out",
                method=method,
                original_error=e,
            )

        if not isinstance(data, dict):
            raise MalformedError("Unexpected response shape", method=method, response_body=str(data))

        if "error" in data:
            raise _classify_rpc_error(method, data["error"])

        return data.get("result")

    # ─────────────────────────────────────────────────────────────
    # Provider operations
    # ─────────────────────────────────────────────────────────────

    async def get_multiple_accounts(
        self,
        addresses: list[str],
        encoding: str = "base64",
    ) -> list[Optional[dict[str, Any]]]:
        """Account infos aligned with `addresses` (None where absent)."""
        if len(addresses) > MAX_ACCOUNTS_PER_CALL:
            raise MalformedError(
                f"getMultipleAccounts accepts at most {MAX_ACCOUNTS_PER_CALL} keys",
                method="getMultipleAccounts",
            )
        result = await self.call(
            "getMultipleAccounts",
            [addresses, {"encoding": encoding}],
        )
        values = (result or {}).get("value")
        if not isinstance(values, list) or len(values) != len(addresses):
            raise MalformedError("Account list does not match request", method="getMultipleAccounts")
        return values

    async def get_program_accounts(
        self,
        program_id: str,
        filters: list[dict[str, Any]],
        encoding: str = "base64",
    ) -> list[dict[str, Any]]:
        """Accounts owned by a program matching all filters."""
        result = await self.call(
            "getProgramAccounts",
            [program_id, {"encoding": encoding, "filters": filters}],
        )
        if result is None:
            return []
        if not isinstance(result, list):
            raise MalformedError("Program account list expected", method="getProgramAccounts")
        return result

    async def get_signatures_for_address(
        self,
        address: str,
        before: Optional[str] = None,
        limit: int = 300,
    ) -> list[dict[str, Any]]:
        """One page of signatures, newest first."""
        options: dict[str, Any] = {"limit": limit}
        if before:
            options["before"] = before
        result = await self.call("getSignaturesForAddress", [address, options])
        if result is None:
            return []
        if not isinstance(result, list):
            raise MalformedError("Signature list expected", method="getSignaturesForAddress")
        return result

    async def get_transaction(self, signature: str) -> dict[str, Any]:
        """Full transaction body (json encoding, v0 supported)."""
        result = await self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "maxSupportedTransactionVersion": 0,
                    "commitment": "confirmed",
                },
            ],
        )
        if result is None:
            raise NotFoundError(
                f"Transaction not found: {signature[:20]}...",
                method="getTransaction",
            )
        result.setdefault("signature", signature)
        return result

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Close the aiohttp session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "SolanaRpcClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<SolanaRpcClient(url={self.rpc_url})>"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _classify_rpc_error(method: str, error: Any) -> Exception:
    """Map a JSON-RPC error object to the error taxonomy."""
    if not isinstance(error, dict):
        return MalformedError(f"RPC error: {error}", method=method)

    code = error.get("code")
    message = str(error.get("message", "Unknown"))
    lowered = message.lower()

    if code in RATE_LIMIT_CODES or "too many requests" in lowered or "rate limit" in lowered:
        return RateLimitedError(
            f"RPC rate limited: {message}",
            method=method,
            status_code=None,
            rpc_code=code,
        )
    if code in TRANSIENT_CODES:
        return TransientNetworkError(f"RPC error: {message}", method=method, rpc_code=code)
    if "not found" in lowered:
        return NotFoundError(f"RPC error: {message}", method=method, rpc_code=code)
    return MalformedError(f"RPC error: {message}", method=method, rpc_code=code)
