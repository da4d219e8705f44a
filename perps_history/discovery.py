"""
Address Discovery - Finds the on-chain accounts a wallet trades through.

Position accounts are program-derived from the wallet key, so every slot
the exchange supports can be enumerated without an index. Pending
PositionRequest accounts are found by owner through getProgramAccounts.

Accounts that do not exist right now are not errors: the exchange reuses
position accounts, and a slot the wallet never traded is simply empty.
"""

import base64
import logging
from typing import Any, Optional

from solders.pubkey import Pubkey

from perps_history import schema
from perps_history.config import HistoryConfig, get_config
from perps_history.exceptions import (
    DecodeError,
    DiscoveryError,
    InvalidInputError,
    PerpsHistoryError,
    ProviderUnavailableError,
)
from perps_history.fetcher import RateLimitedFetcher, TokenPool
from perps_history.models import (
    AddressKind,
    DiscoveredAddress,
    DiscoveryResult,
    ItemFailure,
    Side,
)
from perps_history.oracle import DecodingOracle, JupiterPerpsOracle
from perps_history.rpc import MAX_ACCOUNTS_PER_CALL, SolanaRpcClient


logger = logging.getLogger(__name__)

STAGE = "discovery"


def parse_wallet(wallet_address: str) -> Pubkey:
    """Validate a wallet address; raised before any network call."""
    if not isinstance(wallet_address, str) or not wallet_address.strip():
        raise InvalidInputError("Wallet address is required", "wallet_address", wallet_address)
    try:
        return Pubkey.from_string(wallet_address.strip())
    except ValueError as e:
        raise InvalidInputError(
            f"Invalid wallet address: {wallet_address}",
            "wallet_address",
            wallet_address,
        ) from e


def _account_bytes(account: dict[str, Any]) -> bytes:
    data = account.get("data")
    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, str):
        return b""
    try:
        return base64.b64decode(data, validate=True)
    except ValueError as e:
        raise DecodeError("Account data is not base64", layout="PositionRequest", original_error=e)


class AddressDiscovery:
    """
    Derives and checks the position-related addresses of a wallet.

    Usage:
        discovery = AddressDiscovery(rpc, fetcher)
        result = await discovery.discover("7xKX...")
        print(result.address_keys)
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        fetcher: RateLimitedFetcher,
        oracle: Optional[DecodingOracle] = None,
        config: Optional[HistoryConfig] = None,
    ) -> None:
        self.rpc = rpc
        self.fetcher = fetcher
        self.oracle = oracle or JupiterPerpsOracle()
        self.config = config or get_config()

    def derive_position_addresses(self, wallet_address: str) -> list[DiscoveredAddress]:
        """Position PDAs for every market slot the exchange supports."""
        wallet = parse_wallet(wallet_address)
        program_id = Pubkey.from_string(self.oracle.program_id)
        pool = Pubkey.from_string(self.oracle.pool)

        derived: dict[str, DiscoveredAddress] = {}
        for market in self.oracle.markets():
            seeds = [
                schema.POSITION_SEED,
                bytes(wallet),
                bytes(pool),
                bytes(Pubkey.from_string(market.custody)),
                bytes(Pubkey.from_string(market.collateral_custody)),
                bytes([market.side]),
            ]
            address, _bump = Pubkey.find_program_address(seeds, program_id)
            key = str(address)
            if key not in derived:
                derived[key] = DiscoveredAddress(
                    address=key,
                    kind=AddressKind.POSITION,
                    custody=market.custody,
                    collateral_custody=market.collateral_custody,
                    side=Side.LONG if market.side == schema.SIDE_LONG else Side.SHORT,
                    exists=False,
                )
        return list(derived.values())

    async def discover(self, wallet_address: str) -> DiscoveryResult:
        """
        Discover position and pending-request accounts for a wallet.

        Raises:
            InvalidInputError: Bad wallet address
            DiscoveryError: No candidate addresses could be derived
            ProviderUnavailableError: Every lookup failed
        """
        candidates = self.derive_position_addresses(wallet_address)
        if not candidates:
            raise DiscoveryError(f"No position addresses derived for {wallet_address}")

        result = DiscoveryResult(wallet_address=wallet_address, candidates_derived=len(candidates))
        pool = TokenPool(
            self.config.fetcher.discovery_concurrency,
            self.config.fetcher.min_delay_seconds,
        )

        positions, lookups_ok = await self._check_existence(candidates, pool, result)
        requests_ok = await self._find_requests(wallet_address, pool, result)

        if not lookups_ok and not requests_ok:
            raise ProviderUnavailableError(
                "All discovery lookups failed",
                stage=STAGE,
                failed_items=len(result.failures),
            )

        seen: set[str] = set()
        for address in positions:
            if address.address not in seen:
                seen.add(address.address)
                result.addresses.append(address)
        for request_key in sorted(result.requests):
            if request_key not in seen:
                seen.add(request_key)
                result.addresses.append(DiscoveredAddress(
                    address=request_key,
                    kind=AddressKind.REQUEST,
                    side=result.requests[request_key].side,
                ))

        logger.info(
            f"[{STAGE}] {wallet_address[:8]}...: {len(candidates)} candidates, "
            f"{len(positions)} positions, {len(result.requests)} pending requests"
        )
        return result

    async def _check_existence(
        self,
        candidates: list[DiscoveredAddress],
        pool: TokenPool,
        result: DiscoveryResult,
    ) -> tuple[list[DiscoveredAddress], bool]:
        chunks = [
            candidates[i:i + MAX_ACCOUNTS_PER_CALL]
            for i in range(0, len(candidates), MAX_ACCOUNTS_PER_CALL)
        ]
        fetched = await self.fetcher.execute(
            [lambda c=chunk: self.rpc.get_multiple_accounts([a.address for a in c]) for chunk in chunks],
            pool,
            labels=[f"getMultipleAccounts[{i}]" for i in range(len(chunks))],
        )

        require_existing = self.config.retrieval.require_existing_accounts
        kept: list[DiscoveredAddress] = []
        any_ok = False
        for chunk, fetch in zip(chunks, fetched):
            if not fetch.ok:
                # Existence unknown; keep the slots so their history is still searched.
                result.failures.append(ItemFailure(STAGE, chunk[0].address, fetch.error))
                kept.extend(chunk)
                continue
            any_ok = True
            for address, account in zip(chunk, fetch.value):
                exists = account is not None
                if exists or not require_existing:
                    kept.append(DiscoveredAddress(
                        address=address.address,
                        kind=address.kind,
                        custody=address.custody,
                        collateral_custody=address.collateral_custody,
                        side=address.side,
                        exists=exists,
                    ))
        return kept, any_ok

    async def _find_requests(
        self,
        wallet_address: str,
        pool: TokenPool,
        result: DiscoveryResult,
    ) -> bool:
        filters = self.oracle.position_request_filters(wallet_address)
        try:
            accounts = await self.fetcher.call(
                lambda: self.rpc.get_program_accounts(self.oracle.program_id, filters),
                pool,
                label="getProgramAccounts",
            )
        except PerpsHistoryError as e:
            result.failures.append(ItemFailure(STAGE, "position_requests", e))
            return False

        for entry in accounts:
            address = entry.get("pubkey", "")
            try:
                info = self.oracle.parse_position_request(address, _account_bytes(entry.get("account") or {}))
            except DecodeError as e:
                logger.debug(f"[{STAGE}] Skipping request account {address}: {e}")
                result.failures.append(ItemFailure(STAGE, address, e))
                continue
            result.requests[address] = info
        return True
