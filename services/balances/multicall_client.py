"""Multicall client for batch balance queries at historical blocks.

This module packs every allow-listed ``balanceOf`` for one wallet into a single
Multicall3 ``aggregate3`` eth_call (``allowFailure`` set on each sub-call), and
reads the native balance with ``eth_getBalance`` at the same block.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp
import structlog
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError

from portfolio_history.common.rate_limiter import RateLimiterRegistry, request_json
from services.chains import NATIVE_TOKEN_ADDRESS, Chain, get_chain_config, rpc_url_for
from services.errors import ProviderUnavailableError

from .block_timing import RPC_MAX_BURST, RPC_RATE_PER_SECOND
from .models import TokenMetadata

logger = structlog.get_logger()

# Multicall3 is deployed at the same address on every supported chain
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

# aggregate3((address target, bool allowFailure, bytes callData)[])
AGGREGATE3_SELECTOR = bytes.fromhex("82ad56cb")

# ERC-20 function selectors
BALANCE_OF_SELECTOR = bytes.fromhex("70a08231")  # balanceOf(address)
DECIMALS_SELECTOR = bytes.fromhex("313ce567")  # decimals()
SYMBOL_SELECTOR = bytes.fromhex("95d89b41")  # symbol()


class MulticallError(ProviderUnavailableError):
    """Raised when multicall execution fails."""

    def __init__(self, message: str):
        super().__init__("multicall", message)


def _abi_address(address: str) -> str:
    address = address.lower()
    return address if address.startswith("0x") else "0x" + address


def _block_param(block_number: Optional[int]) -> str:
    return hex(block_number) if block_number is not None else "latest"


class MulticallClient:
    """Async client for batch balance queries using Multicall3."""

    def __init__(
        self,
        alchemy_api_key: str = "",
        limiters: Optional[RateLimiterRegistry] = None,
        timeout: int = 10,
        max_retries: int = 2,
        url_template: Optional[str] = None,
    ):
        """Initialize Multicall client.

        Args:
            alchemy_api_key: Alchemy API key; public RPCs are used when empty
            limiters: Shared rate limiter registry (one bucket per chain RPC)
            timeout: Request timeout in seconds
            max_retries: Retries per call after the first attempt
            url_template: Alchemy URL template override
        """
        self.alchemy_api_key = alchemy_api_key
        self.limiters = limiters or RateLimiterRegistry()
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_retries = max_retries
        self.url_template = url_template

        self.logger = logger.bind(component="multicall_client")

    async def _rpc_call(self, chain: Chain, method: str, params: List[Any]) -> Any:
        """Make a JSON-RPC call to the chain's RPC endpoint.

        Raises:
            MulticallError: On RPC errors
            ProviderUnavailableError: On HTTP errors after retries
        """
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }
        limiter = self.limiters.get(f"rpc-{chain.value}", RPC_RATE_PER_SECOND, RPC_MAX_BURST)

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            data = await request_json(
                session,
                "POST",
                rpc_url_for(chain, self.alchemy_api_key, self.url_template),
                provider=f"rpc-{chain.value}",
                limiter=limiter,
                max_retries=self.max_retries,
                json=payload,
            )

        if "error" in data:
            error_msg = data["error"].get("message", "Unknown error")
            self.logger.error("rpc_error", chain=chain.value, method=method, error=error_msg)
            raise MulticallError(f"RPC error: {error_msg}")

        return data.get("result")

    def _encode_balance_call(self, wallet_address: str) -> bytes:
        """Encode balanceOf(address) call data."""
        return BALANCE_OF_SELECTOR + encode(["address"], [_abi_address(wallet_address)])

    def _encode_multicall(self, calls: Sequence[Tuple[str, bytes]]) -> str:
        """Encode multicall3 aggregate3 call data.

        Args:
            calls: ``(target, call_data)`` pairs; every sub-call may fail

        Returns:
            Encoded calldata as hex string
        """
        encoded = encode(
            ["(address,bool,bytes)[]"],
            [[(_abi_address(target), True, call_data) for target, call_data in calls]],
        )
        return "0x" + (AGGREGATE3_SELECTOR + encoded).hex()

    def _decode_multicall(self, result: str) -> List[Tuple[bool, bytes]]:
        """Decode aggregate3's ``(bool success, bytes returnData)[]``.

        Raises:
            MulticallError: On an empty or malformed return value
        """
        if not result or result == "0x":
            # Multicall3 not deployed yet at this block
            raise MulticallError("empty multicall response")

        try:
            (decoded,) = decode(["(bool,bytes)[]"], bytes.fromhex(result[2:]))
        except (DecodingError, OverflowError, ValueError) as e:
            raise MulticallError(f"malformed multicall response: {e}") from e

        return [(bool(success), bytes(data)) for success, data in decoded]

    async def aggregate(
        self,
        chain: Chain,
        calls: Sequence[Tuple[str, bytes]],
        block_number: Optional[int] = None,
    ) -> List[Tuple[bool, bytes]]:
        """Run ``calls`` in one aggregate3 eth_call at ``block_number``."""
        result = await self._rpc_call(
            chain,
            "eth_call",
            [
                {
                    "to": MULTICALL3_ADDRESS,
                    "data": self._encode_multicall(calls),
                },
                _block_param(block_number),
            ],
        )
        return self._decode_multicall(result)

    async def _get_native_balance(
        self,
        chain: Chain,
        wallet_address: str,
        block_number: Optional[int] = None,
    ) -> int:
        """Get the native-asset balance in wei."""
        result = await self._rpc_call(
            chain,
            "eth_getBalance",
            [wallet_address, _block_param(block_number)],
        )

        return int(result, 16)

    async def get_token_balances(
        self,
        chain: Chain,
        wallet_address: str,
        token_addresses: Sequence[str],
        block_number: Optional[int] = None,
    ) -> Dict[str, int]:
        """Get non-zero ERC-20 balances in one multicall.

        Failed or undecodable sub-calls are skipped.

        Returns:
            Dictionary mapping lowercased token addresses to raw balances
        """
        if not token_addresses:
            return {}

        call_data = self._encode_balance_call(wallet_address)
        results = await self.aggregate(
            chain,
            [(token, call_data) for token in token_addresses],
            block_number,
        )

        balances = {}
        for token_address, (success, return_data) in zip(token_addresses, results):
            if not success or len(return_data) < 32:
                continue

            (balance,) = decode(["uint256"], return_data[:32])
            if balance > 0:
                balances[token_address.lower()] = balance

        return balances

    async def get_wallet_balances(
        self,
        chain: Chain,
        wallet_address: str,
        block_number: Optional[int] = None,
    ) -> Dict[str, int]:
        """Get native and allow-listed token balances for a wallet.

        Args:
            chain: Chain to query
            wallet_address: Wallet address to query
            block_number: Block number for historical queries (None for latest)

        Returns:
            Dictionary mapping token addresses to raw balances; the native asset
            is keyed by the zero address. Zero balances are excluded.

        Raises:
            MulticallError: If the token multicall itself fails
        """
        config = get_chain_config(chain)
        log = self.logger.bind(
            chain=chain.value,
            wallet=wallet_address,
            num_tokens=len(config.allow_list),
            block=block_number if block_number is not None else "latest",
        )

        log.debug("fetching_wallet_balances")

        balances = {}

        try:
            native_balance = await self._get_native_balance(chain, wallet_address, block_number)
            if native_balance > 0:
                balances[NATIVE_TOKEN_ADDRESS] = native_balance
        except ProviderUnavailableError as e:
            log.warning("native_balance_failed", error=str(e))

        balances.update(await self.get_token_balances(
            chain,
            wallet_address,
            [token.address for token in config.allow_list],
            block_number,
        ))

        log.debug("wallet_balances_complete", num_balances=len(balances))

        return balances

    async def get_token_metadata(self, chain: Chain, token_address: str) -> Optional[TokenMetadata]:
        """Read ``decimals()`` and ``symbol()`` for a token in one multicall.

        Returns:
            Metadata, or None when either call fails
        """
        results = await self.aggregate(
            chain,
            [(token_address, DECIMALS_SELECTOR), (token_address, SYMBOL_SELECTOR)],
        )
        (decimals_ok, decimals_data), (symbol_ok, symbol_data) = results
        if not decimals_ok or not symbol_ok or len(decimals_data) < 32:
            return None

        (decimals,) = decode(["uint256"], decimals_data[:32])
        if decimals > 255:
            return None

        try:
            (symbol,) = decode(["string"], symbol_data)
        except (DecodingError, OverflowError, ValueError):
            # Some older tokens return bytes32 instead of string
            symbol = symbol_data[:32].rstrip(b"\x00").decode("utf-8", errors="ignore")

        return TokenMetadata(symbol=symbol or "UNKNOWN", decimals=int(decimals))
