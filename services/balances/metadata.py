"""Token symbol/decimals lookup for tokens seen only through transfer events."""

from typing import Dict, Iterable, Optional, Tuple

import structlog

from portfolio_history.common.cache import TTLCache
from services.chains import NATIVE_TOKEN_ADDRESS, Chain, get_chain_config

from .models import UNKNOWN_TOKEN, ChainBalanceSnapshot, TokenMetadata

logger = structlog.get_logger()


class TokenMetadataCache:
    """Resolve token metadata: known snapshots, then the allow-list, then on-chain.

    The on-chain lookup is optional; without a multicall client unknown tokens
    fall back to ``UNKNOWN`` with 18 decimals.
    """

    def __init__(self, multicall_client=None, ttl_seconds: float = 24 * 3600):
        self.multicall_client = multicall_client
        self._cache = TTLCache(ttl_seconds=ttl_seconds)
        self.logger = logger.bind(component="token_metadata")

    def remember(self, snapshots: Iterable[ChainBalanceSnapshot]):
        for snapshot in snapshots:
            self._cache.set(
                (snapshot.chain, snapshot.token_address.lower()),
                TokenMetadata(symbol=snapshot.symbol, decimals=snapshot.decimals),
            )

    def _from_allow_list(self, chain: Chain, token_address: str) -> Optional[TokenMetadata]:
        config = get_chain_config(chain)
        if token_address == NATIVE_TOKEN_ADDRESS:
            return TokenMetadata(symbol=config.native_symbol, decimals=18)
        for token in config.allow_list:
            if token.address.lower() == token_address:
                return TokenMetadata(symbol=token.symbol, decimals=token.decimals)
        return None

    async def get(self, chain: Chain, token_address: str) -> TokenMetadata:
        token_address = token_address.lower()
        key: Tuple[Chain, str] = (chain, token_address)

        metadata = self._cache.get(key) or self._from_allow_list(chain, token_address)
        if metadata is None and self.multicall_client is not None:
            try:
                metadata = await self.multicall_client.get_token_metadata(chain, token_address)
            except Exception as e:
                self.logger.warning(
                    "token_metadata_lookup_failed",
                    chain=chain.value,
                    token=token_address,
                    error=str(e),
                )

        if metadata is None:
            # Unresolved tokens stay uncached
            return UNKNOWN_TOKEN
        self._cache.set(key, metadata)
        return metadata

    async def get_many(self, chain: Chain, token_addresses: Iterable[str]) -> Dict[str, TokenMetadata]:
        return {
            token.lower(): await self.get(chain, token)
            for token in token_addresses
        }

    def clear(self):
        self._cache.clear()
