"""
DeFi Llama API Client for Historical and Current Token Prices
Free API, no key required; coin ids are "{chain-prefix}:{address}"
"""

import logging
from typing import Dict, Optional, Sequence

import aiohttp

from portfolio_history.common.rate_limiter import RateLimiterRegistry, request_json
from services.chains import Chain, get_chain_config

logger = logging.getLogger(__name__)

DEFILLAMA_BASE_URL = "https://coins.llama.fi"

# Free API, but stay conservative
DEFILLAMA_RATE_PER_SECOND = 5
DEFILLAMA_MAX_BURST = 10


def format_coin_id(chain: Chain, token_address: str) -> str:
    """Format a token for DeFi Llama, e.g. "ethereum:0xc02a..."."""
    prefix = get_chain_config(chain).defillama_prefix
    if not prefix:
        return ""
    return f"{prefix}:{token_address.lower()}"


def parse_prices(data: Optional[Dict]) -> Dict[str, float]:
    """Extract positive prices from a ``{"coins": {id: {"price": ...}}}`` payload."""
    prices = {}
    for coin_id, price_data in ((data or {}).get("coins") or {}).items():
        price = (price_data or {}).get("price")
        if price is not None and price > 0:
            prices[coin_id] = float(price)
    return prices


class DefiLlamaClient:
    """
    Client for fetching token prices from DeFi Llama

    Features:
    - Historical prices at a unix timestamp
    - Current prices
    - Shared token-bucket rate limiting with retry/backoff
    """

    def __init__(
        self,
        base_url: str = DEFILLAMA_BASE_URL,
        limiters: Optional[RateLimiterRegistry] = None,
        timeout: int = 10,
        max_retries: int = 2,
    ):
        """
        Initialize DeFi Llama client

        Args:
            base_url: API base URL
            limiters: Shared rate limiter registry
            timeout: Request timeout in seconds
            max_retries: Retries per call after the first attempt
        """
        self.base_url = base_url.rstrip("/")
        self.limiters = limiters or RateLimiterRegistry()
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_retries = max_retries

    async def _get(self, url: str) -> Dict:
        limiter = self.limiters.get("defillama", DEFILLAMA_RATE_PER_SECOND, DEFILLAMA_MAX_BURST)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await request_json(
                session,
                "GET",
                url,
                provider="defillama",
                limiter=limiter,
                max_retries=self.max_retries,
                headers={"Content-Type": "application/json"},
            )

    async def get_historical_prices(self, coin_ids: Sequence[str], timestamp: int) -> Dict[str, float]:
        """
        Get prices for a batch of coins at a unix timestamp

        Args:
            coin_ids: DeFi Llama coin ids
            timestamp: Unix timestamp

        Returns:
            Dictionary mapping coin id to USD price (missing or non-positive prices omitted)

        Raises:
            ProviderUnavailableError: On HTTP failures after retries
        """
        if not coin_ids:
            return {}

        url = f"{self.base_url}/prices/historical/{int(timestamp)}/{','.join(coin_ids)}"
        prices = parse_prices(await self._get(url))

        logger.debug(f"DeFi Llama returned {len(prices)}/{len(coin_ids)} prices at {timestamp}")
        return prices

    async def get_current_prices(self, coin_ids: Sequence[str]) -> Dict[str, float]:
        """
        Get current prices for a batch of coins

        Raises:
            ProviderUnavailableError: On HTTP failures after retries
        """
        if not coin_ids:
            return {}

        url = f"{self.base_url}/prices/current/{','.join(coin_ids)}"
        return parse_prices(await self._get(url))
