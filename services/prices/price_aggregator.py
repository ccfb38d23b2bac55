"""
Batched price lookup for many tokens at one timestamp
Deduplicates tokens, splits coin ids into batches and merges the results
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Tuple

from services.chains import Chain

from .defillama_client import DefiLlamaClient, format_coin_id

logger = logging.getLogger(__name__)

MAX_TOKENS_PER_REQUEST = 100
BATCH_DELAY_SECONDS = 0.2

TokenRef = Tuple[Chain, str]


def price_key(chain: Chain, token_address: str) -> str:
    return f"{chain.value}:{token_address.lower()}"


class PriceAggregator:
    """
    USD prices for (chain, token) pairs

    Features:
    - Deduplication of requested tokens
    - Batches of at most ``batch_size`` coin ids per call
    - Failed batches contribute nothing; a missing price is not an error
    """

    def __init__(
        self,
        client: DefiLlamaClient,
        batch_size: int = MAX_TOKENS_PER_REQUEST,
        batch_delay: float = BATCH_DELAY_SECONDS,
    ):
        self.client = client
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    def _coin_ids(self, tokens: Iterable[TokenRef]) -> Dict[str, str]:
        """Map coin id -> price key, dropping duplicates and unsupported chains."""
        coin_to_key = {}
        for chain, token_address in tokens:
            coin_id = format_coin_id(chain, token_address)
            if coin_id and coin_id not in coin_to_key:
                coin_to_key[coin_id] = price_key(chain, token_address)
        return coin_to_key

    def _batches(self, coin_ids: List[str]) -> List[List[str]]:
        return [
            coin_ids[i:i + self.batch_size]
            for i in range(0, len(coin_ids), self.batch_size)
        ]

    async def get_prices(self, tokens: Iterable[TokenRef], timestamp: datetime) -> Dict[str, float]:
        """
        Get historical prices for tokens at a timestamp

        Args:
            tokens: (chain, token address) pairs
            timestamp: Point in time to price at

        Returns:
            Dictionary keyed "{chain}:{token}" with USD prices
        """
        coin_to_key = self._coin_ids(tokens)
        if not coin_to_key:
            return {}

        unix_timestamp = int(timestamp.timestamp())
        prices = {}

        for index, batch in enumerate(self._batches(list(coin_to_key))):
            if index > 0 and self.batch_delay:
                await asyncio.sleep(self.batch_delay)

            try:
                batch_prices = await self.client.get_historical_prices(batch, unix_timestamp)
            except Exception as e:
                logger.warning(f"Price batch {index} at {unix_timestamp} failed: {e}")
                continue

            for coin_id, price in batch_prices.items():
                key = coin_to_key.get(coin_id)
                if key:
                    prices[key] = price

        return prices

    async def get_current_prices(self, tokens: Iterable[TokenRef]) -> Dict[str, float]:
        """
        Get current prices for tokens; batches run concurrently
        """
        coin_to_key = self._coin_ids(tokens)
        if not coin_to_key:
            return {}

        results = await asyncio.gather(
            *(self.client.get_current_prices(batch) for batch in self._batches(list(coin_to_key))),
            return_exceptions=True,
        )

        prices = {}
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Current price batch failed: {result}")
                continue
            for coin_id, price in result.items():
                key = coin_to_key.get(coin_id)
                if key:
                    prices[key] = price

        return prices
