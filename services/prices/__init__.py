"""Token price lookup backed by DeFi Llama."""

from .defillama_client import DefiLlamaClient, format_coin_id
from .price_aggregator import PriceAggregator, price_key

__all__ = [
    'DefiLlamaClient',
    'PriceAggregator',
    'format_coin_id',
    'price_key',
]
