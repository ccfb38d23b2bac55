"""Block-height estimation for historical sample timestamps.

This module maps a (chain, timestamp) pair to an approximate block number.
The hot path is a constant-time estimate from the latest block and the chain's
average block time; an optional refinement fetches a handful of blocks and
nudges the estimate until it lands within an hour of the target.
"""

import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import aiohttp
import structlog

from portfolio_history.common.cache import TTLCache
from portfolio_history.common.rate_limiter import RateLimiterRegistry, request_json
from services.chains import Chain, get_chain_config, rpc_url_for
from services.errors import ProviderUnavailableError

logger = structlog.get_logger()

# Public RPCs allow roughly 10-25 req/s; stay well below that per chain
RPC_RATE_PER_SECOND = 3
RPC_MAX_BURST = 5

# Refinement stops once the fetched block is this close to the target
REFINEMENT_TOLERANCE_SECONDS = 3600
MAX_REFINEMENT_ITERATIONS = 5

# How long a fetched "latest" block is reused across timestamps of one request
LATEST_BLOCK_TTL_SECONDS = 15


class BlockTimingError(ProviderUnavailableError):
    """Raised when block timing operations fail."""

    def __init__(self, message: str):
        super().__init__("rpc", message)


def to_unix(timestamp: Union[datetime, int, float]) -> int:
    if isinstance(timestamp, datetime):
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return int(timestamp.timestamp())
    return int(timestamp)


class BlockTimingClient:
    """JSON-RPC client for block lookups on every supported chain."""

    def __init__(
        self,
        alchemy_api_key: str = "",
        limiters: Optional[RateLimiterRegistry] = None,
        timeout: int = 10,
        max_retries: int = 2,
        url_template: Optional[str] = None,
    ):
        """Initialize block timing client.

        Args:
            alchemy_api_key: Alchemy API key; public RPCs are used when empty
            limiters: Shared rate limiter registry
            timeout: Request timeout in seconds
            max_retries: Retries per call after the first attempt
            url_template: Alchemy URL template override
        """
        self.alchemy_api_key = alchemy_api_key
        self.url_template = url_template
        self.limiters = limiters or RateLimiterRegistry()
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_retries = max_retries

        self.logger = logger.bind(component="block_timing")

    async def _rpc_call(self, chain: Chain, method: str, params: List[Any]) -> Any:
        """Make a JSON-RPC call against the chain's RPC endpoint.

        Raises:
            BlockTimingError: On RPC errors
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
            raise BlockTimingError(f"RPC error: {error_msg}")

        return data.get("result")

    async def get_block(self, chain: Chain, block_number: Union[int, str]) -> Dict[str, int]:
        """Get block number and timestamp.

        Args:
            chain: Chain to query
            block_number: Block number, or "latest"

        Raises:
            BlockTimingError: If the block does not exist
        """
        tag = block_number if isinstance(block_number, str) else hex(block_number)
        result = await self._rpc_call(chain, "eth_getBlockByNumber", [tag, False])

        if result is None:
            raise BlockTimingError(f"Block {block_number} not found on {chain.value}")

        return {
            "number": int(result["number"], 16),
            "timestamp": int(result["timestamp"], 16),
        }

    async def get_latest_block(self, chain: Chain) -> Dict[str, int]:
        return await self.get_block(chain, "latest")


class BlockHeightEstimator:
    """Timestamp to block-number mapping with an explicit, injectable cache."""

    def __init__(
        self,
        client: Optional[BlockTimingClient] = None,
        cache: Optional[TTLCache] = None,
        max_iterations: int = MAX_REFINEMENT_ITERATIONS,
        tolerance_seconds: int = REFINEMENT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=24 * 3600)
        self._latest_cache = TTLCache(ttl_seconds=LATEST_BLOCK_TTL_SECONDS, clock=clock)
        self.max_iterations = max_iterations
        self.tolerance_seconds = tolerance_seconds

        self.logger = logger.bind(component="block_height_estimator")

    @staticmethod
    def estimate(
        chain: Chain,
        timestamp: Union[datetime, int],
        latest_block: int,
        latest_timestamp: int,
    ) -> int:
        """Estimate the block at ``timestamp`` from the average block time.

        Pure: no network access. Targets at or after ``latest_timestamp`` map to
        ``latest_block``; targets before genesis map to 0.
        """
        config = get_chain_config(chain)
        target = to_unix(timestamp)

        if target < config.genesis_timestamp:
            return 0
        if target >= latest_timestamp:
            return latest_block

        blocks_back = math.floor((latest_timestamp - target) / config.avg_block_time)
        return max(0, min(latest_block, latest_block - blocks_back))

    async def _latest(self, chain: Chain) -> Dict[str, int]:
        latest = self._latest_cache.get(chain)
        if latest is None:
            latest = await self.client.get_latest_block(chain)
            self._latest_cache.set(chain, latest)
        return latest

    async def resolve(self, chain: Chain, timestamp: Union[datetime, int]) -> int:
        """Estimate then refine the block number for a timestamp.

        Refinement fetches the block at the current estimate and shifts by the
        timestamp difference over the average block time, at most
        ``max_iterations`` times. Any fetch error stops refinement and the last
        estimate is returned.

        Raises:
            BlockTimingError: If the latest block cannot be fetched at all
        """
        target = to_unix(timestamp)
        cache_key = (chain, target // 3600 * 3600)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        if self.client is None:
            raise BlockTimingError("no RPC client configured for block refinement")

        try:
            latest = await self._latest(chain)
        except ProviderUnavailableError:
            raise
        except Exception as e:
            raise BlockTimingError(f"latest block lookup failed on {chain.value}: {e}") from e

        latest_block = latest["number"]
        if target >= latest["timestamp"]:
            return latest_block

        avg_block_time = get_chain_config(chain).avg_block_time
        estimate = max(1, self.estimate(chain, target, latest_block, latest["timestamp"]))

        for iteration in range(self.max_iterations):
            try:
                block = await self.client.get_block(chain, estimate)
            except Exception as e:
                self.logger.warning(
                    "block_refinement_aborted",
                    chain=chain.value,
                    block=estimate,
                    iteration=iteration,
                    error=str(e),
                )
                break

            diff = block["timestamp"] - target
            if abs(diff) <= self.tolerance_seconds:
                break

            estimate -= int(diff / avg_block_time)
            estimate = max(1, min(latest_block, estimate))

        self.cache.set(cache_key, estimate)
        return estimate

    def clear_cache(self):
        """Clear the block number caches."""
        self.cache.clear()
        self._latest_cache.clear()
        self.logger.info("block_cache_cleared")

    def get_cache_size(self) -> int:
        return len(self.cache)
