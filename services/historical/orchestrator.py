"""Historical portfolio orchestration.

This module drives one history request end to end: input validation, result
cache, coalescing of identical concurrent requests, per-chain balance fetch,
windowed price/valuation pass, interpolation and progress reporting.
"""

import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from web3 import Web3

from portfolio_history.common.cache import KeyValueCache, build_cache
from portfolio_history.common.concurrency import SingleFlight, run_in_windows
from portfolio_history.common.config import get_settings
from portfolio_history.common.logging_setup import get_logger, log_summary
from portfolio_history.common.rate_limiter import RateLimiterRegistry
from services.balances.block_timing import BlockHeightEstimator, BlockTimingClient
from services.balances.metadata import TokenMetadataCache
from services.balances.models import ChainBalanceSnapshot
from services.balances.multicall_client import MulticallClient
from services.balances.snapshot_client import SnapshotClient
from services.balances.tiers import (
    BalanceSourceChain,
    ChainSourceTier,
    EventReplayTier,
    SnapshotTier,
)
from services.balances.transfer_client import TransferClient
from services.chains import Chain, parse_chains
from services.errors import InvalidWalletAddressError
from services.prices.defillama_client import DefiLlamaClient
from services.prices.price_aggregator import PriceAggregator
from services.timeframes import (
    TIMEFRAME_CONFIGS,
    Timeframe,
    calculate_percent_change,
    generate_cache_key,
    get_cache_ttl,
    parse_timeframe,
    plan_timestamps,
)

from .models import HistoricalDataPoint, HistoricalPortfolioResult, PriceQuote, ProgressRecord, from_iso
from .progress import ProgressReporter, get_stage_message
from .valuation import InterpolationConfig, apply_interpolation, calculate_total_value

logger = get_logger(__name__)

DEFAULT_VALUATION_CONCURRENCY = 5


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_wallet_address(wallet_address: str) -> str:
    """Raise InvalidWalletAddressError unless the value is a 20-byte hex address."""
    if (
        not isinstance(wallet_address, str)
        or not wallet_address.lower().startswith("0x")
        or not Web3.is_address(wallet_address.lower())
    ):
        raise InvalidWalletAddressError(f"Invalid wallet address: {wallet_address!r}")
    return wallet_address


def build_result(
    wallet_address: str,
    timeframe: Timeframe,
    raw_points: List[HistoricalDataPoint],
    chains_with_data: List[str],
    price_history: Dict[str, List[Dict]],
    fetched_at: datetime,
    current_value: Optional[float] = None,
    config: Optional[InterpolationConfig] = None,
    cache_hit: bool = False,
    request_id: Optional[str] = None,
) -> HistoricalPortfolioResult:
    """Interpolate a raw series and attach summary statistics."""
    points = apply_interpolation(raw_points, current_value, config)
    start_value = points[0].total_usd if points else 0.0
    end_value = points[-1].total_usd if points else 0.0

    return HistoricalPortfolioResult(
        wallet_address=wallet_address,
        timeframe=timeframe.value,
        data_points=points,
        start_value=start_value,
        end_value=end_value,
        change=end_value - start_value,
        change_percent=calculate_percent_change(start_value, end_value),
        chains_with_data=list(chains_with_data),
        price_history=price_history,
        fetched_at=fetched_at,
        cache_hit=cache_hit,
        request_id=request_id,
    )


class HistoricalPortfolioService:
    """Orchestrator for historical portfolio reconstruction."""

    def __init__(
        self,
        balance_source: BalanceSourceChain,
        price_aggregator: PriceAggregator,
        cache: KeyValueCache,
        progress: Optional[ProgressReporter] = None,
        interpolation: Optional[InterpolationConfig] = None,
        valuation_concurrency: int = DEFAULT_VALUATION_CONCURRENCY,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize orchestrator.

        Args:
            balance_source: Ordered balance tiers
            price_aggregator: Batched price lookup
            cache: Result and progress cache
            progress: Progress reporter (defaults to one writing to ``cache``)
            interpolation: Gap-repair thresholds
            valuation_concurrency: Timestamps valued at once
            clock: Returns the current UTC time
        """
        self.balance_source = balance_source
        self.price_aggregator = price_aggregator
        self.cache = cache
        self.progress = progress or ProgressReporter(cache)
        self.interpolation = interpolation or InterpolationConfig()
        self.valuation_concurrency = valuation_concurrency
        self.clock = clock

        self._in_flight = SingleFlight()
        # Request ids following each in-flight computation, for progress fan-out
        self._watchers: Dict[str, Set[str]] = defaultdict(set)

    def _report(self, cache_key: str, **changes):
        for request_id in list(self._watchers.get(cache_key, ())):
            self.progress.update(request_id, **changes)

    def _complete_progress(self, request_id: str, total_timestamps: int):
        self.progress.update(
            request_id,
            status="complete",
            stage=get_stage_message("complete"),
            processed_timestamps=total_timestamps,
            current_step=total_timestamps * 2,
        )

    async def get_historical_portfolio(
        self,
        wallet_address: str,
        timeframe: Union[Timeframe, str],
        chains: Optional[Iterable[Union[Chain, str, int]]] = None,
        skip_cache: bool = False,
        request_id: Optional[str] = None,
        current_value: Optional[float] = None,
    ) -> HistoricalPortfolioResult:
        """Reconstruct a wallet's USD value over a timeframe.

        Args:
            wallet_address: 0x-prefixed wallet address
            timeframe: One of 7d, 30d, 90d, 1y
            chains: Chain names or ids; all supported chains when omitted
            skip_cache: Recompute even when a cached result exists
            request_id: Caller-chosen id for progress polling
            current_value: Live portfolio value used as the latest point

        Returns:
            Result; provider failures show up as missing ``chains_with_data``

        Raises:
            ConfigurationError: On an invalid wallet, timeframe or chain
        """
        wallet_address = validate_wallet_address(wallet_address)
        timeframe = parse_timeframe(timeframe)
        requested_chains = list(chains) if chains else None
        resolved_chains = parse_chains(requested_chains)
        cache_key = generate_cache_key(
            wallet_address, timeframe, resolved_chains if requested_chains else None
        )

        if not skip_cache:
            cached = await self.cache.get(cache_key)
            if cached:
                logger.info(f"Cache HIT for {wallet_address[:10]}... {timeframe.value}")
                if request_id:
                    total = TIMEFRAME_CONFIGS[timeframe].sample_count
                    self.progress.init(request_id, wallet_address, timeframe.value, total)
                    self._complete_progress(request_id, total)
                    await self.progress.flush()
                return build_result(
                    wallet_address,
                    timeframe,
                    [HistoricalDataPoint.from_dict(point) for point in cached["raw_points"]],
                    cached.get("chains_with_data", []),
                    cached.get("price_history", {}),
                    from_iso(cached["result"]["fetched_at"]),
                    current_value=current_value,
                    config=self.interpolation,
                    cache_hit=True,
                    request_id=request_id,
                )
            logger.info(f"Cache MISS for {wallet_address[:10]}... {timeframe.value}, fetching...")

        timestamps = plan_timestamps(timeframe, self.clock())
        if request_id:
            self.progress.init(request_id, wallet_address, timeframe.value, len(timestamps))
            self._watchers[cache_key].add(request_id)

        try:
            raw_points, chains_with_data, price_history, fetched_at = await self._in_flight.do(
                cache_key,
                lambda: self._compute(cache_key, wallet_address, timeframe, resolved_chains, timestamps),
            )
        finally:
            if request_id:
                self._watchers[cache_key].discard(request_id)
                if not self._watchers[cache_key]:
                    del self._watchers[cache_key]

        result = build_result(
            wallet_address,
            timeframe,
            raw_points,
            chains_with_data,
            price_history,
            fetched_at,
            current_value=current_value,
            config=self.interpolation,
            request_id=request_id,
        )

        await self.cache.set(
            cache_key,
            {
                "result": result.to_dict(),
                "raw_points": [point.to_dict() for point in raw_points],
                "chains_with_data": chains_with_data,
                "price_history": price_history,
            },
            get_cache_ttl(timeframe),
        )

        if request_id:
            self._complete_progress(request_id, len(timestamps))
            await self.progress.flush()

        return result

    async def _compute(
        self,
        cache_key: str,
        wallet_address: str,
        timeframe: Timeframe,
        chains: Sequence[Chain],
        timestamps: List[datetime],
    ) -> Tuple[List[HistoricalDataPoint], List[str], Dict[str, List[Dict]], datetime]:
        start_time = time.time()
        logger.log_operation(
            operation="get_historical_portfolio",
            params={"wallet": wallet_address, "timeframe": timeframe.value},
            status="started",
            context={"timeframe": timeframe.value},
        )

        try:
            self._report(
                cache_key,
                status="fetching_balances",
                stage=f"Fetching portfolio history from {len(chains)} chains...",
                current_step=0,
            )
            by_chain = await self.balance_source.fetch_all_chains(wallet_address, chains, timestamps)

            chains_with_data = [
                chain.value for chain in chains
                if any(by_chain.get(chain, {}).get(timestamp) for timestamp in timestamps)
            ]

            self._report(
                cache_key,
                status="fetching_prices",
                stage=get_stage_message("fetching_prices", None, 0, len(timestamps)),
                current_step=1,
            )

            processed = 0

            async def _value(index: int, timestamp: datetime) -> Tuple[HistoricalDataPoint, Dict[str, float]]:
                nonlocal processed
                snapshots: List[ChainBalanceSnapshot] = [
                    snapshot
                    for chain in chains
                    for snapshot in by_chain.get(chain, {}).get(timestamp, [])
                ]

                prices = {}
                if snapshots:
                    tokens = dict.fromkeys((snapshot.chain, snapshot.token_address) for snapshot in snapshots)
                    prices = await self.price_aggregator.get_prices(tokens, timestamp)

                processed += 1
                self._report(
                    cache_key,
                    status="fetching_prices",
                    stage=get_stage_message("fetching_prices", None, processed, len(timestamps)),
                    processed_timestamps=processed,
                    current_step=processed + 1,
                )
                return HistoricalDataPoint(timestamp, calculate_total_value(snapshots, prices)), prices

            valued = await run_in_windows(timestamps, self.valuation_concurrency, _value)

            self._report(
                cache_key,
                status="processing",
                stage=get_stage_message("processing"),
                current_step=len(timestamps) + 1,
            )

            raw_points = [point for point, _ in valued]
            price_history: Dict[str, List[Dict]] = defaultdict(list)
            for point, prices in valued:
                for key in sorted(prices):
                    chain_name, token_address = key.split(":", 1)
                    quote = PriceQuote(chain_name, token_address, point.timestamp, prices[key])
                    price_history[quote.key].append(quote.to_dict())

        except Exception as e:
            logger.log_operation(
                operation="get_historical_portfolio",
                params={"wallet": wallet_address, "timeframe": timeframe.value},
                status="error",
                duration_ms=int((time.time() - start_time) * 1000),
                error=str(e),
                context={"timeframe": timeframe.value},
            )
            self._report(
                cache_key,
                status="error",
                stage=get_stage_message("error"),
                error=str(e),
            )
            await self.progress.flush()
            raise

        log_summary(
            "historical_portfolio",
            wallet_address,
            len(raw_points),
            time.time() - start_time,
            chains_with_data=chains_with_data,
            context={"timeframe": timeframe.value},
        )

        return raw_points, chains_with_data, dict(price_history), self.clock()

    async def get_progress(self, request_id: str) -> Optional[ProgressRecord]:
        return await self.progress.get(request_id)

    async def close(self):
        await self.progress.close()
        await self.cache.close()


def build_service(config=None) -> HistoricalPortfolioService:
    """Wire the concrete provider clients from settings.

    Args:
        config: Settings object (defaults to the environment-loaded settings)
    """
    if config is None:
        config = get_settings()

    limiters = RateLimiterRegistry()

    block_client = BlockTimingClient(
        alchemy_api_key=config.alchemy_api_key,
        limiters=limiters,
        timeout=config.rpc_timeout,
        max_retries=config.max_retries,
        url_template=config.alchemy_url_template,
    )
    multicall_client = MulticallClient(
        alchemy_api_key=config.alchemy_api_key,
        limiters=limiters,
        timeout=config.rpc_timeout,
        max_retries=config.max_retries,
        url_template=config.alchemy_url_template,
    )
    snapshot_client = SnapshotClient(
        api_key=config.covalent_api_key,
        limiters=limiters,
        timeout=config.snapshot_timeout,
        max_retries=config.max_retries,
        base_url=config.goldrush_base_url,
    )
    metadata = TokenMetadataCache(multicall_client)

    tiers = []
    if config.enable_event_replay:
        transfer_client = TransferClient(
            api_token=config.envio_api_token,
            limiters=limiters,
            timeout=config.hypersync_timeout,
            max_retries=config.max_retries,
        )
        tiers.append(EventReplayTier(transfer_client, snapshot_client, metadata))
    tiers.append(SnapshotTier(snapshot_client))
    tiers.append(ChainSourceTier(multicall_client, BlockHeightEstimator(block_client), metadata))

    price_aggregator = PriceAggregator(
        DefiLlamaClient(
            base_url=config.defillama_base_url,
            limiters=limiters,
            timeout=config.price_timeout,
            max_retries=config.max_retries,
        ),
        batch_size=config.price_batch_size,
    )

    cache = build_cache(config.redis_url)

    return HistoricalPortfolioService(
        balance_source=BalanceSourceChain(tiers),
        price_aggregator=price_aggregator,
        cache=cache,
        progress=ProgressReporter(
            cache,
            ttl_seconds=config.progress_ttl,
            flush_timeout=config.progress_flush_timeout,
        ),
        interpolation=InterpolationConfig.from_settings(config),
        valuation_concurrency=config.valuation_concurrency,
    )
