"""Ordered balance sources with fallback.

Three tiers answer "what did this wallet hold on this chain at these
timestamps": transfer-event replay, the GoldRush portfolio snapshot and direct
Multicall3 reads. ``BalanceSourceChain`` tries them in order; the first tier to
succeed answers for every timestamp of that chain, so tiers never mix.
"""

import asyncio
import math
from datetime import datetime, timezone
from typing import Callable, Dict, List, Sequence

import structlog

from services.chains import Chain, get_chain_config

from .block_timing import BlockHeightEstimator, to_unix
from .event_replay import replay_balances
from .metadata import TokenMetadataCache
from .models import ChainBalanceSnapshot

logger = structlog.get_logger()

# Events are fetched from slightly before the oldest estimated block
EVENT_LOOKBACK_BLOCKS = 1000

BalanceMap = Dict[datetime, List[ChainBalanceSnapshot]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BalanceTier:
    """A source of historical balances for one chain."""

    name = "tier"

    def is_available(self, chain: Chain) -> bool:
        raise NotImplementedError

    async def get_balances(
        self,
        wallet_address: str,
        chain: Chain,
        timestamps: Sequence[datetime],
    ) -> BalanceMap:
        raise NotImplementedError


class EventReplayTier(BalanceTier):
    """Reconstruct past balances by undoing transfers from the current holdings."""

    name = "event_replay"

    def __init__(
        self,
        transfer_client,
        anchor_client,
        metadata: TokenMetadataCache,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize event replay tier.

        Args:
            transfer_client: HyperSync transfer client
            anchor_client: Snapshot client supplying the current holdings
            metadata: Token metadata resolver for event-only tokens
            clock: Returns the current UTC time
        """
        self.transfer_client = transfer_client
        self.anchor_client = anchor_client
        self.metadata = metadata
        self.clock = clock

        self.logger = logger.bind(component="event_replay_tier")

    def is_available(self, chain: Chain) -> bool:
        return self.transfer_client.is_supported(chain) and self.anchor_client.is_supported(chain)

    async def get_balances(
        self,
        wallet_address: str,
        chain: Chain,
        timestamps: Sequence[datetime],
    ) -> BalanceMap:
        if not timestamps:
            return {}

        anchor = await self.anchor_client.get_current_balances(chain, wallet_address)
        self.metadata.remember(anchor)

        height = await self.transfer_client.get_height(chain)
        now = to_unix(self.clock())
        boundaries = [
            (timestamp, BlockHeightEstimator.estimate(chain, timestamp, height, now))
            for timestamp in timestamps
        ]
        from_block = max(0, min(block for _, block in boundaries) - EVENT_LOOKBACK_BLOCKS)

        events = await self.transfer_client.fetch_transfer_events(
            chain, wallet_address, from_block, height
        )

        ledgers = replay_balances(
            wallet_address,
            {snapshot.token_address: int(snapshot.balance_raw) for snapshot in anchor},
            events,
            boundaries,
        )

        tokens = set()
        for ledger in ledgers:
            tokens.update(ledger.balances)
        metadata = await self.metadata.get_many(chain, tokens)

        self.logger.info(
            "balances_replayed",
            chain=chain.value,
            wallet=wallet_address,
            from_block=from_block,
            to_block=height,
            num_events=len(events),
            num_tokens=len(tokens),
        )

        return {
            ledger.timestamp: [
                ChainBalanceSnapshot.from_raw(chain, token, raw, metadata[token])
                for token, raw in sorted(ledger.balances.items())
            ]
            for ledger in ledgers
        }


class SnapshotTier(BalanceTier):
    """Closest daily holding from one GoldRush portfolio call."""

    name = "snapshot"

    def __init__(self, client, clock: Callable[[], datetime] = _utc_now):
        self.client = client
        self.clock = clock

    def is_available(self, chain: Chain) -> bool:
        return self.client.is_supported(chain)

    def days_for(self, timestamps: Sequence[datetime]) -> int:
        oldest = min(timestamps)
        seconds = max(0.0, (self.clock() - oldest).total_seconds())
        return math.ceil(seconds / 86400) + 1

    async def get_balances(
        self,
        wallet_address: str,
        chain: Chain,
        timestamps: Sequence[datetime],
    ) -> BalanceMap:
        if not timestamps:
            return {}
        return await self.client.get_balances_at(
            chain, wallet_address, list(timestamps), self.days_for(timestamps)
        )


class ChainSourceTier(BalanceTier):
    """Direct state reads at an estimated block for each timestamp."""

    name = "chain_source"

    def __init__(
        self,
        multicall_client,
        estimator: BlockHeightEstimator,
        metadata: TokenMetadataCache,
    ):
        self.multicall_client = multicall_client
        self.estimator = estimator
        self.metadata = metadata

        self.logger = logger.bind(component="chain_source_tier")

    def is_available(self, chain: Chain) -> bool:
        return bool(get_chain_config(chain).allow_list)

    async def _balances_at(
        self,
        wallet_address: str,
        chain: Chain,
        timestamp: datetime,
    ) -> List[ChainBalanceSnapshot]:
        try:
            block_number = await self.estimator.resolve(chain, timestamp)
            raw_balances = await self.multicall_client.get_wallet_balances(
                chain, wallet_address, block_number
            )
        except Exception as e:
            self.logger.warning(
                "chain_source_timestamp_failed",
                chain=chain.value,
                wallet=wallet_address,
                timestamp=timestamp.isoformat(),
                error=str(e),
            )
            return []

        snapshots = []
        for token_address, raw in raw_balances.items():
            metadata = await self.metadata.get(chain, token_address)
            snapshots.append(ChainBalanceSnapshot.from_raw(chain, token_address, raw, metadata))
        return snapshots

    async def get_balances(
        self,
        wallet_address: str,
        chain: Chain,
        timestamps: Sequence[datetime],
    ) -> BalanceMap:
        results = await asyncio.gather(*(
            self._balances_at(wallet_address, chain, timestamp)
            for timestamp in timestamps
        ))
        return dict(zip(timestamps, results))


class BalanceSourceChain:
    """Try each available tier in order; the first success wins."""

    def __init__(self, tiers: Sequence[BalanceTier]):
        self.tiers = list(tiers)
        self.logger = logger.bind(component="balance_source_chain")

    def available_tiers(self, chain: Chain) -> List[str]:
        return [tier.name for tier in self.tiers if tier.is_available(chain)]

    async def get_balances(
        self,
        wallet_address: str,
        chain: Chain,
        timestamps: Sequence[datetime],
    ) -> BalanceMap:
        """Balances per timestamp from the first tier that succeeds.

        Every requested timestamp is present in the result; when no tier
        succeeds each maps to an empty list.
        """
        for tier in self.tiers:
            if not tier.is_available(chain):
                continue

            try:
                balances = await tier.get_balances(wallet_address, chain, timestamps)
            except Exception as e:
                self.logger.warning(
                    "balance_tier_failed",
                    tier=tier.name,
                    chain=chain.value,
                    wallet=wallet_address,
                    error=str(e),
                )
                continue

            self.logger.info(
                "balance_tier_succeeded",
                tier=tier.name,
                chain=chain.value,
                wallet=wallet_address,
            )
            return {timestamp: balances.get(timestamp, []) for timestamp in timestamps}

        self.logger.warning("no_balance_tier_succeeded", chain=chain.value, wallet=wallet_address)
        return {timestamp: [] for timestamp in timestamps}

    async def fetch_all_chains(
        self,
        wallet_address: str,
        chains: Sequence[Chain],
        timestamps: Sequence[datetime],
    ) -> Dict[Chain, BalanceMap]:
        """Fetch every chain concurrently; one chain failing leaves the others intact."""
        results = await asyncio.gather(
            *(self.get_balances(wallet_address, chain, timestamps) for chain in chains),
            return_exceptions=True,
        )

        by_chain = {}
        for chain, result in zip(chains, results):
            if isinstance(result, Exception):
                self.logger.error(
                    "chain_balances_failed",
                    chain=chain.value,
                    wallet=wallet_address,
                    error=str(result),
                )
                result = {timestamp: [] for timestamp in timestamps}
            by_chain[chain] = result
        return by_chain
