"""Historical balance sources.

This module provides the provider clients and the ordered tier chain used to
answer per-chain, per-timestamp balance queries for a wallet.
"""

from .block_timing import BlockHeightEstimator, BlockTimingClient, BlockTimingError
from .event_replay import LedgerSnapshot, replay_balances
from .metadata import TokenMetadataCache
from .models import ChainBalanceSnapshot, TokenMetadata, TransferEvent
from .multicall_client import MulticallClient, MulticallError
from .snapshot_client import GoldRushError, SnapshotClient
from .tiers import (
    BalanceSourceChain,
    BalanceTier,
    ChainSourceTier,
    EventReplayTier,
    SnapshotTier,
)
from .transfer_client import HyperSyncError, TransferClient

__all__ = [
    # Clients
    'BlockTimingClient',
    'BlockTimingError',
    'MulticallClient',
    'MulticallError',
    'SnapshotClient',
    'GoldRushError',
    'TransferClient',
    'HyperSyncError',

    # Tiers
    'BalanceTier',
    'EventReplayTier',
    'SnapshotTier',
    'ChainSourceTier',
    'BalanceSourceChain',

    # Models and helpers
    'BlockHeightEstimator',
    'ChainBalanceSnapshot',
    'LedgerSnapshot',
    'TokenMetadata',
    'TokenMetadataCache',
    'TransferEvent',
    'replay_balances',
]
