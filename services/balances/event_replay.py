"""Backward replay of transfer events from a known current balance.

Given the balances a wallet holds now (the anchor) and every transfer touching
it since the oldest sample block, past balances are recovered by undoing the
transfers newest-first. Boundaries and events are both walked in descending
order, so the whole reconstruction is a single merge over the two lists.
"""

from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Dict, List, Mapping, Sequence, Tuple

from .models import TransferEvent


@dataclass(frozen=True)
class LedgerSnapshot:
    """Positive raw balances per token as of the end of ``block_number``."""

    timestamp: datetime
    block_number: int
    balances: Mapping[str, int]


def _reverse_transfer(ledger: Dict[str, int], event: TransferEvent, wallet: str) -> None:
    incoming = event.to_address.lower() == wallet
    outgoing = event.from_address.lower() == wallet
    if incoming == outgoing:
        # Self-transfer (or unrelated event): no net effect on the wallet
        return

    token = event.token_address.lower()
    current = ledger.get(token, 0)
    if incoming:
        ledger[token] = current - event.value
    else:
        ledger[token] = current + event.value


def replay_balances(
    wallet_address: str,
    anchor: Mapping[str, int],
    events: Sequence[TransferEvent],
    boundaries: Sequence[Tuple[datetime, int]],
) -> List[LedgerSnapshot]:
    """Reconstruct balances at each boundary block by reversing later transfers.

    Args:
        wallet_address: Wallet whose balances are being reconstructed
        anchor: Current raw balances by token address (the trusted seed)
        events: Transfers between the oldest boundary and the anchor block, any order
        boundaries: ``(timestamp, estimated_block)`` pairs, any order

    Returns:
        One snapshot per boundary, newest block first. Each snapshot reflects
        every event at or below its block; balances <= 0 are dropped.
    """
    wallet = wallet_address.lower()
    ordered_boundaries = sorted(boundaries, key=lambda pair: pair[1], reverse=True)
    ordered_events = sorted(events, key=lambda event: event.sort_key, reverse=True)

    # Working copy; the caller's anchor is never touched
    ledger: Dict[str, int] = {token.lower(): int(raw) for token, raw in anchor.items()}

    snapshots: List[LedgerSnapshot] = []
    event_index = 0

    for timestamp, block in ordered_boundaries:
        while (
            event_index < len(ordered_events)
            and ordered_events[event_index].block_number > block
        ):
            _reverse_transfer(ledger, ordered_events[event_index], wallet)
            event_index += 1

        snapshots.append(LedgerSnapshot(
            timestamp=timestamp,
            block_number=block,
            balances=MappingProxyType({
                token: raw for token, raw in ledger.items() if raw > 0
            }),
        ))

    return snapshots
