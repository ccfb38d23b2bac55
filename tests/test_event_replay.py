"""Tests for backward transfer replay."""

from datetime import datetime, timedelta, timezone

import pytest

from services.balances.event_replay import replay_balances
from services.balances.models import TransferEvent
from services.chains import Chain

WALLET = "0x742d35cc6634c0532925a3b844bc9e7595f0beb1"
OTHER = "0x1111111111111111111111111111111111111111"
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def transfer(token, sender, recipient, value, block, log_index=0):
    return TransferEvent(
        chain=Chain.ETHEREUM,
        token_address=token,
        from_address=sender,
        to_address=recipient,
        value=value,
        block_number=block,
        transaction_hash=f"0x{block:064x}",
        log_index=log_index,
    )


def boundary(hours_ago, block):
    return (NOW - timedelta(hours=hours_ago), block)


def _upper(address):
    return "0x" + address[2:].upper()


def test_incoming_transfer_is_undone():
    """Test a wallet holding B that received A at block k held B - A before k"""
    events = [transfer(USDC, OTHER, WALLET, 400, block=150)]

    before, after = sorted(
        replay_balances(WALLET, {USDC: 1000}, events, [boundary(24, 100), boundary(0, 200)]),
        key=lambda snapshot: snapshot.block_number,
    )

    assert after.balances == {USDC: 1000}
    assert before.balances == {USDC: 600}


def test_outgoing_transfer_is_added_back():
    events = [transfer(USDC, WALLET, OTHER, 250, block=150)]

    snapshots = replay_balances(WALLET, {USDC: 1000}, events, [boundary(24, 100)])

    assert snapshots[0].balances == {USDC: 1250}


def test_event_at_boundary_block_counts_as_held():
    """Test balances are end-of-block: an event in the boundary block is kept"""
    events = [transfer(USDC, OTHER, WALLET, 400, block=100)]

    snapshots = replay_balances(WALLET, {USDC: 1000}, events, [boundary(24, 100)])

    assert snapshots[0].balances == {USDC: 1000}


def test_boundary_block_reports_post_event_balance():
    """Test a receipt of A at block H-10 leaves B at boundary H-10 and B - A one block earlier"""
    head = 1000
    events = [transfer(USDC, OTHER, WALLET, 400, block=head - 10)]

    at_event, before_event = replay_balances(
        WALLET, {USDC: 1000}, events, [boundary(2, head - 10), boundary(3, head - 11)]
    )

    assert at_event.block_number == head - 10
    assert at_event.balances == {USDC: 1000}
    assert before_event.block_number == head - 11
    assert before_event.balances == {USDC: 600}


def test_self_transfer_has_no_effect():
    events = [transfer(USDC, WALLET, WALLET, 500, block=150)]

    snapshots = replay_balances(WALLET, {USDC: 1000}, events, [boundary(24, 100)])

    assert snapshots[0].balances == {USDC: 1000}


def test_non_positive_balances_are_dropped():
    """Test a token received after the boundary vanishes from earlier snapshots"""
    events = [
        transfer(WETH, OTHER, WALLET, 5 * 10 ** 18, block=150),
        transfer(USDC, OTHER, WALLET, 2000, block=160),
    ]

    snapshots = replay_balances(
        WALLET, {WETH: 5 * 10 ** 18, USDC: 1000}, events, [boundary(24, 100)]
    )

    assert snapshots[0].balances == {}


def test_multiple_boundaries_newest_first():
    events = [
        transfer(USDC, OTHER, WALLET, 100, block=110),
        transfer(USDC, OTHER, WALLET, 200, block=210),
        transfer(USDC, WALLET, OTHER, 50, block=310),
    ]
    boundaries = [boundary(36, 100), boundary(24, 200), boundary(12, 300), boundary(0, 400)]

    snapshots = replay_balances(WALLET, {USDC: 1000}, events, boundaries)

    assert [s.block_number for s in snapshots] == [400, 300, 200, 100]
    assert [s.balances[USDC] for s in snapshots] == [1000, 1050, 850, 750]
    assert snapshots[-1].timestamp == NOW - timedelta(hours=36)


def test_input_order_does_not_matter():
    events = [
        transfer(USDC, OTHER, WALLET, 100, block=110, log_index=1),
        transfer(USDC, WALLET, OTHER, 30, block=110, log_index=0),
        transfer(WETH, OTHER, WALLET, 7, block=120),
    ]
    boundaries = [boundary(12, 100), boundary(0, 200)]
    anchor = {USDC: 500, WETH: 10}

    forward = replay_balances(WALLET, anchor, events, boundaries)
    backward = replay_balances(WALLET, anchor, list(reversed(events)), list(reversed(boundaries)))

    assert [dict(s.balances) for s in forward] == [dict(s.balances) for s in backward]
    assert dict(forward[-1].balances) == {USDC: 430, WETH: 3}


def test_anchor_is_not_mutated():
    anchor = {USDC: 1000}
    events = [transfer(USDC, OTHER, WALLET, 400, block=150)]

    replay_balances(WALLET, anchor, events, [boundary(24, 100)])

    assert anchor == {USDC: 1000}


def test_snapshots_are_read_only():
    snapshots = replay_balances(WALLET, {USDC: 1000}, [], [boundary(0, 100)])

    with pytest.raises(TypeError):
        snapshots[0].balances[USDC] = 1


def test_addresses_are_case_insensitive():
    events = [transfer(_upper(USDC), OTHER, _upper(WALLET), 400, block=150)]

    snapshots = replay_balances(_upper(WALLET), {USDC: 1000}, events, [boundary(24, 100)])

    assert snapshots[0].balances == {USDC: 600}


def test_no_boundaries():
    assert replay_balances(WALLET, {USDC: 1}, [], []) == []
