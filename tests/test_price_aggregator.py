"""Tests for batched price aggregation."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.chains import Chain
from services.errors import ProviderUnavailableError
from services.prices.price_aggregator import PriceAggregator, price_key

AT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"


def token(n):
    return "0x" + f"{n:040x}"


def echo_prices(coin_ids, timestamp):
    return {coin_id: 1.0 for coin_id in coin_ids}


@pytest.fixture
def client():
    mock = MagicMock()
    mock.get_historical_prices = AsyncMock(side_effect=echo_prices)
    mock.get_current_prices = AsyncMock(side_effect=lambda coin_ids: {c: 2.0 for c in coin_ids})
    return mock


def test_price_key():
    assert price_key(Chain.ETHEREUM, WETH) == f"ethereum:{WETH.lower()}"


@pytest.mark.asyncio
async def test_keys_prices_by_chain_and_token(client):
    aggregator = PriceAggregator(client, batch_delay=0)

    prices = await aggregator.get_prices([(Chain.ETHEREUM, WETH), (Chain.BASE, WETH)], AT)

    assert prices == {
        f"ethereum:{WETH.lower()}": 1.0,
        f"base:{WETH.lower()}": 1.0,
    }
    client.get_historical_prices.assert_awaited_once_with(
        [f"ethereum:{WETH.lower()}", f"base:{WETH.lower()}"], 1717243200
    )


@pytest.mark.asyncio
async def test_duplicates_are_requested_once(client):
    aggregator = PriceAggregator(client, batch_delay=0)

    await aggregator.get_prices([(Chain.ETHEREUM, WETH), (Chain.ETHEREUM, WETH.lower())], AT)

    assert client.get_historical_prices.call_args[0][0] == [f"ethereum:{WETH.lower()}"]


@pytest.mark.asyncio
async def test_batches_hold_at_most_100_tokens(client):
    aggregator = PriceAggregator(client, batch_delay=0)
    tokens = [(Chain.ETHEREUM, token(n)) for n in range(1, 251)]

    prices = await aggregator.get_prices(tokens, AT)

    batch_sizes = [len(call[0][0]) for call in client.get_historical_prices.call_args_list]
    assert batch_sizes == [100, 100, 50]
    assert len(prices) == 250


@pytest.mark.asyncio
async def test_failed_batch_is_skipped(client):
    """Test one failing batch leaves the other batches' prices"""
    calls = []

    async def flaky(coin_ids, timestamp):
        calls.append(coin_ids)
        if len(calls) == 1:
            raise ProviderUnavailableError("defillama", "HTTP 502 after retries", status=502)
        return echo_prices(coin_ids, timestamp)

    client.get_historical_prices = AsyncMock(side_effect=flaky)
    aggregator = PriceAggregator(client, batch_size=2, batch_delay=0)
    tokens = [(Chain.ETHEREUM, token(n)) for n in range(1, 5)]

    prices = await aggregator.get_prices(tokens, AT)

    assert sorted(prices) == sorted(price_key(Chain.ETHEREUM, token(n)) for n in (3, 4))


@pytest.mark.asyncio
async def test_missing_prices_are_absent(client):
    client.get_historical_prices = AsyncMock(return_value={})
    aggregator = PriceAggregator(client, batch_delay=0)

    assert await aggregator.get_prices([(Chain.ETHEREUM, WETH)], AT) == {}


@pytest.mark.asyncio
async def test_no_tokens_no_request(client):
    aggregator = PriceAggregator(client)

    assert await aggregator.get_prices([], AT) == {}
    client.get_historical_prices.assert_not_called()


@pytest.mark.asyncio
async def test_batches_are_spaced(client, monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr("services.prices.price_aggregator.asyncio.sleep", fake_sleep)
    aggregator = PriceAggregator(client, batch_size=1, batch_delay=0.2)

    await aggregator.get_prices([(Chain.ETHEREUM, token(n)) for n in range(1, 4)], AT)

    assert sleeps == [0.2, 0.2]


@pytest.mark.asyncio
async def test_get_current_prices(client):
    client.get_current_prices = AsyncMock(side_effect=[
        {f"ethereum:{token(1)}": 2.0},
        ProviderUnavailableError("defillama", "down"),
    ])
    aggregator = PriceAggregator(client, batch_size=1)

    prices = await aggregator.get_current_prices([(Chain.ETHEREUM, token(1)), (Chain.ETHEREUM, token(2))])

    assert prices == {f"ethereum:{token(1)}": 2.0}
