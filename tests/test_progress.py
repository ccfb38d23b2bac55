"""Tests for progress records and the background progress writer."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from portfolio_history.common.cache import MemoryCache
from services.historical.progress import (
    ProgressReporter,
    generate_request_id,
    get_stage_message,
    progress_key,
)

WALLET = "0x742d35cc6634c0532925a3b844bc9e7595f0beb1"


@pytest.mark.parametrize("status,kwargs,expected", [
    ("pending", {}, "Preparing to fetch historical data..."),
    ("fetching_balances", {}, "Fetching token balances..."),
    ("fetching_balances", {"current_chain": "base"}, "Fetching balances from base..."),
    ("fetching_prices", {"processed_timestamps": 3, "total_timestamps": 14},
     "Getting historical prices (3/14 timestamps)..."),
    ("processing", {}, "Calculating portfolio values..."),
    ("complete", {}, "Done!"),
    ("error", {}, "An error occurred"),
    ("unknown", {}, "Loading..."),
])
def test_get_stage_message(status, kwargs, expected):
    assert get_stage_message(status, **kwargs) == expected


def test_generate_request_id():
    request_id = generate_request_id(WALLET.upper().replace("0X", "0x"), "7d", now_ms=1717243200000)

    assert request_id == f"{WALLET}:7d:1717243200000"
    assert progress_key(request_id) == f"progress:{request_id}"


def test_generate_request_id_defaults_to_now():
    assert generate_request_id(WALLET, "30d").startswith(f"{WALLET}:30d:")


class TestProgressReporter:
    """Test suite for ProgressReporter."""

    @pytest.mark.asyncio
    async def test_init_writes_pending_record(self):
        reporter = ProgressReporter(MemoryCache())

        reporter.init("req-1", WALLET, "7d", total_timestamps=14)
        await reporter.flush()

        record = await reporter.get("req-1")
        assert record.status == "pending"
        assert record.total_steps == 28
        assert record.total_timestamps == 14
        assert record.stage == "Preparing to fetch historical data..."
        await reporter.close()

    @pytest.mark.asyncio
    async def test_updates_overwrite_in_place(self):
        reporter = ProgressReporter(MemoryCache())
        reporter.init("req-1", WALLET, "7d", total_timestamps=14)

        reporter.update("req-1", status="fetching_prices", processed_timestamps=5, current_step=19)
        await reporter.flush()

        record = await reporter.get("req-1")
        assert record.status == "fetching_prices"
        assert record.processed_timestamps == 5
        assert record.current_step == 19
        assert record.updated_at >= record.started_at
        await reporter.close()

    @pytest.mark.asyncio
    async def test_unknown_request_is_ignored(self):
        cache = MemoryCache()
        reporter = ProgressReporter(cache)

        reporter.update("missing", status="complete")
        await reporter.flush()

        assert await reporter.get("missing") is None

    @pytest.mark.asyncio
    async def test_terminal_record_is_released(self):
        reporter = ProgressReporter(MemoryCache())
        reporter.init("req-1", WALLET, "7d", total_timestamps=14)

        reporter.update("req-1", status="complete", stage="Done!")
        await reporter.flush()

        assert (await reporter.get("req-1")).status == "complete"
        reporter.update("req-1", status="error")
        await reporter.flush()
        assert (await reporter.get("req-1")).status == "complete"
        await reporter.close()

    @pytest.mark.asyncio
    async def test_records_use_configured_ttl(self):
        cache = MagicMock()
        cache.set = AsyncMock()
        reporter = ProgressReporter(cache, ttl_seconds=120)

        reporter.init("req-1", WALLET, "7d", total_timestamps=14)
        await reporter.flush()

        key, value, ttl = cache.set.call_args[0]
        assert key == "progress:req-1"
        assert value["request_id"] == "req-1"
        assert ttl == 120
        await reporter.close()

    @pytest.mark.asyncio
    async def test_cache_failures_are_swallowed(self):
        """Test a failing cache never reaches the request path"""
        cache = MagicMock()
        cache.set = AsyncMock(side_effect=ConnectionError("redis down"))
        reporter = ProgressReporter(cache)

        reporter.init("req-1", WALLET, "7d", total_timestamps=14)
        reporter.update("req-1", status="fetching_balances")
        await reporter.flush()

        assert cache.set.await_count == 2
        await reporter.close()

    @pytest.mark.asyncio
    async def test_close_stops_worker(self):
        reporter = ProgressReporter(MemoryCache())
        reporter.init("req-1", WALLET, "7d", total_timestamps=14)

        await reporter.close()

        assert reporter._worker is None
        assert (await reporter.get("req-1")) is not None


class TestFlushTimeout:
    """Test suite for bounded flushes."""

    @pytest.mark.asyncio
    async def test_flush_gives_up_after_timeout(self):
        blocked = asyncio.Event()

        async def blocked_set(*args):
            await blocked.wait()

        cache = MagicMock()
        cache.set = AsyncMock(side_effect=blocked_set)
        reporter = ProgressReporter(cache, flush_timeout=0.05)
        reporter.init("req-1", WALLET, "7d", total_timestamps=14)

        assert await reporter.flush() is False

        blocked.set()
        assert await reporter.flush(timeout=5) is True
        await reporter.close()

    @pytest.mark.asyncio
    async def test_close_cancels_a_stuck_write(self):
        async def never_returns(*args):
            await asyncio.Event().wait()

        cache = MagicMock()
        cache.set = AsyncMock(side_effect=never_returns)
        reporter = ProgressReporter(cache, flush_timeout=0.05)
        reporter.init("req-1", WALLET, "7d", total_timestamps=14)

        await asyncio.wait_for(reporter.close(), timeout=5)

        assert reporter._worker is None

    @pytest.mark.asyncio
    async def test_flush_without_updates(self):
        assert await ProgressReporter(MemoryCache()).flush() is True
