"""Tests for timeframe parsing, sample planning and cache keys."""

from datetime import datetime, timedelta, timezone

import pytest

from services.chains import Chain
from services.errors import ConfigurationError, InvalidTimeframeError
from services.timeframes import (
    TIMEFRAME_CONFIGS,
    Timeframe,
    calculate_percent_change,
    generate_cache_key,
    get_cache_ttl,
    parse_timeframe,
    plan_timestamps,
)


@pytest.mark.parametrize("timeframe,count,interval_hours", [
    (Timeframe.WEEK, 14, 12),
    (Timeframe.MONTH, 15, 48),
    (Timeframe.QUARTER, 18, 120),
    (Timeframe.YEAR, 24, 336),
])
def test_plan_timestamps(fixed_now, timeframe, count, interval_hours):
    """Test sample count, spacing and the pinned final sample"""
    timestamps = plan_timestamps(timeframe, now=fixed_now)

    assert len(timestamps) == count
    assert timestamps[-1] == fixed_now
    assert timestamps[0] == fixed_now - (count - 1) * timedelta(hours=interval_hours)
    assert all(a < b for a, b in zip(timestamps, timestamps[1:]))


def test_plan_timestamps_treats_naive_as_utc():
    naive = datetime(2024, 6, 1, 12, 0)
    timestamps = plan_timestamps(Timeframe.WEEK, now=naive)

    assert timestamps[-1] == naive.replace(tzinfo=timezone.utc)
    assert all(ts.tzinfo is timezone.utc for ts in timestamps)


def test_plan_timestamps_is_deterministic(fixed_now):
    assert plan_timestamps("30d", now=fixed_now) == plan_timestamps("30d", now=fixed_now)


def test_parse_timeframe():
    assert parse_timeframe("7d") is Timeframe.WEEK
    assert parse_timeframe(" 1Y ") is Timeframe.YEAR
    assert parse_timeframe(Timeframe.QUARTER) is Timeframe.QUARTER


@pytest.mark.parametrize("value", ["1d", "", "week", "365d"])
def test_parse_timeframe_rejects_unknown(value):
    with pytest.raises(InvalidTimeframeError):
        parse_timeframe(value)


def test_invalid_timeframe_is_configuration_error():
    with pytest.raises(ConfigurationError):
        plan_timestamps("2w")


def test_cache_ttls_grow_with_timeframe():
    ttls = [get_cache_ttl(timeframe) for timeframe in Timeframe]

    assert ttls == [3600, 86400, 259200, 604800]
    assert TIMEFRAME_CONFIGS[Timeframe.WEEK].total_days == 7


def test_generate_cache_key():
    wallet = "0x742D35CC6634C0532925A3B844BC9E7595F0BEB1"

    assert generate_cache_key(wallet, Timeframe.WEEK) == (
        "history:0x742d35cc6634c0532925a3b844bc9e7595f0beb1:7d:all"
    )
    assert generate_cache_key(wallet, "30d", [Chain.POLYGON, Chain.BASE]) == (
        "history:0x742d35cc6634c0532925a3b844bc9e7595f0beb1:30d:base,polygon"
    )


def test_cache_key_ignores_chain_order(wallet):
    assert generate_cache_key(wallet, "7d", [Chain.BASE, Chain.ETHEREUM]) == (
        generate_cache_key(wallet, "7d", [Chain.ETHEREUM, Chain.BASE])
    )


@pytest.mark.parametrize("start,end,expected", [
    (100.0, 150.0, 50.0),
    (200.0, 100.0, -50.0),
    (0.0, 10.0, 100.0),
    (0.0, 0.0, 0.0),
])
def test_calculate_percent_change(start, end, expected):
    assert calculate_percent_change(start, end) == pytest.approx(expected)
