"""Timeframe configuration and sample timestamp planning."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Sequence, Union

from services.chains import Chain
from services.errors import InvalidTimeframeError


class Timeframe(str, Enum):
    WEEK = "7d"
    MONTH = "30d"
    QUARTER = "90d"
    YEAR = "1y"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TimeframeConfig:
    total_days: int
    sample_count: int
    sample_interval_hours: int
    cache_ttl_seconds: int


# Shorter timeframes refresh more often, so they get shorter TTLs
TIMEFRAME_CONFIGS = {
    Timeframe.WEEK: TimeframeConfig(7, 14, 12, 3600),
    Timeframe.MONTH: TimeframeConfig(30, 15, 48, 86400),
    Timeframe.QUARTER: TimeframeConfig(90, 18, 120, 86400 * 3),
    Timeframe.YEAR: TimeframeConfig(365, 24, 336, 86400 * 7),
}


def parse_timeframe(value: Union[Timeframe, str]) -> Timeframe:
    if isinstance(value, Timeframe):
        return value
    try:
        return Timeframe(str(value).strip().lower())
    except ValueError:
        raise InvalidTimeframeError(
            f"Unsupported timeframe {value!r}; expected one of "
            f"{', '.join(t.value for t in Timeframe)}"
        ) from None


def plan_timestamps(timeframe: Timeframe, now: Optional[datetime] = None) -> List[datetime]:
    """Generate sample timestamps from oldest to newest.

    The last sample is pinned to ``now`` (wall clock when omitted), so two calls
    only agree when given the same clock.

    Args:
        timeframe: Timeframe to plan for
        now: Reference time; naive values are treated as UTC

    Returns:
        ``sample_count`` ascending UTC datetimes spaced ``sample_interval_hours`` apart
    """
    config = TIMEFRAME_CONFIGS[parse_timeframe(timeframe)]
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    interval = timedelta(hours=config.sample_interval_hours)
    return [now - i * interval for i in range(config.sample_count - 1, -1, -1)]


def generate_cache_key(
    wallet_address: str,
    timeframe: Timeframe,
    chains: Optional[Sequence[Chain]] = None,
) -> str:
    """Cache key: ``history:{wallet}:{timeframe}:{chains|all}``."""
    chain_part = ",".join(sorted(str(c) for c in chains)) if chains else "all"
    return f"history:{wallet_address.lower()}:{parse_timeframe(timeframe).value}:{chain_part}"


def get_cache_ttl(timeframe: Timeframe) -> int:
    return TIMEFRAME_CONFIGS[parse_timeframe(timeframe)].cache_ttl_seconds


def calculate_percent_change(start_value: float, end_value: float) -> float:
    if start_value == 0:
        return 100.0 if end_value > 0 else 0.0
    return (end_value - start_value) / start_value * 100
