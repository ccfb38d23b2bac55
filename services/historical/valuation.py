"""Portfolio valuation and statistical gap repair.

Providers drop tokens or prices for individual timestamps, which shows up as
sudden dips in an otherwise smooth series. ``apply_interpolation`` detects
points far below a reference level and carries the last good value over them.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from portfolio_history.common.logging_setup import CORRECTIONS_LOGGER, get_logger
from services.balances.models import ChainBalanceSnapshot

from .models import HistoricalDataPoint

logger = logging.getLogger(__name__)
corrections_logger = get_logger(CORRECTIONS_LOGGER)


@dataclass(frozen=True)
class InterpolationConfig:
    """Tunable thresholds; defaults were chosen empirically against provider dropouts."""

    anomaly_threshold_ratio: float = 0.3
    corruption_multiplier: float = 10.0
    leading_decay: float = 0.98

    @classmethod
    def from_settings(cls, settings) -> "InterpolationConfig":
        return cls(
            anomaly_threshold_ratio=settings.anomaly_threshold_ratio,
            corruption_multiplier=settings.corruption_multiplier,
            leading_decay=settings.leading_decay,
        )


def calculate_total_value(
    snapshots: Iterable[ChainBalanceSnapshot],
    prices: Dict[str, float],
) -> float:
    """Sum balance * price; tokens without a price contribute nothing."""
    total = 0.0
    for snapshot in snapshots:
        price = prices.get(snapshot.price_key)
        if price is not None:
            total += snapshot.balance * price
    return total


def apply_interpolation(
    points: List[HistoricalDataPoint],
    current_value: Optional[float] = None,
    config: Optional[InterpolationConfig] = None,
) -> List[HistoricalDataPoint]:
    """Replace anomalous dips in a value series.

    Args:
        points: Raw data points, any order; never mutated
        current_value: Live portfolio value, trusted as the latest point when > 0
        config: Thresholds

    Returns:
        New list sorted by timestamp. Outside the all-anomalous case no point is
        below ``anomaly_threshold_ratio`` times the reference value, where the
        reference is the median of positive points, or the live value when it
        exceeds ``corruption_multiplier`` times that median.
    """
    config = config or InterpolationConfig()
    if not points:
        return []

    result = sorted(
        (HistoricalDataPoint(timestamp=point.timestamp, total_usd=point.total_usd) for point in points),
        key=lambda point: point.timestamp,
    )

    live = current_value if current_value is not None and current_value > 0 else None
    if live is not None:
        result[-1].total_usd = live

    positives = sorted(point.total_usd for point in result if point.total_usd > 0)
    if not positives:
        return result

    median = positives[len(positives) // 2]
    reference = median

    # A live value far above the median means most history is broken, not the anchor
    corrupted = live is not None and live > config.corruption_multiplier * median
    if corrupted:
        reference = live

    threshold = reference * config.anomaly_threshold_ratio

    corrected = 0
    last_good = live if corrupted else 0.0
    for point in result:
        if point.total_usd >= threshold:
            last_good = point.total_usd
        elif last_good > 0:
            point.total_usd = last_good
            corrected += 1

    first_good_index = next(
        (index for index, point in enumerate(result) if point.total_usd >= threshold),
        None,
    )
    if first_good_index is None:
        if live is not None:
            for point in result:
                point.total_usd = live
            corrected = len(result)
    elif first_good_index > 0:
        fill = max(result[first_good_index].total_usd * config.leading_decay, threshold)
        for point in result[:first_good_index]:
            point.total_usd = fill
        corrected += first_good_index

    logger.debug(
        f"Interpolation: median=${median:.2f}, reference=${reference:.2f}, "
        f"threshold=${threshold:.2f}, corrected={corrected}"
    )
    if corrected:
        corrections_logger.log_operation(
            operation="apply_interpolation",
            params={"median": median, "reference": reference, "corrupted": corrupted},
            status="corrected",
            message=f"Corrected {corrected}/{len(result)} points "
                    f"(median=${median:.2f}, reference=${reference:.2f}, corrupted={corrupted})",
        )

    return result
