"""Historical portfolio reconstruction: orchestration, valuation and progress."""

from .models import HistoricalDataPoint, HistoricalPortfolioResult, PriceQuote, ProgressRecord
from .orchestrator import HistoricalPortfolioService, build_service
from .progress import ProgressReporter, generate_request_id, get_stage_message
from .valuation import InterpolationConfig, apply_interpolation, calculate_total_value

__all__ = [
    'HistoricalPortfolioService',
    'build_service',
    'HistoricalDataPoint',
    'HistoricalPortfolioResult',
    'PriceQuote',
    'ProgressRecord',
    'ProgressReporter',
    'generate_request_id',
    'get_stage_message',
    'InterpolationConfig',
    'apply_interpolation',
    'calculate_total_value',
]
