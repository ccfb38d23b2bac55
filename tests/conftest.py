import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest


# Ensure the project root (containing the portfolio_history and services packages) is importable.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from portfolio_history.common.rate_limiter import RateLimiterRegistry  # noqa: E402


WALLET = "0x742d35cc6634c0532925a3b844bc9e7595f0beb1"
OTHER = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def wallet():
    return WALLET


@pytest.fixture
def fixed_now():
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def limiters():
    """Rate limiter registry with no practical throttling"""
    registry = RateLimiterRegistry()
    return registry


@pytest.fixture
def temp_log_dir(tmp_path):
    """Create temporary log directory for tests"""
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return log_dir
