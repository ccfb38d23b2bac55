"""Error taxonomy for historical portfolio reconstruction.

Only ``ConfigurationError`` (and its subclasses) is meant to reach callers.
Provider errors are caught by tier fallback or per-chain degradation; missing
prices and corrupted series are handled as data, not exceptions.
"""

from typing import Optional


class HistoricalDataError(Exception):
    """Base class for all historical data errors."""
    pass


class ProviderUnavailableError(HistoricalDataError):
    """Raised when a single provider fails after retries."""

    def __init__(self, provider: str, message: str, status: Optional[int] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status = status


class RateLimitedError(ProviderUnavailableError):
    """Raised when a provider keeps answering 429 after all retries."""

    def __init__(self, provider: str, message: str = "rate limit exceeded"):
        super().__init__(provider, message, status=429)


class ConfigurationError(HistoricalDataError, ValueError):
    """Raised for caller or programmer errors; always propagated."""
    pass


class UnsupportedChainError(ConfigurationError):
    """Raised when a requested chain is not supported."""
    pass


class InvalidTimeframeError(ConfigurationError):
    """Raised when a timeframe string is not one of 7d, 30d, 90d, 1y."""
    pass


class InvalidWalletAddressError(ConfigurationError):
    """Raised when a wallet address is not a 0x-prefixed 20-byte hex string."""
    pass
