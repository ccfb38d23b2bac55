"""Token-bucket rate limiting and retrying HTTP calls shared by every provider client.

Every outbound call goes through both layers: ``TokenBucket.acquire()`` before
each attempt, and tenacity-driven exponential backoff with jitter around the
attempt. 429 and 5xx responses, network errors and timeouts are retried; any
other 4xx fails immediately.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional

import aiohttp
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from services.errors import ProviderUnavailableError, RateLimitedError

logger = structlog.get_logger()

RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class RetryableHTTPError(Exception):
    """Transient HTTP status; retried until attempts run out."""

    def __init__(self, status: int, url: str):
        super().__init__(f"HTTP {status} from {url}")
        self.status = status


class TokenBucket:
    """Async token bucket.

    Grants are serialised through a lock so concurrent callers queue in
    arrival order instead of racing for the refill.
    """

    def __init__(
        self,
        rate_per_second: float,
        max_burst: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self.rate = float(rate_per_second)
        self.capacity = float(max_burst if max_burst is not None else rate_per_second)
        self._clock = clock
        self._tokens = self.capacity
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last_refill = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self) -> None:
        """Wait until a token is available, then take it."""
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) / self.rate)

    def try_acquire(self) -> bool:
        """Take a token without waiting; False when the bucket is empty."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False


class RateLimiterRegistry:
    """One shared bucket per provider identity."""

    def __init__(self):
        self._limiters: Dict[str, TokenBucket] = {}

    def get(self, key: str, rate_per_second: float, max_burst: Optional[float] = None) -> TokenBucket:
        limiter = self._limiters.get(key)
        if limiter is None:
            limiter = TokenBucket(rate_per_second, max_burst)
            self._limiters[key] = limiter
        return limiter

    def __contains__(self, key: str) -> bool:
        return key in self._limiters

    def __len__(self) -> int:
        return len(self._limiters)


async def request_json(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    *,
    provider: str,
    limiter: TokenBucket,
    max_retries: int = 2,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    wait=None,
    **kwargs: Any,
) -> Any:
    """Make one rate-limited, retried HTTP call and decode the JSON body.

    Args:
        session: Open aiohttp session (its timeout is the per-call deadline)
        method: HTTP method
        url: Request URL
        provider: Provider name used in errors and logs
        limiter: Token bucket for this provider
        max_retries: Retries after the first attempt
        base_delay: Backoff multiplier in seconds
        max_delay: Backoff ceiling in seconds
        wait: Optional tenacity wait strategy overriding the jittered backoff
        **kwargs: Passed through to ``session.request``

    Returns:
        Decoded JSON body

    Raises:
        RateLimitedError: 429 persisted through every attempt
        ProviderUnavailableError: Any other failure
    """
    log = logger.bind(component="rate_limiter", provider=provider)

    async def _attempt() -> Any:
        await limiter.acquire()
        async with session.request(method, url, **kwargs) as response:
            if response.status in RETRY_STATUS_CODES:
                raise RetryableHTTPError(response.status, url)
            if response.status >= 400:
                raise ProviderUnavailableError(
                    provider,
                    f"HTTP {response.status}",
                    status=response.status,
                )
            return await response.json(content_type=None)

    def _before_sleep(retry_state) -> None:
        log.warning(
            "retrying_request",
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait or wait_random_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type((RetryableHTTPError, aiohttp.ClientError, asyncio.TimeoutError)),
        before_sleep=_before_sleep,
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                return await _attempt()
    except RetryableHTTPError as e:
        if e.status == 429:
            raise RateLimitedError(provider) from e
        raise ProviderUnavailableError(provider, f"HTTP {e.status} after retries", status=e.status) from e
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise ProviderUnavailableError(provider, f"request failed: {e!r}") from e
    except RetryError as e:
        raise ProviderUnavailableError(provider, "retries exhausted") from e
