"""GoldRush (Covalent) portfolio client.

One ``portfolio_v2`` call returns daily holdings for every token a wallet held
over the last ``days`` days, so a single response answers every sample
timestamp of a request. Responses are cached briefly and concurrent identical
requests share one HTTP call.
"""

import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import structlog

from portfolio_history.common.cache import TTLCache
from portfolio_history.common.concurrency import SingleFlight
from portfolio_history.common.rate_limiter import RateLimiterRegistry, request_json
from services.chains import NATIVE_TOKEN_ADDRESS, Chain, get_chain_config
from services.errors import ProviderUnavailableError

from .models import ChainBalanceSnapshot, TokenMetadata

logger = structlog.get_logger()

GOLDRUSH_BASE_URL = "https://api.covalenthq.com/v1"

# Free tier allows 4 requests per second
GOLDRUSH_RATE_PER_SECOND = 4
GOLDRUSH_MAX_BURST = 5

RESPONSE_CACHE_TTL_SECONDS = 60

# GoldRush reports native assets under this placeholder address
GOLDRUSH_NATIVE_ADDRESS = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"


class GoldRushError(ProviderUnavailableError):
    """Raised when GoldRush returns an error payload."""

    def __init__(self, message: str):
        super().__init__("goldrush", message)


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_raw_balance(value: Any) -> int:
    """GoldRush balances are integer strings; tolerate floats and blanks."""
    if value in (None, ""):
        return 0
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return 0


def _normalize_address(address: Optional[str]) -> str:
    address = (address or "").lower()
    if address == GOLDRUSH_NATIVE_ADDRESS:
        return NATIVE_TOKEN_ADDRESS
    return address


def _closest_holding(holdings: List[Dict[str, Any]], target: datetime) -> Optional[Dict[str, Any]]:
    closest = None
    closest_diff = None
    for holding in holdings:
        if not holding.get("timestamp"):
            continue
        diff = abs((parse_timestamp(holding["timestamp"]) - target).total_seconds())
        if closest_diff is None or diff < closest_diff:
            closest = holding
            closest_diff = diff
    return closest


def extract_balances(data: Dict[str, Any], chain: Chain, timestamp: datetime) -> List[ChainBalanceSnapshot]:
    """Pick, per token, the holding entry closest to ``timestamp``.

    Zero balances are skipped.
    """
    items = ((data or {}).get("data") or {}).get("items") or []
    balances = []

    for item in items:
        holding = _closest_holding(item.get("holdings") or [], timestamp)
        if holding is None:
            continue

        raw = parse_raw_balance((holding.get("close") or {}).get("balance"))
        if raw <= 0:
            continue

        decimals = item.get("contract_decimals")
        metadata = TokenMetadata(
            symbol=item.get("contract_ticker_symbol") or "UNKNOWN",
            decimals=int(decimals) if decimals is not None else 18,
        )
        balances.append(ChainBalanceSnapshot.from_raw(
            chain,
            _normalize_address(item.get("contract_address")),
            raw,
            metadata,
        ))

    return balances


class SnapshotClient:
    """Async client for GoldRush ``portfolio_v2``."""

    def __init__(
        self,
        api_key: str,
        limiters: Optional[RateLimiterRegistry] = None,
        timeout: int = 8,
        max_retries: int = 2,
        base_url: str = GOLDRUSH_BASE_URL,
        cache_ttl: float = RESPONSE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize GoldRush client.

        Args:
            api_key: Covalent API key (bearer token); the client is unusable without it
            limiters: Shared rate limiter registry
            timeout: Request timeout in seconds
            max_retries: Retries per call after the first attempt
            base_url: API base URL
            cache_ttl: Seconds a portfolio response is reused
            clock: Monotonic clock for the response cache
        """
        self.api_key = api_key
        self.limiters = limiters or RateLimiterRegistry()
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_retries = max_retries
        self.base_url = base_url.rstrip("/")

        self._cache = TTLCache(ttl_seconds=cache_ttl, clock=clock)
        self._in_flight = SingleFlight()

        self.logger = logger.bind(component="snapshot_client")

    def is_supported(self, chain: Chain) -> bool:
        return bool(self.api_key) and bool(get_chain_config(chain).goldrush_name)

    async def _get(self, url: str) -> Dict[str, Any]:
        """GET a GoldRush URL through the shared limiter."""
        limiter = self.limiters.get("goldrush", GOLDRUSH_RATE_PER_SECOND, GOLDRUSH_MAX_BURST)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await request_json(
                session,
                "GET",
                url,
                provider="goldrush",
                limiter=limiter,
                max_retries=self.max_retries,
                base_delay=1.5,
                max_delay=5.0,
                headers=headers,
            )

    async def fetch_portfolio(self, chain: Chain, wallet_address: str, days: int) -> Dict[str, Any]:
        """Fetch the ``days``-day portfolio history for a wallet on one chain.

        Raises:
            GoldRushError: If the chain is unsupported or the payload reports an error
            ProviderUnavailableError: On HTTP failures after retries
        """
        if not self.is_supported(chain):
            raise GoldRushError(f"GoldRush not configured for {chain.value}")

        key = (wallet_address.lower(), chain, days)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async def _fetch() -> Dict[str, Any]:
            chain_name = get_chain_config(chain).goldrush_name
            url = (
                f"{self.base_url}/{chain_name}/address/{wallet_address}"
                f"/portfolio_v2/?quote-currency=USD&days={days}"
            )
            data = await self._get(url)

            if not isinstance(data, dict) or data.get("error"):
                message = data.get("error_message") if isinstance(data, dict) else None
                raise GoldRushError(message or "malformed portfolio response")

            self._cache.set(key, data)
            self.logger.info(
                "portfolio_fetched",
                chain=chain.value,
                wallet=wallet_address,
                days=days,
                num_items=len((data.get("data") or {}).get("items") or []),
            )
            return data

        return await self._in_flight.do(key, _fetch)

    async def get_balances_at(
        self,
        chain: Chain,
        wallet_address: str,
        timestamps: List[datetime],
        days: int,
    ) -> Dict[datetime, List[ChainBalanceSnapshot]]:
        """Balances closest to each timestamp from one portfolio response."""
        data = await self.fetch_portfolio(chain, wallet_address, days)
        return {
            timestamp: extract_balances(data, chain, timestamp)
            for timestamp in timestamps
        }

    async def get_current_balances(self, chain: Chain, wallet_address: str) -> List[ChainBalanceSnapshot]:
        """Latest holdings for a wallet, used as the event-replay anchor."""
        data = await self.fetch_portfolio(chain, wallet_address, 1)
        return extract_balances(data, chain, datetime.now(timezone.utc))

    def clear(self):
        """Drop cached portfolio responses."""
        self._cache.clear()
