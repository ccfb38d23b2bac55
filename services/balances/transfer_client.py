"""HyperSync client for ERC-20 transfer history.

Talks to Envio's HyperSync JSON API: ``GET /height`` for the indexed chain
height and ``POST /query`` for log queries. A wallet's transfer history is two
queries (wallet as recipient, wallet as sender) over the same block range, each
paginated through ``next_block`` until the range is covered.
"""

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from portfolio_history.common.rate_limiter import RateLimiterRegistry, request_json
from services.chains import ERC20_TRANSFER_TOPIC, Chain, get_chain_config
from services.errors import ProviderUnavailableError

from .models import TransferEvent

logger = structlog.get_logger()

HYPERSYNC_RATE_PER_SECOND = 5
HYPERSYNC_MAX_BURST = 10

# Upper bound on pages per query; a wallet needing more is treated as unavailable
MAX_PAGES = 500

LOG_FIELDS = [
    "block_number",
    "log_index",
    "transaction_hash",
    "address",
    "data",
    "topic0",
    "topic1",
    "topic2",
]


class HyperSyncError(ProviderUnavailableError):
    """Raised when a HyperSync query fails or returns an unusable payload."""

    def __init__(self, message: str):
        super().__init__("hypersync", message)


def pad_address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte topic."""
    return "0x" + address.lower()[2:].rjust(64, "0")


def topic_to_address(topic: Optional[str]) -> str:
    return "0x" + (topic or "")[-40:].lower()


def parse_value(data: Optional[str]) -> int:
    """Decode a uint256 log data field; empty or malformed data is zero."""
    if not data or data == "0x":
        return 0
    try:
        return int(data, 16)
    except ValueError:
        return 0


class TransferClient:
    """Async client for wallet transfer events over the HyperSync JSON API."""

    def __init__(
        self,
        api_token: str,
        limiters: Optional[RateLimiterRegistry] = None,
        timeout: int = 30,
        max_retries: int = 2,
    ):
        """Initialize transfer client.

        Args:
            api_token: Envio API token sent as a bearer token
            limiters: Shared rate limiter registry
            timeout: Request timeout in seconds
            max_retries: Retries per call after the first attempt
        """
        self.api_token = api_token
        self.limiters = limiters or RateLimiterRegistry()
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_retries = max_retries

        self.logger = logger.bind(component="transfer_client")

    def is_supported(self, chain: Chain) -> bool:
        return bool(self.api_token) and bool(get_chain_config(chain).hypersync_url)

    def _base_url(self, chain: Chain) -> str:
        url = get_chain_config(chain).hypersync_url
        if not url:
            raise HyperSyncError(f"HyperSync not supported for {chain.value}")
        return url.rstrip("/")

    async def _request(self, chain: Chain, method: str, path: str, payload: Optional[Dict] = None) -> Any:
        """Send one request to the chain's HyperSync endpoint."""
        limiter = self.limiters.get(
            f"hypersync-{chain.value}", HYPERSYNC_RATE_PER_SECOND, HYPERSYNC_MAX_BURST
        )
        headers = {"Authorization": f"Bearer {self.api_token}"}
        kwargs = {"headers": headers}
        if payload is not None:
            kwargs["json"] = payload

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await request_json(
                session,
                method,
                f"{self._base_url(chain)}{path}",
                provider="hypersync",
                limiter=limiter,
                max_retries=self.max_retries,
                **kwargs,
            )

    async def get_height(self, chain: Chain) -> int:
        """Get the latest block HyperSync has indexed for a chain.

        Raises:
            HyperSyncError: If the response carries no height
        """
        data = await self._request(chain, "GET", "/height")
        height = data.get("height") if isinstance(data, dict) else None
        if height is None:
            raise HyperSyncError(f"no height in response for {chain.value}")
        return int(height)

    def _build_query(self, from_block: int, to_block: int, topics: List[List[str]]) -> Dict[str, Any]:
        return {
            "from_block": from_block,
            # HyperSync treats to_block as exclusive
            "to_block": to_block + 1,
            "logs": [{"topics": topics}],
            "field_selection": {"log": LOG_FIELDS},
        }

    def _parse_log(self, chain: Chain, log: Dict[str, Any]) -> Optional[TransferEvent]:
        topics = log.get("topics") or [log.get("topic0"), log.get("topic1"), log.get("topic2")]
        if len(topics) < 3 or not topics[1] or not topics[2]:
            return None

        value = parse_value(log.get("data"))
        if value == 0:
            return None

        return TransferEvent(
            chain=chain,
            token_address=(log.get("address") or "").lower(),
            from_address=topic_to_address(topics[1]),
            to_address=topic_to_address(topics[2]),
            value=value,
            block_number=int(log.get("block_number") or 0),
            transaction_hash=log.get("transaction_hash") or "",
            log_index=int(log.get("log_index") or 0),
        )

    async def _query_logs(
        self,
        chain: Chain,
        from_block: int,
        to_block: int,
        topics: List[List[str]],
    ) -> List[TransferEvent]:
        """Run a log query, following ``next_block`` until ``to_block`` is covered."""
        events = []
        cursor = from_block

        for _ in range(MAX_PAGES):
            data = await self._request(chain, "POST", "/query", self._build_query(cursor, to_block, topics))
            if not isinstance(data, dict):
                raise HyperSyncError("unexpected query response")

            for block_data in data.get("data") or []:
                for log in block_data.get("logs") or []:
                    event = self._parse_log(chain, log)
                    if event is not None:
                        events.append(event)

            next_block = data.get("next_block")
            if next_block is None or next_block > to_block or next_block <= cursor:
                return events
            cursor = next_block

        raise HyperSyncError(f"query for {chain.value} exceeded {MAX_PAGES} pages")

    async def fetch_transfer_events(
        self,
        chain: Chain,
        wallet_address: str,
        from_block: int,
        to_block: int,
    ) -> List[TransferEvent]:
        """Fetch every non-zero ERC-20 transfer into or out of a wallet.

        Args:
            chain: Chain to query
            wallet_address: Wallet address
            from_block: First block (inclusive)
            to_block: Last block (inclusive)

        Returns:
            Events sorted ascending by (block_number, log_index)

        Raises:
            HyperSyncError: On malformed responses
            ProviderUnavailableError: On HTTP failures after retries
        """
        padded = pad_address_topic(wallet_address)
        log = self.logger.bind(chain=chain.value, wallet=wallet_address)

        incoming, outgoing = await asyncio.gather(
            self._query_logs(chain, from_block, to_block, [[ERC20_TRANSFER_TOPIC], [], [padded]]),
            self._query_logs(chain, from_block, to_block, [[ERC20_TRANSFER_TOPIC], [padded], []]),
        )

        # A self-transfer matches both queries; keep one copy
        unique = {}
        for event in incoming + outgoing:
            unique[(event.block_number, event.log_index, event.transaction_hash)] = event

        events = sorted(unique.values(), key=lambda event: event.sort_key)

        log.info(
            "transfer_events_fetched",
            from_block=from_block,
            to_block=to_block,
            num_events=len(events),
        )

        return events
