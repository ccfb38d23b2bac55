"""Best-effort progress records for long-running history requests.

Updates are queued and written to the key-value cache by a background worker,
so a slow or unreachable cache never delays or fails the request itself.
Callers poll ``get`` with the request id they supplied.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Dict, Optional

import structlog

from portfolio_history.common.cache import KeyValueCache

from .models import ProgressRecord

logger = structlog.get_logger()

PROGRESS_TTL_SECONDS = 300
PROGRESS_FLUSH_TIMEOUT_SECONDS = 2.0
TERMINAL_STATUSES = ("complete", "error")


def progress_key(request_id: str) -> str:
    return f"progress:{request_id}"


def generate_request_id(wallet_address: str, timeframe: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{wallet_address.lower()}:{timeframe}:{now_ms}"


def get_stage_message(
    status: str,
    current_chain: Optional[str] = None,
    processed_timestamps: Optional[int] = None,
    total_timestamps: Optional[int] = None,
) -> str:
    """Human-readable stage text for a progress status."""
    if status == "pending":
        return "Preparing to fetch historical data..."
    if status == "fetching_balances":
        if current_chain:
            return f"Fetching balances from {current_chain}..."
        return "Fetching token balances..."
    if status == "fetching_prices":
        return (
            f"Getting historical prices ({processed_timestamps or 0}/"
            f"{total_timestamps or 0} timestamps)..."
        )
    if status == "processing":
        return "Calculating portfolio values..."
    if status == "complete":
        return "Done!"
    if status == "error":
        return "An error occurred"
    return "Loading..."


class ProgressReporter:
    """Fire-and-forget progress writer backed by an asyncio queue."""

    def __init__(
        self,
        cache: KeyValueCache,
        ttl_seconds: int = PROGRESS_TTL_SECONDS,
        flush_timeout: float = PROGRESS_FLUSH_TIMEOUT_SECONDS,
    ):
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.flush_timeout = flush_timeout
        self._records: Dict[str, ProgressRecord] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

        self.logger = logger.bind(component="progress_reporter")

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._queue = asyncio.Queue()
            self._worker = asyncio.ensure_future(self._run())

    async def _run(self):
        while True:
            request_id = await self._queue.get()
            try:
                record = self._records.get(request_id)
                if record is not None:
                    await self.cache.set(progress_key(request_id), record.to_dict(), self.ttl_seconds)
                    if record.status in TERMINAL_STATUSES and self._records.get(request_id) is record:
                        del self._records[request_id]
            except Exception as e:
                self.logger.warning("progress_write_failed", request_id=request_id, error=str(e))
            finally:
                self._queue.task_done()

    def _enqueue(self, request_id: str):
        self._ensure_worker()
        self._queue.put_nowait(request_id)

    def init(self, request_id: str, wallet_address: str, timeframe: str, total_timestamps: int):
        """Start tracking a request: balances and prices count as one step per timestamp each."""
        self._records[request_id] = ProgressRecord(
            request_id=request_id,
            wallet_address=wallet_address,
            timeframe=timeframe,
            status="pending",
            stage=get_stage_message("pending"),
            total_steps=total_timestamps * 2,
            total_timestamps=total_timestamps,
        )
        self._enqueue(request_id)

    def update(self, request_id: str, **changes):
        """Overwrite fields of a tracked record; unknown request ids are ignored."""
        current = self._records.get(request_id)
        if current is None:
            return

        record = ProgressRecord(**{**current.__dict__, **changes})
        record.updated_at = datetime.now(timezone.utc)
        self._records[request_id] = record
        self._enqueue(request_id)

    async def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued update has been written (or has failed).

        Waits at most ``timeout`` seconds (``flush_timeout`` when omitted). Writes
        still pending afterwards carry on in the background.

        Returns:
            False when the wait timed out
        """
        if self._queue is None or self._worker is None or self._worker.done():
            return True

        timeout = self.flush_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            self.logger.warning("progress_flush_timed_out", pending=self._queue.qsize(), timeout=timeout)
            return False
        return True

    async def get(self, request_id: str) -> Optional[ProgressRecord]:
        data = await self.cache.get(progress_key(request_id))
        if not data:
            return None
        return ProgressRecord.from_dict(data)

    async def close(self):
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
