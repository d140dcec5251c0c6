"""Per-slot block fetch with timeout, retry and a global concurrency limit.

The slot is the unit of retry: a slot either comes back FETCHED (with the
program-relevant transactions in block order), EMPTY (skipped slot or no
program activity), or UNRESOLVED after the retry budget is spent. Unresolved
slots are never raised; the pipeline records them as gaps.
"""

import asyncio
import time

from omnipair_indexer.config import IndexerSettings
from omnipair_indexer.exceptions import RpcFetchError
from omnipair_indexer.logging import get_logger
from omnipair_indexer.models import FetchStatus, SlotFetchResult
from omnipair_indexer.rpc.client import RpcClient

logger = get_logger(__name__)


class SlotFetcher:
    """Fetches slots from an RpcClient and keeps only program transactions.

    Usage:
        fetcher = SlotFetcher(rpc, settings)
        results = await fetcher.fetch(1000, 1049)
    """

    def __init__(self, rpc: RpcClient, settings: IndexerSettings) -> None:
        self._rpc = rpc
        self._settings = settings
        self._semaphore = asyncio.Semaphore(settings.rpc_concurrency)

    async def fetch(self, start_slot: int, end_slot: int) -> dict[int, SlotFetchResult]:
        """Fetch every slot in the inclusive range concurrently."""
        if end_slot < start_slot:
            return {}
        slots = range(start_slot, end_slot + 1)
        results = await asyncio.gather(*(self.fetch_slot(slot) for slot in slots))
        return {result.slot: result for result in results}

    async def fetch_slot(self, slot: int) -> SlotFetchResult:
        """Fetch one slot with exponential backoff retry.

        Delays: base, 2x, 4x, ... between attempts; rate limiting triples the delay.
        """
        max_retries = max(1, self._settings.max_fetch_retries)
        base_delay = self._settings.retry_base_delay
        last_error = ""

        for attempt in range(max_retries):
            try:
                async with self._semaphore:
                    block = await asyncio.wait_for(
                        self._rpc.get_block(slot),
                        timeout=self._settings.fetch_timeout_seconds,
                    )
            except (RpcFetchError, asyncio.TimeoutError, OSError) as e:
                last_error = str(e) or type(e).__name__
                if attempt == max_retries - 1:
                    break

                delay = base_delay * (2**attempt)
                if getattr(e, "rate_limited", False):
                    delay *= 3
                    logger.warning(
                        "rate_limit_exceeded",
                        slot=slot,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                    )
                else:
                    logger.warning(
                        "slot_fetch_retry",
                        slot=slot,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=last_error,
                    )
                await asyncio.sleep(delay)
                continue

            if block is None:
                return SlotFetchResult(slot=slot, status=FetchStatus.EMPTY, attempts=attempt + 1)

            relevant = [
                tx for tx in block.transactions if tx.references(self._settings.program_id)
            ]
            status = FetchStatus.FETCHED if relevant else FetchStatus.EMPTY
            return SlotFetchResult(
                slot=slot, status=status, transactions=relevant, attempts=attempt + 1
            )

        logger.error(
            "slot_fetch_failed_permanently",
            slot=slot,
            attempts=max_retries,
            error=last_error,
        )
        return SlotFetchResult(
            slot=slot,
            status=FetchStatus.UNRESOLVED,
            error=last_error,
            attempts=max_retries,
        )

    async def tip_slot(self) -> int:
        """Current tip minus the configured confirmation depth."""
        started = time.monotonic()
        tip = await self._rpc.get_tip_slot()
        logger.debug(
            "tip_slot_fetched",
            tip=tip,
            elapsed_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return tip - self._settings.confirmation_depth
