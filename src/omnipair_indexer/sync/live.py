"""Live sync: follow the chain tip.

Starts at tip - confirmation_depth and, every poll interval, processes the
new slots up to the current tip - confirmation_depth in chunks of at most
max_slots_per_poll. Slots that fail become gaps and the loop keeps going.
"""

import asyncio
import time

from omnipair_indexer.config import IndexerSettings
from omnipair_indexer.exceptions import IndexerError
from omnipair_indexer.ingest.pipeline import PipelineReport, SlotPipeline
from omnipair_indexer.logging import get_logger, sync_context

logger = get_logger(__name__)


class LiveSyncLoop:
    """Polling loop over the slot pipeline."""

    def __init__(self, pipeline: SlotPipeline, settings: IndexerSettings) -> None:
        self._pipeline = pipeline
        self._settings = settings
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self.next_slot: int | None = None
        self.last_poll_at: float | None = None
        self.report = PipelineReport()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, from_slot: int | None = None) -> None:
        """Begin polling in the background. `from_slot` overrides the tip start."""
        if self.running:
            logger.warning("live_sync_already_running")
            return
        self._stop_event.clear()
        if from_slot is not None:
            self.next_slot = from_slot
        self._task = asyncio.create_task(self._run())
        logger.info(
            "live_sync_started",
            poll_interval=self._settings.poll_interval_seconds,
            confirmation_depth=self._settings.confirmation_depth,
        )

    async def stop(self) -> None:
        """Stop polling; let the in-flight batch finish until the deadline, then cancel."""
        if self._task is None:
            return
        self._stop_event.set()
        task = self._task
        try:
            await asyncio.wait_for(asyncio.shield(task), self._settings.stop_deadline_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "live_sync_stop_deadline_exceeded",
                deadline=self._settings.stop_deadline_seconds,
            )
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("live_sync_stopped", next_slot=self.next_slot)

    async def poll_once(self) -> PipelineReport:
        """Process everything between next_slot and the confirmed tip."""
        report = PipelineReport()
        tip = await self._pipeline.fetcher.tip_slot()
        self.last_poll_at = time.time()
        if self.next_slot is None:
            self.next_slot = tip

        chunk = max(1, self._settings.max_slots_per_poll)
        with sync_context(driver="live"):
            while self.next_slot <= tip and not self._stop_event.is_set():
                end = min(tip, self.next_slot + chunk - 1)
                report.merge(
                    await self._pipeline.process_range(self.next_slot, end, skip_covered=True)
                )
                self.next_slot = end + 1

        self.report.merge(report)
        if report.windows:
            logger.debug(
                "live_poll_processed",
                tip=tip,
                transactions=report.transactions_applied,
                unresolved=len(report.unresolved_slots),
            )
        return report

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except (IndexerError, OSError, asyncio.TimeoutError):
                logger.warning("live_sync_poll_error", next_slot=self.next_slot, exc_info=True)
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), self._settings.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    def status(self) -> dict:
        return {
            "running": self.running,
            "next_slot": self.next_slot,
            "last_poll_at": self.last_poll_at,
            "transactions_applied": self.report.transactions_applied,
            "unresolved_slots": len(self.report.unresolved_slots),
        }
