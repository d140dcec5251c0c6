"""Gap detection and repair.

A gap is any slot in [lowest_slot, highest_slot] missing from coverage:
fetch failures, persist failures, or ranges a crashed run never reached.
"""

import asyncio
import time

from omnipair_indexer.config import IndexerSettings
from omnipair_indexer.exceptions import IndexerError
from omnipair_indexer.ingest.pipeline import PipelineReport, SlotPipeline
from omnipair_indexer.logging import get_logger, sync_context
from omnipair_indexer.models import ControllerState, SyncOutcome
from omnipair_indexer.storage.store import IndexerStore
from omnipair_indexer.sync.backfill import outcome_from_report

logger = get_logger(__name__)


class GapFillController:
    """Re-runs the pipeline over every uncovered range."""

    def __init__(
        self,
        pipeline: SlotPipeline,
        store: IndexerStore,
        settings: IndexerSettings,
    ) -> None:
        self._pipeline = pipeline
        self._store = store
        self._settings = settings
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self.state = ControllerState.IDLE
        self.last_outcome: SyncOutcome | None = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def stop(self) -> None:
        self._stop_event.set()

    async def detect(self) -> list[tuple[int, int]]:
        return await self._store.find_gaps()

    async def run(self) -> SyncOutcome:
        """Fill all current gaps; the outcome lists the ones that remain."""
        if self._lock.locked():
            logger.warning("gap_fill_already_running")
            return SyncOutcome(
                driver="gap_fill",
                state=ControllerState.FAILED,
                error="gap fill already running",
            )

        async with self._lock:
            self._stop_event.clear()
            self.state = ControllerState.RUNNING
            started_at, started = time.time(), time.monotonic()
            report = PipelineReport()
            try:
                gaps = await self.detect()
                if gaps:
                    logger.info(
                        "gaps_detected",
                        ranges=len(gaps),
                        slots=sum(e - s + 1 for s, e in gaps),
                    )
                with sync_context(driver="gap_fill"):
                    for start, end in gaps:
                        if self._stop_event.is_set():
                            break
                        report.merge(
                            await self._pipeline.process_range(
                                start, end, skip_covered=True, stop_event=self._stop_event
                            )
                        )
                remaining = await self.detect()
            except IndexerError as e:
                logger.error("gap_fill_failed", error=str(e))
                outcome = SyncOutcome(
                    driver="gap_fill",
                    state=ControllerState.FAILED,
                    error=str(e),
                    started_at=started_at,
                    duration_seconds=time.monotonic() - started,
                )
                self.state = outcome.state
                self.last_outcome = outcome
                return outcome
            except asyncio.CancelledError:
                self.state = ControllerState.FAILED
                raise

            outcome = outcome_from_report(
                "gap_fill",
                report,
                gaps[0][0] if gaps else None,
                gaps[-1][1] if gaps else None,
                started_at,
                started,
            )
            outcome.unresolved = remaining
            logger.info(
                "gap_fill_completed",
                filled_slots=report.slots_processed - len(report.unresolved_slots),
                remaining_ranges=len(remaining),
                duration_seconds=round(outcome.duration_seconds, 2),
            )
            self.state = outcome.state
            self.last_outcome = outcome
            return outcome
