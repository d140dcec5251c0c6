"""Backfill controller: index a historical slot range once, resumably.

IDLE -> RUNNING -> {COMPLETED, FAILED}. Covered slots are skipped unless
`reprocess` is set, so re-running after a crash resumes where coverage ends.
"""

import asyncio
import time

from omnipair_indexer.config import IndexerSettings
from omnipair_indexer.exceptions import ConfigurationError, IndexerError
from omnipair_indexer.ingest.pipeline import PipelineReport, SlotPipeline
from omnipair_indexer.logging import get_logger, sync_context
from omnipair_indexer.models import ControllerState, SyncOutcome
from omnipair_indexer.storage.coverage import ranges_from_slots
from omnipair_indexer.storage.store import IndexerStore

logger = get_logger(__name__)


def outcome_from_report(
    driver: str,
    report: PipelineReport,
    from_slot: int | None,
    to_slot: int | None,
    started_at: float,
    started: float,
) -> SyncOutcome:
    return SyncOutcome(
        driver=driver,
        state=ControllerState.COMPLETED,
        from_slot=from_slot,
        to_slot=to_slot,
        slots_processed=report.slots_processed,
        slots_empty=report.slots_empty,
        transactions_applied=report.transactions_applied,
        transactions_skipped=report.transactions_skipped,
        decode_errors=report.decode_errors,
        inconsistencies=report.inconsistencies,
        unresolved=ranges_from_slots(report.unresolved_slots),
        started_at=started_at,
        duration_seconds=time.monotonic() - started,
    )


class BackfillController:
    """Runs the slot pipeline over [from_slot, to_slot].

    Only one run at a time; a concurrent call returns a FAILED outcome
    instead of waiting.
    """

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
        """Ask a running backfill to stop after its current window."""
        self._stop_event.set()

    async def resolve_start_slot(self, from_slot: int | None) -> int:
        if from_slot is not None:
            return from_slot
        if self._settings.deployment_slot is not None:
            return self._settings.deployment_slot
        state = await self._store.get_state()
        if state["lowest_slot"] is not None:
            return state["lowest_slot"]
        raise ConfigurationError(
            "no start slot: pass from_slot or set INDEXER_DEPLOYMENT_SLOT"
        )

    async def run(
        self,
        from_slot: int | None = None,
        to_slot: int | None = None,
        reprocess: bool = False,
    ) -> SyncOutcome:
        """Backfill the range and return the outcome; runtime failures never raise.

        Raises ConfigurationError when no start slot can be determined.
        """
        if self._lock.locked():
            logger.warning("backfill_already_running")
            return SyncOutcome(
                driver="backfill",
                state=ControllerState.FAILED,
                from_slot=from_slot,
                to_slot=to_slot,
                error="backfill already running",
            )

        async with self._lock:
            self._stop_event.clear()
            self.state = ControllerState.RUNNING
            started_at, started = time.time(), time.monotonic()
            try:
                start = await self.resolve_start_slot(from_slot)
                end = to_slot if to_slot is not None else await self._pipeline.fetcher.tip_slot()
                with sync_context(driver="backfill", from_slot=start, to_slot=end):
                    outcome = await self._run_range(start, end, reprocess, started_at, started)
            except ConfigurationError:
                self.state = ControllerState.FAILED
                raise
            except IndexerError as e:
                logger.error("backfill_failed", error=str(e))
                outcome = SyncOutcome(
                    driver="backfill",
                    state=ControllerState.FAILED,
                    from_slot=from_slot,
                    to_slot=to_slot,
                    error=str(e),
                    started_at=started_at,
                    duration_seconds=time.monotonic() - started,
                )
            except asyncio.CancelledError:
                self.state = ControllerState.FAILED
                logger.warning("backfill_cancelled")
                raise

            self.state = outcome.state
            self.last_outcome = outcome
            return outcome

    async def _run_range(
        self,
        start: int,
        end: int,
        reprocess: bool,
        started_at: float,
        started: float,
    ) -> SyncOutcome:
        if end < start:
            return SyncOutcome(
                driver="backfill",
                state=ControllerState.FAILED,
                from_slot=start,
                to_slot=end,
                error=f"invalid range: from_slot {start} > to_slot {end}",
                started_at=started_at,
            )

        logger.info("backfill_started", reprocess=reprocess)
        report = await self._pipeline.process_range(
            start, end, skip_covered=not reprocess, stop_event=self._stop_event
        )
        outcome = outcome_from_report("backfill", report, start, end, started_at, started)
        logger.info(
            "backfill_completed",
            slots=report.slots_processed,
            skipped_slots=report.slots_skipped,
            transactions=report.transactions_applied,
            unresolved_ranges=len(outcome.unresolved),
            duration_seconds=round(outcome.duration_seconds, 2),
        )
        return outcome
