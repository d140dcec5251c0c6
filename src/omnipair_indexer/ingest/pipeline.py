"""Slot pipeline shared by backfill, gap fill and live sync.

    slots -> windows -> fetch (bounded parallel) -> decode -> shard apply -> coverage

Windows are fetched up to max_parallel_windows ahead but applied strictly in
ascending order. A slot is recorded as covered only after every one of its
transactions persisted; a fetch or persist failure leaves it unresolved.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field

import aiosqlite

from omnipair_indexer.config import IndexerSettings
from omnipair_indexer.exceptions import PersistenceError
from omnipair_indexer.ingest.fetcher import SlotFetcher
from omnipair_indexer.ingest.sharding import ShardedApplier
from omnipair_indexer.logging import get_logger
from omnipair_indexer.models import (
    ApplyResult,
    DecodedTransaction,
    FetchStatus,
    SlotFetchResult,
)
from omnipair_indexer.program.decoder import Decoder
from omnipair_indexer.storage.store import IndexerStore

logger = get_logger(__name__)


@dataclass
class PipelineReport:
    """Counters for one or more processed ranges."""

    windows: int = 0
    slots_processed: int = 0
    slots_skipped: int = 0  # already covered, not fetched
    slots_empty: int = 0
    transactions_applied: int = 0
    transactions_skipped: int = 0  # signature already persisted
    decode_errors: int = 0
    inconsistencies: int = 0
    unresolved_slots: list[int] = field(default_factory=list)

    def merge(self, other: "PipelineReport") -> None:
        self.windows += other.windows
        self.slots_processed += other.slots_processed
        self.slots_skipped += other.slots_skipped
        self.slots_empty += other.slots_empty
        self.transactions_applied += other.transactions_applied
        self.transactions_skipped += other.transactions_skipped
        self.decode_errors += other.decode_errors
        self.inconsistencies += other.inconsistencies
        self.unresolved_slots.extend(other.unresolved_slots)


def partition(start_slot: int, end_slot: int, window_size: int) -> list[tuple[int, int]]:
    """Split [start_slot, end_slot] into consecutive windows of at most window_size slots."""
    size = max(1, window_size)
    return [(s, min(s + size - 1, end_slot)) for s in range(start_slot, end_slot + 1, size)]


class SlotPipeline:
    """Fetch -> decode -> apply -> record coverage for slot ranges."""

    def __init__(
        self,
        fetcher: SlotFetcher,
        decoder: Decoder,
        applier: ShardedApplier,
        store: IndexerStore,
        settings: IndexerSettings,
    ) -> None:
        self._fetcher = fetcher
        self._decoder = decoder
        self._applier = applier
        self._store = store
        self._settings = settings

    @property
    def fetcher(self) -> SlotFetcher:
        return self._fetcher

    async def process_range(
        self,
        start_slot: int,
        end_slot: int,
        skip_covered: bool = True,
        stop_event: asyncio.Event | None = None,
    ) -> PipelineReport:
        """Process every slot of [start_slot, end_slot].

        With skip_covered, slots already in coverage are not fetched again.
        Setting stop_event stops before the next window is applied; windows
        already applied stay recorded.
        """
        report = PipelineReport()
        if end_slot < start_slot:
            return report

        if skip_covered:
            coverage = await self._store.get_coverage()
            targets = coverage.gaps_within(start_slot, end_slot)
        else:
            targets = [(start_slot, end_slot)]
        total = end_slot - start_slot + 1
        report.slots_skipped = total - sum(e - s + 1 for s, e in targets)

        windows: list[tuple[int, int]] = []
        for s, e in targets:
            windows.extend(partition(s, e, self._settings.window_size))
        if not windows:
            logger.debug("range_already_covered", start_slot=start_slot, end_slot=end_slot)
            return report

        started = time.monotonic()
        queued = iter(windows)
        in_flight: deque[tuple[tuple[int, int], asyncio.Task]] = deque()  # type: ignore[type-arg]

        def _fill() -> None:
            while len(in_flight) < max(1, self._settings.max_parallel_windows):
                window = next(queued, None)
                if window is None:
                    return
                in_flight.append((window, asyncio.create_task(self._fetcher.fetch(*window))))

        try:
            _fill()
            while in_flight:
                if stop_event is not None and stop_event.is_set():
                    logger.info("pipeline_stop_requested", remaining_windows=len(in_flight))
                    break
                window, task = in_flight.popleft()
                results = await task
                _fill()
                await self._apply_window(window, results, report)
        finally:
            for _, task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*(t for _, t in in_flight), return_exceptions=True)

        logger.info(
            "range_processed",
            start_slot=start_slot,
            end_slot=end_slot,
            windows=report.windows,
            transactions=report.transactions_applied,
            unresolved=len(report.unresolved_slots),
            duration_seconds=round(time.monotonic() - started, 2),
        )
        return report

    async def _apply_window(
        self,
        window: tuple[int, int],
        results: dict[int, SlotFetchResult],
        report: PipelineReport,
    ) -> None:
        start_slot, end_slot = window
        unresolved: dict[int, SlotFetchResult] = {}
        decoded: list[DecodedTransaction] = []

        for slot in range(start_slot, end_slot + 1):
            result = results.get(slot)
            if result is None:
                result = SlotFetchResult(
                    slot=slot, status=FetchStatus.UNRESOLVED, error="slot not fetched"
                )
            if not result.resolved:
                unresolved[slot] = result
                continue
            if result.status is FetchStatus.EMPTY:
                report.slots_empty += 1
            for raw in sorted(result.transactions, key=lambda t: t.tx_index):
                decoded.append(self._decoder.decode(raw))

        outcomes = await self._applier.apply_all(decoded)
        for tx, outcome in zip(decoded, outcomes):
            report.decode_errors += tx.decode_errors
            if isinstance(outcome, ApplyResult):
                if outcome.applied:
                    report.transactions_applied += 1
                else:
                    report.transactions_skipped += 1
                report.inconsistencies += len(outcome.inconsistencies)
                continue
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if not isinstance(outcome, PersistenceError):
                raise outcome
            # The slot's other transactions may have landed; the whole slot is
            # retried later and already-persisted signatures are skipped.
            unresolved.setdefault(
                tx.slot,
                SlotFetchResult(slot=tx.slot, status=FetchStatus.UNRESOLVED, error=str(outcome)),
            )

        fetched = [s for s in range(start_slot, end_slot + 1) if s not in unresolved]
        try:
            await self._store.record_coverage(start_slot, end_slot, fetched, unresolved.values())
        except aiosqlite.Error as e:
            raise PersistenceError(f"coverage {start_slot}-{end_slot}", str(e)) from e

        report.windows += 1
        report.slots_processed += end_slot - start_slot + 1
        report.unresolved_slots.extend(sorted(unresolved))
        logger.debug(
            "window_applied",
            start_slot=start_slot,
            end_slot=end_slot,
            transactions=len(decoded),
            unresolved=len(unresolved),
        )
