"""OmnipairIndexer: the facade that owns every component and its lifecycle.

Component wiring order:
1. IndexerDatabase + IndexerStore (persistence and coverage)
2. RpcClient (SolanaRpcClient unless one is injected)
3. Decoder, SlotFetcher, EventReconciler, ShardedApplier
4. SlotPipeline shared by the three drivers
5. BackfillController, GapFillController, LiveSyncLoop

run_backfill / run_gap_fill work without start(); start() adds live sync and
the periodic gap fill on top.
"""

import asyncio
from typing import Self

import aiosqlite

from omnipair_indexer.config import AppSettings
from omnipair_indexer.exceptions import ConfigurationError, RpcFetchError
from omnipair_indexer.ingest.fetcher import SlotFetcher
from omnipair_indexer.ingest.pipeline import SlotPipeline
from omnipair_indexer.ingest.reconciler import EventReconciler
from omnipair_indexer.ingest.sharding import ShardedApplier
from omnipair_indexer.logging import get_logger
from omnipair_indexer.models import SyncOutcome
from omnipair_indexer.program.decoder import Decoder
from omnipair_indexer.rpc.client import RpcClient
from omnipair_indexer.rpc.solana_client import SolanaRpcClient
from omnipair_indexer.storage.database import IndexerDatabase
from omnipair_indexer.storage.store import IndexerStore
from omnipair_indexer.sync.backfill import BackfillController
from omnipair_indexer.sync.gap_fill import GapFillController
from omnipair_indexer.sync.live import LiveSyncLoop

logger = get_logger(__name__)


class OmnipairIndexer:
    """Indexes the Omnipair program into SQLite.

    Usage:
        async with OmnipairIndexer(AppSettings()) as indexer:
            outcome = await indexer.run_backfill(from_slot=330_000_000)
    """

    def __init__(
        self,
        settings: AppSettings,
        rpc: RpcClient | None = None,
        database: IndexerDatabase | None = None,
    ) -> None:
        self._settings = settings
        indexer_settings = settings.indexer

        self.database = database or IndexerDatabase(settings.database.path)
        self.store = IndexerStore(self.database)
        self.rpc = rpc or SolanaRpcClient(settings.rpc)

        self.decoder = Decoder(indexer_settings.program_id)
        self.fetcher = SlotFetcher(self.rpc, indexer_settings)
        self.reconciler = EventReconciler(self.store, indexer_settings)
        self.applier = ShardedApplier(self.reconciler, indexer_settings.shard_count)
        self.pipeline = SlotPipeline(
            self.fetcher, self.decoder, self.applier, self.store, indexer_settings
        )

        self.backfill = BackfillController(self.pipeline, self.store, indexer_settings)
        self.gap_fill = GapFillController(self.pipeline, self.store, indexer_settings)
        self.live = LiveSyncLoop(self.pipeline, indexer_settings)

        self._prepared = False
        self._running = False
        self._background: list[asyncio.Task] = []  # type: ignore[type-arg]

    @property
    def running(self) -> bool:
        return self._running

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def prepare(self) -> None:
        """Preflight: open the store and check the RPC endpoint.

        Raises ConfigurationError when either is unusable.
        """
        if self._prepared:
            return
        try:
            if not self.database.is_connected:
                await self.database.connect()
        except (aiosqlite.Error, OSError) as e:
            raise ConfigurationError(f"database unusable at {self.database.path}: {e}") from e

        try:
            await self.rpc.connect()
        except (RpcFetchError, OSError) as e:
            raise ConfigurationError(f"RPC endpoint unusable: {e}") from e

        await self.store.load_coverage()
        self._prepared = True

    async def start(self) -> None:
        """Start live sync and, if configured, periodic gap fill and an initial backfill."""
        if self._running:
            logger.warning("indexer_already_running")
            return
        await self.prepare()
        self.applier.start()
        self.live.start()
        self._running = True

        settings = self._settings.indexer
        if settings.gap_fill_interval_seconds > 0:
            self._background.append(asyncio.create_task(self._gap_fill_loop()))
        if settings.backfill_on_start:
            self._background.append(asyncio.create_task(self.run_backfill()))

        logger.info(
            "indexer_started",
            program_id=settings.program_id,
            gap_fill_interval=settings.gap_fill_interval_seconds,
            backfill_on_start=settings.backfill_on_start,
        )

    async def stop(self) -> None:
        """Cooperative shutdown: stop drivers, let in-flight windows finish, flush, close."""
        self._running = False
        deadline = self._settings.indexer.stop_deadline_seconds

        self.backfill.stop()
        self.gap_fill.stop()
        await self.live.stop()

        if self._background:
            done, pending = await asyncio.wait(self._background, timeout=deadline)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._background, return_exceptions=True)
            self._background = []

        await self.applier.stop(timeout=deadline)

        if self._prepared:
            await self.rpc.close()
            self._prepared = False
        # prepare() may have opened the store before the RPC check failed
        await self.database.close()
        logger.info("indexer_stopped")

    async def __aenter__(self) -> Self:
        await self.prepare()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.stop()

    async def _gap_fill_loop(self) -> None:
        interval = self._settings.indexer.gap_fill_interval_seconds
        while self._running:
            await asyncio.sleep(interval)
            if not self._running:
                return
            try:
                outcome = await self.gap_fill.run()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("periodic_gap_fill_error", exc_info=True)
                continue
            if outcome.unresolved:
                logger.warning("gaps_remaining", ranges=outcome.unresolved[:10])

    # ──────────────────────────────────────────────
    # Operations
    # ──────────────────────────────────────────────

    async def run_backfill(
        self,
        from_slot: int | None = None,
        to_slot: int | None = None,
        reprocess: bool = False,
    ) -> SyncOutcome:
        await self.prepare()
        return await self.backfill.run(from_slot, to_slot, reprocess)

    async def run_gap_fill(self) -> SyncOutcome:
        await self.prepare()
        return await self.gap_fill.run()

    async def backfill_from_slot(self, slot: int) -> SyncOutcome:
        """Backfill from `slot` up to the current tip."""
        return await self.run_backfill(from_slot=slot)

    async def backfill_range(self, from_slot: int, to_slot: int) -> SyncOutcome:
        return await self.run_backfill(from_slot=from_slot, to_slot=to_slot)

    async def get_status(self) -> dict:
        """Driver states, coverage watermark and row counts."""
        status: dict = {
            "running": self._running,
            "program_id": self._settings.indexer.program_id,
            "backfill": {
                "state": self.backfill.state.value,
                "last_outcome": (
                    self.backfill.last_outcome.to_dict() if self.backfill.last_outcome else None
                ),
            },
            "gap_fill": {
                "state": self.gap_fill.state.value,
                "last_outcome": (
                    self.gap_fill.last_outcome.to_dict() if self.gap_fill.last_outcome else None
                ),
            },
            "live": self.live.status(),
            "pending_applies": self.applier.pending,
        }
        if self.database.is_connected:
            status["data"] = await self.store.get_data_status()
        return status
