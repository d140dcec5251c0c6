"""Per-entity ordered apply queues.

Each transaction is routed to a shard by a stable hash of the first pair it
touches (or its signature when it touches none). One worker drains each
shard, so every mutation of a pair and its positions is applied by a single
writer in submission order, while unrelated pairs proceed in parallel.
"""

import asyncio
import zlib

from omnipair_indexer.ingest.reconciler import EventReconciler
from omnipair_indexer.logging import get_logger
from omnipair_indexer.models import ApplyResult, DecodedTransaction

logger = get_logger(__name__)

_Item = tuple[DecodedTransaction, "asyncio.Future[ApplyResult]"]


def shard_key(tx: DecodedTransaction) -> str:
    pairs = tx.pair_addresses
    return pairs[0] if pairs else tx.signature


def shard_for(key: str, shard_count: int) -> int:
    """Stable across processes (unlike hash(), which is salted per run)."""
    return zlib.crc32(key.encode()) % shard_count


class ShardedApplier:
    """Routes decoded transactions to shard_count single-writer queues.

    Usage:
        applier = ShardedApplier(reconciler, shard_count=8)
        results = await applier.apply_all(transactions)
        await applier.stop()
    """

    def __init__(self, reconciler: EventReconciler, shard_count: int = 8) -> None:
        self._reconciler = reconciler
        self._shard_count = max(1, shard_count)
        self._queues: list[asyncio.Queue[_Item | None]] = []
        self._workers: list[asyncio.Task] = []  # type: ignore[type-arg]

    @property
    def shard_count(self) -> int:
        return self._shard_count

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return sum(q.qsize() for q in self._queues)

    def start(self) -> None:
        if self._workers:
            return
        self._queues = [asyncio.Queue() for _ in range(self._shard_count)]
        self._workers = [
            asyncio.create_task(self._worker(index)) for index in range(self._shard_count)
        ]
        logger.info("sharded_applier_started", shards=self._shard_count)

    async def stop(self, timeout: float | None = None) -> None:
        """Drain queued work, then stop workers; cancel whatever exceeds `timeout`."""
        if not self._workers:
            return
        for queue in self._queues:
            queue.put_nowait(None)
        workers = self._workers
        done, pending = await asyncio.wait(workers, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("sharded_applier_cancelled", shards=len(pending))
        self._workers = []
        self._queues = []
        logger.info("sharded_applier_stopped")

    async def submit(self, tx: DecodedTransaction) -> ApplyResult:
        """Queue one transaction and wait for its ApplyResult.

        Raises whatever the reconciler raised for it (PersistenceError).
        """
        self.start()
        future: asyncio.Future[ApplyResult] = asyncio.get_running_loop().create_future()
        self._queues[shard_for(shard_key(tx), self._shard_count)].put_nowait((tx, future))
        return await future

    async def apply_all(
        self, transactions: list[DecodedTransaction]
    ) -> list[ApplyResult | BaseException]:
        """Submit transactions in order; results line up with the input list."""
        return await asyncio.gather(
            *(self.submit(tx) for tx in transactions), return_exceptions=True
        )

    async def _worker(self, index: int) -> None:
        queue = self._queues[index]
        while True:
            item = await queue.get()
            try:
                if item is None:
                    return
                tx, future = item
                try:
                    result = await self._reconciler.apply(tx)
                except asyncio.CancelledError:
                    if not future.done():
                        future.cancel()
                    raise
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                queue.task_done()
