"""Tests for ShardedApplier routing and per-shard ordering."""

import asyncio

import pytest

from omnipair_indexer.exceptions import PersistenceError
from omnipair_indexer.ingest.sharding import ShardedApplier, shard_for, shard_key
from omnipair_indexer.models import ApplyResult, DecodedRecord, DecodedTransaction, RecordType


def _tx(signature: str, pair: str | None = None, slot: int = 1) -> DecodedTransaction:
    records = []
    if pair is not None:
        records.append(
            DecodedRecord(
                record_type=RecordType.EVENT,
                kind="swapEvent",
                instruction_index=0,
                record_index=0,
                data={"metadata": {"pair": pair, "signer": "s"}},
            )
        )
    return DecodedTransaction(
        signature=signature,
        slot=slot,
        tx_index=0,
        block_time=None,
        fee_payer="payer",
        success=True,
        error=None,
        records=records,
    )


class RecordingReconciler:
    """Stands in for EventReconciler; applies with a per-call delay."""

    def __init__(self, delays: dict[str, float] | None = None) -> None:
        self.applied: list[str] = []
        self.delays = delays or {}
        self.fail: set[str] = set()

    async def apply(self, tx: DecodedTransaction) -> ApplyResult:
        await asyncio.sleep(self.delays.get(tx.signature, 0))
        if tx.signature in self.fail:
            raise PersistenceError(tx.signature, "disk full")
        self.applied.append(tx.signature)
        return ApplyResult(signature=tx.signature, applied=True)


class TestShardRouting:
    def test_key_is_first_pair(self) -> None:
        assert shard_key(_tx("sig", pair="pairA")) == "pairA"

    def test_key_falls_back_to_signature(self) -> None:
        assert shard_key(_tx("sig")) == "sig"

    def test_shard_is_stable(self) -> None:
        assert shard_for("pairA", 8) == shard_for("pairA", 8)
        assert 0 <= shard_for("pairB", 8) < 8


class TestShardedApplier:
    @pytest.mark.asyncio
    async def test_same_pair_applied_in_submission_order(self) -> None:
        # the first transaction is slowest; a single writer must still finish it first
        reconciler = RecordingReconciler(delays={"a1": 0.03, "a2": 0.01, "a3": 0})
        applier = ShardedApplier(reconciler, shard_count=4)

        results = await applier.apply_all(
            [_tx("a1", "pairA"), _tx("a2", "pairA"), _tx("a3", "pairA")]
        )
        await applier.stop()

        assert reconciler.applied == ["a1", "a2", "a3"]
        assert [r.signature for r in results] == ["a1", "a2", "a3"]

    @pytest.mark.asyncio
    async def test_errors_returned_per_transaction(self) -> None:
        reconciler = RecordingReconciler()
        reconciler.fail.add("bad")
        applier = ShardedApplier(reconciler, shard_count=2)

        results = await applier.apply_all([_tx("good", "pairA"), _tx("bad", "pairA")])
        await applier.stop()

        assert isinstance(results[0], ApplyResult)
        assert isinstance(results[1], PersistenceError)

    @pytest.mark.asyncio
    async def test_submit_starts_workers(self) -> None:
        applier = ShardedApplier(RecordingReconciler(), shard_count=3)
        assert not applier.running
        result = await applier.submit(_tx("x"))
        assert result.applied
        assert applier.running
        await applier.stop()
        assert not applier.running

    @pytest.mark.asyncio
    async def test_stop_cancels_after_timeout(self) -> None:
        reconciler = RecordingReconciler(delays={"slow": 5})
        applier = ShardedApplier(reconciler, shard_count=1)
        pending = asyncio.create_task(applier.submit(_tx("slow")))
        await asyncio.sleep(0)

        await applier.stop(timeout=0.05)

        with pytest.raises(asyncio.CancelledError):
            await pending
        assert reconciler.applied == []
