"""Folds decoded transactions into entity mutations and audit rows.

Ordering rule: every Pair and UserPosition row remembers the ChainPosition of
the last mutation applied to it. A mutation newer than that watermark is
applied directly. An older one (a late arrival from backfill or gap fill)
marks the entity for replay: its state is recomputed from the audit trail of
applied events in chain order, so the final state never depends on delivery
order even when overwrites and liquidation deltas interleave.

Mutation policy per event:
    pairCreatedEvent                    create pair / complete stub (duplicate is a no-op)
    swap/mint/burn/adjustLiquidity,
    updatePairEvent                     overwrite pair post-state
    adjustCollateralEvent               overwrite position collateral + pair totals
    adjustDebtEvent                     overwrite position debt shares + pair debt totals
    userPositionCreatedEvent            create position / complete stub
    userPositionUpdatedEvent            overwrite all position fields of the position
                                        account's owner (the signer may be a liquidator)
    userPositionLiquidatedEvent         subtract liquidated amounts (floored at zero);
                                        unknown position -> inconsistency, no mutation
    flashloan, userLiquidityPosition*   audit row only
"""

import asyncio
from dataclasses import dataclass, field

import aiosqlite

from omnipair_indexer.config import IndexerSettings
from omnipair_indexer.exceptions import PersistenceError
from omnipair_indexer.logging import get_logger
from omnipair_indexer.models import (
    PAIR_STATE_FIELDS,
    POSITION_STATE_FIELDS,
    ApplyResult,
    ChainPosition,
    DecodedRecord,
    DecodedTransaction,
    Pair,
    RecordType,
    TransactionDetail,
    TransactionRecord,
    UserPosition,
)
from omnipair_indexer.storage.store import IndexerStore, StoreTransaction

logger = get_logger(__name__)

# event field -> pair field, for events that carry absolute pair post-state
PAIR_OVERWRITES: dict[str, dict[str, str]] = {
    "swapEvent": {"reserve0": "reserve0", "reserve1": "reserve1"},
    "mintEvent": {"reserve0": "reserve0", "reserve1": "reserve1", "total_supply": "total_supply"},
    "burnEvent": {"reserve0": "reserve0", "reserve1": "reserve1", "total_supply": "total_supply"},
    "adjustLiquidityEvent": {
        "reserve0": "reserve0",
        "reserve1": "reserve1",
        "total_supply": "total_supply",
    },
    "updatePairEvent": {
        "price0_ema": "last_price0_ema",
        "price1_ema": "last_price1_ema",
        "rate0": "last_rate0",
        "rate1": "last_rate1",
        "reserve0": "reserve0",
        "reserve1": "reserve1",
        "cash_reserve0": "cash_reserve0",
        "cash_reserve1": "cash_reserve1",
        "total_debt0": "total_debt0",
        "total_debt1": "total_debt1",
        "total_debt0_shares": "total_debt0_shares",
        "total_debt1_shares": "total_debt1_shares",
        "total_collateral0": "total_collateral0",
        "total_collateral1": "total_collateral1",
    },
    "adjustCollateralEvent": {
        "total_collateral0": "total_collateral0",
        "total_collateral1": "total_collateral1",
    },
    "adjustDebtEvent": {
        "total_debt0": "total_debt0",
        "total_debt1": "total_debt1",
        "total_debt0_shares": "total_debt0_shares",
        "total_debt1_shares": "total_debt1_shares",
    },
}

# event field -> position field, for events that carry absolute position post-state
POSITION_OVERWRITES: dict[str, dict[str, str]] = {
    "adjustCollateralEvent": {"collateral0": "collateral0", "collateral1": "collateral1"},
    "adjustDebtEvent": {"debt0_shares": "debt0_shares", "debt1_shares": "debt1_shares"},
    "userPositionUpdatedEvent": {
        "collateral0": "collateral0",
        "collateral1": "collateral1",
        "debt0_shares": "debt0_shares",
        "debt1_shares": "debt1_shares",
        "collateral0_applied_min_cf_bps": "collateral0_applied_min_cf_bps",
        "collateral1_applied_min_cf_bps": "collateral1_applied_min_cf_bps",
    },
}


LIQUIDATION = "userPositionLiquidatedEvent"

PAIR_HISTORY_KINDS = (*PAIR_OVERWRITES, LIQUIDATION)
POSITION_HISTORY_KINDS = (*POSITION_OVERWRITES, LIQUIDATION)

_POSITION_RESET_FIELDS = POSITION_STATE_FIELDS + (
    "collateral0_applied_min_cf_bps",
    "collateral1_applied_min_cf_bps",
)


def _advance(entity: Pair | UserPosition, position: ChainPosition) -> bool:
    """Move the entity's ordering watermark forward; False if the mutation is late."""
    if position <= entity.last_position:
        return False
    entity.last_position = position
    return True


def _overwrite(entity: Pair | UserPosition, mapping: dict[str, str], data: dict) -> None:
    for source, target in mapping.items():
        setattr(entity, target, data[source])


def _liquidate_position(user_position: UserPosition, data: dict) -> None:
    user_position.collateral0 = max(0, user_position.collateral0 - data["collateral0_liquidated"])
    user_position.collateral1 = max(0, user_position.collateral1 - data["collateral1_liquidated"])
    user_position.debt0_shares = max(0, user_position.debt0_shares - data["debt0_liquidated"])
    user_position.debt1_shares = max(0, user_position.debt1_shares - data["debt1_liquidated"])


def _liquidate_pair(pair: Pair, data: dict) -> None:
    pair.total_collateral0 = max(0, pair.total_collateral0 - data["collateral0_liquidated"])
    pair.total_collateral1 = max(0, pair.total_collateral1 - data["collateral1_liquidated"])
    pair.total_debt0 = max(0, pair.total_debt0 - data["debt0_liquidated"])
    pair.total_debt1 = max(0, pair.total_debt1 - data["debt1_liquidated"])


@dataclass
class _MutationContext:
    """Entities loaded and touched during one atomic apply."""

    store: StoreTransaction
    result: ApplyResult
    pairs: dict[str, Pair] = field(default_factory=dict)
    positions: dict[tuple[str, str], UserPosition] = field(default_factory=dict)
    dirty_pairs: set[str] = field(default_factory=set)
    dirty_positions: set[tuple[str, str]] = field(default_factory=set)
    late_pairs: set[str] = field(default_factory=set)
    late_positions: set[tuple[str, str]] = field(default_factory=set)

    async def pair(self, address: str) -> Pair:
        """Load a pair, or start a stub row for one not seen yet."""
        if address not in self.pairs:
            existing = await self.store.get_pair(address)
            self.pairs[address] = existing or Pair(pair_address=address)
        return self.pairs[address]

    async def position(self, pair_address: str, owner: str) -> UserPosition | None:
        key = (pair_address, owner)
        if key not in self.positions:
            existing = await self.store.get_position(pair_address, owner)
            if existing is None:
                return None
            self.positions[key] = existing
        return self.positions[key]

    async def position_or_stub(self, pair_address: str, owner: str) -> UserPosition:
        existing = await self.position(pair_address, owner)
        if existing is None:
            existing = UserPosition(pair_address=pair_address, owner=owner)
            self.positions[(pair_address, owner)] = existing
        return existing

    async def owner_of(self, pair_address: str, position_address: str) -> str | None:
        """Owner of a known position account, including ones created in this apply."""
        for (address, owner), user_position in self.positions.items():
            if address == pair_address and user_position.position_address == position_address:
                return owner
        return await self.store.find_position_owner(pair_address, position_address)

    def touch_pair(self, pair: Pair) -> None:
        self.dirty_pairs.add(pair.pair_address)
        self.result.mutations += 1

    def touch_position(self, position: UserPosition) -> None:
        self.dirty_positions.add((position.pair_address, position.owner))
        self.result.mutations += 1

    def late_pair(self, kind: str, pair: Pair, position: ChainPosition) -> None:
        self.late_pairs.add(pair.pair_address)
        self.result.stale_mutations += 1
        logger.debug(
            "late_mutation", kind=kind, entity=pair.pair_address, position=tuple(position)
        )

    def late_position(
        self, kind: str, user_position: UserPosition, position: ChainPosition
    ) -> None:
        self.late_positions.add((user_position.pair_address, user_position.owner))
        self.result.stale_mutations += 1
        logger.debug(
            "late_mutation",
            kind=kind,
            entity=f"{user_position.pair_address}:{user_position.owner}",
            position=tuple(position),
        )

    async def replay_late(self) -> None:
        """Rebuild entities that received a mutation older than their watermark.

        State is recomputed from zero by folding the entity's applied event
        history in chain order; the watermark is already the newest position.
        Requires the current transaction's details to be inserted first.
        """
        for address in sorted(self.late_pairs):
            pair = self.pairs[address]
            history = await self.store.applied_events(address, PAIR_HISTORY_KINDS)
            for name in PAIR_STATE_FIELDS:
                setattr(pair, name, 0)
            for kind, data in history:
                if kind == LIQUIDATION:
                    _liquidate_pair(pair, data)
                else:
                    _overwrite(pair, PAIR_OVERWRITES[kind], data)
            self.touch_pair(pair)
            logger.info("late_mutation_replayed", entity=address, events=len(history))

        for key in sorted(self.late_positions):
            user_position = self.positions[key]
            history = await self.store.applied_events(key[0], POSITION_HISTORY_KINDS, owner=key[1])
            for name in _POSITION_RESET_FIELDS:
                setattr(user_position, name, 0)
            for kind, data in history:
                if kind == LIQUIDATION:
                    _liquidate_position(user_position, data)
                else:
                    _overwrite(user_position, POSITION_OVERWRITES[kind], data)
            self.touch_position(user_position)
            logger.info(
                "late_mutation_replayed", entity=f"{key[0]}:{key[1]}", events=len(history)
            )

    async def flush(self) -> None:
        for address in sorted(self.dirty_pairs):
            await self.store.save_pair(self.pairs[address])
        for key in sorted(self.dirty_positions):
            await self.store.save_position(self.positions[key])


class EventReconciler:
    """Applies decoded transactions to the store, one atomic write per signature.

    Usage:
        reconciler = EventReconciler(store, settings)
        result = await reconciler.apply(decoded_tx)
    """

    def __init__(self, store: IndexerStore, settings: IndexerSettings) -> None:
        self._store = store
        self._settings = settings

    async def apply(self, tx: DecodedTransaction) -> ApplyResult:
        """Persist one transaction with bounded retry.

        The write runs shielded: cancelling the caller never leaves half of a
        transaction's rows on disk. Raises PersistenceError once retries run out.
        """
        max_retries = max(1, self._settings.max_persist_retries)
        base_delay = self._settings.retry_base_delay

        for attempt in range(max_retries):
            try:
                return await asyncio.shield(self._apply_once(tx))
            except aiosqlite.Error as e:
                if attempt == max_retries - 1:
                    logger.error(
                        "persist_failed_permanently",
                        signature=tx.signature,
                        slot=tx.slot,
                        attempts=max_retries,
                        error=str(e),
                    )
                    raise PersistenceError(tx.signature, str(e)) from e

                delay = base_delay * (2**attempt)
                logger.warning(
                    "persist_retry",
                    signature=tx.signature,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

        raise PersistenceError(tx.signature, "no persist attempts made")

    # ──────────────────────────────────────────────
    # Atomic apply
    # ──────────────────────────────────────────────

    async def _apply_once(self, tx: DecodedTransaction) -> ApplyResult:
        result = ApplyResult(signature=tx.signature, applied=False)

        async with self._store.atomic() as store_tx:
            if await store_tx.transaction_exists(tx.signature):
                logger.debug("transaction_already_indexed", signature=tx.signature)
                return result

            pairs = tx.pair_addresses
            await store_tx.insert_transaction(
                TransactionRecord(
                    signature=tx.signature,
                    slot=tx.slot,
                    tx_index=tx.tx_index,
                    block_time=tx.block_time,
                    fee_payer=tx.fee_payer,
                    success=tx.success,
                    error=tx.error,
                    pair_address=pairs[0] if pairs else None,
                )
            )

            ctx = _MutationContext(store=store_tx, result=result)
            details: list[TransactionDetail] = []
            for record in tx.records:
                if record.record_type is RecordType.VIEW and not self._settings.record_view_calls:
                    continue

                owner = await self._owner_of(ctx, tx, record)
                inconsistency = None
                if tx.success and record.error is None and record.record_type is RecordType.EVENT:
                    inconsistency = await self._apply_event(
                        ctx, tx.position_of(record), record, owner
                    )
                    if inconsistency is not None:
                        result.inconsistencies.append(inconsistency)
                        logger.warning(
                            "reconciliation_inconsistency",
                            signature=tx.signature,
                            slot=tx.slot,
                            kind=record.kind,
                            detail=inconsistency,
                        )

                payload = dict(record.data)
                if record.accounts:
                    payload["accounts"] = record.accounts
                details.append(
                    TransactionDetail(
                        signature=tx.signature,
                        detail_index=len(details),
                        instruction_index=record.instruction_index,
                        inner_index=record.inner_index,
                        record_type=record.record_type,
                        kind=record.kind,
                        payload=payload,
                        pair_address=record.pair_address,
                        owner=owner,
                        error=record.error,
                        inconsistency=inconsistency,
                    )
                )

            await store_tx.insert_details(details)
            await ctx.replay_late()
            await ctx.flush()

        result.applied = True
        logger.debug(
            "transaction_applied",
            signature=tx.signature,
            slot=tx.slot,
            records=len(tx.records),
            mutations=result.mutations,
            stale=result.stale_mutations,
        )
        return result

    async def _owner_of(
        self, ctx: _MutationContext, tx: DecodedTransaction, record: DecodedRecord
    ) -> str | None:
        """Position owner a record mutates.

        userPositionUpdatedEvent carries the position account and the signer,
        and the signer is a liquidator when someone else's position is
        liquidated. Resolve the account to its owner: known rows first, then a
        creation or liquidation event for the same account in this transaction.
        """
        if record.kind != "userPositionUpdatedEvent":
            return record.owner
        pair_address = record.pair_address
        position_address = record.data.get("position")
        if not pair_address or not position_address:
            return record.owner

        owner = await ctx.owner_of(pair_address, position_address)
        if owner is not None:
            return owner
        for other in tx.records:
            if other.data.get("position") == position_address and other.data.get("user"):
                return other.data["user"]
        return record.owner

    # ──────────────────────────────────────────────
    # Event handlers
    # ──────────────────────────────────────────────

    async def _apply_event(
        self,
        ctx: _MutationContext,
        position: ChainPosition,
        record: DecodedRecord,
        owner: str | None,
    ) -> str | None:
        """Apply one event; return inconsistency text when it cannot be applied."""
        kind = record.kind
        data = record.data

        if kind == "pairCreatedEvent":
            await self._create_pair(ctx, position, data)
            return None

        if kind == "userPositionCreatedEvent":
            await self._create_position(ctx, position, data)
            return None

        if kind == LIQUIDATION:
            return await self._liquidate(ctx, position, data)

        pair_address = record.pair_address
        if kind in PAIR_OVERWRITES and pair_address:
            pair = await ctx.pair(pair_address)
            if _advance(pair, position):
                _overwrite(pair, PAIR_OVERWRITES[kind], data)
                ctx.touch_pair(pair)
            else:
                ctx.late_pair(kind, pair, position)

        if kind in POSITION_OVERWRITES and pair_address and owner:
            user_position = await ctx.position_or_stub(pair_address, owner)
            if kind == "userPositionUpdatedEvent" and user_position.position_address is None:
                user_position.position_address = data["position"]
            if _advance(user_position, position):
                _overwrite(user_position, POSITION_OVERWRITES[kind], data)
                ctx.touch_position(user_position)
            else:
                ctx.late_position(kind, user_position, position)

        return None

    async def _create_pair(
        self, ctx: _MutationContext, position: ChainPosition, data: dict
    ) -> None:
        pair = await ctx.pair(data["pair"])
        if pair.is_created:
            logger.debug("duplicate_pair_creation", pair=pair.pair_address)
            return
        pair.token0 = data["token0"]
        pair.token1 = data["token1"]
        pair.lp_mint = data["lp_mint"]
        pair.rate_model = data["rate_model"]
        pair.swap_fee_bps = data["swap_fee_bps"]
        pair.half_life = data["half_life"]
        pair.fixed_cf_bps = data["fixed_cf_bps"]
        pair.params_hash = data["params_hash"]
        pair.version = data["version"]
        pair.is_created = True
        pair.created_slot = position.slot
        # A stub may already hold state from a later mutation; keep its watermark.
        if position > pair.last_position:
            pair.last_position = position
        ctx.touch_pair(pair)
        logger.info("pair_created", pair=pair.pair_address, slot=position.slot)

    async def _create_position(
        self, ctx: _MutationContext, position: ChainPosition, data: dict
    ) -> None:
        user_position = await ctx.position_or_stub(data["pair"], data["user"])
        if user_position.is_created:
            logger.debug(
                "duplicate_position_creation",
                pair=user_position.pair_address,
                owner=user_position.owner,
            )
            return
        user_position.position_address = data["position"]
        user_position.is_created = True
        if position > user_position.last_position:
            user_position.last_position = position
        ctx.touch_position(user_position)

    async def _liquidate(
        self, ctx: _MutationContext, position: ChainPosition, data: dict
    ) -> str | None:
        pair_address, owner = data["pair"], data["user"]
        user_position = await ctx.position(pair_address, owner)
        if user_position is None or not user_position.is_created:
            return f"liquidation of unknown position {owner} in pair {pair_address}"

        if _advance(user_position, position):
            _liquidate_position(user_position, data)
            ctx.touch_position(user_position)
        else:
            ctx.late_position(LIQUIDATION, user_position, position)

        pair = await ctx.pair(pair_address)
        if _advance(pair, position):
            _liquidate_pair(pair, data)
            ctx.touch_pair(pair)
        else:
            ctx.late_pair(LIQUIDATION, pair, position)
        return None
