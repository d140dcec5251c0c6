"""Typed SQLite read/write abstraction for indexed state and coverage.

Provides IndexerStore with an atomic per-transaction write context, coverage
bookkeeping (merged ranges, unresolved slots, watermark) and the read queries
behind the status API. All SQL is isolated behind this interface.

CRITICAL: token amounts are stored as TEXT in SQLite and restored as int on read.
"""

import asyncio
import json
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite

from omnipair_indexer.logging import get_logger
from omnipair_indexer.models import (
    PAIR_STATE_FIELDS,
    POSITION_STATE_FIELDS,
    ChainPosition,
    Pair,
    RecordType,
    SlotFetchResult,
    TransactionDetail,
    TransactionRecord,
    UserPosition,
)
from omnipair_indexer.storage.coverage import SlotRangeSet, ranges_from_slots
from omnipair_indexer.storage.database import IndexerDatabase

logger = get_logger(__name__)

_WATERMARK_COLUMNS = ("last_slot", "last_tx_index", "last_instruction_index", "last_record_index")

_PAIR_IDENTITY_FIELDS = (
    "token0",
    "token1",
    "lp_mint",
    "rate_model",
    "swap_fee_bps",
    "half_life",
    "fixed_cf_bps",
    "params_hash",
    "version",
)

_PAIR_COLUMNS = (
    ("pair_address",)
    + _PAIR_IDENTITY_FIELDS
    + PAIR_STATE_FIELDS
    + ("is_created", "created_slot")
    + _WATERMARK_COLUMNS
)

_POSITION_COLUMNS = (
    ("pair_address", "owner", "position_address")
    + POSITION_STATE_FIELDS
    + ("collateral0_applied_min_cf_bps", "collateral1_applied_min_cf_bps", "is_created")
    + _WATERMARK_COLUMNS
)

_TRANSACTION_COLUMNS = (
    "signature",
    "slot",
    "tx_index",
    "block_time",
    "fee_payer",
    "success",
    "error",
    "pair_address",
)

_DETAIL_COLUMNS = (
    "signature",
    "detail_index",
    "instruction_index",
    "inner_index",
    "record_type",
    "kind",
    "pair_address",
    "owner",
    "payload",
    "error",
    "inconsistency",
)

_STATE_KEYS = ("lowest_slot", "highest_slot", "watermark_slot")


def _upsert_sql(table: str, columns: tuple[str, ...], key: tuple[str, ...]) -> str:
    placeholders = ", ".join("?" for _ in columns) + ", ?"
    updates = ", ".join(f"{c} = excluded.{c}" for c in columns + ("updated_at",) if c not in key)
    return (
        f"INSERT INTO {table} ({', '.join(columns)}, updated_at) VALUES ({placeholders}) "
        f"ON CONFLICT({', '.join(key)}) DO UPDATE SET {updates}"
    )


_UPSERT_PAIR_SQL = _upsert_sql("pairs", _PAIR_COLUMNS, ("pair_address",))
_UPSERT_POSITION_SQL = _upsert_sql("user_positions", _POSITION_COLUMNS, ("pair_address", "owner"))


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def _pair_from_row(row: Any) -> Pair:
    values = dict(zip(_PAIR_COLUMNS, row))
    return Pair(
        pair_address=values["pair_address"],
        token0=values["token0"],
        token1=values["token1"],
        lp_mint=values["lp_mint"],
        rate_model=values["rate_model"],
        swap_fee_bps=values["swap_fee_bps"],
        half_life=_optional_int(values["half_life"]),
        fixed_cf_bps=values["fixed_cf_bps"],
        params_hash=values["params_hash"],
        version=values["version"],
        is_created=bool(values["is_created"]),
        created_slot=values["created_slot"],
        last_position=ChainPosition(*(values[c] for c in _WATERMARK_COLUMNS)),
        **{name: int(values[name]) for name in PAIR_STATE_FIELDS},
    )


def _pair_to_row(pair: Pair, now: int) -> tuple:
    return (
        pair.pair_address,
        pair.token0,
        pair.token1,
        pair.lp_mint,
        pair.rate_model,
        pair.swap_fee_bps,
        None if pair.half_life is None else str(pair.half_life),
        pair.fixed_cf_bps,
        pair.params_hash,
        pair.version,
        *(str(getattr(pair, name)) for name in PAIR_STATE_FIELDS),
        1 if pair.is_created else 0,
        pair.created_slot,
        *pair.last_position,
        now,
    )


def _position_from_row(row: Any) -> UserPosition:
    values = dict(zip(_POSITION_COLUMNS, row))
    return UserPosition(
        pair_address=values["pair_address"],
        owner=values["owner"],
        position_address=values["position_address"],
        collateral0_applied_min_cf_bps=values["collateral0_applied_min_cf_bps"],
        collateral1_applied_min_cf_bps=values["collateral1_applied_min_cf_bps"],
        is_created=bool(values["is_created"]),
        last_position=ChainPosition(*(values[c] for c in _WATERMARK_COLUMNS)),
        **{name: int(values[name]) for name in POSITION_STATE_FIELDS},
    )


def _position_to_row(position: UserPosition, now: int) -> tuple:
    return (
        position.pair_address,
        position.owner,
        position.position_address,
        *(str(getattr(position, name)) for name in POSITION_STATE_FIELDS),
        position.collateral0_applied_min_cf_bps,
        position.collateral1_applied_min_cf_bps,
        1 if position.is_created else 0,
        *position.last_position,
        now,
    )


def _transaction_from_row(row: Any) -> TransactionRecord:
    return TransactionRecord(
        signature=row[0],
        slot=row[1],
        tx_index=row[2],
        block_time=row[3],
        fee_payer=row[4],
        success=bool(row[5]),
        error=row[6],
        pair_address=row[7],
    )


def _detail_from_row(row: Any) -> TransactionDetail:
    return TransactionDetail(
        signature=row[0],
        detail_index=row[1],
        instruction_index=row[2],
        inner_index=row[3],
        record_type=RecordType(row[4]),
        kind=row[5],
        pair_address=row[6],
        owner=row[7],
        payload=json.loads(row[8]),
        error=row[9],
        inconsistency=row[10],
    )


class StoreTransaction:
    """Reads and writes inside one open SQLite transaction.

    Only obtained through IndexerStore.atomic(); everything written here is
    committed or rolled back together.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db
        self._now = int(time.time())

    async def transaction_exists(self, signature: str) -> bool:
        cursor = await self.db.execute(
            "SELECT 1 FROM transactions WHERE signature = ?", (signature,)
        )
        return await cursor.fetchone() is not None

    async def get_pair(self, pair_address: str) -> Pair | None:
        cursor = await self.db.execute(
            f"SELECT {', '.join(_PAIR_COLUMNS)} FROM pairs WHERE pair_address = ?",
            (pair_address,),
        )
        row = await cursor.fetchone()
        return None if row is None else _pair_from_row(row)

    async def save_pair(self, pair: Pair) -> None:
        await self.db.execute(_UPSERT_PAIR_SQL, _pair_to_row(pair, self._now))

    async def get_position(self, pair_address: str, owner: str) -> UserPosition | None:
        cursor = await self.db.execute(
            f"SELECT {', '.join(_POSITION_COLUMNS)} FROM user_positions "
            "WHERE pair_address = ? AND owner = ?",
            (pair_address, owner),
        )
        row = await cursor.fetchone()
        return None if row is None else _position_from_row(row)

    async def find_position_owner(self, pair_address: str, position_address: str) -> str | None:
        """Owner of the position row whose on-chain account is `position_address`."""
        cursor = await self.db.execute(
            "SELECT owner FROM user_positions WHERE pair_address = ? AND position_address = ?",
            (pair_address, position_address),
        )
        row = await cursor.fetchone()
        return None if row is None else row[0]

    async def save_position(self, position: UserPosition) -> None:
        await self.db.execute(_UPSERT_POSITION_SQL, _position_to_row(position, self._now))

    async def insert_transaction(self, record: TransactionRecord) -> None:
        await self.db.execute(
            f"INSERT INTO transactions ({', '.join(_TRANSACTION_COLUMNS)}, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.signature,
                record.slot,
                record.tx_index,
                record.block_time,
                record.fee_payer,
                1 if record.success else 0,
                record.error,
                record.pair_address,
                self._now,
            ),
        )

    async def insert_details(self, details: list[TransactionDetail]) -> None:
        if not details:
            return
        await self.db.executemany(
            f"INSERT INTO transaction_details ({', '.join(_DETAIL_COLUMNS)}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    d.signature,
                    d.detail_index,
                    d.instruction_index,
                    d.inner_index,
                    d.record_type.value,
                    d.kind,
                    d.pair_address,
                    d.owner,
                    json.dumps(d.payload, sort_keys=True),
                    d.error,
                    d.inconsistency,
                )
                for d in details
            ],
        )

    async def applied_events(
        self, pair_address: str, kinds: Iterable[str], owner: str | None = None
    ) -> list[tuple[str, dict[str, Any]]]:
        """(kind, payload) of every event applied to one entity, in chain order.

        Covers rows written earlier in the open transaction as well.
        """
        names = list(kinds)
        sql = (
            "SELECT d.kind, d.payload FROM transaction_details d "
            "JOIN transactions t ON t.signature = d.signature "
            "WHERE d.pair_address = ? AND d.record_type = ? AND t.success = 1 "
            "AND d.error IS NULL AND d.inconsistency IS NULL "
            f"AND d.kind IN ({', '.join('?' for _ in names)})"
        )
        params: list[Any] = [pair_address, RecordType.EVENT.value, *names]
        if owner is not None:
            sql += " AND d.owner = ?"
            params.append(owner)
        sql += " ORDER BY t.slot, t.tx_index, d.detail_index"
        cursor = await self.db.execute(sql, params)
        return [(row[0], json.loads(row[1])) for row in await cursor.fetchall()]


class IndexerStore:
    """Async SQLite store for pairs, positions, transactions and coverage.

    Wraps IndexerDatabase. A single asyncio.Lock serialises every statement on
    the shared aiosqlite connection, so an open atomic() block never interleaves
    with another writer or reader.

    Usage:
        async with IndexerDatabase("data/omnipair.db") as database:
            store = IndexerStore(database)
            async with store.atomic() as tx:
                await tx.insert_transaction(record)
    """

    def __init__(self, database: IndexerDatabase) -> None:
        self._database = database
        self._lock = asyncio.Lock()
        self._coverage: SlotRangeSet | None = None
        self._state: dict[str, int | None] = {key: None for key in _STATE_KEYS}

    @property
    def database(self) -> IndexerDatabase:
        return self._database

    # ──────────────────────────────────────────────
    # Atomic writes
    # ──────────────────────────────────────────────

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[StoreTransaction]:
        """Open a transaction; commit on clean exit, roll back on any exception."""
        async with self._lock:
            db = self._database.db
            await db.execute("BEGIN")
            try:
                yield StoreTransaction(db)
                await db.commit()
            except BaseException:
                # a failed COMMIT leaves the transaction open as well
                await db.rollback()
                raise

    # ──────────────────────────────────────────────
    # Coverage
    # ──────────────────────────────────────────────

    async def load_coverage(self) -> SlotRangeSet:
        """Load coverage ranges and slot bounds from disk into memory."""
        async with self._lock:
            db = self._database.db
            cursor = await db.execute(
                "SELECT start_slot, end_slot FROM coverage_ranges ORDER BY start_slot ASC"
            )
            self._coverage = SlotRangeSet(await cursor.fetchall())
            cursor = await db.execute("SELECT key, value FROM indexer_state")
            for key, value in await cursor.fetchall():
                if key in self._state:
                    self._state[key] = value
        logger.info(
            "coverage_loaded",
            ranges=len(self._coverage),
            lowest_slot=self._state["lowest_slot"],
            watermark_slot=self._state["watermark_slot"],
        )
        return SlotRangeSet(self._coverage)

    async def _ensure_coverage(self) -> SlotRangeSet:
        if self._coverage is None:
            await self.load_coverage()
        assert self._coverage is not None
        return self._coverage

    async def record_coverage(
        self,
        start_slot: int,
        end_slot: int,
        fetched_slots: Iterable[int],
        unresolved: Iterable[SlotFetchResult] = (),
    ) -> None:
        """Record the result of processing the targeted range [start_slot, end_slot].

        Fetched slots join the merged coverage ranges and leave unresolved_slots;
        unresolved ones are upserted with their accumulated attempt count. Slot
        bounds widen to include the target and the watermark is recomputed.
        """
        await self._ensure_coverage()
        fetched = sorted(set(fetched_slots))
        failed = list(unresolved)
        now = int(time.time())

        async with self.atomic() as tx:
            # Copy under the lock so concurrent drivers never overwrite each other.
            assert self._coverage is not None
            coverage = SlotRangeSet(self._coverage)
            lowest = self._state["lowest_slot"]
            highest = self._state["highest_slot"]
            lowest = start_slot if lowest is None else min(lowest, start_slot)
            highest = end_slot if highest is None else max(highest, end_slot)

            for s, e in ranges_from_slots(fetched):
                merged_start, merged_end = coverage.add(s, e)
                await tx.db.execute(
                    "DELETE FROM coverage_ranges WHERE start_slot <= ? AND end_slot >= ?",
                    (merged_end, merged_start),
                )
                await tx.db.execute(
                    "INSERT INTO coverage_ranges (start_slot, end_slot) VALUES (?, ?)",
                    (merged_start, merged_end),
                )
            if fetched:
                await tx.db.executemany(
                    "DELETE FROM unresolved_slots WHERE slot = ?", [(s,) for s in fetched]
                )
            if failed:
                await tx.db.executemany(
                    "INSERT INTO unresolved_slots (slot, attempts, last_error, updated_at) "
                    "VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(slot) DO UPDATE SET "
                    "attempts = attempts + excluded.attempts, "
                    "last_error = excluded.last_error, updated_at = excluded.updated_at",
                    [(r.slot, r.attempts, r.error, now) for r in failed],
                )

            contiguous = coverage.contiguous_end(lowest)
            watermark = contiguous if contiguous >= lowest else None
            state = {"lowest_slot": lowest, "highest_slot": highest, "watermark_slot": watermark}
            await tx.db.executemany(
                "INSERT OR REPLACE INTO indexer_state (key, value) VALUES (?, ?)",
                list(state.items()),
            )

        self._coverage = coverage
        self._state = state
        logger.debug(
            "coverage_recorded",
            start_slot=start_slot,
            end_slot=end_slot,
            fetched=len(fetched),
            unresolved=len(failed),
            watermark_slot=watermark,
        )

    async def get_coverage(self) -> SlotRangeSet:
        return SlotRangeSet(await self._ensure_coverage())

    async def get_state(self) -> dict[str, int | None]:
        """Return lowest_slot, highest_slot and watermark_slot (None when unknown)."""
        await self._ensure_coverage()
        return dict(self._state)

    async def find_gaps(self) -> list[tuple[int, int]]:
        """Ranges of [lowest_slot, highest_slot] not yet covered."""
        coverage = await self._ensure_coverage()
        lowest, highest = self._state["lowest_slot"], self._state["highest_slot"]
        if lowest is None or highest is None:
            return []
        return coverage.gaps_within(lowest, highest)

    async def get_unresolved_slots(self) -> list[dict]:
        rows = await self._fetchall(
            "SELECT slot, attempts, last_error, updated_at FROM unresolved_slots ORDER BY slot ASC"
        )
        return [
            {"slot": row[0], "attempts": row[1], "last_error": row[2], "updated_at": row[3]}
            for row in rows
        ]

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list:
        async with self._lock:
            cursor = await self._database.db.execute(sql, tuple(params))
            return list(await cursor.fetchall())

    async def get_pair(self, pair_address: str) -> Pair | None:
        rows = await self._fetchall(
            f"SELECT {', '.join(_PAIR_COLUMNS)} FROM pairs WHERE pair_address = ?",
            (pair_address,),
        )
        return _pair_from_row(rows[0]) if rows else None

    async def list_pairs(self, limit: int = 100, offset: int = 0) -> list[Pair]:
        rows = await self._fetchall(
            f"SELECT {', '.join(_PAIR_COLUMNS)} FROM pairs "
            "ORDER BY created_slot IS NULL, created_slot ASC, pair_address ASC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [_pair_from_row(row) for row in rows]

    async def get_position(self, pair_address: str, owner: str) -> UserPosition | None:
        rows = await self._fetchall(
            f"SELECT {', '.join(_POSITION_COLUMNS)} FROM user_positions "
            "WHERE pair_address = ? AND owner = ?",
            (pair_address, owner),
        )
        return _position_from_row(rows[0]) if rows else None

    async def list_positions(
        self,
        pair_address: str | None = None,
        owner: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[UserPosition]:
        conditions: list[str] = []
        params: list = []
        if pair_address is not None:
            conditions.append("pair_address = ?")
            params.append(pair_address)
        if owner is not None:
            conditions.append("owner = ?")
            params.append(owner)

        where = f"WHERE {' AND '.join(conditions)} " if conditions else ""
        rows = await self._fetchall(
            f"SELECT {', '.join(_POSITION_COLUMNS)} FROM user_positions {where}"
            "ORDER BY pair_address ASC, owner ASC LIMIT ? OFFSET ?",
            params + [limit, offset],
        )
        return [_position_from_row(row) for row in rows]

    async def get_transaction(self, signature: str) -> TransactionRecord | None:
        rows = await self._fetchall(
            f"SELECT {', '.join(_TRANSACTION_COLUMNS)} FROM transactions WHERE signature = ?",
            (signature,),
        )
        return _transaction_from_row(rows[0]) if rows else None

    async def get_transaction_details(self, signature: str) -> list[TransactionDetail]:
        rows = await self._fetchall(
            f"SELECT {', '.join(_DETAIL_COLUMNS)} FROM transaction_details "
            "WHERE signature = ? ORDER BY detail_index ASC",
            (signature,),
        )
        return [_detail_from_row(row) for row in rows]

    async def list_transactions(
        self,
        pair_address: str | None = None,
        limit: int = 100,
    ) -> list[TransactionRecord]:
        """Most recent first."""
        where = "WHERE pair_address = ? " if pair_address is not None else ""
        params: list = [pair_address] if pair_address is not None else []
        rows = await self._fetchall(
            f"SELECT {', '.join(_TRANSACTION_COLUMNS)} FROM transactions {where}"
            "ORDER BY slot DESC, tx_index DESC LIMIT ?",
            params + [limit],
        )
        return [_transaction_from_row(row) for row in rows]

    async def get_data_status(self) -> dict:
        """Row counts and coverage summary for the status endpoint."""
        counts: dict[str, int] = {}
        for table in ("pairs", "user_positions", "transactions", "transaction_details"):
            rows = await self._fetchall(f"SELECT COUNT(*) FROM {table}")
            counts[table] = rows[0][0]
        rows = await self._fetchall("SELECT COUNT(*) FROM unresolved_slots")
        state = await self.get_state()
        gaps = await self.find_gaps()
        return {
            **counts,
            **state,
            "unresolved_slots": rows[0][0],
            "gap_ranges": len(gaps),
            "gap_slots": sum(end - start + 1 for start, end in gaps),
        }
