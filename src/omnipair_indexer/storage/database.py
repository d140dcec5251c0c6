"""Async SQLite database manager for the indexed Omnipair state.

Uses aiosqlite with WAL mode so API reads do not block ingestion writes.
Token amounts are TEXT columns: they are unsigned 64/128-bit and do not fit
SQLite's signed INTEGER.
"""

import os
from typing import Self

import aiosqlite

from omnipair_indexer.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS pairs (
    pair_address TEXT PRIMARY KEY,
    token0 TEXT,
    token1 TEXT,
    lp_mint TEXT,
    rate_model TEXT,
    swap_fee_bps INTEGER,
    half_life TEXT,
    fixed_cf_bps INTEGER,
    params_hash TEXT,
    version INTEGER,
    reserve0 TEXT NOT NULL DEFAULT '0',
    reserve1 TEXT NOT NULL DEFAULT '0',
    cash_reserve0 TEXT NOT NULL DEFAULT '0',
    cash_reserve1 TEXT NOT NULL DEFAULT '0',
    last_price0_ema TEXT NOT NULL DEFAULT '0',
    last_price1_ema TEXT NOT NULL DEFAULT '0',
    last_rate0 TEXT NOT NULL DEFAULT '0',
    last_rate1 TEXT NOT NULL DEFAULT '0',
    total_debt0 TEXT NOT NULL DEFAULT '0',
    total_debt1 TEXT NOT NULL DEFAULT '0',
    total_debt0_shares TEXT NOT NULL DEFAULT '0',
    total_debt1_shares TEXT NOT NULL DEFAULT '0',
    total_supply TEXT NOT NULL DEFAULT '0',
    total_collateral0 TEXT NOT NULL DEFAULT '0',
    total_collateral1 TEXT NOT NULL DEFAULT '0',
    is_created INTEGER NOT NULL DEFAULT 0,
    created_slot INTEGER,
    last_slot INTEGER NOT NULL,
    last_tx_index INTEGER NOT NULL,
    last_instruction_index INTEGER NOT NULL,
    last_record_index INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS user_positions (
    pair_address TEXT NOT NULL,
    owner TEXT NOT NULL,
    position_address TEXT,
    collateral0 TEXT NOT NULL DEFAULT '0',
    collateral1 TEXT NOT NULL DEFAULT '0',
    debt0_shares TEXT NOT NULL DEFAULT '0',
    debt1_shares TEXT NOT NULL DEFAULT '0',
    collateral0_applied_min_cf_bps INTEGER NOT NULL DEFAULT 0,
    collateral1_applied_min_cf_bps INTEGER NOT NULL DEFAULT 0,
    is_created INTEGER NOT NULL DEFAULT 0,
    last_slot INTEGER NOT NULL,
    last_tx_index INTEGER NOT NULL,
    last_instruction_index INTEGER NOT NULL,
    last_record_index INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (pair_address, owner)
);

CREATE TABLE IF NOT EXISTS transactions (
    signature TEXT PRIMARY KEY,
    slot INTEGER NOT NULL,
    tx_index INTEGER NOT NULL,
    block_time INTEGER,
    fee_payer TEXT NOT NULL,
    success INTEGER NOT NULL,
    error TEXT,
    pair_address TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS transaction_details (
    signature TEXT NOT NULL REFERENCES transactions(signature),
    detail_index INTEGER NOT NULL,
    instruction_index INTEGER NOT NULL,
    inner_index INTEGER,
    record_type TEXT NOT NULL,
    kind TEXT NOT NULL,
    pair_address TEXT,
    owner TEXT,
    payload TEXT NOT NULL,
    error TEXT,
    inconsistency TEXT,
    PRIMARY KEY (signature, detail_index)
);

CREATE TABLE IF NOT EXISTS coverage_ranges (
    start_slot INTEGER PRIMARY KEY,
    end_slot INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS unresolved_slots (
    slot INTEGER PRIMARY KEY,
    attempts INTEGER NOT NULL,
    last_error TEXT,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS indexer_state (
    key TEXT PRIMARY KEY,
    value INTEGER
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_transactions_slot
    ON transactions(slot, tx_index);

CREATE INDEX IF NOT EXISTS idx_transactions_pair
    ON transactions(pair_address);

CREATE INDEX IF NOT EXISTS idx_details_pair
    ON transaction_details(pair_address);

CREATE INDEX IF NOT EXISTS idx_positions_owner
    ON user_positions(owner);

CREATE INDEX IF NOT EXISTS idx_positions_address
    ON user_positions(pair_address, position_address);
"""


_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
)


class IndexerDatabase:
    """Owns the single aiosqlite connection behind IndexerStore.

    Opening creates the parent directory, applies _PRAGMAS and the schema,
    and stamps schema_version on a fresh file.

    Usage:
        async with IndexerDatabase("data/omnipair.db") as database:
            store = IndexerStore(database)
    """

    def __init__(self, db_path: str = "data/omnipair.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def db(self) -> aiosqlite.Connection:
        """The open connection; RuntimeError before connect() or after close()."""
        if self._connection is None:
            raise RuntimeError(f"indexer database {self._db_path} is not open")
        return self._connection

    async def connect(self) -> None:
        parent = os.path.dirname(self._db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        connection = await aiosqlite.connect(self._db_path)
        for pragma in _PRAGMAS:
            await connection.execute(pragma)
        await connection.executescript(_CREATE_TABLES_SQL + _CREATE_INDEXES_SQL)
        await connection.commit()

        self._connection = connection
        await self._check_schema_version()
        logger.info("indexer_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        await connection.close()
        logger.info("indexer_db_closed", db_path=self._db_path)

    async def _check_schema_version(self) -> None:
        cursor = await self.db.execute("SELECT version FROM schema_version")
        stored = await cursor.fetchone()
        if stored is None:
            await self.db.execute("INSERT INTO schema_version VALUES (?)", (SCHEMA_VERSION,))
            await self.db.commit()
            logger.info("schema_version_stamped", version=SCHEMA_VERSION)
        elif stored[0] != SCHEMA_VERSION:
            logger.warning(
                "schema_version_mismatch", stored=stored[0], expected=SCHEMA_VERSION
            )

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
