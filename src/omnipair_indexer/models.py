"""Shared data models for the Omnipair indexer.

CRITICAL: token amounts are unsigned 64/128-bit integers. Keep them as Python
int everywhere; the store serialises them as TEXT because SQLite INTEGER is
signed 64-bit.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple


class ChainPosition(NamedTuple):
    """Total order over every mutation the indexer applies.

    Tuple comparison gives (slot, tx_index, instruction_index, record_index)
    lexicographic order, which is the only source of truth for "latest".
    """

    slot: int
    tx_index: int
    instruction_index: int
    record_index: int


GENESIS_POSITION = ChainPosition(-1, -1, -1, -1)


class RecordType(str, Enum):
    """Kind of decoded record inside a transaction."""

    INSTRUCTION = "instruction"
    EVENT = "event"
    VIEW = "view"


class FetchStatus(str, Enum):
    """Per-slot fetch outcome."""

    FETCHED = "fetched"
    EMPTY = "empty"
    UNRESOLVED = "unresolved"


class ControllerState(str, Enum):
    """Lifecycle of a backfill or gap-fill run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ──────────────────────────────────────────────
# Entities
# ──────────────────────────────────────────────

PAIR_STATE_FIELDS = (
    "reserve0",
    "reserve1",
    "cash_reserve0",
    "cash_reserve1",
    "last_price0_ema",
    "last_price1_ema",
    "last_rate0",
    "last_rate1",
    "total_debt0",
    "total_debt1",
    "total_debt0_shares",
    "total_debt1_shares",
    "total_supply",
    "total_collateral0",
    "total_collateral1",
)

POSITION_STATE_FIELDS = (
    "collateral0",
    "collateral1",
    "debt0_shares",
    "debt1_shares",
)


@dataclass
class Pair:
    """Mirror of one on-chain market.

    A row with is_created=False is a stub: a state mutation arrived before the
    pairCreatedEvent was applied, so identity fields are still unknown.
    """

    pair_address: str
    token0: str | None = None
    token1: str | None = None
    lp_mint: str | None = None
    rate_model: str | None = None
    swap_fee_bps: int | None = None
    half_life: int | None = None
    fixed_cf_bps: int | None = None
    params_hash: str | None = None
    version: int | None = None
    reserve0: int = 0
    reserve1: int = 0
    cash_reserve0: int = 0
    cash_reserve1: int = 0
    last_price0_ema: int = 0
    last_price1_ema: int = 0
    last_rate0: int = 0
    last_rate1: int = 0
    total_debt0: int = 0
    total_debt1: int = 0
    total_debt0_shares: int = 0
    total_debt1_shares: int = 0
    total_supply: int = 0
    total_collateral0: int = 0
    total_collateral1: int = 0
    is_created: bool = False
    created_slot: int | None = None
    last_position: ChainPosition = GENESIS_POSITION


@dataclass
class UserPosition:
    """A user's collateral and debt inside one pair. Identity: (pair, owner)."""

    pair_address: str
    owner: str
    position_address: str | None = None
    collateral0: int = 0
    collateral1: int = 0
    debt0_shares: int = 0
    debt1_shares: int = 0
    collateral0_applied_min_cf_bps: int = 0
    collateral1_applied_min_cf_bps: int = 0
    is_created: bool = False
    last_position: ChainPosition = GENESIS_POSITION


@dataclass
class TransactionRecord:
    """One on-chain transaction that touched the program. Immutable once stored."""

    signature: str
    slot: int
    tx_index: int
    block_time: int | None
    fee_payer: str
    success: bool
    error: str | None = None
    pair_address: str | None = None


@dataclass
class TransactionDetail:
    """One decoded instruction or event occurrence inside a transaction."""

    signature: str
    detail_index: int
    instruction_index: int
    inner_index: int | None
    record_type: RecordType
    kind: str
    payload: dict[str, Any]
    pair_address: str | None = None
    owner: str | None = None
    error: str | None = None
    inconsistency: str | None = None


# ──────────────────────────────────────────────
# Raw chain data (RPC layer output)
# ──────────────────────────────────────────────


@dataclass
class RawInstruction:
    """A compiled instruction with account indexes resolved against the message keys."""

    program_id_index: int
    accounts: list[int]
    data: bytes
    stack_height: int | None = None


@dataclass
class RawTransaction:
    """A transaction as delivered by getBlock, before decoding."""

    signature: str
    slot: int
    tx_index: int
    block_time: int | None
    account_keys: list[str]
    instructions: list[RawInstruction]
    inner_instructions: dict[int, list[RawInstruction]] = field(default_factory=dict)
    log_messages: list[str] = field(default_factory=list)
    error: Any = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def fee_payer(self) -> str:
        return self.account_keys[0] if self.account_keys else ""

    def references(self, program_id: str) -> bool:
        """True if the program appears among the transaction's account keys."""
        return program_id in self.account_keys


@dataclass
class SlotBlock:
    """All transactions of one produced block, in block order."""

    slot: int
    block_time: int | None
    transactions: list[RawTransaction]


@dataclass
class SlotFetchResult:
    """Program-relevant transactions of one slot, or why they are missing."""

    slot: int
    status: FetchStatus
    transactions: list[RawTransaction] = field(default_factory=list)
    error: str | None = None
    attempts: int = 1

    @property
    def resolved(self) -> bool:
        return self.status is not FetchStatus.UNRESOLVED


# ──────────────────────────────────────────────
# Decoded data (Decoder output)
# ──────────────────────────────────────────────


@dataclass
class DecodedRecord:
    """A typed instruction, event or view probe resolved by discriminator.

    `error` is set (and `data` empty) when the discriminator matched but the
    payload could not be decoded.
    """

    record_type: RecordType
    kind: str
    instruction_index: int
    record_index: int
    data: dict[str, Any] = field(default_factory=dict)
    accounts: dict[str, str] = field(default_factory=dict)
    inner_index: int | None = None
    error: str | None = None

    @property
    def pair_address(self) -> str | None:
        metadata = self.data.get("metadata")
        if isinstance(metadata, dict) and metadata.get("pair"):
            return metadata["pair"]
        if self.data.get("pair"):
            return self.data["pair"]
        return self.accounts.get("pair")

    @property
    def owner(self) -> str | None:
        metadata = self.data.get("metadata")
        if isinstance(metadata, dict) and metadata.get("signer"):
            return metadata["signer"]
        if self.data.get("user"):
            return self.data["user"]
        return self.accounts.get("user")


@dataclass
class DecodedTransaction:
    """A transaction plus its decoded records in execution order."""

    signature: str
    slot: int
    tx_index: int
    block_time: int | None
    fee_payer: str
    success: bool
    error: str | None
    records: list[DecodedRecord] = field(default_factory=list)

    def position_of(self, record: DecodedRecord) -> ChainPosition:
        return ChainPosition(
            self.slot, self.tx_index, record.instruction_index, record.record_index
        )

    @property
    def pair_addresses(self) -> list[str]:
        """Distinct pairs touched, in first-seen order."""
        seen: list[str] = []
        for record in self.records:
            address = record.pair_address
            if address and address not in seen:
                seen.append(address)
        return seen

    @property
    def decode_errors(self) -> int:
        return sum(1 for r in self.records if r.error is not None)


# ──────────────────────────────────────────────
# Results
# ──────────────────────────────────────────────


@dataclass
class ApplyResult:
    """What the reconciler did with one transaction."""

    signature: str
    applied: bool  # False when the signature was already persisted
    mutations: int = 0
    stale_mutations: int = 0
    inconsistencies: list[str] = field(default_factory=list)


@dataclass
class SyncOutcome:
    """Returned by run_backfill / run_gap_fill; never raised.

    `unresolved` lists inclusive slot ranges that remain gaps after the run.
    """

    driver: str
    state: ControllerState
    from_slot: int | None = None
    to_slot: int | None = None
    slots_processed: int = 0
    slots_empty: int = 0
    transactions_applied: int = 0
    transactions_skipped: int = 0
    decode_errors: int = 0
    inconsistencies: int = 0
    unresolved: list[tuple[int, int]] = field(default_factory=list)
    error: str | None = None
    started_at: float = field(default_factory=time.time)
    duration_seconds: float = 0.0

    @property
    def message(self) -> str:
        if self.error is not None:
            return f"{self.driver} failed: {self.error}"
        return (
            f"{self.driver} {self.state.value}: {self.slots_processed} slots, "
            f"{self.transactions_applied} transactions applied, "
            f"{len(self.unresolved)} unresolved ranges "
            f"in {self.duration_seconds:.1f}s"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "driver": self.driver,
            "state": self.state.value,
            "from_slot": self.from_slot,
            "to_slot": self.to_slot,
            "slots_processed": self.slots_processed,
            "slots_empty": self.slots_empty,
            "transactions_applied": self.transactions_applied,
            "transactions_skipped": self.transactions_skipped,
            "decode_errors": self.decode_errors,
            "inconsistencies": self.inconsistencies,
            "unresolved": [list(r) for r in self.unresolved],
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }
