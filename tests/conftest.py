"""Shared test fixtures for the Omnipair indexer.

FakeRpcClient serves an in-memory chain; TxFactory builds raw transactions
whose instructions and "Program data:" log lines are encoded with the real
program interface, so every test exercises the actual decoder.
"""

import base64
from types import SimpleNamespace
from typing import Any

import base58
import pytest
import pytest_asyncio
from solders.pubkey import Pubkey

from omnipair_indexer.config import (
    OMNIPAIR_PROGRAM_ID,
    ApiSettings,
    AppSettings,
    DatabaseSettings,
    IndexerSettings,
)
from omnipair_indexer.exceptions import RpcFetchError
from omnipair_indexer.ingest.fetcher import SlotFetcher
from omnipair_indexer.ingest.pipeline import SlotPipeline
from omnipair_indexer.ingest.reconciler import EventReconciler
from omnipair_indexer.ingest.sharding import ShardedApplier
from omnipair_indexer.models import RawInstruction, RawTransaction, SlotBlock
from omnipair_indexer.program.decoder import Decoder
from omnipair_indexer.program.interface import (
    INSTRUCTIONS,
    encode_event,
    encode_event_cpi,
    encode_instruction,
)
from omnipair_indexer.rpc.client import RpcClient
from omnipair_indexer.storage.database import IndexerDatabase
from omnipair_indexer.storage.store import IndexerStore


def make_key(seed: int) -> str:
    return str(Pubkey.from_bytes(bytes([seed]) * 32))


KEYS = SimpleNamespace(
    program=OMNIPAIR_PROGRAM_ID,
    pair_a=make_key(1),
    pair_b=make_key(2),
    token0=make_key(3),
    token1=make_key(4),
    lp_mint=make_key(5),
    rate_model=make_key(6),
    alice=make_key(7),
    bob=make_key(8),
    position_alice=make_key(9),
    position_bob=make_key(10),
    liquidator=make_key(11),
    other_program=make_key(12),
)


# ---------------------------------------------------------------------------
# Fake RPC
# ---------------------------------------------------------------------------


class FakeRpcClient(RpcClient):
    """In-memory chain: blocks by slot, injectable per-slot failures."""

    def __init__(self, tip: int = 0) -> None:
        self.tip = tip
        self.blocks: dict[int, SlotBlock] = {}
        self.failures: dict[int, int] = {}  # slot -> remaining failing attempts
        self.always_fail: set[int] = set()
        self.calls: list[int] = []
        self.connected = False
        self.reachable = True

    def add_transactions(self, slot: int, transactions: list[RawTransaction]) -> None:
        block = self.blocks.setdefault(slot, SlotBlock(slot=slot, block_time=None, transactions=[]))
        block.transactions.extend(transactions)
        block.transactions.sort(key=lambda t: t.tx_index)
        self.tip = max(self.tip, slot)

    async def connect(self) -> None:
        if not self.reachable:
            raise RpcFetchError(-1, "connection refused")
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def get_tip_slot(self) -> int:
        return self.tip

    async def get_block(self, slot: int) -> SlotBlock | None:
        self.calls.append(slot)
        if slot in self.always_fail:
            raise RpcFetchError(slot, "node unavailable")
        if self.failures.get(slot, 0) > 0:
            self.failures[slot] -= 1
            raise RpcFetchError(slot, "temporary failure")
        return self.blocks.get(slot)


# ---------------------------------------------------------------------------
# Transaction builders
# ---------------------------------------------------------------------------


def metadata(pair: str, signer: str, timestamp: int = 1_700_000_000) -> dict[str, Any]:
    return {"signer": signer, "pair": pair, "timestamp": timestamp}


def pair_created_fields(pair: str = KEYS.pair_a) -> dict[str, Any]:
    return {
        "token0": KEYS.token0,
        "token1": KEYS.token1,
        "pair": pair,
        "lp_mint": KEYS.lp_mint,
        "rate_model": KEYS.rate_model,
        "swap_fee_bps": 30,
        "half_life": 3600,
        "fixed_cf_bps": 8500,
        "params_hash": "ab" * 32,
        "version": 1,
        "timestamp": 1_700_000_000,
    }


def swap_fields(
    pair: str = KEYS.pair_a, reserve0: int = 1_000, reserve1: int = 2_000, signer: str = KEYS.alice
) -> dict[str, Any]:
    return {
        "is_token0_in": True,
        "amount_in": 10,
        "amount_out": 19,
        "fee_amount": 1,
        "reserve0": reserve0,
        "reserve1": reserve1,
        "metadata": metadata(pair, signer),
    }


def position_created_fields(
    pair: str = KEYS.pair_a, user: str = KEYS.alice, position: str = KEYS.position_alice
) -> dict[str, Any]:
    return {"user": user, "pair": pair, "position": position, "timestamp": 1_700_000_000}


def adjust_collateral_fields(
    pair: str = KEYS.pair_a,
    user: str = KEYS.alice,
    collateral0: int = 500,
    collateral1: int = 0,
    total_collateral0: int = 500,
    total_collateral1: int = 0,
) -> dict[str, Any]:
    return {
        "amount0": collateral0,
        "amount1": collateral1,
        "collateral0": collateral0,
        "collateral1": collateral1,
        "total_collateral0": total_collateral0,
        "total_collateral1": total_collateral1,
        "metadata": metadata(pair, user),
    }


def mint_fields(
    pair: str = KEYS.pair_a, total_supply: int = 1_414, signer: str = KEYS.alice
) -> dict[str, Any]:
    return {
        "amount0": 1_000,
        "amount1": 2_000,
        "liquidity": total_supply,
        "reserve0": 1_000,
        "reserve1": 2_000,
        "total_supply": total_supply,
        "metadata": metadata(pair, signer),
    }


def update_pair_fields(pair: str = KEYS.pair_a, **overrides: int) -> dict[str, Any]:
    values: dict[str, Any] = {
        "price0_ema": 2_000_000,
        "price1_ema": 500_000,
        "rate0": 100,
        "rate1": 200,
        "reserve0": 1_000,
        "reserve1": 2_000,
        "cash_reserve0": 900,
        "cash_reserve1": 1_800,
        "total_debt0": 100,
        "total_debt1": 200,
        "total_debt0_shares": 100,
        "total_debt1_shares": 200,
        "total_collateral0": 500,
        "total_collateral1": 0,
    }
    values.update(overrides)
    values["metadata"] = metadata(pair, KEYS.alice)
    return values


def position_updated_fields(
    pair: str = KEYS.pair_a, user: str = KEYS.alice, **overrides: int
) -> dict[str, Any]:
    values: dict[str, Any] = {
        "position": KEYS.position_alice,
        "collateral0": 500,
        "collateral1": 0,
        "debt0_shares": 80,
        "debt1_shares": 0,
        "collateral0_applied_min_cf_bps": 8500,
        "collateral1_applied_min_cf_bps": 0,
    }
    values.update(overrides)
    values["metadata"] = metadata(pair, user)
    return values


def liquidated_fields(
    pair: str = KEYS.pair_a,
    user: str = KEYS.alice,
    collateral0: int = 100,
    debt0: int = 50,
) -> dict[str, Any]:
    return {
        "user": user,
        "pair": pair,
        "position": KEYS.position_alice,
        "liquidator": KEYS.liquidator,
        "collateral0_liquidated": collateral0,
        "collateral1_liquidated": 0,
        "debt0_liquidated": debt0,
        "debt1_liquidated": 0,
        "collateral_price": 1_000_000,
        "liquidation_bonus_applied": 500,
        "k0": 2**100,
        "k1": 7,
        "timestamp": 1_700_000_000,
    }


class TxFactory:
    """Builds RawTransactions that invoke the program once and log events."""

    def __init__(self) -> None:
        self._counter = 0

    def signature(self) -> str:
        self._counter += 1
        return base58.b58encode(self._counter.to_bytes(64, "big")).decode()

    def build(
        self,
        slot: int,
        tx_index: int = 0,
        events: list[tuple[str, dict[str, Any]]] | None = None,
        instruction: str = "swap",
        args: dict[str, Any] | None = None,
        signer: str = KEYS.alice,
        pair: str = KEYS.pair_a,
        signature: str | None = None,
        error: Any = None,
        cpi_events: list[tuple[str, dict[str, Any]]] | None = None,
        extra_logs: list[str] | None = None,
    ) -> RawTransaction:
        """One top-level Omnipair instruction; `events` go to logs, `cpi_events` to self-CPIs."""
        spec = INSTRUCTIONS[instruction]
        # signer first (fee payer), then the program, then one key per named account
        account_keys = [signer, KEYS.program]
        account_indexes: list[int] = []
        for name in spec.accounts:
            if name == "user":
                account_indexes.append(0)
            elif name == "pair":
                account_keys.append(pair)
                account_indexes.append(len(account_keys) - 1)
            else:
                account_keys.append(make_key(100 + len(account_keys)))
                account_indexes.append(len(account_keys) - 1)

        default_args = {field: 0 for field, _ in spec.args.fields}
        if "params_hash" in default_args:
            default_args["params_hash"] = "00" * 32
        if "data" in default_args:
            default_args["data"] = ""
        if "authority" in default_args:
            default_args["authority"] = signer
        default_args.update(args or {})

        logs = [f"Program {KEYS.program} invoke [1]", "Program log: Instruction: Swap"]
        for name, fields in events or []:
            logs.append("Program data: " + base64.b64encode(encode_event(name, fields)).decode())
        logs.extend(extra_logs or [])
        logs.append(
            f"Program {KEYS.program} failed: custom program error: 0x1"
            if error is not None
            else f"Program {KEYS.program} success"
        )

        inner = [
            RawInstruction(
                program_id_index=1,
                accounts=[],
                data=encode_event_cpi(name, fields),
                stack_height=2,
            )
            for name, fields in cpi_events or []
        ]

        return RawTransaction(
            signature=signature or self.signature(),
            slot=slot,
            tx_index=tx_index,
            block_time=1_700_000_000 + slot,
            account_keys=account_keys,
            instructions=[
                RawInstruction(
                    program_id_index=1,
                    accounts=account_indexes,
                    data=encode_instruction(instruction, default_args),
                    stack_height=1,
                )
            ],
            inner_instructions={0: inner} if inner else {},
            log_messages=logs,
            error=error,
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def keys() -> SimpleNamespace:
    return KEYS


@pytest.fixture
def tx_factory() -> TxFactory:
    return TxFactory()


@pytest.fixture
def fields() -> SimpleNamespace:
    """Event field builders."""
    return SimpleNamespace(
        metadata=metadata,
        pair_created=pair_created_fields,
        swap=swap_fields,
        position_created=position_created_fields,
        adjust_collateral=adjust_collateral_fields,
        mint=mint_fields,
        update_pair=update_pair_fields,
        position_updated=position_updated_fields,
        liquidated=liquidated_fields,
    )


@pytest.fixture
def fake_rpc() -> FakeRpcClient:
    return FakeRpcClient(tip=0)


@pytest.fixture
def mock_settings(tmp_path) -> AppSettings:
    """AppSettings with small windows, no retry delay and a temp database."""
    return AppSettings(
        log_level="DEBUG",
        indexer=IndexerSettings(
            window_size=10,
            max_parallel_windows=2,
            rpc_concurrency=4,
            shard_count=4,
            max_fetch_retries=2,
            retry_base_delay=0.0,
            fetch_timeout_seconds=5.0,
            max_persist_retries=2,
            poll_interval_seconds=0.01,
            max_slots_per_poll=20,
            gap_fill_interval_seconds=0.0,
            stop_deadline_seconds=2.0,
        ),
        database=DatabaseSettings(path=str(tmp_path / "indexer.db")),
        api=ApiSettings(enabled=False),
    )


@pytest_asyncio.fixture
async def database(mock_settings: AppSettings):
    async with IndexerDatabase(mock_settings.database.path) as db:
        yield db


@pytest_asyncio.fixture
async def store(database: IndexerDatabase) -> IndexerStore:
    store = IndexerStore(database)
    await store.load_coverage()
    return store


@pytest_asyncio.fixture
async def pipeline(fake_rpc: FakeRpcClient, store: IndexerStore, mock_settings: AppSettings):
    """Real pipeline over the fake chain and the temp store."""
    settings = mock_settings.indexer
    applier = ShardedApplier(EventReconciler(store, settings), settings.shard_count)
    yield SlotPipeline(
        SlotFetcher(fake_rpc, settings),
        Decoder(settings.program_id),
        applier,
        store,
        settings,
    )
    await applier.stop()
