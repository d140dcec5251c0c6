"""Solana JSON-RPC client implementation via solana-py async.

Wraps solana.rpc.async_api.AsyncClient: getBlock with json encoding and
versioned-transaction support, getSlot for the tip, and conversion of the
raw JSON block into RawTransaction records.
"""

import json
from typing import Any

import base58
import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException

from omnipair_indexer.config import RpcSettings
from omnipair_indexer.exceptions import ConfigurationError, RpcFetchError
from omnipair_indexer.logging import get_logger
from omnipair_indexer.models import RawInstruction, RawTransaction, SlotBlock
from omnipair_indexer.rpc.client import RpcClient

logger = get_logger(__name__)

# getBlock error text for slots that will never hold a block.
_SKIPPED_MARKERS = ("skipped", "was not confirmed")


def _is_rate_limited(exc: BaseException) -> bool:
    """Walk the exception chain looking for an HTTP 429 response."""
    current: BaseException | None = exc
    while current is not None:
        response = getattr(current, "response", None)
        if getattr(response, "status_code", None) == 429:
            return True
        if "429" in str(current):
            return True
        current = current.__cause__ or current.__context__
    return False


def _parse_instruction(raw: dict[str, Any]) -> RawInstruction:
    return RawInstruction(
        program_id_index=raw["programIdIndex"],
        accounts=list(raw.get("accounts", [])),
        data=base58.b58decode(raw.get("data", "")),
        stack_height=raw.get("stackHeight"),
    )


def parse_block(slot: int, block: dict[str, Any]) -> SlotBlock:
    """Convert a json-encoded getBlock result into a SlotBlock.

    Account keys are the static message keys followed by address-table
    lookups (writable, then readonly), which is the order compiled
    instruction indexes refer to.
    """
    block_time = block.get("blockTime")
    transactions: list[RawTransaction] = []
    for tx_index, entry in enumerate(block.get("transactions") or []):
        transaction = entry["transaction"]
        message = transaction["message"]
        meta = entry.get("meta") or {}

        account_keys = list(message.get("accountKeys", []))
        loaded = meta.get("loadedAddresses") or {}
        account_keys.extend(loaded.get("writable", []))
        account_keys.extend(loaded.get("readonly", []))

        inner: dict[int, list[RawInstruction]] = {}
        for group in meta.get("innerInstructions") or []:
            inner[group["index"]] = [_parse_instruction(ix) for ix in group["instructions"]]

        transactions.append(
            RawTransaction(
                signature=transaction["signatures"][0],
                slot=slot,
                tx_index=tx_index,
                block_time=block_time,
                account_keys=account_keys,
                instructions=[_parse_instruction(ix) for ix in message.get("instructions", [])],
                inner_instructions=inner,
                log_messages=list(meta.get("logMessages") or []),
                error=meta.get("err"),
            )
        )
    return SlotBlock(slot=slot, block_time=block_time, transactions=transactions)


class SolanaRpcClient(RpcClient):
    """Concrete block source using solana-py AsyncClient."""

    def __init__(self, settings: RpcSettings) -> None:
        self._settings = settings
        self._commitment = Commitment(settings.commitment)
        self._client = AsyncClient(
            settings.http_url,
            commitment=self._commitment,
            timeout=settings.timeout_seconds,
        )

    @property
    def client(self) -> AsyncClient:
        """Access the underlying solana-py client."""
        return self._client

    async def connect(self) -> None:
        logger.info("connecting_to_rpc", url=self._settings.http_url)
        if not await self._client.is_connected():
            raise ConfigurationError(f"RPC endpoint unreachable: {self._settings.http_url}")
        tip = await self.get_tip_slot()
        logger.info("rpc_connected", tip_slot=tip, commitment=self._settings.commitment)

    async def close(self) -> None:
        logger.info("closing_rpc_connection")
        await self._client.close()

    async def get_tip_slot(self) -> int:
        try:
            resp = await self._client.get_slot(self._commitment)
        except (SolanaRpcException, RPCException, httpx.HTTPError) as e:
            raise RpcFetchError(-1, f"getSlot failed: {e}", _is_rate_limited(e)) from e
        return resp.value

    async def get_block(self, slot: int) -> SlotBlock | None:
        try:
            resp = await self._client.get_block(
                slot,
                encoding="json",
                max_supported_transaction_version=0,
            )
        except RPCException as e:
            message = str(e)
            if any(marker in message for marker in _SKIPPED_MARKERS):
                logger.debug("slot_skipped", slot=slot)
                return None
            raise RpcFetchError(slot, message, _is_rate_limited(e)) from e
        except (SolanaRpcException, httpx.HTTPError) as e:
            raise RpcFetchError(slot, str(e) or type(e).__name__, _is_rate_limited(e)) from e

        result = json.loads(resp.to_json()).get("result")
        if result is None:
            return None
        return parse_block(slot, result)
