"""Tests for SolanaRpcClient and getBlock parsing.

The solana-py AsyncClient is replaced with AsyncMock; no network calls.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import base58
import httpx
import pytest
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.core import RPCException

from omnipair_indexer.config import OMNIPAIR_PROGRAM_ID, RpcSettings
from omnipair_indexer.exceptions import ConfigurationError, RpcFetchError
from omnipair_indexer.rpc.solana_client import SolanaRpcClient, _is_rate_limited, parse_block

FEE_PAYER = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
LOOKUP_KEY = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"

# Trimmed getBlock(encoding="json", maxSupportedTransactionVersion=0) result.
MOCK_BLOCK = {
    "blockTime": 1_700_000_123,
    "blockhash": "unused",
    "transactions": [
        {
            "transaction": {
                "signatures": ["sig-one"],
                "message": {
                    "accountKeys": [FEE_PAYER, OMNIPAIR_PROGRAM_ID],
                    "instructions": [
                        {
                            "programIdIndex": 1,
                            "accounts": [2, 0],
                            "data": base58.b58encode(b"\x01\x02\x03").decode(),
                            "stackHeight": None,
                        }
                    ],
                },
            },
            "meta": {
                "err": None,
                "loadedAddresses": {"writable": [LOOKUP_KEY], "readonly": []},
                "innerInstructions": [
                    {
                        "index": 0,
                        "instructions": [
                            {"programIdIndex": 1, "accounts": [], "data": "", "stackHeight": 2}
                        ],
                    }
                ],
                "logMessages": [f"Program {OMNIPAIR_PROGRAM_ID} invoke [1]"],
            },
        },
        {
            "transaction": {
                "signatures": ["sig-two"],
                "message": {"accountKeys": [FEE_PAYER], "instructions": []},
            },
            "meta": {"err": {"InstructionError": [0, "Custom"]}, "logMessages": None},
        },
    ],
}


@pytest.fixture
def rpc_client() -> SolanaRpcClient:
    """SolanaRpcClient with the underlying AsyncClient mocked out."""
    client = SolanaRpcClient(RpcSettings(http_url="http://localhost:8899"))
    client._client = AsyncMock()
    return client


# ---------------------------------------------------------------------------
# parse_block
# ---------------------------------------------------------------------------


class TestParseBlock:
    def test_transactions_in_block_order(self) -> None:
        block = parse_block(42, MOCK_BLOCK)
        assert block.slot == 42
        assert block.block_time == 1_700_000_123
        assert [tx.signature for tx in block.transactions] == ["sig-one", "sig-two"]
        assert [tx.tx_index for tx in block.transactions] == [0, 1]

    def test_lookup_table_keys_appended(self) -> None:
        tx = parse_block(42, MOCK_BLOCK).transactions[0]
        assert tx.account_keys == [FEE_PAYER, OMNIPAIR_PROGRAM_ID, LOOKUP_KEY]
        assert tx.references(OMNIPAIR_PROGRAM_ID)

    def test_instruction_data_base58_decoded(self) -> None:
        tx = parse_block(42, MOCK_BLOCK).transactions[0]
        assert tx.instructions[0].data == b"\x01\x02\x03"
        assert tx.instructions[0].accounts == [2, 0]
        assert tx.inner_instructions[0][0].stack_height == 2

    def test_failed_transaction_error_kept(self) -> None:
        tx = parse_block(42, MOCK_BLOCK).transactions[1]
        assert tx.success is False
        assert tx.log_messages == []
        assert not tx.references(OMNIPAIR_PROGRAM_ID)

    def test_empty_block(self) -> None:
        block = parse_block(7, {"blockTime": None, "transactions": []})
        assert block.transactions == []


# ---------------------------------------------------------------------------
# SolanaRpcClient
# ---------------------------------------------------------------------------


class TestSolanaRpcClient:
    @pytest.mark.asyncio
    async def test_get_block_parses_result(self, rpc_client: SolanaRpcClient) -> None:
        response = MagicMock()
        response.to_json.return_value = json.dumps(
            {"jsonrpc": "2.0", "id": 1, "result": MOCK_BLOCK}
        )
        rpc_client._client.get_block = AsyncMock(return_value=response)

        block = await rpc_client.get_block(42)

        assert block is not None
        assert len(block.transactions) == 2
        rpc_client._client.get_block.assert_awaited_once_with(
            42, encoding="json", max_supported_transaction_version=0
        )

    @pytest.mark.asyncio
    async def test_skipped_slot_returns_none(self, rpc_client: SolanaRpcClient) -> None:
        rpc_client._client.get_block = AsyncMock(
            side_effect=RPCException(
                {"code": -32007, "message": "Slot 42 was skipped, or missing due to ledger jump"}
            )
        )
        assert await rpc_client.get_block(42) is None

    @pytest.mark.asyncio
    async def test_null_result_returns_none(self, rpc_client: SolanaRpcClient) -> None:
        response = MagicMock()
        response.to_json.return_value = json.dumps({"jsonrpc": "2.0", "id": 1, "result": None})
        rpc_client._client.get_block = AsyncMock(return_value=response)
        assert await rpc_client.get_block(42) is None

    @pytest.mark.asyncio
    async def test_other_rpc_error_raises_fetch_error(self, rpc_client: SolanaRpcClient) -> None:
        rpc_client._client.get_block = AsyncMock(
            side_effect=RPCException({"code": -32603, "message": "Internal error"})
        )
        with pytest.raises(RpcFetchError) as exc_info:
            await rpc_client.get_block(42)
        assert exc_info.value.slot == 42
        assert exc_info.value.rate_limited is False

    @pytest.mark.asyncio
    async def test_http_429_is_rate_limited(self, rpc_client: SolanaRpcClient) -> None:
        request = httpx.Request("POST", "http://localhost:8899")
        error = httpx.HTTPStatusError(
            "Too Many Requests", request=request, response=httpx.Response(429, request=request)
        )
        rpc_client._client.get_block = AsyncMock(side_effect=error)
        with pytest.raises(RpcFetchError) as exc_info:
            await rpc_client.get_block(42)
        assert exc_info.value.rate_limited is True

    @pytest.mark.asyncio
    async def test_transport_error_raises_fetch_error(self, rpc_client: SolanaRpcClient) -> None:
        rpc_client._client.get_block = AsyncMock(
            side_effect=SolanaRpcException(
                httpx.ConnectError("connection reset"), AsyncClient.get_block
            )
        )
        with pytest.raises(RpcFetchError):
            await rpc_client.get_block(42)

    @pytest.mark.asyncio
    async def test_get_tip_slot(self, rpc_client: SolanaRpcClient) -> None:
        rpc_client._client.get_slot = AsyncMock(return_value=MagicMock(value=123_456))
        assert await rpc_client.get_tip_slot() == 123_456

    @pytest.mark.asyncio
    async def test_connect_unreachable(self, rpc_client: SolanaRpcClient) -> None:
        rpc_client._client.is_connected = AsyncMock(return_value=False)
        with pytest.raises(ConfigurationError):
            await rpc_client.connect()


class TestRateLimitDetection:
    def test_cause_chain_walked(self) -> None:
        request = httpx.Request("POST", "http://localhost:8899")
        cause = httpx.HTTPStatusError(
            "boom", request=request, response=httpx.Response(429, request=request)
        )
        try:
            try:
                raise cause
            except httpx.HTTPStatusError as e:
                raise SolanaRpcException(e, AsyncClient.get_block) from e
        except SolanaRpcException as wrapped:
            assert _is_rate_limited(wrapped) is True

    def test_plain_error(self) -> None:
        assert _is_rate_limited(ValueError("bad request")) is False
