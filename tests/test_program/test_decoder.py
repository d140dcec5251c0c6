"""Tests for Decoder: raw transactions to ordered typed records."""

import base64

import pytest

from omnipair_indexer.config import OMNIPAIR_PROGRAM_ID
from omnipair_indexer.models import RecordType
from omnipair_indexer.program.decoder import Decoder, format_error, iter_log_events
from omnipair_indexer.program.interface import event_discriminator

OTHER = "Vote111111111111111111111111111111111111111"


@pytest.fixture
def decoder() -> Decoder:
    return Decoder(OMNIPAIR_PROGRAM_ID)


def _data_line(payload: bytes) -> str:
    return "Program data: " + base64.b64encode(payload).decode()


# ---------------------------------------------------------------------------
# Log parsing
# ---------------------------------------------------------------------------


class TestIterLogEvents:
    def test_attributes_events_to_top_level_instruction(self) -> None:
        logs = [
            f"Program {OTHER} invoke [1]",
            _data_line(b"not ours"),
            f"Program {OTHER} success",
            f"Program {OMNIPAIR_PROGRAM_ID} invoke [1]",
            _data_line(b"first"),
            f"Program {OMNIPAIR_PROGRAM_ID} success",
            f"Program {OMNIPAIR_PROGRAM_ID} invoke [1]",
            _data_line(b"second"),
            f"Program {OMNIPAIR_PROGRAM_ID} success",
        ]
        assert list(iter_log_events(logs, OMNIPAIR_PROGRAM_ID)) == [(1, b"first"), (2, b"second")]

    def test_nested_program_data_is_not_attributed(self) -> None:
        logs = [
            f"Program {OMNIPAIR_PROGRAM_ID} invoke [1]",
            f"Program {OTHER} invoke [2]",
            _data_line(b"inner"),
            f"Program {OTHER} success",
            _data_line(b"outer"),
            f"Program {OMNIPAIR_PROGRAM_ID} success",
        ]
        assert list(iter_log_events(logs, OMNIPAIR_PROGRAM_ID)) == [(0, b"outer")]

    def test_invalid_base64_skipped(self) -> None:
        logs = [
            f"Program {OMNIPAIR_PROGRAM_ID} invoke [1]",
            "Program data: %%%not-base64%%%",
            f"Program {OMNIPAIR_PROGRAM_ID} success",
        ]
        assert list(iter_log_events(logs, OMNIPAIR_PROGRAM_ID)) == []


class TestFormatError:
    def test_none(self) -> None:
        assert format_error(None) is None

    def test_string_passthrough(self) -> None:
        assert format_error("AccountNotFound") == "AccountNotFound"

    def test_structured_error_is_json(self) -> None:
        error = {"InstructionError": [0, {"Custom": 6001}]}
        assert format_error(error) == '{"InstructionError": [0, {"Custom": 6001}]}'


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class TestDecoder:
    def test_instruction_then_log_event(self, decoder, tx_factory, fields, keys) -> None:
        raw = tx_factory.build(
            slot=10,
            instruction="swap",
            args={"amount_in": 10, "min_amount_out": 9},
            events=[("swapEvent", fields.swap())],
        )
        decoded = decoder.decode(raw)

        assert decoded.success is True
        assert decoded.fee_payer == keys.alice
        assert [(r.kind, r.record_index) for r in decoded.records] == [
            ("swap", 0),
            ("swapEvent", 1),
        ]
        instruction, event = decoded.records
        assert instruction.record_type is RecordType.INSTRUCTION
        assert instruction.data == {"amount_in": 10, "min_amount_out": 9}
        assert instruction.accounts["pair"] == keys.pair_a
        assert instruction.accounts["user"] == keys.alice
        assert event.record_type is RecordType.EVENT
        assert event.data["reserve0"] == 1_000
        assert event.pair_address == keys.pair_a
        assert event.owner == keys.alice
        assert decoded.pair_addresses == [keys.pair_a]

    def test_cpi_events_precede_log_events(self, decoder, tx_factory, fields) -> None:
        raw = tx_factory.build(
            slot=10,
            cpi_events=[("updatePairEvent", fields.update_pair())],
            events=[("swapEvent", fields.swap())],
        )
        records = decoder.decode(raw).records
        assert [r.kind for r in records] == ["swap", "updatePairEvent", "swapEvent"]
        assert records[1].inner_index == 0
        assert records[2].inner_index is None
        assert [r.record_index for r in records] == [0, 1, 2]

    def test_unknown_discriminators_dropped(self, decoder, tx_factory) -> None:
        raw = tx_factory.build(slot=10, extra_logs=[_data_line(b"\x00" * 16)])
        assert [r.kind for r in decoder.decode(raw).records] == ["swap"]

    def test_malformed_payload_becomes_record_error(self, decoder, tx_factory, fields) -> None:
        truncated = _data_line(event_discriminator("swapEvent") + b"\x01\x02")
        raw = tx_factory.build(
            slot=10,
            extra_logs=[truncated],
            events=[("mintEvent", fields.mint())],
        )
        decoded = decoder.decode(raw)
        kinds = [r.kind for r in decoded.records]
        assert kinds == ["swap", "mintEvent", "swapEvent"]
        bad = decoded.records[2]
        assert bad.error is not None
        assert bad.data == {}
        assert decoded.decode_errors == 1

    def test_view_calls_are_view_records(self, decoder, tx_factory) -> None:
        raw = tx_factory.build(slot=10, instruction="viewPairData", args={"getter": 2})
        (record,) = decoder.decode(raw).records
        assert record.record_type is RecordType.VIEW
        assert record.data == {"getter": 2}

    def test_failed_transaction_keeps_instruction_drops_events(
        self, decoder, tx_factory, fields
    ) -> None:
        raw = tx_factory.build(
            slot=10,
            events=[("swapEvent", fields.swap())],
            cpi_events=[("swapEvent", fields.swap())],
            error={"InstructionError": [0, {"Custom": 1}]},
        )
        decoded = decoder.decode(raw)
        assert decoded.success is False
        assert decoded.error == '{"InstructionError": [0, {"Custom": 1}]}'
        assert [r.kind for r in decoded.records] == ["swap"]

    def test_companion_program_accounts_omitted(self, decoder, tx_factory) -> None:
        raw = tx_factory.build(slot=10)
        token_slot = raw.instructions[0].accounts[10]  # swap account 10: token_program
        raw.account_keys[token_slot] = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
        (record,) = decoder.decode(raw).records
        assert "token_program" not in record.accounts
        assert "rate_model" in record.accounts

    def test_other_program_instructions_ignored(self, decoder, tx_factory) -> None:
        raw = tx_factory.build(slot=10)
        raw.instructions[0].program_id_index = 0  # now invokes the signer, not the program
        assert decoder.decode(raw).records == []
