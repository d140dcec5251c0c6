"""Tests for the Omnipair program interface tables.

Discriminator constants below are the ones the deployed program uses.
"""

import pytest

from omnipair_indexer.exceptions import DecodeError
from omnipair_indexer.program.interface import (
    ACCOUNTS,
    EVENT_IX_TAG,
    EVENTS,
    EVENTS_BY_DISCRIMINATOR,
    INSTRUCTIONS,
    INSTRUCTIONS_BY_DISCRIMINATOR,
    account_discriminator,
    decode_account,
    encode_account,
    encode_event,
    encode_event_cpi,
    event_discriminator,
    instruction_discriminator,
    is_companion_program,
)


# ---------------------------------------------------------------------------
# Discriminators
# ---------------------------------------------------------------------------


class TestDiscriminators:
    def test_instruction_uses_snake_case_name(self) -> None:
        assert instruction_discriminator("addCollateral").hex() == "7f52792aa1b0f9ce"
        assert instruction_discriminator("removeLiquidity").hex() == "5055d14818ceb16c"

    def test_event_uses_pascal_case_name(self) -> None:
        assert event_discriminator("swapEvent").hex() == "40c6cde8260871e2"
        assert event_discriminator("userPositionLiquidatedEvent").hex() == "dc89d903f2beeed8"

    def test_account(self) -> None:
        assert account_discriminator("pair").hex() == "554831b0b6e48d52"

    def test_event_cpi_prefix(self) -> None:
        assert EVENT_IX_TAG.hex() == "e445a52e51cb9a1d"
        fields = {
            "user": "11111111111111111111111111111111",
            "pair": "11111111111111111111111111111111",
            "position": "11111111111111111111111111111111",
            "timestamp": 0,
        }
        data = encode_event_cpi("userPositionCreatedEvent", fields)
        assert data[:8] == EVENT_IX_TAG
        assert data[8:] == encode_event("userPositionCreatedEvent", fields)

    def test_tables_are_complete(self) -> None:
        assert len(INSTRUCTIONS) == 17
        assert len(EVENTS) == 13
        assert set(ACCOUNTS) == {"pair", "userPosition", "futarchyAuthority"}

    def test_discriminators_are_unique(self) -> None:
        assert len(INSTRUCTIONS_BY_DISCRIMINATOR) == len(INSTRUCTIONS)
        assert len(EVENTS_BY_DISCRIMINATOR) == len(EVENTS)

    def test_view_instructions_are_read_only(self) -> None:
        read_only = {name for name, spec in INSTRUCTIONS.items() if spec.read_only}
        assert read_only == {"viewPairData", "viewUserPositionData"}


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class TestAccounts:
    def test_user_position_account(self) -> None:
        fields = {
            "owner": "11111111111111111111111111111111",
            "pair": "11111111111111111111111111111111",
            "collateral0_applied_min_cf_bps": 8000,
            "collateral1_applied_min_cf_bps": 0,
            "collateral0": 1_000,
            "collateral1": 0,
            "debt0_shares": 0,
            "debt1_shares": 42,
            "bump": 254,
        }
        assert decode_account(encode_account("userPosition", fields)) == ("userPosition", fields)

    def test_unknown_account_type(self) -> None:
        assert decode_account(b"\x00" * 40) is None

    def test_short_account_body(self) -> None:
        data = account_discriminator("pair") + b"\x00" * 10
        with pytest.raises(DecodeError):
            decode_account(data)


class TestCompanionPrograms:
    def test_token_program_is_companion(self) -> None:
        assert is_companion_program("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")

    def test_program_itself_is_not(self) -> None:
        assert not is_companion_program("3tJrAXnjofAw8oskbMaSo9oMAYuzdBgVbW3TvQLdMEBd")
