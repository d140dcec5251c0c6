"""Omnipair program binding -- Borsh layouts, Anchor discriminators and the transaction decoder."""

from omnipair_indexer.program.decoder import Decoder
from omnipair_indexer.program.interface import (
    ACCOUNTS,
    EVENTS,
    INSTRUCTIONS,
    decode_account,
    encode_event,
    encode_instruction,
)

__all__ = [
    "ACCOUNTS",
    "Decoder",
    "EVENTS",
    "INSTRUCTIONS",
    "decode_account",
    "encode_event",
    "encode_instruction",
]
