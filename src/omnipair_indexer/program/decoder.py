"""Raw transaction -> ordered typed records.

Records are attributed to the top-level instruction that produced them and
numbered in execution order inside it:

    record 0       the top-level Omnipair instruction (if the program was invoked directly)
    record 1..n    inner Omnipair instructions and emit_cpi events, in inner order
    record n+1..   events from "Program data:" log lines emitted by the program

Unknown discriminators are dropped. A known discriminator with a bad payload
yields a record with `error` set so the rest of the transaction still decodes.
"""

import base64
import binascii
import json
import re
from collections import defaultdict
from typing import Iterator

from omnipair_indexer.config import OMNIPAIR_PROGRAM_ID
from omnipair_indexer.exceptions import DecodeError
from omnipair_indexer.logging import get_logger
from omnipair_indexer.models import (
    DecodedRecord,
    DecodedTransaction,
    RawInstruction,
    RawTransaction,
    RecordType,
)
from omnipair_indexer.program.interface import (
    DISCRIMINATOR_SIZE,
    EVENT_IX_TAG,
    EVENTS_BY_DISCRIMINATOR,
    INSTRUCTIONS_BY_DISCRIMINATOR,
    is_companion_program,
)

logger = get_logger(__name__)

_INVOKE_RE = re.compile(r"^Program (\w+) invoke \[(\d+)\]$")
_EXIT_RE = re.compile(r"^Program (\w+) (success|failed)")
_DATA_PREFIX = "Program data: "


def iter_log_events(log_messages: list[str], program_id: str) -> Iterator[tuple[int, bytes]]:
    """Yield (top_level_instruction_index, payload) for each event the program logged.

    Reconstructs the invocation stack from invoke/success/failed lines so that
    only "Program data:" lines written while `program_id` is executing count.
    """
    stack: list[str] = []
    top_level = -1
    for line in log_messages:
        invoke = _INVOKE_RE.match(line)
        if invoke:
            if invoke.group(2) == "1":
                top_level += 1
                stack.clear()
            stack.append(invoke.group(1))
            continue
        if _EXIT_RE.match(line):
            if stack:
                stack.pop()
            continue
        if line.startswith(_DATA_PREFIX) and stack and stack[-1] == program_id:
            try:
                payload = base64.b64decode(line[len(_DATA_PREFIX) :], validate=True)
            except binascii.Error:
                continue
            yield top_level, payload


def format_error(error: object) -> str | None:
    if error is None:
        return None
    if isinstance(error, str):
        return error
    return json.dumps(error, sort_keys=True)


class Decoder:
    """Decodes Omnipair instructions and events out of raw transactions."""

    def __init__(self, program_id: str = OMNIPAIR_PROGRAM_ID) -> None:
        self._program_id = program_id

    @property
    def program_id(self) -> str:
        return self._program_id

    def decode(self, tx: RawTransaction) -> DecodedTransaction:
        log_events: dict[int, list[bytes]] = defaultdict(list)
        # Events of a reverted transaction describe state that was rolled back.
        if tx.success:
            for index, payload in iter_log_events(tx.log_messages, self._program_id):
                log_events[index].append(payload)

        records: list[DecodedRecord] = []
        for index, instruction in enumerate(tx.instructions):
            counter = 0
            if self._is_program(tx, instruction):
                record = self._decode_instruction(tx, instruction, index, counter, None)
                if record is not None:
                    records.append(record)
                    counter += 1

            for inner_index, inner in enumerate(tx.inner_instructions.get(index, [])):
                if not self._is_program(tx, inner):
                    continue
                if inner.data[: len(EVENT_IX_TAG)] == EVENT_IX_TAG:
                    if not tx.success:
                        continue
                    record = self._decode_event(
                        inner.data[len(EVENT_IX_TAG) :], index, counter, inner_index
                    )
                else:
                    record = self._decode_instruction(tx, inner, index, counter, inner_index)
                if record is not None:
                    records.append(record)
                    counter += 1

            for payload in log_events.get(index, []):
                record = self._decode_event(payload, index, counter, None)
                if record is not None:
                    records.append(record)
                    counter += 1

        return DecodedTransaction(
            signature=tx.signature,
            slot=tx.slot,
            tx_index=tx.tx_index,
            block_time=tx.block_time,
            fee_payer=tx.fee_payer,
            success=tx.success,
            error=format_error(tx.error),
            records=records,
        )

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    def _is_program(self, tx: RawTransaction, instruction: RawInstruction) -> bool:
        index = instruction.program_id_index
        return 0 <= index < len(tx.account_keys) and tx.account_keys[index] == self._program_id

    def _decode_instruction(
        self,
        tx: RawTransaction,
        instruction: RawInstruction,
        instruction_index: int,
        record_index: int,
        inner_index: int | None,
    ) -> DecodedRecord | None:
        spec = INSTRUCTIONS_BY_DISCRIMINATOR.get(bytes(instruction.data[:DISCRIMINATOR_SIZE]))
        if spec is None:
            return None

        accounts: dict[str, str] = {}
        for name, key_index in zip(spec.accounts, instruction.accounts):
            if not 0 <= key_index < len(tx.account_keys):
                continue
            address = tx.account_keys[key_index]
            if is_companion_program(address):
                continue
            accounts[name] = address

        record = DecodedRecord(
            record_type=RecordType.VIEW if spec.read_only else RecordType.INSTRUCTION,
            kind=spec.name,
            instruction_index=instruction_index,
            record_index=record_index,
            accounts=accounts,
            inner_index=inner_index,
        )
        try:
            record.data = spec.args.decode(bytes(instruction.data[DISCRIMINATOR_SIZE:]))
        except DecodeError as e:
            record.error = str(e)
            logger.warning(
                "instruction_decode_failed",
                signature=tx.signature,
                kind=spec.name,
                instruction_index=instruction_index,
                error=str(e),
            )
        return record

    def _decode_event(
        self,
        payload: bytes,
        instruction_index: int,
        record_index: int,
        inner_index: int | None,
    ) -> DecodedRecord | None:
        spec = EVENTS_BY_DISCRIMINATOR.get(bytes(payload[:DISCRIMINATOR_SIZE]))
        if spec is None:
            return None

        record = DecodedRecord(
            record_type=RecordType.EVENT,
            kind=spec.name,
            instruction_index=instruction_index,
            record_index=record_index,
            inner_index=inner_index,
        )
        try:
            record.data = spec.layout.decode(bytes(payload[DISCRIMINATOR_SIZE:]))
        except DecodeError as e:
            record.error = str(e)
            logger.warning(
                "event_decode_failed",
                kind=spec.name,
                instruction_index=instruction_index,
                error=str(e),
            )
        return record
