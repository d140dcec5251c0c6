"""Borsh primitives for the Omnipair program layouts.

Only the subset the program uses: little-endian integers, bool, 32-byte public
keys, fixed 32-byte arrays, length-prefixed byte vectors and nested structs.
Pubkeys are rendered as base58 strings, byte arrays as hex.
"""

import struct
from dataclasses import dataclass
from typing import Any, Union

from solders.pubkey import Pubkey

from omnipair_indexer.exceptions import DecodeError

_INT_FORMATS = {
    "u8": "<B",
    "u16": "<H",
    "u32": "<I",
    "u64": "<Q",
    "i64": "<q",
}


class BorshReader:
    """Sequential reader over a byte buffer; raises DecodeError on underflow."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def read_bytes(self, size: int) -> bytes:
        if size > self.remaining:
            raise DecodeError(
                f"need {size} bytes at offset {self._offset}, have {self.remaining}"
            )
        chunk = self._data[self._offset : self._offset + size]
        self._offset += size
        return chunk

    def read(self, kind: str) -> Any:
        if kind in _INT_FORMATS:
            fmt = _INT_FORMATS[kind]
            return struct.unpack(fmt, self.read_bytes(struct.calcsize(fmt)))[0]
        if kind == "u128":
            return int.from_bytes(self.read_bytes(16), "little")
        if kind == "bool":
            value = self.read_bytes(1)[0]
            if value > 1:
                raise DecodeError(f"invalid bool byte {value}")
            return value == 1
        if kind == "pubkey":
            return str(Pubkey.from_bytes(self.read_bytes(32)))
        if kind == "bytes32":
            return self.read_bytes(32).hex()
        if kind == "bytes":
            (length,) = struct.unpack("<I", self.read_bytes(4))
            return self.read_bytes(length).hex()
        raise DecodeError(f"unknown borsh type {kind!r}")


def _write(kind: str, value: Any) -> bytes:
    if kind in _INT_FORMATS:
        return struct.pack(_INT_FORMATS[kind], value)
    if kind == "u128":
        return int(value).to_bytes(16, "little")
    if kind == "bool":
        return b"\x01" if value else b"\x00"
    if kind == "pubkey":
        return bytes(Pubkey.from_string(value))
    if kind == "bytes32":
        raw = bytes.fromhex(value)
        if len(raw) != 32:
            raise ValueError(f"bytes32 value has {len(raw)} bytes")
        return raw
    if kind == "bytes":
        raw = bytes.fromhex(value)
        return struct.pack("<I", len(raw)) + raw
    raise ValueError(f"unknown borsh type {kind!r}")


FieldType = Union[str, "Struct"]


@dataclass(frozen=True)
class Struct:
    """An ordered Borsh struct layout: ((field_name, field_type), ...)."""

    fields: tuple[tuple[str, FieldType], ...]

    def read(self, reader: BorshReader) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for name, kind in self.fields:
            if isinstance(kind, Struct):
                result[name] = kind.read(reader)
            else:
                result[name] = reader.read(kind)
        return result

    def decode(self, data: bytes) -> dict[str, Any]:
        """Decode a full payload. Trailing bytes are tolerated (forward-compatible layouts)."""
        return self.read(BorshReader(data))

    def encode(self, value: dict[str, Any]) -> bytes:
        parts: list[bytes] = []
        for name, kind in self.fields:
            if name not in value:
                raise ValueError(f"missing field {name!r}")
            if isinstance(kind, Struct):
                parts.append(kind.encode(value[name]))
            else:
                parts.append(_write(kind, value[name]))
        return b"".join(parts)


EMPTY = Struct(())
