"""
Byte stream primitives — fixed-length reads, varuints, length-prefixed blocks.

Varuint encoding (base-128, little-endian):
    each byte carries 7 bits of the value, low bits first
    high bit set (0x80) means another byte follows

    0      -> 00
    127    -> 7f
    128    -> 80 01
    300    -> ac 02

Varbytes: varuint length followed by that many raw bytes.
"""

from __future__ import annotations

import io
from typing import BinaryIO

from tsproof.errors import (
    PayloadTooLargeError,
    PayloadTooSmallError,
    TrailingGarbageError,
    TruncatedStreamError,
)


class StreamSerializationContext:
    """Writes proof primitives to a binary file object."""

    def __init__(self, fd: BinaryIO) -> None:
        self.fd = fd

    def write_bytes(self, value: bytes) -> None:
        self.fd.write(value)

    def write_byte(self, value: int) -> None:
        self.fd.write(bytes([value]))

    def write_varuint(self, value: int) -> None:
        if value < 0:
            raise ValueError(f"varuint must be non-negative, got {value}")
        out = bytearray()
        while True:
            b = value & 0x7F
            value >>= 7
            if value:
                out.append(b | 0x80)
            else:
                out.append(b)
                break
        self.fd.write(bytes(out))

    def write_varbytes(self, value: bytes) -> None:
        self.write_varuint(len(value))
        self.fd.write(value)


class StreamDeserializationContext:
    """Reads proof primitives from a binary file object.

    All reads are exact: a short read raises TruncatedStreamError rather
    than returning fewer bytes.
    """

    def __init__(self, fd: BinaryIO) -> None:
        self.fd = fd

    def read_bytes(self, expected_length: int) -> bytes:
        r = self.fd.read(expected_length)
        if len(r) != expected_length:
            raise TruncatedStreamError(
                f"Tried to read {expected_length} bytes but got only {len(r)} bytes"
            )
        return r

    def read_byte(self) -> int:
        return self.read_bytes(1)[0]

    def read_varuint(self) -> int:
        value = 0
        shift = 0
        while True:
            b = self.read_byte()
            value |= (b & 0x7F) << shift
            if not (b & 0x80):
                break
            shift += 7
        return value

    def read_varbytes(self, max_len: int, min_len: int = 0) -> bytes:
        length = self.read_varuint()
        if length > max_len:
            raise PayloadTooLargeError(f"varbytes max length exceeded; {length} > {max_len}")
        if length < min_len:
            raise PayloadTooSmallError(f"varbytes min length not met; {length} < {min_len}")
        return self.read_bytes(length)

    def assert_eof(self) -> None:
        excess = self.fd.read(1)
        if excess:
            raise TrailingGarbageError("Trailing garbage found after end of deserialized data")


class BytesSerializationContext(StreamSerializationContext):
    """Serialization into an in-memory buffer."""

    def __init__(self) -> None:
        super().__init__(io.BytesIO())

    def getbytes(self) -> bytes:
        return self.fd.getvalue()


class BytesDeserializationContext(StreamDeserializationContext):
    """Deserialization from an in-memory bytes object."""

    def __init__(self, buf: bytes) -> None:
        super().__init__(io.BytesIO(buf))
