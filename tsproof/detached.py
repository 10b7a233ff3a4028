"""
Detached timestamp proof envelope (.ots).

Layout:
    HEADER_MAGIC                  31 bytes, identifies a proof file
    varuint major version         currently 1
    <file hash op tag: 1 byte>    crypto op used to hash the timestamped file
    <file digest>                 digest_length bytes, no length prefix
    <timestamp tree>              over the file digest
    EOF                           nothing may follow

The proof is "detached" because the file itself is not included; only its
digest is, which is the root message of the timestamp tree.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from tsproof.errors import (
    BadMagicError,
    MalformedOperationError,
    MessageMismatchError,
    UnsupportedVersionError,
)
from tsproof.op import CryptOp, op_class_for_tag
from tsproof.serialize import BytesDeserializationContext, BytesSerializationContext
from tsproof.timestamp import Timestamp

if TYPE_CHECKING:
    from tsproof.serialize import StreamDeserializationContext, StreamSerializationContext

# File header magic
HEADER_MAGIC = b"\x00OpenTimestamps\x00\x00Proof\x00\xbf\x89\xe2\xe8\x84\xe8\x92\x94"

MAJOR_VERSION = 1

# Suggested file extension
EXTENSION = ".ots"


class DetachedTimestampFile:
    """A timestamp over the digest of a file that is stored elsewhere.

    Usage:
        dtf = DetachedTimestampFile(OpSHA256(), Timestamp(file_digest))
        blob = dtf.to_bytes()
        same = DetachedTimestampFile.from_bytes(blob)
    """

    def __init__(self, file_hash_op: CryptOp, timestamp: Timestamp) -> None:
        if not isinstance(file_hash_op, CryptOp):
            raise TypeError(f"file_hash_op must be a CryptOp, got {type(file_hash_op).__name__}")
        if len(timestamp.msg) != file_hash_op.digest_length:
            raise MessageMismatchError(
                f"Timestamp message length {len(timestamp.msg)} does not match "
                f"{file_hash_op} digest length {file_hash_op.digest_length}"
            )
        self.file_hash_op = file_hash_op
        self.timestamp = timestamp

    @property
    def file_digest(self) -> bytes:
        """The digest of the file that was timestamped."""
        return self.timestamp.msg

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DetachedTimestampFile):
            return NotImplemented
        return self.file_hash_op == other.file_hash_op and self.timestamp == other.timestamp

    __hash__ = None

    def __repr__(self) -> str:
        return f"DetachedTimestampFile(<{self.file_hash_op}:{self.file_digest.hex()}>)"

    def serialize(self, ctx: StreamSerializationContext) -> None:
        ctx.write_bytes(HEADER_MAGIC)
        ctx.write_varuint(MAJOR_VERSION)
        self.file_hash_op.serialize(ctx)
        ctx.write_bytes(self.timestamp.msg)
        self.timestamp.serialize(ctx)

    @classmethod
    def deserialize(cls, ctx: StreamDeserializationContext) -> DetachedTimestampFile:
        header_magic = ctx.read_bytes(len(HEADER_MAGIC))
        if header_magic != HEADER_MAGIC:
            raise BadMagicError(
                f"Expected header magic {HEADER_MAGIC.hex()}, got {header_magic.hex()}"
            )

        major = ctx.read_varuint()
        if major != MAJOR_VERSION:
            raise UnsupportedVersionError(f"Version {major} detached timestamp files are not supported")

        op_cls = op_class_for_tag(ctx.read_byte())
        if not issubclass(op_cls, CryptOp):
            raise MalformedOperationError(f"File hash op must be a crypto op, got {op_cls.TAG_NAME}")
        file_hash_op = op_cls()

        file_digest = ctx.read_bytes(file_hash_op.digest_length)
        timestamp = Timestamp.deserialize(ctx, file_digest)

        ctx.assert_eof()
        return cls(file_hash_op, timestamp)

    def to_bytes(self) -> bytes:
        ctx = BytesSerializationContext()
        self.serialize(ctx)
        return ctx.getbytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> DetachedTimestampFile:
        return cls.deserialize(BytesDeserializationContext(data))
