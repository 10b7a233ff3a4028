"""
Operations — the edges of a timestamp proof tree.

Each operation is a pure, deterministic transform of a message. Unary crypto
ops hash the message; binary ops concatenate a fixed argument onto it.

Wire form:
    <tag: 1 byte>                      unary ops (sha1, sha256, ...)
    <tag: 1 byte> <varbytes argument>  binary ops (append, prepend)

Ordering is by tag byte, then by argument bytes. Sibling ops are serialized in
that order, which is what makes the tree encoding canonical.
"""

from __future__ import annotations

import functools
from typing import TYPE_CHECKING

from tsproof import MAX_RESULT_LENGTH
from tsproof import hashes
from tsproof.errors import (
    MalformedOperationError,
    PayloadTooLargeError,
    PayloadTooSmallError,
    UnknownOperationTagError,
)
from tsproof.hashes import OpKind

if TYPE_CHECKING:
    from tsproof.serialize import StreamDeserializationContext, StreamSerializationContext


# tag byte -> Op subclass, filled in by @_register_op
_OPS_BY_TAG: dict[int, type[Op]] = {}


def _register_op(cls: type[Op]) -> type[Op]:
    if cls.TAG in _OPS_BY_TAG:
        raise ValueError(f"Duplicate operation tag 0x{cls.TAG:02x}")
    _OPS_BY_TAG[cls.TAG] = cls
    return cls


@functools.total_ordering
class Op:
    """Base class for all operations.

    Subclasses set TAG (wire byte), TAG_NAME (display name) and KIND.
    Instances are immutable and hashable, so they can key a mapping.
    """

    __slots__ = ()

    TAG: int
    TAG_NAME: str
    KIND: OpKind

    def apply(self, msg: bytes) -> bytes:
        raise NotImplementedError

    def __call__(self, msg: bytes) -> bytes:
        return self.apply(msg)

    def _sort_key(self) -> tuple[int, bytes]:
        return (self.TAG, b"")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Op):
            return NotImplemented
        return self._sort_key() == other._sort_key()

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Op):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __hash__(self) -> int:
        return hash(self._sort_key())

    def serialize(self, ctx: StreamSerializationContext) -> None:
        ctx.write_byte(self.TAG)

    @classmethod
    def deserialize_from_tag(cls, ctx: StreamDeserializationContext, tag: int) -> Op:
        """Read the tag-specific payload and build the operation."""
        return op_class_for_tag(tag)._deserialize_payload(ctx)

    @classmethod
    def deserialize(cls, ctx: StreamDeserializationContext) -> Op:
        return cls.deserialize_from_tag(ctx, ctx.read_byte())

    @classmethod
    def _deserialize_payload(cls, ctx: StreamDeserializationContext) -> Op:
        raise NotImplementedError


class UnaryOp(Op):
    """Operation acting on the message alone."""

    __slots__ = ()

    @classmethod
    def _deserialize_payload(cls, ctx: StreamDeserializationContext) -> Op:
        return cls()

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def __str__(self) -> str:
        return self.TAG_NAME


class BinaryOp(Op):
    """Operation acting on the message and a fixed, non-empty argument."""

    __slots__ = ("_arg",)

    def __init__(self, arg: bytes) -> None:
        if not isinstance(arg, (bytes, bytearray)):
            raise TypeError(f"Op argument must be bytes, got {type(arg).__name__}")
        if len(arg) == 0:
            raise MalformedOperationError(f"{self.TAG_NAME} argument must not be empty")
        if len(arg) > MAX_RESULT_LENGTH:
            raise MalformedOperationError(
                f"{self.TAG_NAME} argument too long: {len(arg)} > {MAX_RESULT_LENGTH}"
            )
        object.__setattr__(self, "_arg", bytes(arg))

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    @property
    def arg(self) -> bytes:
        return self._arg

    def _sort_key(self) -> tuple[int, bytes]:
        return (self.TAG, self._arg)

    def serialize(self, ctx: StreamSerializationContext) -> None:
        super().serialize(ctx)
        ctx.write_varbytes(self._arg)

    @classmethod
    def _deserialize_payload(cls, ctx: StreamDeserializationContext) -> Op:
        try:
            arg = ctx.read_varbytes(MAX_RESULT_LENGTH, 1)
        except (PayloadTooLargeError, PayloadTooSmallError) as e:
            raise MalformedOperationError(f"Bad {cls.TAG_NAME} argument: {e}") from e
        return cls(arg)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._arg!r})"

    def __str__(self) -> str:
        return f"{self.TAG_NAME} {self._arg.hex()}"


@_register_op
class OpAppend(BinaryOp):
    """Append a suffix to the message."""

    __slots__ = ()
    TAG = 0xF0
    TAG_NAME = "append"
    KIND = OpKind.APPEND

    def apply(self, msg: bytes) -> bytes:
        return msg + self._arg


@_register_op
class OpPrepend(BinaryOp):
    """Prepend a prefix to the message."""

    __slots__ = ()
    TAG = 0xF1
    TAG_NAME = "prepend"
    KIND = OpKind.PREPEND

    def apply(self, msg: bytes) -> bytes:
        return self._arg + msg


@_register_op
class OpReverse(UnaryOp):
    __slots__ = ()
    TAG = 0xF2
    TAG_NAME = "reverse"
    KIND = OpKind.REVERSE

    def apply(self, msg: bytes) -> bytes:
        return msg[::-1]


class CryptOp(UnaryOp):
    """Cryptographic hash operation; the result is the digest of the message."""

    __slots__ = ()

    @property
    def digest_length(self) -> int:
        return hashes.DIGEST_LENGTHS[self.KIND]

    def apply(self, msg: bytes) -> bytes:
        return hashes.digest(self.KIND, msg)


@_register_op
class OpSHA1(CryptOp):
    # SHA-1 is broken for collision resistance; kept for existing proofs only.
    __slots__ = ()
    TAG = 0x02
    TAG_NAME = "sha1"
    KIND = OpKind.SHA1


@_register_op
class OpRIPEMD160(CryptOp):
    __slots__ = ()
    TAG = 0x03
    TAG_NAME = "ripemd160"
    KIND = OpKind.RIPEMD160


@_register_op
class OpSHA256(CryptOp):
    __slots__ = ()
    TAG = 0x08
    TAG_NAME = "sha256"
    KIND = OpKind.SHA256


@_register_op
class OpKECCAK256(CryptOp):
    __slots__ = ()
    TAG = 0x67
    TAG_NAME = "keccak256"
    KIND = OpKind.KECCAK256


def op_class_for_tag(tag: int) -> type[Op]:
    """Look up the operation class registered for a tag byte."""
    try:
        return _OPS_BY_TAG[tag]
    except KeyError:
        raise UnknownOperationTagError(tag) from None
