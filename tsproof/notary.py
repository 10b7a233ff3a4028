"""
Attestations — the leaves of a timestamp proof tree.

An attestation claims that the message at its node existed at some point in
time. Block header attestations are the authoritative ones: the message must
equal the merkle root of the block at the recorded height.

Wire form:
    <tag: 8 bytes> <varbytes payload>

    PendingAttestation              83dfe30d2ef90c8e  varbytes(uri)
    BitcoinBlockHeaderAttestation   0588960d73d71901  varuint(height)
    EthereumBlockHeaderAttestation  30fe8087b5c7ead7  varuint(height)
    UnknownAttestation              <any other tag>   raw payload, preserved

Unknown tags are not an error: the attestation round-trips byte-for-byte so
proofs using newer attestation kinds survive a merge or re-serialization.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from tsproof import ATTESTATION_TAG_SIZE, MAX_PAYLOAD_SIZE, MAX_URI_LENGTH
from tsproof.errors import (
    MalformedAttestationError,
    UnknownAttestationTagError,
    VerificationError,
)
from tsproof.serialize import BytesDeserializationContext, BytesSerializationContext

if TYPE_CHECKING:
    from tsproof.serialize import StreamDeserializationContext, StreamSerializationContext

log = logging.getLogger(__name__)

# Calendar URIs are restricted to a conservative character set
ALLOWED_URI_CHARS = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._/:"
)

# 8-byte tag -> TimeAttestation subclass, filled in by @_register_attestation
_ATTESTATIONS_BY_TAG: dict[bytes, type[TimeAttestation]] = {}


def _register_attestation(cls: type[TimeAttestation]) -> type[TimeAttestation]:
    if len(cls.TAG) != ATTESTATION_TAG_SIZE:
        raise ValueError(f"Attestation tag must be {ATTESTATION_TAG_SIZE} bytes")
    _ATTESTATIONS_BY_TAG[cls.TAG] = cls
    return cls


def attestation_class_for_tag(tag: bytes) -> type[TimeAttestation]:
    """Look up the attestation class registered for an 8-byte tag."""
    try:
        return _ATTESTATIONS_BY_TAG[tag]
    except KeyError:
        raise UnknownAttestationTagError(tag) from None


@functools.total_ordering
class TimeAttestation:
    """Base class for time attestations.

    Ordering is by tag, then by the variant's own key (height or payload).
    That order fixes the serialization order of sibling attestations.
    """

    TAG: bytes = b""

    @property
    def tag(self) -> bytes:
        return self.TAG

    def _sort_key(self) -> tuple[bytes, Any]:
        raise NotImplementedError

    def is_primary_anchor(self) -> bool:
        """True for block header attestations (Bitcoin, Ethereum)."""
        return False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TimeAttestation):
            return NotImplemented
        return self._sort_key() == other._sort_key()

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, TimeAttestation):
            return NotImplemented
        mine, theirs = self._sort_key(), other._sort_key()
        if mine[0] != theirs[0]:
            return mine[0] < theirs[0]
        return mine[1] < theirs[1]

    def __hash__(self) -> int:
        return hash(self._sort_key())

    def _serialize_payload(self, ctx: StreamSerializationContext) -> None:
        raise NotImplementedError

    @classmethod
    def _deserialize_payload(cls, ctx: StreamDeserializationContext) -> TimeAttestation:
        raise NotImplementedError

    def serialize(self, ctx: StreamSerializationContext) -> None:
        ctx.write_bytes(self.tag)
        payload_ctx = BytesSerializationContext()
        self._serialize_payload(payload_ctx)
        ctx.write_varbytes(payload_ctx.getbytes())

    @classmethod
    def deserialize(cls, ctx: StreamDeserializationContext) -> TimeAttestation:
        tag = ctx.read_bytes(ATTESTATION_TAG_SIZE)
        serialized_payload = ctx.read_varbytes(MAX_PAYLOAD_SIZE)

        try:
            att_cls = attestation_class_for_tag(tag)
        except UnknownAttestationTagError:
            log.warning("Preserving attestation with unknown tag %s", tag.hex())
            return UnknownAttestation(tag, serialized_payload)

        payload_ctx = BytesDeserializationContext(serialized_payload)
        attestation = att_cls._deserialize_payload(payload_ctx)
        payload_ctx.assert_eof()
        return attestation


def _check_uri(uri: bytes) -> None:
    if len(uri) > MAX_URI_LENGTH:
        raise MalformedAttestationError(
            f"URI exceeds maximum length: {len(uri)} > {MAX_URI_LENGTH}"
        )
    for char in uri:
        if char not in ALLOWED_URI_CHARS:
            raise MalformedAttestationError(f"URI contains invalid character {chr(char)!r}")


@_register_attestation
@dataclass(frozen=True, eq=False)
class PendingAttestation(TimeAttestation):
    """Pending attestation — a calendar at `uri` will complete the proof later.

    Not verifiable on its own; an upgrade replaces it with a block header
    attestation fetched from the calendar.
    """

    uri: str

    TAG = bytes.fromhex("83dfe30d2ef90c8e")

    def __post_init__(self) -> None:
        if not isinstance(self.uri, str):
            raise TypeError(f"uri must be str, got {type(self.uri).__name__}")
        try:
            encoded = self.uri.encode("ascii")
        except UnicodeEncodeError as e:
            raise MalformedAttestationError(f"URI must be ASCII: {self.uri!r}") from e
        _check_uri(encoded)

    def _sort_key(self) -> tuple[bytes, bytes]:
        return (self.TAG, self.uri.encode("ascii"))

    def _serialize_payload(self, ctx: StreamSerializationContext) -> None:
        ctx.write_varbytes(self.uri.encode("ascii"))

    @classmethod
    def _deserialize_payload(cls, ctx: StreamDeserializationContext) -> PendingAttestation:
        uri = ctx.read_varbytes(MAX_URI_LENGTH)
        _check_uri(uri)
        return cls(uri.decode("ascii"))


class _BlockHeaderAttestation(TimeAttestation):
    """Shared behaviour of attestations that commit to a block by height."""

    height: int

    def __post_init__(self) -> None:
        if isinstance(self.height, bool) or not isinstance(self.height, int):
            raise TypeError(f"height must be int, got {type(self.height).__name__}")
        if self.height < 0:
            raise MalformedAttestationError(f"height must be non-negative, got {self.height}")

    def is_primary_anchor(self) -> bool:
        return True

    def _sort_key(self) -> tuple[bytes, int]:
        return (self.TAG, self.height)

    def _serialize_payload(self, ctx: StreamSerializationContext) -> None:
        ctx.write_varuint(self.height)

    @classmethod
    def _deserialize_payload(cls, ctx: StreamDeserializationContext) -> TimeAttestation:
        return cls(ctx.read_varuint())


@_register_attestation
@dataclass(frozen=True, eq=False)
class BitcoinBlockHeaderAttestation(_BlockHeaderAttestation):
    """Bitcoin block header attestation.

    The commitment is the merkle root of the block header at `height`.
    Only the height is recorded: a verifier looks the header up in a
    by-height index, checks the merkle root matches, and takes the time
    from the header itself.
    """

    height: int

    TAG = bytes.fromhex("0588960d73d71901")

    def verify_against_blockheader(self, digest: bytes, merkle_root: bytes, block_time: int) -> int:
        """Check digest against a block header's merkle root.

        merkle_root is in internal byte order (as hashed), not the reversed
        hex shown by block explorers. Returns block_time on success.

        Raises VerificationError on mismatch.
        """
        if len(digest) != 32:
            raise VerificationError(f"Expected digest with length 32 bytes; got {len(digest)} bytes")
        if digest != merkle_root:
            raise VerificationError(
                f"Digest does not match merkle root at height {self.height} "
                f"(expected {merkle_root.hex()}, got {digest.hex()})"
            )
        return block_time


@_register_attestation
@dataclass(frozen=True, eq=False)
class EthereumBlockHeaderAttestation(_BlockHeaderAttestation):
    """Ethereum block header attestation, committing by block height."""

    height: int

    TAG = bytes.fromhex("30fe8087b5c7ead7")


@dataclass(frozen=True, eq=False)
class UnknownAttestation(TimeAttestation):
    """Attestation with a tag this library does not understand.

    The raw payload is kept so the attestation serializes back unchanged.
    """

    unknown_tag: bytes
    payload: bytes

    def __post_init__(self) -> None:
        if len(self.unknown_tag) != ATTESTATION_TAG_SIZE:
            raise MalformedAttestationError(
                f"Attestation tag must be {ATTESTATION_TAG_SIZE} bytes, got {len(self.unknown_tag)}"
            )
        if self.unknown_tag in _ATTESTATIONS_BY_TAG:
            raise MalformedAttestationError(
                f"Tag {self.unknown_tag.hex()} belongs to "
                f"{_ATTESTATIONS_BY_TAG[self.unknown_tag].__name__}"
            )
        if len(self.payload) > MAX_PAYLOAD_SIZE:
            raise MalformedAttestationError(
                f"Attestation payload too large: {len(self.payload)} > {MAX_PAYLOAD_SIZE}"
            )

    @property
    def tag(self) -> bytes:
        return self.unknown_tag

    def _sort_key(self) -> tuple[bytes, bytes]:
        return (self.unknown_tag, self.payload)

    def _serialize_payload(self, ctx: StreamSerializationContext) -> None:
        ctx.write_bytes(self.payload)
