"""
Exception hierarchy for timestamp proofs.

    ProofError
    ├── WireFormatError          — malformed bytes on the wire
    │   ├── TruncatedStreamError
    │   ├── PayloadTooLargeError / PayloadTooSmallError
    │   ├── TrailingGarbageError
    │   ├── UnknownOperationTagError / MalformedOperationError
    │   ├── UnknownAttestationTagError / MalformedAttestationError
    │   └── BadMagicError / UnsupportedVersionError
    ├── DeserializationError     — wire error inside a tree, with op path
    │   └── ProofTooDeepError
    ├── MessageMismatchError
    ├── EmptyProofError / AmbiguousShrinkError
    └── VerificationError / UnsupportedDigestError
"""

from __future__ import annotations


class ProofError(Exception):
    """Base class for all timestamp proof errors."""


class WireFormatError(ProofError):
    """Bytes on the wire do not follow the proof format."""


class TruncatedStreamError(WireFormatError):
    """Stream ended before the expected number of bytes."""


class PayloadTooLargeError(WireFormatError):
    """Length-prefixed field longer than allowed."""


class PayloadTooSmallError(WireFormatError):
    """Length-prefixed field shorter than allowed."""


class TrailingGarbageError(WireFormatError):
    """Bytes left over after a complete structure was read."""


class UnknownOperationTagError(WireFormatError):
    """Operation tag byte not recognised."""

    def __init__(self, tag: int) -> None:
        super().__init__(f"Unknown operation tag: 0x{tag:02x}")
        self.tag = tag


class MalformedOperationError(WireFormatError, ValueError):
    """Operation argument or result violates the length limits."""


class UnknownAttestationTagError(WireFormatError):
    """Attestation tag not recognised (preserved as UnknownAttestation)."""

    def __init__(self, tag: bytes) -> None:
        super().__init__(f"Unknown attestation tag: {tag.hex()}")
        self.tag = tag


class MalformedAttestationError(WireFormatError, ValueError):
    """Attestation payload is invalid for its variant."""


class BadMagicError(WireFormatError):
    """Detached proof file does not start with the expected header magic."""


class UnsupportedVersionError(WireFormatError):
    """Detached proof file major version is not supported."""


class DeserializationError(ProofError):
    """A wire error was hit while parsing a timestamp tree.

    Attributes:
        path: Operations from the root to the node where parsing failed.
    """

    def __init__(self, message: str, path: tuple = ()) -> None:
        if path:
            message = f"{message} (at {' -> '.join(str(op) for op in path)})"
        super().__init__(message)
        self.path = tuple(path)


class ProofTooDeepError(DeserializationError):
    """Timestamp tree nests more operations than the configured maximum."""


class MessageMismatchError(ProofError, ValueError):
    """Attempt to merge timestamps over different messages."""


class EmptyProofError(ProofError):
    """Timestamp has no attestations where at least one is required."""


class AmbiguousShrinkError(ProofError):
    """No block-header attestation to choose a minimal path from."""


class VerificationError(ProofError):
    """Attestation does not match the external commitment."""


class UnsupportedDigestError(ProofError):
    """Hash function not available in this interpreter."""
