"""
Hash provider for the unary crypto operations.

- SHA-1, SHA-256, RIPEMD-160: stdlib hashlib
- Keccak-256: eth_utils.keccak (requires `eth-utils` with an eth-hash backend)

RIPEMD-160 is served by OpenSSL through hashlib and is missing from some
OpenSSL 3 builds; the failure is reported as UnsupportedDigestError when the
digest is first used, not at import time.

The provider is pluggable: register_digest() swaps the function used for a
kind, e.g. to route Keccak-256 through a different backend.
"""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Callable

from tsproof.errors import UnsupportedDigestError


class OpKind(Enum):
    """Every operation kind an edge of a proof tree can carry."""

    SHA1 = "sha1"
    SHA256 = "sha256"
    RIPEMD160 = "ripemd160"
    KECCAK256 = "keccak256"
    REVERSE = "reverse"
    APPEND = "append"
    PREPEND = "prepend"


DIGEST_LENGTHS: dict[OpKind, int] = {
    OpKind.SHA1: 20,
    OpKind.SHA256: 32,
    OpKind.RIPEMD160: 20,
    OpKind.KECCAK256: 32,
}


def _import_keccak() -> Callable[[bytes], bytes]:
    """Lazily import the Keccak-256 implementation.

    Raises ImportError with a helpful message if not installed.
    """
    try:
        from eth_utils import keccak

        return keccak
    except ImportError:
        raise ImportError(
            "eth-utils is required for Keccak-256 operations. "
            "Install with: pip install eth-utils 'eth-hash[pycryptodome]'"
        )


def _sha1(data: bytes) -> bytes:
    return hashlib.sha1(data).digest()


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _ripemd160(data: bytes) -> bytes:
    try:
        h = hashlib.new("ripemd160")
    except ValueError as e:
        raise UnsupportedDigestError(
            "ripemd160 is not available in this Python's OpenSSL build"
        ) from e
    h.update(data)
    return h.digest()


def _keccak256(data: bytes) -> bytes:
    keccak = _import_keccak()
    return bytes(keccak(primitive=data))


_DIGESTS: dict[OpKind, Callable[[bytes], bytes]] = {
    OpKind.SHA1: _sha1,
    OpKind.SHA256: _sha256,
    OpKind.RIPEMD160: _ripemd160,
    OpKind.KECCAK256: _keccak256,
}


def digest(kind: OpKind, data: bytes) -> bytes:
    """Hash data with the function registered for kind."""
    try:
        fn = _DIGESTS[kind]
    except KeyError:
        raise UnsupportedDigestError(f"{kind.value} is not a hash operation") from None
    return fn(data)


def register_digest(kind: OpKind, fn: Callable[[bytes], bytes]) -> Callable[[bytes], bytes]:
    """Install fn as the digest for kind. Returns the function it replaced."""
    if kind not in DIGEST_LENGTHS:
        raise ValueError(f"{kind.value} is not a hash operation")
    previous = _DIGESTS[kind]
    _DIGESTS[kind] = fn
    return previous


def is_available(kind: OpKind) -> bool:
    """True if digest(kind, ...) works in this interpreter."""
    try:
        digest(kind, b"")
    except (ImportError, UnsupportedDigestError):
        return False
    return True
