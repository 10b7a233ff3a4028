"""
Bitcoin attestation resolver — check block header attestations against a node.

A BitcoinBlockHeaderAttestation records only a block height. Verification
looks the header up by height and compares its merkle root with the message
the attestation sits on:

    getblockhash <height>      -> block hash
    getblockheader <hash>      -> {"merkleroot": <hex>, "time": <unix>, ...}

Bitcoin Core reports merkleroot byte-reversed (display order); it is reversed
back before comparing with the digest.

Read-only: no wallet calls, no transaction submission. Zero external
dependencies — uses stdlib urllib.request for Bitcoin JSON-RPC.
"""

from __future__ import annotations

import json
import logging
import os
import re
import urllib.error
import urllib.request
from base64 import b64encode
from typing import Any

from tsproof.errors import VerificationError
from tsproof.notary import BitcoinBlockHeaderAttestation, TimeAttestation
from tsproof.timestamp import Timestamp

log = logging.getLogger(__name__)

# Block hashes and merkle roots from RPC: exactly 64 hex chars
_HASH_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class BitcoinRPCError(Exception):
    """Error communicating with or returned by Bitcoin JSON-RPC."""


class BitcoinRPC:
    """Minimal Bitcoin JSON-RPC client using stdlib urllib.

    Usage:
        rpc = BitcoinRPC.from_env()
        header = rpc.get_block_header(358391)
    """

    def __init__(self, url: str, user: str = "", password: str = "", timeout: float = 30) -> None:
        if not url:
            raise ValueError("Bitcoin RPC URL cannot be empty")
        self.url = url
        self.timeout = timeout
        self._user = user
        self._password = password
        self._id_counter = 0

    @classmethod
    def from_env(cls) -> BitcoinRPC:
        """Create RPC client from environment variables.

        Reads:
            BITCOIN_RPC_URL  — e.g. http://127.0.0.1:8332
            BITCOIN_RPC_USER — RPC username
            BITCOIN_RPC_PASS — RPC password
        """
        url = os.environ.get("BITCOIN_RPC_URL", "")
        if not url:
            raise BitcoinRPCError(
                "BITCOIN_RPC_URL not set. "
                "Set it to your Bitcoin node's RPC endpoint "
                "(e.g. http://127.0.0.1:8332 for mainnet)."
            )
        return cls(
            url,
            os.environ.get("BITCOIN_RPC_USER", ""),
            os.environ.get("BITCOIN_RPC_PASS", ""),
        )

    def _request(self, method: str, params: tuple[Any, ...]) -> urllib.request.Request:
        self._id_counter += 1
        headers = {"Content-Type": "application/json"}
        if self._user or self._password:
            token = b64encode(f"{self._user}:{self._password}".encode()).decode()
            headers["Authorization"] = f"Basic {token}"
        body = {"jsonrpc": "1.0", "id": self._id_counter, "method": method, "params": list(params)}
        return urllib.request.Request(
            self.url, data=json.dumps(body).encode(), headers=headers, method="POST"
        )

    def call(self, method: str, *params: Any) -> Any:
        """Run one JSON-RPC method and return its result.

        Raises BitcoinRPCError on transport failures and on errors reported
        by the node.
        """
        req = self._request(method, params)
        log.debug("RPC %s %r", method, params)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                reply = json.loads(resp.read().decode())
        except urllib.error.HTTPError as e:
            reply = _error_reply(e)
        except urllib.error.URLError as e:
            raise BitcoinRPCError(f"Connection failed: {e.reason}") from e
        except (OSError, ValueError) as e:
            raise BitcoinRPCError(f"RPC call failed: {e}") from e

        if not isinstance(reply, dict):
            raise BitcoinRPCError(f"Malformed reply to {method}")
        error = reply.get("error")
        if error:
            detail = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise BitcoinRPCError(f"RPC error in {method}: {detail}")
        return reply.get("result")

    def get_block_header(self, height: int) -> dict[str, Any]:
        """Fetch the decoded block header at height.

        Returns the getblockheader verbose object; at least "merkleroot"
        (hex, display order) and "time" (unix seconds) are present.
        """
        block_hash = self.call("getblockhash", height)
        if not isinstance(block_hash, str) or not _HASH_RE.match(block_hash):
            raise BitcoinRPCError(f"Invalid block hash for height {height}: {block_hash!r}")
        header = self.call("getblockheader", block_hash, True)
        if not isinstance(header, dict) or "merkleroot" not in header or "time" not in header:
            raise BitcoinRPCError(f"Malformed block header for height {height}")
        return header


def _error_reply(err: urllib.error.HTTPError) -> dict[str, Any]:
    # Bitcoin Core reports RPC failures as HTTP 500 with a JSON reply
    try:
        reply = json.loads(err.read().decode())
    except (ValueError, OSError):
        reply = None
    if not isinstance(reply, dict):
        raise BitcoinRPCError(f"HTTP {err.code}: {err.reason}") from err
    return reply


def _merkle_root_bytes(header: dict[str, Any]) -> bytes:
    """Merkle root from an RPC header, in internal (hashed) byte order."""
    merkle_hex = header["merkleroot"]
    if not isinstance(merkle_hex, str) or not _HASH_RE.match(merkle_hex):
        raise BitcoinRPCError(f"Invalid merkle root in block header: {merkle_hex!r}")
    return bytes.fromhex(merkle_hex)[::-1]


def verify_attestation(attestation: BitcoinBlockHeaderAttestation, digest: bytes, rpc: BitcoinRPC) -> int:
    """Verify a Bitcoin attestation made on digest. Returns the block time.

    Raises VerificationError if the merkle root at the attested height does
    not match, BitcoinRPCError if the header can't be fetched.
    """
    if not isinstance(attestation, BitcoinBlockHeaderAttestation):
        raise TypeError(f"Expected BitcoinBlockHeaderAttestation, got {type(attestation).__name__}")
    header = rpc.get_block_header(attestation.height)
    return attestation.verify_against_blockheader(
        digest, _merkle_root_bytes(header), int(header["time"])
    )


def verify_timestamp(timestamp: Timestamp, rpc: BitcoinRPC) -> dict[TimeAttestation, int]:
    """Verify every Bitcoin attestation on the directly verified nodes.

    Returns {attestation: block_time} for attestations that check out.
    Mismatches are logged and left out; pending and unknown attestations are
    skipped. RPC failures propagate.
    """
    verified: dict[TimeAttestation, int] = {}
    for node in timestamp.directly_verified():
        for attestation in sorted(node.attestations):
            if not isinstance(attestation, BitcoinBlockHeaderAttestation):
                continue
            try:
                verified[attestation] = verify_attestation(attestation, node.msg, rpc)
            except VerificationError as e:
                log.warning("Attestation %r failed verification: %s", attestation, e)
    return verified
