"""
Tests for the Bitcoin attestation resolver — bitcoin.py.

All tests use mock RPC — no Bitcoin node required.
"""

from __future__ import annotations

import hashlib
import io
import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from tsproof.bitcoin import (
    BitcoinRPC,
    BitcoinRPCError,
    verify_attestation,
    verify_timestamp,
)
from tsproof.errors import VerificationError
from tsproof.notary import (
    BitcoinBlockHeaderAttestation,
    EthereumBlockHeaderAttestation,
    PendingAttestation,
)
from tsproof.op import OpSHA256
from tsproof.timestamp import Timestamp

BLOCK_HASH = "00000000000000000" + "a" * 47
BLOCK_TIME = 1432827678


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def merkle_root():
    """A merkle root in internal byte order."""
    return hashlib.sha256(b"block 358391").digest()


@pytest.fixture
def header(merkle_root):
    """getblockheader verbose result; merkleroot in display (reversed) order."""
    return {
        "hash": BLOCK_HASH,
        "height": 358391,
        "merkleroot": merkle_root[::-1].hex(),
        "time": BLOCK_TIME,
    }


@pytest.fixture
def mock_rpc(header):
    """A mock BitcoinRPC that returns the same header for any height."""
    rpc = MagicMock(spec=BitcoinRPC)
    rpc.url = "http://127.0.0.1:8332"
    rpc.get_block_header.return_value = header
    return rpc


def _urlopen_returning(body: dict) -> MagicMock:
    resp = MagicMock()
    resp.read.return_value = json.dumps(body).encode()
    opener = MagicMock()
    opener.return_value.__enter__.return_value = resp
    return opener


# ---------------------------------------------------------------------------
# TestBitcoinRPC
# ---------------------------------------------------------------------------

class TestBitcoinRPC:
    """Tests for BitcoinRPC configuration and JSON-RPC transport."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BITCOIN_RPC_URL", "http://localhost:8332")
        monkeypatch.setenv("BITCOIN_RPC_USER", "testuser")
        monkeypatch.setenv("BITCOIN_RPC_PASS", "testpass")
        rpc = BitcoinRPC.from_env()
        assert rpc.url == "http://localhost:8332"

    def test_from_env_missing_url(self, monkeypatch):
        monkeypatch.delenv("BITCOIN_RPC_URL", raising=False)
        with pytest.raises(BitcoinRPCError, match="BITCOIN_RPC_URL not set"):
            BitcoinRPC.from_env()

    def test_empty_url_raises(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            BitcoinRPC("")

    def test_call_result(self):
        rpc = BitcoinRPC("http://127.0.0.1:8332", "user", "pass")
        opener = _urlopen_returning({"result": 358391, "error": None, "id": 1})
        with patch("tsproof.bitcoin.urllib.request.urlopen", opener):
            assert rpc.call("getblockcount") == 358391

        req = opener.call_args[0][0]
        sent = json.loads(req.data.decode())
        assert sent["method"] == "getblockcount"
        assert sent["params"] == []
        assert req.get_header("Authorization").startswith("Basic ")

    def test_call_rpc_error(self):
        rpc = BitcoinRPC("http://127.0.0.1:8332")
        opener = _urlopen_returning({"result": None, "error": {"code": -8, "message": "Block height out of range"}})
        with patch("tsproof.bitcoin.urllib.request.urlopen", opener):
            with pytest.raises(BitcoinRPCError, match="Block height out of range"):
                rpc.call("getblockhash", 10**9)

    def test_call_connection_failure(self):
        rpc = BitcoinRPC("http://127.0.0.1:8332")
        opener = MagicMock(side_effect=urllib.error.URLError("Connection refused"))
        with patch("tsproof.bitcoin.urllib.request.urlopen", opener):
            with pytest.raises(BitcoinRPCError, match="Connection failed"):
                rpc.call("getblockcount")

    def test_call_http_500_with_json_error(self):
        rpc = BitcoinRPC("http://127.0.0.1:8332")
        body = json.dumps({"result": None, "error": {"code": -5, "message": "Block not found"}})
        err = urllib.error.HTTPError(
            rpc.url, 500, "Internal Server Error", {}, io.BytesIO(body.encode())
        )
        with patch("tsproof.bitcoin.urllib.request.urlopen", MagicMock(side_effect=err)):
            with pytest.raises(BitcoinRPCError, match="getblockheader: Block not found"):
                rpc.call("getblockheader", BLOCK_HASH, True)

    def test_call_http_error_without_json(self):
        rpc = BitcoinRPC("http://127.0.0.1:8332")
        err = urllib.error.HTTPError(rpc.url, 401, "Unauthorized", {}, io.BytesIO(b""))
        with patch("tsproof.bitcoin.urllib.request.urlopen", MagicMock(side_effect=err)):
            with pytest.raises(BitcoinRPCError, match="HTTP 401"):
                rpc.call("getblockcount")

    def test_call_non_object_reply(self):
        rpc = BitcoinRPC("http://127.0.0.1:8332")
        opener = MagicMock()
        opener.return_value.__enter__.return_value.read.return_value = b"[1, 2]"
        with patch("tsproof.bitcoin.urllib.request.urlopen", opener):
            with pytest.raises(BitcoinRPCError, match="Malformed reply"):
                rpc.call("getblockcount")

    def test_get_block_header(self, header):
        rpc = BitcoinRPC("http://127.0.0.1:8332")
        with patch.object(rpc, "call", side_effect=[BLOCK_HASH, header]) as call:
            assert rpc.get_block_header(358391) == header
        assert call.call_args_list[0][0] == ("getblockhash", 358391)
        assert call.call_args_list[1][0] == ("getblockheader", BLOCK_HASH, True)

    def test_get_block_header_bad_hash(self):
        rpc = BitcoinRPC("http://127.0.0.1:8332")
        with patch.object(rpc, "call", return_value="not-a-hash"):
            with pytest.raises(BitcoinRPCError, match="Invalid block hash"):
                rpc.get_block_header(1)

    def test_get_block_header_malformed(self):
        rpc = BitcoinRPC("http://127.0.0.1:8332")
        with patch.object(rpc, "call", side_effect=[BLOCK_HASH, {"time": 1}]):
            with pytest.raises(BitcoinRPCError, match="Malformed block header"):
                rpc.get_block_header(1)


# ---------------------------------------------------------------------------
# TestVerifyAttestation
# ---------------------------------------------------------------------------

class TestVerifyAttestation:
    """Digest must equal the merkle root at the attested height."""

    def test_valid(self, mock_rpc, merkle_root):
        attestation = BitcoinBlockHeaderAttestation(358391)
        assert verify_attestation(attestation, merkle_root, mock_rpc) == BLOCK_TIME
        mock_rpc.get_block_header.assert_called_once_with(358391)

    def test_display_order_not_accepted(self, mock_rpc, merkle_root):
        """The reversed (explorer) byte order is not the committed digest."""
        attestation = BitcoinBlockHeaderAttestation(358391)
        with pytest.raises(VerificationError):
            verify_attestation(attestation, merkle_root[::-1], mock_rpc)

    def test_mismatch(self, mock_rpc):
        attestation = BitcoinBlockHeaderAttestation(358391)
        with pytest.raises(VerificationError, match="does not match"):
            verify_attestation(attestation, b"\x00" * 32, mock_rpc)

    def test_wrong_type(self, mock_rpc, merkle_root):
        with pytest.raises(TypeError):
            verify_attestation(EthereumBlockHeaderAttestation(1), merkle_root, mock_rpc)

    def test_bad_merkle_root_from_node(self, mock_rpc, merkle_root, header):
        mock_rpc.get_block_header.return_value = dict(header, merkleroot="zz")
        with pytest.raises(BitcoinRPCError, match="Invalid merkle root"):
            verify_attestation(BitcoinBlockHeaderAttestation(1), merkle_root, mock_rpc)

    def test_rpc_failure_propagates(self, mock_rpc, merkle_root):
        mock_rpc.get_block_header.side_effect = BitcoinRPCError("Connection refused")
        with pytest.raises(BitcoinRPCError):
            verify_attestation(BitcoinBlockHeaderAttestation(1), merkle_root, mock_rpc)


# ---------------------------------------------------------------------------
# TestVerifyTimestamp
# ---------------------------------------------------------------------------

class TestVerifyTimestamp:
    """Walk directly verified nodes and check each Bitcoin attestation."""

    def test_verified(self, mock_rpc, merkle_root):
        stamp = Timestamp(merkle_root)
        stamp.attestations.add(BitcoinBlockHeaderAttestation(358391))
        stamp.attestations.add(PendingAttestation("https://alice.example.org"))
        result = verify_timestamp(stamp, mock_rpc)
        assert result == {BitcoinBlockHeaderAttestation(358391): BLOCK_TIME}

    def test_nested_node(self, mock_rpc, header):
        """The attestation sits below an op; its node message is what's checked."""
        stamp = Timestamp(b"document digest")
        leaf = stamp.ops.add(OpSHA256())
        leaf.attestations.add(BitcoinBlockHeaderAttestation(358391))
        mock_rpc.get_block_header.return_value = dict(header, merkleroot=leaf.msg[::-1].hex())
        assert verify_timestamp(stamp, mock_rpc) == {BitcoinBlockHeaderAttestation(358391): BLOCK_TIME}

    def test_mismatch_left_out(self, mock_rpc):
        stamp = Timestamp(b"\x00" * 32)
        stamp.attestations.add(BitcoinBlockHeaderAttestation(358391))
        assert verify_timestamp(stamp, mock_rpc) == {}

    def test_pending_only(self, mock_rpc):
        stamp = Timestamp(b"\x00" * 32)
        stamp.attestations.add(PendingAttestation("https://alice.example.org"))
        assert verify_timestamp(stamp, mock_rpc) == {}
        mock_rpc.get_block_header.assert_not_called()
