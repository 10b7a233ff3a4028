"""
tsproof — timestamp proof trees anchored to Bitcoin block headers.

Architecture:
    Message:      the digest being timestamped (e.g. SHA-256 of a file)
    Operations:   deterministic byte transforms (hash / append / prepend)
    Attestations: terminal claims (pending calendar, Bitcoin / Ethereum block)
    Proof tree:   Timestamp nodes linked by operations, ending in attestations

The wire format is canonical: structurally equal trees serialize to the same
bytes, so proofs from independent implementations merge and verify.
"""

__version__ = "0.1.0"

# Wire markers inside a serialized timestamp tree
CONTINUATION_MARKER = 0xFF
ATTESTATION_MARKER = 0x00

# Attestations are identified on the wire by a fixed-size tag
ATTESTATION_TAG_SIZE = 8

# Limits on decoded proofs
MAX_RESULT_LENGTH = 4096   # max op argument / op result length in bytes
MAX_PAYLOAD_SIZE = 8192    # max attestation payload in bytes
MAX_PROOF_DEPTH = 256      # max nesting of operations in a single tree
MAX_URI_LENGTH = 1000      # max pending-attestation calendar URI length
