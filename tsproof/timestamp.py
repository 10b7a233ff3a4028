"""
Timestamp proof trees.

A Timestamp node holds a message, the attestations made directly on that
message, and an OpSet mapping each operation to the child Timestamp over
op(message). The root message is supplied by the caller; every other message
is recomputed from it, so only operations and attestations go on the wire.

Wire form of one node (recursive):
    ( 0xff <entry> )*  <entry>

    entry := 0x00 <attestation>
           | <op> <node>          child node over op(message)

Canonical order: attestations first (sorted), then ops (sorted by tag, then
argument). Structurally equal trees therefore serialize to identical bytes.

Invariant: for every (op, child) under a node, child.msg == op(node.msg).
OpSet enforces it on insertion; deserialize() and merge() only build nodes
through OpSet.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, MutableMapping
from typing import TYPE_CHECKING

from tsproof import (
    ATTESTATION_MARKER,
    CONTINUATION_MARKER,
    MAX_PROOF_DEPTH,
    MAX_RESULT_LENGTH,
)
from tsproof.errors import (
    AmbiguousShrinkError,
    DeserializationError,
    EmptyProofError,
    MalformedOperationError,
    MessageMismatchError,
    ProofTooDeepError,
    WireFormatError,
)
from tsproof.notary import TimeAttestation
from tsproof.op import Op

if TYPE_CHECKING:
    from tsproof.serialize import StreamDeserializationContext, StreamSerializationContext

log = logging.getLogger(__name__)


class OpSet(MutableMapping):
    """Operations applied to one message, each mapped to its child Timestamp.

    Iteration is in canonical op order. Assigning a child whose message is
    not op(msg) raises MessageMismatchError.
    """

    def __init__(self, msg: bytes) -> None:
        self._msg = msg
        self._ops: dict[Op, Timestamp] = {}

    def add(self, op: Op) -> Timestamp:
        """Return the child for op, creating an empty one if needed."""
        try:
            return self._ops[op]
        except KeyError:
            stamp = Timestamp(op(self._msg))
            self._ops[op] = stamp
            return stamp

    def _insert(self, op: Op, stamp: Timestamp) -> None:
        # Caller guarantees stamp.msg == op(self._msg)
        self._ops[op] = stamp

    def __getitem__(self, op: Op) -> Timestamp:
        return self._ops[op]

    def __setitem__(self, op: Op, stamp: Timestamp) -> None:
        if not isinstance(op, Op):
            raise TypeError(f"Expected Op, got {type(op).__name__}")
        if not isinstance(stamp, Timestamp):
            raise TypeError(f"Expected Timestamp, got {type(stamp).__name__}")
        expected = op(self._msg)
        if stamp.msg != expected:
            raise MessageMismatchError(
                f"Child timestamp message {stamp.msg.hex()} is not {op}({self._msg.hex()})"
            )
        self._ops[op] = stamp

    def __delitem__(self, op: Op) -> None:
        del self._ops[op]

    def __iter__(self) -> Iterator[Op]:
        return iter(sorted(self._ops))

    def __len__(self) -> int:
        return len(self._ops)

    def __repr__(self) -> str:
        return "OpSet({%s})" % ", ".join(f"{op!r}: {stamp!r}" for op, stamp in self.items())


class Timestamp:
    """Proof that one or more attestations commit to a message.

    Usage:
        stamp = Timestamp(digest)
        stamp.ops.add(OpSHA256()).attestations.add(PendingAttestation(uri))
        ctx = BytesSerializationContext()
        stamp.serialize(ctx)
        same = Timestamp.deserialize(BytesDeserializationContext(ctx.getbytes()), digest)
    """

    def __init__(self, msg: bytes) -> None:
        if not isinstance(msg, (bytes, bytearray)):
            raise TypeError(f"msg must be bytes, got {type(msg).__name__}")
        self._msg = bytes(msg)
        self.attestations: set[TimeAttestation] = set()
        self.ops = OpSet(self._msg)

    @property
    def msg(self) -> bytes:
        return self._msg

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Timestamp):
            return NotImplemented
        return (
            self.msg == other.msg
            and self.attestations == other.attestations
            and self.ops == other.ops
        )

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        return f"Timestamp(<{self.msg.hex()}>)"

    # -- codec ---------------------------------------------------------------

    @classmethod
    def deserialize(
        cls,
        ctx: StreamDeserializationContext,
        initial_msg: bytes,
        max_depth: int = MAX_PROOF_DEPTH,
    ) -> Timestamp:
        """Deserialize a timestamp tree over initial_msg.

        The wire form does not carry messages, so the caller supplies the
        root message and each child message is recomputed as it is read.

        Raises DeserializationError (with .path) wrapping any wire error,
        ProofTooDeepError if ops nest deeper than max_depth.
        """
        stamp = cls._deserialize(ctx, initial_msg, max_depth, ())
        log.debug("Deserialized timestamp over %s", stamp.msg.hex())
        return stamp

    @classmethod
    def _deserialize(
        cls,
        ctx: StreamDeserializationContext,
        msg: bytes,
        depth_left: int,
        path: tuple[Op, ...],
    ) -> Timestamp:
        if depth_left < 0:
            raise ProofTooDeepError(f"Timestamp nested more than {len(path) - 1} ops deep", path)

        node = cls(msg)

        def do_tag_or_attestation(tag: int) -> None:
            if tag == ATTESTATION_MARKER:
                node.attestations.add(TimeAttestation.deserialize(ctx))
                return

            op = Op.deserialize_from_tag(ctx, tag)
            result = op(msg)
            if len(result) > MAX_RESULT_LENGTH:
                raise MalformedOperationError(
                    f"{op} result too long: {len(result)} > {MAX_RESULT_LENGTH}"
                )
            stamp = cls._deserialize(ctx, result, depth_left - 1, path + (op,))
            if op in node.ops:
                # Repeated op in a non-canonical stream: keep both subtrees
                node.ops[op]._merge(stamp)
            else:
                node.ops._insert(op, stamp)

        try:
            tag = ctx.read_byte()
            while tag == CONTINUATION_MARKER:
                do_tag_or_attestation(ctx.read_byte())
                tag = ctx.read_byte()
            do_tag_or_attestation(tag)
        except WireFormatError as e:
            raise DeserializationError(f"Invalid timestamp: {e}", path) from e

        return node

    def serialize(self, ctx: StreamSerializationContext) -> None:
        """Write the canonical wire form of this tree.

        Raises EmptyProofError if any node has neither attestations nor ops.
        """
        if not self.attestations and not self.ops:
            raise EmptyProofError(f"Can't serialize empty timestamp node {self.msg.hex()}")

        sorted_attestations = sorted(self.attestations)
        for attestation in sorted_attestations[:-1]:
            ctx.write_byte(CONTINUATION_MARKER)
            ctx.write_byte(ATTESTATION_MARKER)
            attestation.serialize(ctx)

        if not self.ops:
            ctx.write_byte(ATTESTATION_MARKER)
            sorted_attestations[-1].serialize(ctx)
            return

        if sorted_attestations:
            ctx.write_byte(CONTINUATION_MARKER)
            ctx.write_byte(ATTESTATION_MARKER)
            sorted_attestations[-1].serialize(ctx)

        sorted_ops = list(self.ops.items())
        for op, stamp in sorted_ops[:-1]:
            ctx.write_byte(CONTINUATION_MARKER)
            op.serialize(ctx)
            stamp.serialize(ctx)

        last_op, last_stamp = sorted_ops[-1]
        last_op.serialize(ctx)
        last_stamp.serialize(ctx)

    # -- merge / shrink ------------------------------------------------------

    def merge(self, other: Timestamp) -> None:
        """Add all operations and attestations from other into this tree.

        Both trees must be over the same message; otherwise raises
        MessageMismatchError and leaves this tree untouched. Nodes of other
        are never shared into this tree; missing children are created fresh.
        """
        if not isinstance(other, Timestamp):
            raise TypeError(f"Can only merge Timestamps together, got {type(other).__name__}")
        if self.msg != other.msg:
            raise MessageMismatchError(
                f"Can't merge timestamps for different messages together "
                f"({self.msg.hex()} != {other.msg.hex()})"
            )
        self._merge(other)
        log.debug("Merged timestamp over %s", self.msg.hex())

    def _merge(self, other: Timestamp) -> None:
        self.attestations.update(other.attestations)
        for op, other_stamp in other.ops.items():
            self.ops.add(op)._merge(other_stamp)

    def shrunk(self) -> tuple[Timestamp, TimeAttestation]:
        """Return a pruned copy of this tree and its minimal attestation.

        This tree is left unchanged. See shrink() for the pruning rules.
        """
        pruned = self.copy()
        attestation = pruned._prune()
        return pruned, attestation

    def shrink(self) -> TimeAttestation:
        """Prune this tree in place down to its minimal attestation path.

        At each node with several reachable attestations, every child is
        shrunk and only children whose result equals the lowest-height block
        header attestation are kept. Equal heights go to the first child in
        op order.

        All-or-nothing: on EmptyProofError or AmbiguousShrinkError the tree
        is not modified.
        """
        pruned, attestation = self.shrunk()
        self.attestations = pruned.attestations
        self.ops = pruned.ops
        return attestation

    def _prune(self) -> TimeAttestation:
        all_attestations = self.all_attestations()
        if not all_attestations:
            raise EmptyProofError(f"No attestations reachable from {self.msg.hex()}")
        if len(all_attestations) == 1:
            # Every attestation commits to this one message
            return _least_attestation(self.get_attestations())
        if len(self.attestations) == 1:
            return next(iter(self.attestations))
        if not self.ops:
            raise EmptyProofError(f"Multiple attestations but no operations at {self.msg.hex()}")

        results: list[tuple[Op, TimeAttestation | None]] = []
        for op, stamp in self.ops.items():
            try:
                results.append((op, stamp._prune()))
            except (EmptyProofError, AmbiguousShrinkError):
                # Branch with no anchor of its own; dropped below
                results.append((op, None))

        anchors = [att for _, att in results if att is not None and att.is_primary_anchor()]
        if not anchors:
            raise AmbiguousShrinkError(
                f"No block header attestation below {self.msg.hex()} to shrink to"
            )
        # min() keeps the first of equal heights, so ties go to op order
        min_attestation = min(anchors, key=_height)

        for op, attestation in results:
            if attestation != min_attestation:
                log.info("Pruning %s: %r does not match %r", op, attestation, min_attestation)
                del self.ops[op]

        return min_attestation

    # -- traversal -----------------------------------------------------------

    def copy(self) -> Timestamp:
        """Deep copy. Attestations and ops are immutable and shared."""
        new = Timestamp(self.msg)
        new.attestations = set(self.attestations)
        for op, stamp in self.ops.items():
            new.ops._insert(op, stamp.copy())
        return new

    def walk(self) -> Iterator[Timestamp]:
        """Yield every node of the tree, pre-order, children in op order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(list(node.ops.values())))

    def directly_verified(self) -> list[Timestamp]:
        """Nodes that carry attestations, nearest to the root on each path."""
        if self.attestations:
            return [self]
        result: list[Timestamp] = []
        for stamp in self.ops.values():
            result.extend(stamp.directly_verified())
        return result

    def iter_attestations(self) -> Iterator[tuple[bytes, TimeAttestation]]:
        """Yield (msg, attestation) for every attestation in the tree.

        Within a node, attestations come greatest first in canonical order.
        """
        for node in self.walk():
            for attestation in sorted(node.attestations, reverse=True):
                yield node.msg, attestation

    def all_attestations(self) -> dict[bytes, TimeAttestation]:
        """Map each attested message to its attestation.

        Several attestations on the same message collapse to the last one
        visited, which for a single node is the least in canonical order.
        """
        return dict(self.iter_attestations())

    def get_attestations(self) -> set[TimeAttestation]:
        """Every distinct attestation reachable from this node."""
        return {attestation for _, attestation in self.iter_attestations()}

    def is_timestamp_complete(self) -> bool:
        """True if a block header attestation is reachable."""
        return any(att.is_primary_anchor() for _, att in self.iter_attestations())

    def str_tree(self, indent: int = 0, verbose: bool = False) -> str:
        """Human-readable rendering of the tree."""
        lines: list[str] = []
        self._str_tree(lines, indent, verbose)
        return "".join(line + "\n" for line in lines)

    def _str_tree(self, lines: list[str], indent: int, verbose: bool) -> None:
        pad = " " * indent
        for attestation in sorted(self.attestations):
            line = f"{pad}verify {attestation!r}"
            if verbose:
                line += f" == {self.msg.hex()}"
            lines.append(line)

        if len(self.ops) > 1:
            for op, stamp in self.ops.items():
                line = f"{pad} -> {op}"
                if verbose:
                    line += f" == {stamp.msg.hex()}"
                lines.append(line)
                stamp._str_tree(lines, indent + 4, verbose)
        elif self.ops:
            op, stamp = next(iter(self.ops.items()))
            line = f"{pad}{op}"
            if verbose:
                line += f" == {stamp.msg.hex()}"
            lines.append(line)
            stamp._str_tree(lines, indent, verbose)


def _height(attestation: TimeAttestation) -> int:
    return attestation.height


def _least_attestation(attestations: set[TimeAttestation]) -> TimeAttestation:
    """Lowest-height block header attestation, else the first in canonical order."""
    ordered = sorted(attestations)
    anchors = [att for att in ordered if att.is_primary_anchor()]
    if anchors:
        return min(anchors, key=_height)
    return ordered[0]
