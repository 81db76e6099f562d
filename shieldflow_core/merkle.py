"""
Incremental commitment tree.

A fixed-depth, append-only binary Merkle tree over field elements.  The
root is a pure function of the ordered leaf sequence: replaying the same
commitments into a fresh tree from any source reproduces the same root,
which is what chain reconciliation relies on.

Empty subtrees hash to per-level *zero values*:

    zero[0] = keccak256("shieldflow.zero.v1") mod p
    zero[i] = H(zero[i-1], zero[i-1])

Changing the hasher or the base constant changes every root, so both are
recorded in :attr:`CommitmentTree.version_tag` and in snapshots.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from shieldflow_core.errors import SnapshotVersionError, TreeFull
from shieldflow_core.field import check_field, from_decimal, to_decimal
from shieldflow_core.hashing import FieldHasher, default_hasher, keccak_to_field

logger = logging.getLogger("shieldflow_tree")

DEFAULT_DEPTH = 20

ZERO_SEED = b"shieldflow.zero.v1"
ZERO_BASE = keccak_to_field(ZERO_SEED)

# Number of recent roots remembered for is_known_root().
ROOT_HISTORY_SIZE = 100

SNAPSHOT_VERSION = 1

_ZERO_CACHE: dict[tuple[str, int, int], tuple[int, ...]] = {}


def zero_values(
    hasher: FieldHasher, depth: int, base: int = ZERO_BASE
) -> tuple[int, ...]:
    """Return ``depth + 1`` empty-subtree hashes, computing them once."""
    key = (hasher.tag, base, depth)
    cached = _ZERO_CACHE.get(key)
    if cached is not None:
        return cached
    zeros = [base]
    for _ in range(depth):
        zeros.append(hasher.hash2(zeros[-1], zeros[-1]))
    result = tuple(zeros)
    _ZERO_CACHE[key] = result
    return result


def compute_root_from_path(
    hasher: FieldHasher,
    leaf: int,
    path_elements: list[int],
    path_indices: list[int],
) -> int:
    """Fold an authentication path from *leaf* up to the root."""
    current = leaf
    for sibling, bit in zip(path_elements, path_indices):
        if bit:
            current = hasher.hash2(sibling, current)
        else:
            current = hasher.hash2(current, sibling)
    return current


# ─── Proof ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MerkleProof:
    """Authentication path for one leaf.

    ``path_indices[i]`` is 0 when the node at level *i* is a left child
    and 1 when it is a right child.  ``root`` is the tree root at the
    moment the proof was taken.
    """
    leaf_index: int
    path_elements: list[int] = field(default_factory=list)
    path_indices: list[int] = field(default_factory=list)
    root: int = 0

    @property
    def depth(self) -> int:
        return len(self.path_elements)

    def compute_root(self, leaf: int, hasher: Optional[FieldHasher] = None) -> int:
        return compute_root_from_path(
            hasher or default_hasher(), leaf, self.path_elements, self.path_indices
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "leafIndex": self.leaf_index,
            "pathElements": [to_decimal(e) for e in self.path_elements],
            "pathIndices": list(self.path_indices),
            "root": to_decimal(self.root),
        }


def dummy_proof(depth: int = DEFAULT_DEPTH) -> MerkleProof:
    """All-zero path used for dummy input notes (ignored by the circuit)."""
    return MerkleProof(
        leaf_index=0,
        path_elements=[0] * depth,
        path_indices=[0] * depth,
        root=0,
    )


# ─── Tree ────────────────────────────────────────────────────────────────


class CommitmentTree:
    """Append-only Merkle accumulator of note commitments."""

    def __init__(
        self,
        depth: int = DEFAULT_DEPTH,
        hasher: Optional[FieldHasher] = None,
    ) -> None:
        if not 1 <= depth <= 32:
            raise ValueError(f"tree depth must be in 1..32, got {depth}")
        self.depth = depth
        self.hasher = hasher or default_hasher()
        self.zeros = zero_values(self.hasher, depth)
        self._nodes: dict[tuple[int, int], int] = {}
        self._leaves: list[int] = []
        self._root = self.zeros[depth]
        self._root_history: deque[int] = deque([self._root], maxlen=ROOT_HISTORY_SIZE)

    @classmethod
    def from_leaves(
        cls,
        leaves: Iterable[int],
        depth: int = DEFAULT_DEPTH,
        hasher: Optional[FieldHasher] = None,
    ) -> "CommitmentTree":
        """Build a fresh tree by inserting *leaves* in order."""
        tree = cls(depth=depth, hasher=hasher)
        for leaf in leaves:
            tree.insert(leaf)
        return tree

    # ── Properties ───────────────────────────────────────────────

    @property
    def capacity(self) -> int:
        return 1 << self.depth

    @property
    def leaf_count(self) -> int:
        return len(self._leaves)

    @property
    def root(self) -> int:
        return self._root

    @property
    def version_tag(self) -> str:
        return f"{self.hasher.tag}|zero={ZERO_BASE:x}|depth={self.depth}"

    def leaves(self) -> list[int]:
        return list(self._leaves)

    def __len__(self) -> int:
        return len(self._leaves)

    # ── Mutation ─────────────────────────────────────────────────

    def insert(self, leaf: int) -> int:
        """Append *leaf* at the next free index and return the new root."""
        check_field(leaf, "leaf")
        index = len(self._leaves)
        if index >= self.capacity:
            raise TreeFull(f"commitment tree of depth {self.depth} is full ({index} leaves)")

        current = self._fold(leaf, index, self._nodes)
        self._leaves.append(leaf)
        self._root = current
        self._root_history.append(current)
        logger.debug(f"Inserted leaf #{index}, root {str(current)[:12]}…")
        return current

    def _fold(self, leaf: int, index: int, store: dict[tuple[int, int], int]) -> int:
        """Hash *leaf* at *index* up to the root, writing nodes into *store*.

        Siblings are read from *store* first, then from the committed nodes.
        """
        store[(0, index)] = leaf
        current = leaf
        idx = index
        for level in range(self.depth):
            sibling = store.get((level, idx ^ 1))
            if sibling is None:
                sibling = self._nodes.get((level, idx ^ 1), self.zeros[level])
            if idx & 1:
                current = self.hasher.hash2(sibling, current)
            else:
                current = self.hasher.hash2(current, sibling)
            idx >>= 1
            store[(level + 1, idx)] = current
        return current

    def root_after(self, leaves: Iterable[int]) -> int:
        """Root the tree would have after appending *leaves*, without mutating it."""
        overlay: dict[tuple[int, int], int] = {}
        index = len(self._leaves)
        root = self._root
        for leaf in leaves:
            check_field(leaf, "leaf")
            if index >= self.capacity:
                raise TreeFull(f"commitment tree of depth {self.depth} is full ({index} leaves)")
            root = self._fold(leaf, index, overlay)
            index += 1
        return root

    def insert_many(self, leaves: Iterable[int]) -> int:
        leaves = list(leaves)
        if len(self._leaves) + len(leaves) > self.capacity:
            raise TreeFull(
                f"cannot insert {len(leaves)} leaves: only "
                f"{self.capacity - len(self._leaves)} slots left"
            )
        for leaf in leaves:
            self.insert(leaf)
        return self._root

    # ── Queries ──────────────────────────────────────────────────

    def prove(self, leaf_index: int) -> MerkleProof:
        """Authentication path for *leaf_index* against the current root."""
        if not 0 <= leaf_index < len(self._leaves):
            raise IndexError(
                f"leaf index {leaf_index} out of range (tree has {len(self._leaves)} leaves)"
            )
        elements: list[int] = []
        indices: list[int] = []
        idx = leaf_index
        for level in range(self.depth):
            sibling = idx ^ 1
            elements.append(self._nodes.get((level, sibling), self.zeros[level]))
            indices.append(idx & 1)
            idx >>= 1
        return MerkleProof(
            leaf_index=leaf_index,
            path_elements=elements,
            path_indices=indices,
            root=self._root,
        )

    def verify_proof(self, leaf: int, proof: MerkleProof, root: Optional[int] = None) -> bool:
        expected = self._root if root is None else root
        return proof.compute_root(leaf, self.hasher) == expected

    def find_leaf(self, commitment: int, hint: Optional[int] = None) -> Optional[int]:
        """Index of *commitment*: try *hint* first, then scan every leaf."""
        if hint is not None and 0 <= hint < len(self._leaves):
            if self._leaves[hint] == commitment:
                return hint
        try:
            return self._leaves.index(commitment)
        except ValueError:
            return None

    def is_known_root(self, root: int) -> bool:
        return root in self._root_history

    # ── Snapshots ────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "hasher": self.hasher.tag,
            "zeroBase": to_decimal(ZERO_BASE),
            "depth": self.depth,
            "root": to_decimal(self._root),
            "leaves": [to_decimal(leaf) for leaf in self._leaves],
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], hasher: Optional[FieldHasher] = None
    ) -> "CommitmentTree":
        """Rebuild a tree from :meth:`to_dict` output, rejecting foreign versions."""
        hasher = hasher or default_hasher()
        if data.get("version") != SNAPSHOT_VERSION:
            raise SnapshotVersionError(f"unsupported snapshot version {data.get('version')!r}")
        if data.get("hasher") != hasher.tag:
            raise SnapshotVersionError(
                f"snapshot hasher {data.get('hasher')!r} does not match {hasher.tag!r}"
            )
        if from_decimal(data.get("zeroBase", "0"), "zeroBase") != ZERO_BASE:
            raise SnapshotVersionError("snapshot was built with a different zero base")
        tree = cls.from_leaves(
            (from_decimal(v, "leaf") for v in data.get("leaves", [])),
            depth=int(data.get("depth", DEFAULT_DEPTH)),
            hasher=hasher,
        )
        if "root" in data and from_decimal(data["root"], "root") != tree.root:
            raise SnapshotVersionError("snapshot root does not match its leaves")
        return tree
