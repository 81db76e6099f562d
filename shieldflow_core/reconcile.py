"""
Chain reconciliation.

Rebuilds the commitment tree from the authoritative on-chain log and
repairs note leaf indices after drift (a lost confirmation, notes
imported from another device, a stale local root).

Algorithm
---------
1. Sort the log by leaf index.
2. Reject gaps, conflicting duplicates and a length that differs from
   the on-chain leaf count with :class:`IncompleteLog`.  A partial
   rebuild is never applied.
3. Insert every commitment, in order, into a *fresh* tree.
4. Compare the rebuilt root with the on-chain root.

The rebuilt tree is authoritative either way: the per-transaction
commitments are ground truth even when a cached on-chain root is stale.
A mismatch is reported on the result and logged, never discarded.

Nothing is mutated until steps 1-3 succeed, so a failing reconciliation
leaves the caller's tree and ledger exactly as they were.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from itertools import islice
from typing import TYPE_CHECKING, Any, Iterable, Optional, Union

from shieldflow_core.chain import (
    DEFAULT_PAGE_SIZE,
    ChainState,
    CommitmentLogSource,
    LogEntry,
    fetch_chain_snapshot,
)
from shieldflow_core.errors import IncompleteLog
from shieldflow_core.hashing import FieldHasher, default_hasher
from shieldflow_core.merkle import DEFAULT_DEPTH, CommitmentTree

if TYPE_CHECKING:
    from shieldflow_core.note_ledger import NoteLedger

logger = logging.getLogger("shieldflow_reconcile")

LogItem = Union[LogEntry, tuple[int, Union[bytes, int]]]


@dataclass(frozen=True)
class ReconciliationState:
    """Comparison of local and on-chain tree state (not persisted)."""
    local_root: int
    on_chain_root: int
    leaf_count: int
    divergent: bool


@dataclass
class ReconciliationResult:
    state: ReconciliationState
    tree: CommitmentTree
    leaves: list[int] = field(default_factory=list)
    indices_corrected: int = 0

    @property
    def divergent(self) -> bool:
        return self.state.divergent

    @property
    def root(self) -> int:
        return self.tree.root


# Absent indices carried on IncompleteLog; the full count is always reported.
MISSING_SAMPLE = 10


def order_log(
    log: Iterable[LogItem],
    expected_leaf_count: Optional[int] = None,
    capacity: int = 1 << DEFAULT_DEPTH,
) -> list[int]:
    """Sort *log* by index and return the commitments, rejecting gaps.

    Indices and an expected count at or beyond *capacity* are rejected
    before anything proportional to them is built.
    """
    if expected_leaf_count is not None and not 0 <= expected_leaf_count <= capacity:
        raise IncompleteLog(
            f"chain reports {expected_leaf_count} leaves, tree capacity is {capacity}"
        )

    by_index: dict[int, int] = {}
    conflicts: list[int] = []
    for item in log:
        entry = item if isinstance(item, LogEntry) else LogEntry.from_wire(*item)
        if entry.leaf_index >= capacity:
            raise IncompleteLog(
                f"log entry at index {entry.leaf_index} is beyond tree capacity {capacity}"
            )
        prev = by_index.get(entry.leaf_index)
        if prev is None:
            by_index[entry.leaf_index] = entry.commitment
        elif prev != entry.commitment:
            conflicts.append(entry.leaf_index)

    if conflicts:
        raise IncompleteLog(
            f"log has conflicting commitments at indices {sorted(set(conflicts))[:MISSING_SAMPLE]}",
            duplicates=sorted(set(conflicts)),
        )

    count = len(by_index)
    top = max(by_index) + 1 if by_index else 0
    span = max(top, expected_leaf_count or 0)
    # Every stored index is below span.
    missing_count = span - count
    if missing_count:
        sample = list(islice((i for i in range(span) if i not in by_index), MISSING_SAMPLE))
        raise IncompleteLog(
            f"log is missing {missing_count} index(es), first {sample}",
            missing=sample,
            missing_count=missing_count,
        )
    if expected_leaf_count is not None and count != expected_leaf_count:
        raise IncompleteLog(
            f"log has {count} entries but the chain reports {expected_leaf_count} leaves"
        )
    return [by_index[i] for i in range(count)]


class ChainReconciler:
    """Replays on-chain commitment logs into fresh trees."""

    def __init__(self, depth: int = DEFAULT_DEPTH, hasher: Optional[FieldHasher] = None) -> None:
        self.depth = depth
        self.hasher = hasher or default_hasher()
        self._last: Optional[ReconciliationResult] = None
        self._last_run: float = 0.0
        self.runs = 0
        self.divergences = 0

    def check(self, tree: CommitmentTree, chain: ChainState) -> ReconciliationState:
        """Compare *tree* with on-chain state without rebuilding anything."""
        divergent = tree.root != chain.root or tree.leaf_count != chain.leaf_count
        return ReconciliationState(
            local_root=tree.root,
            on_chain_root=chain.root,
            leaf_count=chain.leaf_count,
            divergent=divergent,
        )

    def rebuild(
        self, on_chain_log: Iterable[LogItem], expected_leaf_count: Optional[int] = None
    ) -> CommitmentTree:
        leaves = order_log(on_chain_log, expected_leaf_count, capacity=1 << self.depth)
        return CommitmentTree.from_leaves(leaves, depth=self.depth, hasher=self.hasher)

    def reconcile(
        self,
        on_chain_log: Iterable[LogItem],
        expected_leaf_count: int,
        expected_root: int,
        ledger: Optional["NoteLedger"] = None,
    ) -> ReconciliationResult:
        """Rebuild from *on_chain_log* and correct *ledger* note indices.

        The returned ``tree`` replaces the caller's tree wholesale.
        """
        tree = self.rebuild(on_chain_log, expected_leaf_count)
        leaves = tree.leaves()
        divergent = tree.root != expected_root
        state = ReconciliationState(
            local_root=tree.root,
            on_chain_root=expected_root,
            leaf_count=tree.leaf_count,
            divergent=divergent,
        )
        if divergent:
            self.divergences += 1
            logger.warning(
                f"Rebuilt root {str(tree.root)[:12]}… != on-chain root "
                f"{str(expected_root)[:12]}… over {tree.leaf_count} leaves; "
                f"using the rebuilt tree"
            )
        else:
            logger.info(f"Reconciled {tree.leaf_count} leaves, root {str(tree.root)[:12]}…")

        corrected = ledger.correct_indices(leaves) if ledger is not None else 0
        result = ReconciliationResult(
            state=state, tree=tree, leaves=leaves, indices_corrected=corrected
        )
        self._last = result
        self._last_run = time.time()
        self.runs += 1
        return result

    async def sync(
        self,
        source: CommitmentLogSource,
        ledger: Optional["NoteLedger"] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_attempts: int = 3,
        backoff: float = 1.0,
    ) -> ReconciliationResult:
        """Fetch state and log from *source*, then reconcile.

        Fetch failures raise before anything is rebuilt or corrected.
        """
        chain, entries = await fetch_chain_snapshot(source, page_size, max_attempts, backoff)
        if chain.depth is not None and chain.depth != self.depth:
            logger.warning(f"On-chain tree depth {chain.depth} != local depth {self.depth}")
        return self.reconcile(entries, chain.leaf_count, chain.root, ledger)

    def status(self) -> dict[str, Any]:
        last = self._last
        return {
            "runs": self.runs,
            "divergences": self.divergences,
            "last_run": self._last_run,
            "last_leaf_count": last.state.leaf_count if last else None,
            "last_divergent": last.divergent if last else None,
        }
