"""
Error taxonomy for the ShieldFlow accounting core.

Every error raised by the core derives from :class:`ShieldedError` and
belongs to exactly one category:

  - **Validation**   – malformed input, rejected before any processing
  - **Consistency**  – local state disagrees with a proof or the chain
  - **External**     – prover / RPC failures, retried with backoff first
  - **Capacity**     – the commitment tree is full; never retried
  - **Logical**      – recoverable by caller action (top up, resync, fix input)
"""

from __future__ import annotations

from typing import Optional


class ShieldedError(Exception):
    """Base class for every error raised by shieldflow_core."""


# ─── Categories ──────────────────────────────────────────────────────────


class ValidationError(ShieldedError):
    """Malformed key material, encodings or field elements."""


class ConsistencyError(ShieldedError):
    """Local state is inconsistent with a proof or the on-chain log."""


class ExternalError(ShieldedError):
    """Failure in an external collaborator (prover, RPC)."""


class CapacityError(ShieldedError):
    """A fixed-size resource is exhausted."""


class LogicalError(ShieldedError):
    """Recoverable condition that the caller resolves by acting."""


# ─── Validation ──────────────────────────────────────────────────────────


class FieldRangeError(ValidationError):
    """A value is not a canonical field element."""


class MetaAddressError(ValidationError):
    """A stealth meta-address has a wrong prefix, version or length."""


class ZkAddressError(ValidationError):
    """A shielded receiving address has a wrong prefix, version or length."""


class InvalidPointError(ValidationError):
    """Bytes do not decode to a usable curve point."""


class NoteFormatError(ValidationError):
    """A serialised note is missing fields or is not decodable."""


# ─── Consistency ─────────────────────────────────────────────────────────


class StaleMerkleProof(ConsistencyError):
    """The root recomputed from a Merkle path differs from the claimed root."""

    def __init__(self, expected_root: int, computed_root: int) -> None:
        self.expected_root = expected_root
        self.computed_root = computed_root
        super().__init__(
            f"stale Merkle proof: expected root {expected_root}, "
            f"path yields {computed_root}"
        )


class IncompleteLog(ConsistencyError):
    """The on-chain commitment log has gaps, duplicates or a wrong length.

    ``missing`` holds at most the first few absent indices; ``missing_count``
    is the full number.
    """

    def __init__(
        self,
        message: str,
        missing: Optional[list[int]] = None,
        duplicates: Optional[list[int]] = None,
        missing_count: Optional[int] = None,
    ) -> None:
        self.missing = missing or []
        self.missing_count = len(self.missing) if missing_count is None else missing_count
        self.duplicates = duplicates or []
        super().__init__(message)


class SnapshotVersionError(ConsistencyError):
    """A tree snapshot was produced by a different hasher or depth."""


# ─── External ────────────────────────────────────────────────────────────


class ProofTimeout(ExternalError):
    """The proving service did not answer within the configured timeout."""


class ProverError(ExternalError):
    """The proving service reported a failure.

    ``retryable`` is True for transport errors and 5xx answers.
    """

    def __init__(self, message: str, retryable: bool = False) -> None:
        self.retryable = retryable
        super().__init__(message)


class TransientFetchError(ExternalError):
    """A log fetch failed in a way that is worth retrying (rate limit, 5xx)."""


class LogFetchError(ExternalError):
    """A log fetch failed permanently or exhausted its retries."""


# ─── Capacity ────────────────────────────────────────────────────────────


class TreeFull(CapacityError):
    """The commitment tree already holds 2**depth leaves."""


# ─── Logical ─────────────────────────────────────────────────────────────


class InsufficientBalance(LogicalError):
    """Selected notes do not cover the requested amount."""

    def __init__(self, requested: int, available: int) -> None:
        self.requested = requested
        self.available = available
        super().__init__(
            f"insufficient shielded balance: need {requested}, have {available}"
        )


class NotYetOnChain(LogicalError):
    """A note's commitment is not present in the local tree."""


class InvalidCommitment(LogicalError):
    """A note's fields do not hash to its claimed commitment."""


class NoteReserved(LogicalError):
    """A note is already held by another in-flight spend."""
