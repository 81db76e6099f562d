"""
ShieldFlow - accounting core for a shielded payment pool.

Key features:
- Incremental Merkle commitment tree with cached zero subtrees
- Notes, commitments and nullifiers over the BN254 scalar field
- Largest-first note selection with dummy-note padding
- Dual-key stealth addresses over Ed25519
- zk: receiving addresses with AES-GCM encrypted note delivery
- Typed Groth16 circuit inputs and an async proving client
- Reconciliation of local state against the on-chain commitment log
"""

__version__ = "0.3.0"
__all__ = [
    "errors",
    "field",
    "hashing",
    "merkle",
    "notes",
    "note_ledger",
    "curve",
    "stealth",
    "delivery",
    "circuit",
    "prover",
    "chain",
    "reconcile",
    "session",
    "config",
    "logging_config",
]
