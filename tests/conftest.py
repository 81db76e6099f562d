"""
Shared pytest fixtures for the ShieldFlow test suite.
"""

import asyncio

import pytest

from shieldflow_core.hashing import KeccakFieldHasher
from shieldflow_core.merkle import CommitmentTree
from shieldflow_core.note_ledger import NoteLedger
from shieldflow_core.notes import create_note, derive_owner_pubkey
from shieldflow_core.prover import Groth16Proof, ProofResult, Prover
from shieldflow_core.stealth import StealthKeys

TOKEN_MINT = 424242
SPENDING_KEY = 0x5EED_0001


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: statistical tests that take tens of seconds")


class FakeProver(Prover):
    """Returns a fixed proof; optionally sleeps or fails first."""

    def __init__(self, delay: float = 0.0, failures: list[Exception] | None = None):
        self.delay = delay
        self.failures = list(failures or [])
        self.calls: list[tuple[dict, dict]] = []
        self.closed = False

    async def prove(self, public_inputs, private_inputs):
        self.calls.append((public_inputs, private_inputs))
        if self.failures:
            raise self.failures.pop(0)
        if self.delay:
            await asyncio.sleep(self.delay)
        return ProofResult(
            proof=Groth16Proof(pi_a=b"\x01" * 64, pi_b=b"\x02" * 128, pi_c=b"\x03" * 64),
            public_signals=[],
        )

    async def close(self):
        self.closed = True


@pytest.fixture
def hasher():
    return KeccakFieldHasher()


@pytest.fixture
def tree():
    """Empty depth-20 commitment tree."""
    return CommitmentTree()


@pytest.fixture
def spending_key():
    return SPENDING_KEY


@pytest.fixture
def owner(spending_key):
    return derive_owner_pubkey(spending_key)


@pytest.fixture
def ledger(owner):
    return NoteLedger(owner_pubkey=owner)


@pytest.fixture
def funded(ledger, tree, owner):
    """Ledger holding notes of 50, 30 and 10, all inserted into the tree."""
    for amount in (50, 30, 10):
        note = create_note(amount, owner, TOKEN_MINT)
        tree.insert(note.commitment)
        note.leaf_index = tree.leaf_count - 1
        ledger.add(note)
    return ledger


@pytest.fixture
def alice_keys():
    """Deterministic stealth keys for Alice."""
    return StealthKeys.from_seed(b"alice-fixture-seed")


@pytest.fixture
def bob_keys():
    return StealthKeys.from_seed(b"bob-fixture-seed")


@pytest.fixture
def fake_prover():
    return FakeProver()


@pytest.fixture
def prover_cls():
    """The FakeProver class, for tests that need custom delays or failures."""
    return FakeProver


@pytest.fixture
def mint():
    return TOKEN_MINT
