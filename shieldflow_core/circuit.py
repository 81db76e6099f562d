"""
Typed proof inputs for the 2-in / 2-out transfer circuit.

The prover consumes a flat map of snake_case signal names.  Instead of
building that map ad hoc, :class:`CircuitInputs` fixes every field and
its order; ``to_prover_dict()`` is the only place names are spelled out.

Public signal order::

    merkle_root, nullifier_1, nullifier_2,
    output_commitment_1, output_commitment_2,
    public_amount, token_mint

Output slot 1 is the primary recipient output, slot 2 the change or a
dummy.  On-chain decoding relies on this positional contract.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from shieldflow_core.errors import InvalidCommitment, StaleMerkleProof, ValidationError
from shieldflow_core.field import check_field, encode_signed_amount, to_decimal
from shieldflow_core.hashing import FieldHasher, default_hasher
from shieldflow_core.merkle import DEFAULT_DEPTH, MerkleProof
from shieldflow_core.notes import Note, compute_nullifier, derive_owner_pubkey

logger = logging.getLogger("shieldflow_prover")

ARITY = 2

PUBLIC_SIGNAL_NAMES = (
    "merkle_root",
    "nullifier_1",
    "nullifier_2",
    "output_commitment_1",
    "output_commitment_2",
    "public_amount",
    "token_mint",
)


@dataclass(frozen=True)
class PublicInputs:
    merkle_root: int
    nullifier_1: int
    nullifier_2: int
    output_commitment_1: int
    output_commitment_2: int
    public_amount: int
    token_mint: int

    def as_tuple(self) -> tuple[int, ...]:
        return tuple(getattr(self, name) for name in PUBLIC_SIGNAL_NAMES)

    def signals(self) -> list[str]:
        """Public signals as decimal strings, in circuit order."""
        return [to_decimal(v) for v in self.as_tuple()]


@dataclass(frozen=True)
class InputWitness:
    amount: int
    owner_pubkey: int
    randomness: int
    path_elements: tuple[int, ...]
    path_indices: tuple[int, ...]


@dataclass(frozen=True)
class OutputWitness:
    amount: int
    recipient: int
    randomness: int


@dataclass(frozen=True)
class CircuitInputs:
    """Complete public + private input set for one proof."""
    public: PublicInputs
    input_1: InputWitness
    input_2: InputWitness
    output_1: OutputWitness
    output_2: OutputWitness
    spending_key: int

    def public_signals(self) -> list[str]:
        return self.public.signals()

    def private_inputs(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for i, w in ((1, self.input_1), (2, self.input_2)):
            out[f"in_amount_{i}"] = str(w.amount)
            out[f"in_owner_pubkey_{i}"] = to_decimal(w.owner_pubkey)
            out[f"in_randomness_{i}"] = to_decimal(w.randomness)
            out[f"in_path_elements_{i}"] = [to_decimal(e) for e in w.path_elements]
            out[f"in_path_indices_{i}"] = [str(b) for b in w.path_indices]
        for i, o in ((1, self.output_1), (2, self.output_2)):
            out[f"out_amount_{i}"] = str(o.amount)
            out[f"out_recipient_{i}"] = to_decimal(o.recipient)
            out[f"out_randomness_{i}"] = to_decimal(o.randomness)
        out["spending_key"] = to_decimal(self.spending_key)
        return out

    def public_inputs(self) -> dict[str, str]:
        return dict(zip(PUBLIC_SIGNAL_NAMES, self.public.signals()))

    def to_prover_dict(self) -> dict[str, Any]:
        """Flat snarkjs-style input map (public first, then private)."""
        merged: dict[str, Any] = self.public_inputs()
        merged.update(self.private_inputs())
        return merged


class ProofInputAssembler:
    """Turns a spend intent into :class:`CircuitInputs`."""

    def __init__(
        self,
        spending_key: int,
        hasher: Optional[FieldHasher] = None,
        depth: int = DEFAULT_DEPTH,
    ) -> None:
        self.hasher = hasher or default_hasher()
        self.spending_key = check_field(spending_key, "spending_key")
        self.spending_key_hash = derive_owner_pubkey(spending_key, self.hasher)
        self.depth = depth

    def build(
        self,
        spend_notes: Sequence[Note],
        output_notes: Sequence[Note],
        merkle_root: int,
        proofs: Sequence[MerkleProof],
        public_amount: int = 0,
        token_mint: Optional[int] = None,
    ) -> CircuitInputs:
        """Assemble inputs, refusing a proof that does not match *merkle_root*.

        *public_amount* is signed: negative for withdrawals, encoded as
        ``p + amount`` in the field.
        """
        if len(spend_notes) != ARITY or len(output_notes) != ARITY or len(proofs) != ARITY:
            raise ValidationError(
                f"circuit takes exactly {ARITY} inputs, {ARITY} outputs and {ARITY} proofs"
            )
        for p in proofs:
            if p.depth != self.depth:
                raise ValidationError(f"Merkle path depth {p.depth} != tree depth {self.depth}")
        for note in (*spend_notes, *output_notes):
            if not note.verify(self.hasher):
                raise InvalidCommitment(
                    f"note {str(note.commitment)[:12]}… does not match its fields"
                )
            if note.commitment == 0:
                raise InvalidCommitment("zero commitment is reserved as the no-output sentinel")

        mint = spend_notes[0].token_mint if token_mint is None else token_mint
        for note in (*spend_notes, *output_notes):
            if note.token_mint != mint:
                raise ValidationError("all notes in a spend must share one token mint")

        value_in = sum(n.amount for n in spend_notes) + public_amount
        value_out = sum(n.amount for n in output_notes)
        if value_in != value_out:
            raise ValidationError(
                f"value not conserved: inputs {value_in} (incl. public amount) "
                f"!= outputs {value_out}"
            )

        computed = proofs[0].compute_root(spend_notes[0].commitment, self.hasher)
        if computed != merkle_root:
            logger.error(
                f"Merkle path for leaf {proofs[0].leaf_index} yields "
                f"{str(computed)[:12]}…, expected {str(merkle_root)[:12]}…"
            )
            raise StaleMerkleProof(merkle_root, computed)

        public = PublicInputs(
            merkle_root=merkle_root,
            nullifier_1=compute_nullifier(
                spend_notes[0].commitment, self.spending_key_hash, self.hasher
            ),
            nullifier_2=compute_nullifier(
                spend_notes[1].commitment, self.spending_key_hash, self.hasher
            ),
            output_commitment_1=output_notes[0].commitment,
            output_commitment_2=output_notes[1].commitment,
            public_amount=encode_signed_amount(public_amount),
            token_mint=mint,
        )

        inputs = [
            InputWitness(
                amount=n.amount,
                owner_pubkey=n.owner_pubkey,
                randomness=n.randomness,
                path_elements=tuple(p.path_elements),
                path_indices=tuple(p.path_indices),
            )
            for n, p in zip(spend_notes, proofs)
        ]
        outputs = [
            OutputWitness(amount=n.amount, recipient=n.owner_pubkey, randomness=n.randomness)
            for n in output_notes
        ]
        logger.debug(
            f"Assembled circuit inputs: root {str(merkle_root)[:12]}…, "
            f"public amount {public_amount}"
        )
        return CircuitInputs(
            public=public,
            input_1=inputs[0],
            input_2=inputs[1],
            output_1=outputs[0],
            output_2=outputs[1],
            spending_key=self.spending_key,
        )
