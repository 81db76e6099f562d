"""
Shielded session — one owner for tree, ledger and prover.

A :class:`ShieldedSession` is created by the caller and passed around
explicitly; there is no module-level service instance.  Closing the
session releases the prover's resources.

Each new output note is also encrypted to its owner's viewing key
(see :mod:`shieldflow_core.delivery`) and the ciphertexts travel on the
request, so a recipient paid at a ``zk:`` address can recover the note
with :meth:`ShieldedSession.receive`.

Spend flow (transfer / unshield)::

    reserve notes  ->  build outputs  ->  capture root + Merkle paths
      ->  assemble CircuitInputs  ->  await prover  ->  await submit()
      ->  insert output commitments, record new notes, mark inputs spent

The tree and ledger are only mutated in the last step.  Any exception
(including cancellation) before it releases the reservation and leaves
local state untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Optional, Union

from shieldflow_core.circuit import CircuitInputs, ProofInputAssembler
from shieldflow_core.delivery import (
    EncryptedNote,
    ViewingKey,
    ZkAddress,
    encrypt_note,
    scan_encrypted_notes,
)
from shieldflow_core.errors import (
    NotYetOnChain,
    ProverError,
    StaleMerkleProof,
    TreeFull,
    ValidationError,
)
from shieldflow_core.field import encode_signed_amount, to_bytes_le
from shieldflow_core.hashing import FieldHasher, default_hasher
from shieldflow_core.merkle import DEFAULT_DEPTH, CommitmentTree, MerkleProof, dummy_proof
from shieldflow_core.note_ledger import ImportReport, NoteLedger, parse_note_payload
from shieldflow_core.notes import Note, create_note, derive_owner_pubkey
from shieldflow_core.prover import Groth16Proof, HttpProver, ProvingClient
from shieldflow_core.reconcile import ChainReconciler, ReconciliationResult

if TYPE_CHECKING:
    from shieldflow_core.chain import CommitmentLogSource
    from shieldflow_core.config import ShieldFlowConfig

logger = logging.getLogger("shieldflow_session")


# ─── Requests handed to the transaction layer ────────────────────────────


@dataclass(frozen=True)
class ShieldRequest:
    """Deposit: public amount in, one new commitment."""
    amount: int
    commitment: int
    new_root: int
    token_mint: int
    encrypted_note: Optional[EncryptedNote] = None


@dataclass(frozen=True)
class SpendRequest:
    """Proof-carrying transfer or withdrawal."""
    kind: str
    proof: Groth16Proof
    inputs: CircuitInputs
    merkle_root: int
    new_root: int
    public_amount: int
    recipient: Optional[bytes] = None
    encrypted_notes: tuple[EncryptedNote, ...] = ()

    @property
    def nullifiers(self) -> tuple[int, int]:
        return self.inputs.public.nullifier_1, self.inputs.public.nullifier_2

    @property
    def output_commitments(self) -> tuple[int, int]:
        return self.inputs.public.output_commitment_1, self.inputs.public.output_commitment_2

    def instruction_data(self) -> bytes:
        """proof || nullifiers || output commitments || old root || new root (LE fields)."""
        parts = [self.proof.to_bytes()]
        parts += [to_bytes_le(v) for v in self.nullifiers]
        parts += [to_bytes_le(v) for v in self.output_commitments]
        parts += [to_bytes_le(self.merkle_root), to_bytes_le(self.new_root)]
        return b"".join(parts)


Submitter = Callable[[Union[ShieldRequest, SpendRequest]], Awaitable[Any]]


@dataclass
class FlowResult:
    kind: str
    receipt: Any
    new_root: int
    leaf_indices: list[int] = field(default_factory=list)
    recipient_note: Optional[Note] = None
    change_note: Optional[Note] = None
    spent: list[Note] = field(default_factory=list)
    encrypted_notes: list[EncryptedNote] = field(default_factory=list)


# ─── Session ─────────────────────────────────────────────────────────────


class ShieldedSession:
    """Explicit owner of one party's shielded state for one token."""

    def __init__(
        self,
        spending_key: int,
        token_mint: int = 0,
        prover: Optional[ProvingClient] = None,
        depth: int = DEFAULT_DEPTH,
        hasher: Optional[FieldHasher] = None,
        tree: Optional[CommitmentTree] = None,
    ) -> None:
        self.hasher = hasher or default_hasher()
        self.token_mint = token_mint
        self.owner_pubkey = derive_owner_pubkey(spending_key, self.hasher)
        self.viewing_key = ViewingKey.from_spending_key(spending_key)
        self.tree = tree or CommitmentTree(depth=depth, hasher=self.hasher)
        self.ledger = NoteLedger(owner_pubkey=self.owner_pubkey, hasher=self.hasher)
        self.assembler = ProofInputAssembler(spending_key, self.hasher, self.tree.depth)
        self.reconciler = ChainReconciler(depth=self.tree.depth, hasher=self.hasher)
        self.prover = prover
        self._closed = False

    @classmethod
    def from_config(
        cls,
        cfg: "ShieldFlowConfig",
        spending_key: int,
        token_mint: int = 0,
        prover: Optional[ProvingClient] = None,
    ) -> "ShieldedSession":
        if prover is None and cfg.prover.url:
            prover = ProvingClient(
                HttpProver(cfg.prover.url, cfg.prover.timeout_seconds),
                timeout=cfg.prover.timeout_seconds,
                max_attempts=cfg.prover.max_attempts,
                backoff=cfg.prover.backoff_seconds,
            )
        return cls(spending_key, token_mint, prover=prover, depth=cfg.tree.depth)

    # ── Lifecycle ────────────────────────────────────────────────

    async def close(self) -> None:
        if not self._closed and self.prover is not None:
            await self.prover.close()
        self._closed = True

    async def __aenter__(self) -> "ShieldedSession":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ── Read-only views ──────────────────────────────────────────

    def zk_address(self) -> ZkAddress:
        """Address others pay to; notes sent here open with our viewing key."""
        return ZkAddress(owner_pubkey=self.owner_pubkey, viewing_pubkey=self.viewing_key.public)

    @property
    def balance(self) -> int:
        return self.ledger.balance(self.token_mint)

    def status(self) -> dict[str, Any]:
        return {
            "leaf_count": self.tree.leaf_count,
            "root": str(self.tree.root),
            "notes": len(self.ledger),
            "unspent": len(self.ledger.unspent(self.token_mint)),
            "balance": self.balance,
            "available": self.ledger.available_balance(self.token_mint),
            "reconciler": self.reconciler.status(),
        }

    # ── Flows ────────────────────────────────────────────────────

    def _require_capacity(self, n: int) -> None:
        if self.tree.leaf_count + n > self.tree.capacity:
            raise TreeFull(
                f"no room for {n} commitment(s): {self.tree.leaf_count}/{self.tree.capacity} used"
            )

    @staticmethod
    def _require_positive(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"amount must be a positive int, got {amount!r}")

    def _commit(self, commitments: list[int]) -> list[int]:
        first = self.tree.leaf_count
        self.tree.insert_many(commitments)
        return list(range(first, first + len(commitments)))

    async def shield(self, amount: int, submit: Submitter) -> FlowResult:
        """Deposit *amount* into a new note owned by this session."""
        self._require_positive(amount)
        self._require_capacity(1)
        note = create_note(amount, self.owner_pubkey, self.token_mint, hasher=self.hasher)
        request = ShieldRequest(
            amount=amount,
            commitment=note.commitment,
            new_root=self.tree.root_after([note.commitment]),
            token_mint=self.token_mint,
            encrypted_note=encrypt_note(note, self.viewing_key.public),
        )
        receipt = await submit(request)

        indices = self._commit([note.commitment])
        note.leaf_index = indices[0]
        self.ledger.add(note)
        logger.info(f"Shielded {amount} into leaf #{note.leaf_index}")
        return FlowResult(kind="shield", receipt=receipt, new_root=self.tree.root,
                          leaf_indices=indices, change_note=note,
                          encrypted_notes=[request.encrypted_note])

    async def transfer(
        self, amount: int, recipient: Union[ZkAddress, str, int], submit: Submitter
    ) -> FlowResult:
        """Private send: output 1 pays *recipient*, output 2 is our change.

        *recipient* is a :class:`ZkAddress` (or its ``zk:`` string), in
        which case the recipient note is encrypted to its viewing key.  A
        bare owner field element is also accepted; the recipient note must
        then be handed over out of band (``result.recipient_note``).
        """
        self._require_positive(amount)
        if isinstance(recipient, str):
            recipient = ZkAddress.parse(recipient)
        if isinstance(recipient, ZkAddress):
            recipient_owner, recipient_view = recipient.owner_pubkey, recipient.viewing_pubkey
        else:
            recipient_owner, recipient_view = recipient, None

        def build_outputs(total: int) -> list[Note]:
            paid = create_note(amount, recipient_owner, self.token_mint, hasher=self.hasher)
            change = create_note(total - amount, self.owner_pubkey, self.token_mint,
                                 hasher=self.hasher)
            return [paid, change]

        result, outputs = await self._spend(
            "transfer", amount, build_outputs, 0, submit, recipient_view=recipient_view
        )
        result.recipient_note = outputs[0]
        if outputs[1].amount > 0:
            result.change_note = outputs[1]
        return result

    async def unshield(
        self, amount: int, submit: Submitter, recipient: Optional[bytes] = None
    ) -> FlowResult:
        """Withdraw *amount* to a public account; change stays shielded."""
        self._require_positive(amount)

        def build_outputs(total: int) -> list[Note]:
            change = total - amount
            if change > 0:
                return [create_note(change, self.owner_pubkey, self.token_mint,
                                    hasher=self.hasher)]
            return []

        result, outputs = await self._spend(
            "unshield", amount, build_outputs, -amount, submit, recipient
        )
        if not outputs[0].is_dummy:
            result.change_note = outputs[0]
        return result

    def _proof_for(self, note: Note) -> MerkleProof:
        if note.is_dummy:
            return dummy_proof(self.tree.depth)
        if note.leaf_index is None:
            raise NotYetOnChain(
                f"note {str(note.commitment)[:12]}… has no leaf index; reconcile first"
            )
        if self.tree.find_leaf(note.commitment, hint=note.leaf_index) != note.leaf_index:
            raise NotYetOnChain(
                f"note {str(note.commitment)[:12]}… is not at leaf #{note.leaf_index}; "
                f"reconcile first"
            )
        return self.tree.prove(note.leaf_index)

    def _encrypt_outputs(
        self, outputs: list[Note], recipient_view: Optional[bytes]
    ) -> list[EncryptedNote]:
        """Ciphertexts for output 1 (to *recipient_view*) and for our own outputs."""
        encrypted = []
        for slot, note in enumerate(outputs):
            if note.amount == 0:
                continue
            if slot == 0 and recipient_view is not None:
                encrypted.append(encrypt_note(note, recipient_view))
            elif note.owner_pubkey == self.owner_pubkey:
                encrypted.append(encrypt_note(note, self.viewing_key.public))
        return encrypted

    async def _spend(
        self,
        kind: str,
        amount: int,
        build_outputs: Callable[[int], list[Note]],
        public_amount: int,
        submit: Submitter,
        recipient: Optional[bytes] = None,
        recipient_view: Optional[bytes] = None,
    ) -> tuple[FlowResult, list[Note]]:
        self._require_capacity(2)
        if self.prover is None:
            raise ProverError("session has no prover configured")

        reservation = self.ledger.reserve(amount, self.token_mint)
        try:
            spend_notes = self.ledger.pad_inputs(reservation.notes, self.token_mint)
            outputs = self.ledger.pad_outputs(build_outputs(reservation.total), self.token_mint)

            tree = self.tree
            merkle_root = tree.root
            proofs = [self._proof_for(n) for n in spend_notes]
            inputs = self.assembler.build(
                spend_notes, outputs, merkle_root, proofs,
                public_amount=public_amount, token_mint=self.token_mint,
            )

            proof = await self.prover.prove(inputs)

            # The tree may have been replaced or extended while proving.
            if not self.tree.is_known_root(merkle_root):
                raise StaleMerkleProof(merkle_root, self.tree.root)
            commitments = [o.commitment for o in outputs]
            request = SpendRequest(
                kind=kind,
                proof=proof.proof,
                inputs=inputs,
                merkle_root=merkle_root,
                new_root=self.tree.root_after(commitments),
                public_amount=encode_signed_amount(public_amount),
                recipient=recipient,
                encrypted_notes=tuple(self._encrypt_outputs(outputs, recipient_view)),
            )
            receipt = await submit(request)
        except BaseException:
            self.ledger.release(reservation)
            raise

        indices = self._commit(commitments)
        for note, index in zip(outputs, indices):
            note.leaf_index = index
            if note.owner_pubkey == self.owner_pubkey and note.amount > 0:
                self.ledger.add(note)
        self.ledger.confirm(reservation)
        logger.info(
            f"{kind.capitalize()} of {amount} confirmed: spent {len(reservation.notes)} "
            f"note(s), outputs at leaves {indices}"
        )
        result = FlowResult(
            kind=kind, receipt=receipt, new_root=self.tree.root,
            leaf_indices=indices, spent=list(reservation.notes),
            encrypted_notes=list(request.encrypted_notes),
        )
        return result, outputs

    # ── Import / export / reconciliation ─────────────────────────

    def export(self, include_spent: bool = False) -> dict[str, Any]:
        return self.ledger.export(include_spent)

    def import_notes(self, text: str) -> ImportReport:
        return self.ledger.import_notes(text, self.tree)

    def receive(self, items: Iterable[Union[EncryptedNote, bytes]]) -> ImportReport:
        """Trial-decrypt delivered notes and track the ones paid to us.

        Notes whose commitment is not in the local tree yet are tracked
        without a leaf index; they become spendable after :meth:`sync`.
        """
        report = ImportReport()
        for note in scan_encrypted_notes(items, self.viewing_key, self.hasher):
            if note.owner_pubkey != self.owner_pubkey:
                report.invalid += 1
                report.errors.append(
                    f"note {str(note.commitment)[:12]}… opened with our viewing key "
                    f"but is owned by another spending key"
                )
                continue
            known = note.commitment in self.ledger
            try:
                self.ledger.import_note(note, self.tree)
            except NotYetOnChain:
                if not known:
                    self.ledger.add(note)
                report.not_on_chain += 1
                report.needs_sync = True
                continue
            if known:
                report.duplicates += 1
            else:
                report.imported += 1
        if report.total:
            logger.info(
                f"Received {report.imported} new note(s), {report.not_on_chain} pending, "
                f"{report.duplicates} already known"
            )
        return report

    async def import_notes_synced(self, text: str, source: "CommitmentLogSource") -> ImportReport:
        """Import, reconciling first if any note claims a leaf beyond our tree."""
        notes = parse_note_payload(text)
        if any(n.leaf_index is not None and n.leaf_index >= self.tree.leaf_count for n in notes):
            logger.info("Imported notes reference unseen leaves; reconciling first")
            await self.sync(source)
        return self.ledger.import_notes(text, self.tree)

    def apply_reconciliation(self, result: ReconciliationResult) -> None:
        self.tree = result.tree

    async def sync(
        self,
        source: "CommitmentLogSource",
        page_size: int = 100,
        max_attempts: int = 3,
        backoff: float = 1.0,
    ) -> ReconciliationResult:
        """Rebuild the tree from *source* and swap it in wholesale."""
        result = await self.reconciler.sync(
            source, self.ledger, page_size=page_size,
            max_attempts=max_attempts, backoff=backoff,
        )
        self.apply_reconciliation(result)
        return result
