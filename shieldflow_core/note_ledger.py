"""
Note ledger — the set of notes owned by the local party.

Tracks every owned note and its position in the commitment tree, and
implements the spend-side lifecycle:

  1. ``reserve``   — select up to two unspent notes and hold them so that
                     no concurrent spend flow can pick them too
  2. ``pad_*``     — fill the fixed-arity circuit slots with dummy notes
  3. ``confirm``   — after proof + on-chain confirmation, mark spent
     ``release``   — on any failure, return the notes to the pool

Import / export
---------------
``export()`` produces ``{"version": 1, "notes": [...]}`` with decimal
strings.  ``import_notes()`` accepts that backup format, a single note
object, or a ``p01note:`` compact token.
"""

from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from shieldflow_core.errors import (
    InsufficientBalance,
    InvalidCommitment,
    NoteFormatError,
    NoteReserved,
    NotYetOnChain,
    ValidationError,
)
from shieldflow_core.hashing import FieldHasher, default_hasher
from shieldflow_core.merkle import CommitmentTree
from shieldflow_core.notes import COMPACT_PREFIX, Note, make_dummy_note

logger = logging.getLogger("shieldflow_notes")

# Fixed input / output arity of the transfer circuit.
CIRCUIT_ARITY = 2

# Selection never takes more notes than the circuit has input slots.
MAX_SELECTED_NOTES = CIRCUIT_ARITY

EXPORT_VERSION = 1


@dataclass
class Reservation:
    """Notes held by one in-flight spend flow."""
    reservation_id: int
    notes: list[Note]
    total: int
    target: int


@dataclass
class ImportReport:
    """Outcome counts for a bulk import."""
    imported: int = 0
    duplicates: int = 0
    invalid: int = 0
    not_on_chain: int = 0
    needs_sync: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.imported + self.duplicates + self.invalid + self.not_on_chain


def parse_note_records(text: str) -> list[tuple[Note, bool]]:
    """Decode a payload into ``(note, spent)`` pairs.

    Only backup entries carry a ``spent`` flag; every other form is unspent.
    """
    text = text.strip()
    if text.startswith(COMPACT_PREFIX):
        return [(Note.from_compact(text), False)]
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise NoteFormatError("note payload is neither JSON nor a note token") from exc

    if isinstance(data, dict) and "notes" in data:
        version = data.get("version", EXPORT_VERSION)
        if version != EXPORT_VERSION:
            raise NoteFormatError(f"unsupported backup version {version!r}")
        items = data["notes"]
    elif isinstance(data, dict):
        items = [data]
    elif isinstance(data, list):
        items = data
    else:
        raise NoteFormatError("note payload must be an object or a list")
    if not isinstance(items, list):
        raise NoteFormatError("'notes' must be a list")
    records = []
    for item in items:
        note = Note.from_dict(item)
        records.append((note, item.get("spent") is True))
    return records


def parse_note_payload(text: str) -> list[Note]:
    """Decode backup JSON, a single note object, a list, or a compact token."""
    return [note for note, _ in parse_note_records(text)]


class NoteLedger:
    """Owned notes, spent set and spend reservations."""

    def __init__(
        self,
        owner_pubkey: Optional[int] = None,
        hasher: Optional[FieldHasher] = None,
    ) -> None:
        self.owner_pubkey = owner_pubkey
        self.hasher = hasher or default_hasher()
        self._notes: dict[int, Note] = {}          # commitment -> note
        self._spent: set[int] = set()               # commitments
        self._reserved: dict[int, int] = {}         # commitment -> reservation id
        self._reservation_ids = itertools.count(1)

    # ── Basic accessors ──────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._notes)

    def __contains__(self, commitment: int) -> bool:
        return commitment in self._notes

    def get(self, commitment: int) -> Optional[Note]:
        return self._notes.get(commitment)

    def notes(self) -> list[Note]:
        return list(self._notes.values())

    def is_spent(self, commitment: int) -> bool:
        return commitment in self._spent

    def is_reserved(self, commitment: int) -> bool:
        return commitment in self._reserved

    def unspent(self, token_mint: Optional[int] = None) -> list[Note]:
        return [
            n for c, n in self._notes.items()
            if c not in self._spent
            and (token_mint is None or n.token_mint == token_mint)
        ]

    def balance(self, token_mint: Optional[int] = None) -> int:
        return sum(n.amount for n in self.unspent(token_mint))

    def available_balance(self, token_mint: Optional[int] = None) -> int:
        """Unspent balance not held by an in-flight spend."""
        return sum(
            n.amount for n in self.unspent(token_mint)
            if n.commitment not in self._reserved
        )

    # ── Mutation ─────────────────────────────────────────────────

    def add(self, note: Note) -> bool:
        """Track *note*.  Returns False if it was already tracked."""
        if not note.verify(self.hasher):
            raise InvalidCommitment("note fields do not hash to its commitment")
        if note.commitment in self._notes:
            return False
        self._notes[note.commitment] = note
        logger.debug(
            f"Tracking note {str(note.commitment)[:12]}… amount={note.amount} "
            f"leaf={note.leaf_index}"
        )
        return True

    def mark_spent(self, commitment: int) -> None:
        if commitment not in self._notes:
            raise KeyError(f"unknown note {commitment}")
        self._spent.add(commitment)
        self._reserved.pop(commitment, None)

    def nullifier_for(self, note: Note) -> int:
        if self.owner_pubkey is None:
            raise ValidationError("ledger has no owner key; cannot derive nullifiers")
        return note.nullifier(self.owner_pubkey, self.hasher)

    # ── Selection ────────────────────────────────────────────────

    def select(
        self,
        target_amount: int,
        token_mint: Optional[int] = None,
        include_reserved: bool = False,
        located_only: bool = False,
    ) -> tuple[list[Note], int]:
        """Greedy largest-first selection of at most two notes.

        Stops once the target is met (with at least one note) or the
        cap is reached.  The caller must compare ``total`` to the target.
        With *located_only*, notes without a leaf index (pending or
        cleared by reconciliation) are not candidates.
        """
        candidates = [
            n for n in self.unspent(token_mint)
            if (include_reserved or n.commitment not in self._reserved)
            and (not located_only or n.leaf_index is not None)
        ]
        candidates.sort(key=lambda n: n.amount, reverse=True)

        selected: list[Note] = []
        total = 0
        for note in candidates:
            if len(selected) >= MAX_SELECTED_NOTES:
                break
            selected.append(note)
            total += note.amount
            if total >= target_amount:
                break
        return selected, total

    def reserve(self, target_amount: int, token_mint: Optional[int] = None) -> Reservation:
        """Select and hold notes for one spend flow.

        Selection and reservation happen without yielding, so two flows
        on the same ledger never hold overlapping notes.  Only notes with
        a leaf index are spendable, since a spend needs a Merkle path.
        """
        notes, total = self.select(target_amount, token_mint, located_only=True)
        if total < target_amount:
            raise InsufficientBalance(target_amount, total)
        for note in notes:
            if note.commitment in self._reserved:
                raise NoteReserved(f"note {str(note.commitment)[:12]}… is already reserved")
        rid = next(self._reservation_ids)
        for note in notes:
            self._reserved[note.commitment] = rid
        logger.debug(f"Reservation #{rid}: {len(notes)} note(s), total {total}")
        return Reservation(reservation_id=rid, notes=notes, total=total, target=target_amount)

    def release(self, reservation: Reservation) -> None:
        for note in reservation.notes:
            if self._reserved.get(note.commitment) == reservation.reservation_id:
                del self._reserved[note.commitment]

    def confirm(self, reservation: Reservation) -> None:
        """Mark every reserved note spent and drop the reservation."""
        for note in reservation.notes:
            self.mark_spent(note.commitment)
        logger.info(
            f"Spent {len(reservation.notes)} note(s) (reservation #{reservation.reservation_id})"
        )

    # ── Padding ──────────────────────────────────────────────────

    def pad_inputs(self, notes: list[Note], token_mint: int = 0) -> list[Note]:
        """Fill input slots up to the circuit arity with fresh dummy notes."""
        return self._pad(notes, token_mint, "input")

    def pad_outputs(self, notes: list[Note], token_mint: int = 0) -> list[Note]:
        """Fill output slots; dummy outputs are genuine non-zero commitments."""
        return self._pad(notes, token_mint, "output")

    def _pad(self, notes: list[Note], token_mint: int, kind: str) -> list[Note]:
        if len(notes) > CIRCUIT_ARITY:
            raise ValueError(f"{len(notes)} {kind} notes exceed circuit arity {CIRCUIT_ARITY}")
        padded = list(notes)
        while len(padded) < CIRCUIT_ARITY:
            padded.append(make_dummy_note(token_mint, self.hasher))
        return padded

    # ── Import / export ──────────────────────────────────────────

    def import_note(self, note: Note, tree: CommitmentTree) -> Note:
        """Verify *note*, locate it in *tree* and track it.

        Raises InvalidCommitment if the fields do not match the claimed
        commitment and NotYetOnChain if the tree does not contain it.
        """
        if not note.verify(self.hasher):
            raise InvalidCommitment(
                f"note {str(note.commitment)[:12]}… does not match its fields"
            )
        index = tree.find_leaf(note.commitment, hint=note.leaf_index)
        if index is None:
            raise NotYetOnChain(
                f"commitment {str(note.commitment)[:12]}… is not in the local tree "
                f"({tree.leaf_count} leaves); reconcile and retry"
            )

        existing = self._notes.get(note.commitment)
        target = existing if existing is not None else note
        if target.leaf_index != index:
            logger.info(
                f"Corrected leaf index for {str(note.commitment)[:12]}…: "
                f"{target.leaf_index} -> {index}"
            )
            target.leaf_index = index
        if existing is None:
            self._notes[note.commitment] = note
        return target

    def import_notes(self, text: str, tree: CommitmentTree) -> ImportReport:
        """Bulk import from backup JSON, a note object or a compact token."""
        report = ImportReport()
        for note in parse_note_payload(text):
            if note.leaf_index is not None and note.leaf_index >= tree.leaf_count:
                report.needs_sync = True
            known = note.commitment in self._notes
            try:
                # Tracked notes are re-located too, correcting drifted indices.
                self.import_note(note, tree)
            except InvalidCommitment as exc:
                report.invalid += 1
                report.errors.append(str(exc))
            except NotYetOnChain as exc:
                report.not_on_chain += 1
                report.errors.append(str(exc))
            else:
                if known:
                    report.duplicates += 1
                else:
                    report.imported += 1
        logger.info(
            f"Imported {report.imported} note(s): {report.duplicates} duplicate, "
            f"{report.invalid} invalid, {report.not_on_chain} not on chain"
        )
        return report

    def export(self, include_spent: bool = False) -> dict[str, Any]:
        """Backup dict.  Spent notes, when included, carry ``"spent": true``."""
        entries = []
        for note in (self.notes() if include_spent else self.unspent()):
            entry = note.to_dict()
            if note.commitment in self._spent:
                entry["spent"] = True
            entries.append(entry)
        return {"version": EXPORT_VERSION, "notes": entries}

    def export_json(self, include_spent: bool = False) -> str:
        return json.dumps(self.export(include_spent), indent=2)

    def restore(self, text: str) -> int:
        """Load a backup written by :meth:`export_json`, keeping spent flags.

        Unlike :meth:`import_notes` nothing is checked against a tree.
        Returns the number of newly tracked notes.
        """
        added = 0
        for note, spent in parse_note_records(text):
            if self.add(note):
                added += 1
            if spent:
                self._spent.add(note.commitment)
        return added

    @staticmethod
    def export_single(note: Note) -> dict[str, Any]:
        return note.to_transport()

    def correct_indices(self, leaves: Iterable[int]) -> int:
        """Re-point every note at its commitment's position in *leaves*.

        Returns the number of notes whose index changed.
        """
        positions: dict[int, int] = {}
        for i, leaf in enumerate(leaves):
            positions.setdefault(leaf, i)
        changed = 0
        for note in self._notes.values():
            index = positions.get(note.commitment)
            if index != note.leaf_index:
                if index is None:
                    logger.warning(
                        f"Note {str(note.commitment)[:12]}… not found on chain; "
                        f"clearing leaf index {note.leaf_index}"
                    )
                note.leaf_index = index
                changed += 1
        if changed:
            logger.info(f"Corrected {changed} note leaf index(es)")
        return changed
