"""
Notes, commitments and nullifiers.

    commitment = H(amount, owner_pubkey, randomness, token_mint)
    nullifier  = H(commitment, spending_key_hash)

``owner_pubkey`` is ``H(spending_key)``, so the spending-key hash used in
nullifiers is the same value as the owner field of the notes it can spend.

Randomness is sampled per note inside the constructors below; there is
no way to create a note (real or dummy) that shares randomness with
another except by passing it explicitly to :func:`create_note`.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Optional

from shieldflow_core.errors import NoteFormatError, ShieldedError, ValidationError
from shieldflow_core.field import (
    check_field,
    from_decimal,
    random_field_element,
    to_decimal,
)
from shieldflow_core.hashing import FieldHasher, default_hasher

MAX_AMOUNT = (1 << 64) - 1

COMPACT_PREFIX = "p01note:"


def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"amount must be an int, got {type(amount).__name__}")
    if not 0 <= amount <= MAX_AMOUNT:
        raise ValidationError(f"amount {amount} is outside the u64 range")
    return amount


def compute_commitment(
    amount: int,
    owner_pubkey: int,
    randomness: int,
    token_mint: int,
    hasher: Optional[FieldHasher] = None,
) -> int:
    return (hasher or default_hasher()).hash(
        _check_amount(amount), owner_pubkey, randomness, token_mint
    )


def compute_nullifier(
    commitment: int, spending_key_hash: int, hasher: Optional[FieldHasher] = None
) -> int:
    return (hasher or default_hasher()).hash2(commitment, spending_key_hash)


def derive_owner_pubkey(spending_key: int, hasher: Optional[FieldHasher] = None) -> int:
    """Owner field for notes spendable with *spending_key*."""
    return (hasher or default_hasher()).hash(check_field(spending_key, "spending_key"))


# ─── Note ────────────────────────────────────────────────────────────────


@dataclass
class Note:
    """A confidential value record."""
    amount: int
    owner_pubkey: int
    randomness: int
    token_mint: int
    commitment: int
    leaf_index: Optional[int] = None

    @property
    def is_dummy(self) -> bool:
        return self.amount == 0 and self.owner_pubkey == 0

    def recompute_commitment(self, hasher: Optional[FieldHasher] = None) -> int:
        return compute_commitment(
            self.amount, self.owner_pubkey, self.randomness, self.token_mint, hasher
        )

    def verify(self, hasher: Optional[FieldHasher] = None) -> bool:
        """True when the stored commitment matches the note fields."""
        try:
            return self.recompute_commitment(hasher) == self.commitment
        except ShieldedError:
            return False

    def nullifier(self, spending_key_hash: int, hasher: Optional[FieldHasher] = None) -> int:
        return compute_nullifier(self.commitment, spending_key_hash, hasher)

    # ── Serialisation ────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        """Backup form: camelCase keys, field elements as decimal strings."""
        return {
            "amount": str(self.amount),
            "ownerPubkey": to_decimal(self.owner_pubkey),
            "randomness": to_decimal(self.randomness),
            "tokenMint": to_decimal(self.token_mint),
            "commitment": to_decimal(self.commitment),
            "leafIndex": self.leaf_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Note":
        """Parse a serialised note.  Accepts camelCase or snake_case keys."""
        if not isinstance(data, dict):
            raise NoteFormatError("note must be a JSON object")

        def pick(*names: str) -> Any:
            for n in names:
                if n in data and data[n] is not None:
                    return data[n]
            raise NoteFormatError(f"note is missing field {names[0]!r}")

        amount_raw = pick("amount")
        try:
            amount = int(str(amount_raw).strip())
        except ValueError as exc:
            raise NoteFormatError(f"bad amount {amount_raw!r}") from exc

        leaf_raw = data.get("leafIndex", data.get("leaf_index"))
        leaf_index: Optional[int]
        if leaf_raw is None:
            leaf_index = None
        else:
            try:
                leaf_index = int(leaf_raw)
            except (TypeError, ValueError) as exc:
                raise NoteFormatError(f"bad leaf index {leaf_raw!r}") from exc
            if leaf_index < 0:
                raise NoteFormatError(f"negative leaf index {leaf_index}")

        return cls(
            amount=_check_amount(amount),
            owner_pubkey=from_decimal(pick("ownerPubkey", "owner_pubkey"), "owner_pubkey"),
            randomness=from_decimal(pick("randomness"), "randomness"),
            token_mint=from_decimal(pick("tokenMint", "token_mint"), "token_mint"),
            commitment=from_decimal(pick("commitment"), "commitment"),
            leaf_index=leaf_index,
        )

    def to_transport(self) -> dict[str, Any]:
        """Single-note transport object with snake_case keys."""
        return {
            "amount": str(self.amount),
            "owner_pubkey": to_decimal(self.owner_pubkey),
            "randomness": to_decimal(self.randomness),
            "token_mint": to_decimal(self.token_mint),
            "commitment": to_decimal(self.commitment),
            "leaf_index": self.leaf_index,
        }

    def to_compact(self) -> str:
        """Short shareable token: ``p01note:`` + base64(JSON)."""
        payload = {
            "a": str(self.amount),
            "o": to_decimal(self.owner_pubkey),
            "r": to_decimal(self.randomness),
            "t": to_decimal(self.token_mint),
            "c": to_decimal(self.commitment),
            "i": self.leaf_index,
        }
        raw = json.dumps(payload, separators=(",", ":")).encode()
        return COMPACT_PREFIX + base64.b64encode(raw).decode()

    @classmethod
    def from_compact(cls, token: str) -> "Note":
        token = token.strip()
        if not token.startswith(COMPACT_PREFIX):
            raise NoteFormatError("note token must start with " + COMPACT_PREFIX)
        try:
            raw = base64.b64decode(token[len(COMPACT_PREFIX):], validate=True)
            payload = json.loads(raw)
        except (binascii.Error, ValueError) as exc:
            raise NoteFormatError("note token is not valid base64 JSON") from exc
        if not isinstance(payload, dict):
            raise NoteFormatError("note token payload must be an object")
        return cls.from_dict({
            "amount": payload.get("a"),
            "ownerPubkey": payload.get("o"),
            "randomness": payload.get("r"),
            "tokenMint": payload.get("t"),
            "commitment": payload.get("c"),
            "leafIndex": payload.get("i"),
        })


# ─── Constructors ────────────────────────────────────────────────────────


def create_note(
    amount: int,
    owner_pubkey: int,
    token_mint: int,
    randomness: Optional[int] = None,
    hasher: Optional[FieldHasher] = None,
) -> Note:
    """New note; *randomness* is freshly sampled unless given."""
    if randomness is None:
        randomness = random_field_element()
    commitment = compute_commitment(amount, owner_pubkey, randomness, token_mint, hasher)
    return Note(
        amount=amount,
        owner_pubkey=owner_pubkey,
        randomness=randomness,
        token_mint=token_mint,
        commitment=commitment,
    )


def make_dummy_note(token_mint: int = 0, hasher: Optional[FieldHasher] = None) -> Note:
    """Zero-value placeholder for an unused circuit slot.

    Randomness is always sampled here, so two dummies never share it and
    never produce the same nullifier.  The commitment is a genuine hash,
    never the zero "no output" sentinel.
    """
    return create_note(0, 0, token_mint, randomness=random_field_element(), hasher=hasher)
