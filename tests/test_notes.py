"""
Tests for shieldflow_core.notes — note model, commitments and nullifiers.

Covers:
  - Commitment and nullifier definitions
  - Owner pubkey derivation from the spending key
  - Amount range validation (u64)
  - Dummy notes: zero value, fresh randomness, non-zero commitment
  - 10,000 dummy notes yield 10,000 distinct nullifiers
  - Backup dict, transport dict and compact token formats
  - Malformed serialised notes raise NoteFormatError
"""

import base64
import json
import unittest

from shieldflow_core.errors import NoteFormatError, ValidationError
from shieldflow_core.hashing import default_hasher
from shieldflow_core.notes import (
    COMPACT_PREFIX,
    MAX_AMOUNT,
    Note,
    compute_commitment,
    compute_nullifier,
    create_note,
    derive_owner_pubkey,
    make_dummy_note,
)

MINT = 777
KEY = 123456789


class TestCommitments(unittest.TestCase):

    def test_commitment_definition(self):
        h = default_hasher()
        self.assertEqual(compute_commitment(5, 6, 7, 8), h.hash(5, 6, 7, 8))

    def test_nullifier_definition(self):
        h = default_hasher()
        self.assertEqual(compute_nullifier(11, 22), h.hash(11, 22))

    def test_owner_pubkey_is_hash_of_key(self):
        self.assertEqual(derive_owner_pubkey(KEY), default_hasher().hash(KEY))

    def test_create_note_verifies(self):
        n = create_note(100, derive_owner_pubkey(KEY), MINT)
        self.assertTrue(n.verify())
        self.assertIsNone(n.leaf_index)
        self.assertFalse(n.is_dummy)

    def test_tampered_note_fails_verify(self):
        n = create_note(100, 1, MINT)
        n.amount = 101
        self.assertFalse(n.verify())

    def test_equal_fields_collide(self):
        a = create_note(5, 1, MINT, randomness=99)
        b = create_note(5, 1, MINT, randomness=99)
        self.assertEqual(a.commitment, b.commitment)
        self.assertEqual(a.nullifier(3), b.nullifier(3))

    def test_fresh_randomness_per_note(self):
        a = create_note(5, 1, MINT)
        b = create_note(5, 1, MINT)
        self.assertNotEqual(a.randomness, b.randomness)
        self.assertNotEqual(a.commitment, b.commitment)

    def test_amount_range(self):
        create_note(MAX_AMOUNT, 1, MINT)
        with self.assertRaises(ValidationError):
            create_note(MAX_AMOUNT + 1, 1, MINT)
        with self.assertRaises(ValidationError):
            create_note(-1, 1, MINT)


class TestDummyNotes(unittest.TestCase):

    def test_dummy_shape(self):
        d = make_dummy_note(MINT)
        self.assertEqual(d.amount, 0)
        self.assertEqual(d.owner_pubkey, 0)
        self.assertEqual(d.token_mint, MINT)
        self.assertTrue(d.is_dummy)
        self.assertTrue(d.verify())

    def test_dummy_commitment_is_not_zero_sentinel(self):
        for _ in range(100):
            self.assertNotEqual(make_dummy_note(MINT).commitment, 0)

    def test_ten_thousand_distinct_nullifiers(self):
        key_hash = derive_owner_pubkey(KEY)
        nullifiers = {make_dummy_note(MINT).nullifier(key_hash) for _ in range(10_000)}
        self.assertEqual(len(nullifiers), 10_000)


class TestSerialisation(unittest.TestCase):

    def setUp(self):
        self.note = create_note(250, derive_owner_pubkey(KEY), MINT)
        self.note.leaf_index = 7

    def test_backup_dict_uses_decimal_strings(self):
        d = self.note.to_dict()
        self.assertEqual(d["amount"], "250")
        self.assertEqual(d["commitment"], str(self.note.commitment))
        self.assertEqual(d["leafIndex"], 7)
        self.assertEqual(
            set(d), {"amount", "ownerPubkey", "randomness", "tokenMint", "commitment", "leafIndex"}
        )

    def test_transport_dict_keys(self):
        d = self.note.to_transport()
        self.assertEqual(
            set(d),
            {"amount", "owner_pubkey", "randomness", "token_mint", "commitment", "leaf_index"},
        )
        self.assertIsInstance(d["owner_pubkey"], str)

    def test_from_dict_accepts_both_key_styles(self):
        self.assertEqual(Note.from_dict(self.note.to_dict()), self.note)
        self.assertEqual(Note.from_dict(self.note.to_transport()), self.note)

    def test_from_dict_null_leaf_index(self):
        d = self.note.to_dict()
        d["leafIndex"] = None
        self.assertIsNone(Note.from_dict(d).leaf_index)

    def test_from_dict_missing_field(self):
        d = self.note.to_dict()
        del d["randomness"]
        with self.assertRaises(NoteFormatError):
            Note.from_dict(d)

    def test_from_dict_bad_amount(self):
        d = self.note.to_dict()
        d["amount"] = "lots"
        with self.assertRaises(NoteFormatError):
            Note.from_dict(d)

    def test_from_dict_negative_leaf(self):
        d = self.note.to_dict()
        d["leafIndex"] = -2
        with self.assertRaises(NoteFormatError):
            Note.from_dict(d)

    def test_compact_token(self):
        token = self.note.to_compact()
        self.assertTrue(token.startswith(COMPACT_PREFIX))
        payload = json.loads(base64.b64decode(token[len(COMPACT_PREFIX):]))
        self.assertEqual(set(payload), {"a", "o", "r", "t", "c", "i"})
        self.assertEqual(Note.from_compact(token), self.note)

    def test_compact_token_bad_prefix(self):
        with self.assertRaises(NoteFormatError):
            Note.from_compact("p02note:abcd")

    def test_compact_token_bad_base64(self):
        with self.assertRaises(NoteFormatError):
            Note.from_compact(COMPACT_PREFIX + "!!!not-base64!!!")


if __name__ == "__main__":
    unittest.main()
