"""
Shielded receiving addresses and encrypted note delivery.

A recipient publishes a *zk address*: the owner field their notes carry
plus an Ed25519 viewing public key.  A sender paying that address
encrypts the full note (amount, owner, randomness, mint) to the viewing
key and ships the ciphertext alongside the transaction.  The recipient
trial-decrypts every ciphertext it sees; the ones that open are theirs.

    shared = e_priv * view_pub        (= view_priv * e_pub)
    key    = keccak256("shieldflow.note-key" || shared)
    body   = AES-256-GCM(key, nonce, note fields, aad = commitment)

Wire formats
------------
Address:         ``zk:`` + base58(0x01 || owner_pubkey(32 LE) || view_pub(32))
Encrypted note:  commitment(32 LE) || ephemeral_pub(32) || nonce(12) || tag(16) || body(104)

The viewing key is derived from the spending key, so a wallet restored
from its spending key can recover every note that was delivered to it.
"""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Union

import base58
from Crypto.Cipher import AES

from shieldflow_core import curve
from shieldflow_core.errors import (
    FieldRangeError,
    InvalidCommitment,
    InvalidPointError,
    ValidationError,
    ZkAddressError,
)
from shieldflow_core.field import FIELD_BYTES, check_field, from_bytes_le, to_bytes_le
from shieldflow_core.hashing import FieldHasher, keccak256
from shieldflow_core.notes import Note, compute_commitment

logger = logging.getLogger("shieldflow_delivery")

ZK_PREFIX = "zk:"
ZK_VERSION = 0x01
ZK_PAYLOAD_LEN = 1 + FIELD_BYTES + curve.POINT_BYTES        # 65

NOTE_KEY_DOMAIN = b"shieldflow.note-key"
VIEW_KEY_DOMAIN = b"shieldflow.view"

NONCE_BYTES = 12
TAG_BYTES = 16
PLAINTEXT_LEN = 8 + 3 * FIELD_BYTES                         # 104
ENCRYPTED_NOTE_LEN = (
    FIELD_BYTES + curve.POINT_BYTES + NONCE_BYTES + TAG_BYTES + PLAINTEXT_LEN
)                                                           # 196


# ─── Keys and address ────────────────────────────────────────────────────


@dataclass(frozen=True)
class ViewingKey:
    """Scalar that opens notes delivered to one zk address."""
    private: int

    @classmethod
    def from_spending_key(cls, spending_key: int) -> "ViewingKey":
        scalar = curve.hash_to_scalar(
            VIEW_KEY_DOMAIN + to_bytes_le(check_field(spending_key, "spending_key"))
        )
        if scalar == 0:
            raise ValidationError("spending key derives a zero viewing scalar")
        return cls(private=scalar)

    @property
    def public(self) -> bytes:
        return curve.base_mul(self.private)


@dataclass(frozen=True)
class ZkAddress:
    """Receiving address for shielded transfers."""
    owner_pubkey: int
    viewing_pubkey: bytes
    version: int = ZK_VERSION

    def to_bytes(self) -> bytes:
        return bytes([self.version]) + to_bytes_le(self.owner_pubkey) + self.viewing_pubkey

    def encode(self) -> str:
        return ZK_PREFIX + base58.b58encode(self.to_bytes()).decode("ascii")

    def __str__(self) -> str:
        return self.encode()

    @classmethod
    def parse(cls, text: str) -> "ZkAddress":
        """Decode ``zk:<base58>``; any defect raises ZkAddressError."""
        if not isinstance(text, str) or not text.startswith(ZK_PREFIX):
            raise ZkAddressError(f"zk address must start with {ZK_PREFIX!r}")
        try:
            payload = base58.b58decode(text[len(ZK_PREFIX):])
        except ValueError as exc:
            raise ZkAddressError("zk address is not valid base58") from exc
        if len(payload) != ZK_PAYLOAD_LEN:
            raise ZkAddressError(
                f"zk address payload must be {ZK_PAYLOAD_LEN} bytes, got {len(payload)}"
            )
        if payload[0] != ZK_VERSION:
            raise ZkAddressError(f"unsupported zk address version {payload[0]:#04x}")
        try:
            owner = from_bytes_le(payload[1:1 + FIELD_BYTES])
        except FieldRangeError as exc:
            raise ZkAddressError(f"zk address owner is not a field element: {exc}") from exc
        return make_zk_address(owner, payload[1 + FIELD_BYTES:])


def make_zk_address(owner_pubkey: int, viewing_pubkey: bytes) -> ZkAddress:
    """Validate both halves and wrap them in a versioned address."""
    try:
        check_field(owner_pubkey, "owner_pubkey")
        curve.decode_point(viewing_pubkey)
    except (FieldRangeError, InvalidPointError) as exc:
        raise ZkAddressError(f"zk address is malformed: {exc}") from exc
    return ZkAddress(owner_pubkey=owner_pubkey, viewing_pubkey=bytes(viewing_pubkey))


# ─── Encrypted notes ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class EncryptedNote:
    commitment: int
    ephemeral_pubkey: bytes
    nonce: bytes
    tag: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        return (
            to_bytes_le(self.commitment) + self.ephemeral_pubkey
            + self.nonce + self.tag + self.ciphertext
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedNote":
        if len(data) != ENCRYPTED_NOTE_LEN:
            raise ValidationError(
                f"encrypted note must be {ENCRYPTED_NOTE_LEN} bytes, got {len(data)}"
            )
        off = FIELD_BYTES
        commitment = from_bytes_le(data[:off])
        ephemeral = data[off:off + curve.POINT_BYTES]
        off += curve.POINT_BYTES
        nonce = data[off:off + NONCE_BYTES]
        off += NONCE_BYTES
        tag = data[off:off + TAG_BYTES]
        off += TAG_BYTES
        return cls(commitment, bytes(ephemeral), bytes(nonce), bytes(tag), bytes(data[off:]))

    def hex(self) -> str:
        return self.to_bytes().hex()

    @classmethod
    def from_hex(cls, text: str) -> "EncryptedNote":
        try:
            data = bytes.fromhex(text)
        except ValueError as exc:
            raise ValidationError("encrypted note is not valid hex") from exc
        return cls.from_bytes(data)


def _note_key(shared: bytes) -> bytes:
    return keccak256(NOTE_KEY_DOMAIN + shared)


def _pack_note(note: Note) -> bytes:
    return (
        struct.pack("<Q", note.amount)
        + to_bytes_le(note.owner_pubkey)
        + to_bytes_le(note.randomness)
        + to_bytes_le(note.token_mint)
    )


def encrypt_note(note: Note, viewing_pubkey: bytes) -> EncryptedNote:
    """Encrypt *note* so only the holder of *viewing_pubkey*'s scalar can open it."""
    ephemeral = curve.random_scalar()
    shared = curve.ecdh(ephemeral, viewing_pubkey)
    nonce = os.urandom(NONCE_BYTES)
    cipher = AES.new(_note_key(shared), AES.MODE_GCM, nonce=nonce)
    cipher.update(to_bytes_le(note.commitment))
    ciphertext, tag = cipher.encrypt_and_digest(_pack_note(note))
    return EncryptedNote(
        commitment=note.commitment,
        ephemeral_pubkey=curve.base_mul(ephemeral),
        nonce=nonce,
        tag=tag,
        ciphertext=ciphertext,
    )


def decrypt_note(
    encrypted: EncryptedNote,
    viewing_key: ViewingKey,
    hasher: Optional[FieldHasher] = None,
) -> Optional[Note]:
    """Open *encrypted* with *viewing_key*.

    Returns None when the ciphertext was not addressed to this key (the
    GCM tag does not verify).  Raises InvalidPointError for a malformed
    ephemeral key and InvalidCommitment when the sender encrypted fields
    that do not hash to the published commitment.
    """
    shared = curve.ecdh(viewing_key.private, encrypted.ephemeral_pubkey)
    cipher = AES.new(_note_key(shared), AES.MODE_GCM, nonce=encrypted.nonce)
    cipher.update(to_bytes_le(encrypted.commitment))
    try:
        plain = cipher.decrypt_and_verify(encrypted.ciphertext, encrypted.tag)
    except ValueError:
        return None
    if len(plain) != PLAINTEXT_LEN:
        raise InvalidCommitment(f"decrypted note body is {len(plain)} bytes")

    (amount,) = struct.unpack_from("<Q", plain, 0)
    owner = from_bytes_le(plain[8:40])
    randomness = from_bytes_le(plain[40:72])
    mint = from_bytes_le(plain[72:104])
    if compute_commitment(amount, owner, randomness, mint, hasher) != encrypted.commitment:
        raise InvalidCommitment(
            f"delivered note does not open commitment {str(encrypted.commitment)[:12]}…"
        )
    return Note(
        amount=amount,
        owner_pubkey=owner,
        randomness=randomness,
        token_mint=mint,
        commitment=encrypted.commitment,
    )


def scan_encrypted_notes(
    items: Iterable[Union[EncryptedNote, bytes]],
    viewing_key: ViewingKey,
    hasher: Optional[FieldHasher] = None,
) -> Iterator[Note]:
    """Yield every note in *items* that opens under *viewing_key*.

    Malformed entries are logged and skipped so one bad ciphertext does
    not stop a scan over a public feed.
    """
    for item in items:
        try:
            encrypted = item if isinstance(item, EncryptedNote) else EncryptedNote.from_bytes(item)
            note = decrypt_note(encrypted, viewing_key, hasher)
        except (ValidationError, InvalidCommitment) as exc:
            logger.warning(f"Skipping undecodable encrypted note: {exc}")
            continue
        if note is not None:
            logger.debug(f"Received note {str(note.commitment)[:12]}… amount={note.amount}")
            yield note
