"""
Dual-key stealth addresses over Ed25519.

A recipient publishes a *meta-address* ``(scan_pub, spend_pub)``.  For
every payment the sender draws an ephemeral key pair and derives a
one-time address only the recipient can recognise and spend from:

    shared   = e_priv * scan_pub        (= scan_priv * e_pub)
    h        = SHA-256(shared)
    tag      = h[0]
    address  = spend_pub + (h mod L) * G
    one-time private key = spend_priv + (h mod L)   (mod L)

The view tag lets the scanner skip the point addition and comparison for
non-matching candidates.  ECDH still has to run before the tag can be
checked, so it is a protocol-compatibility field, not a scanning speedup.

Wire formats
------------
Meta-address:  ``st:`` + base58(0x01 || scan_pub(32) || spend_pub(32))
Announcement:  view_tag(1) || ephemeral_pub(32) || stealth_address(32)
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional, Union

import base58

from shieldflow_core import curve
from shieldflow_core.errors import InvalidPointError, MetaAddressError, ValidationError

logger = logging.getLogger("shieldflow_stealth")

META_PREFIX = "st:"
META_VERSION = 0x01
META_PAYLOAD_LEN = 1 + 2 * curve.POINT_BYTES     # 65

ANNOUNCEMENT_LEN = 1 + 2 * curve.POINT_BYTES     # 65


def shared_hash(shared: bytes) -> bytes:
    return hashlib.sha256(shared).digest()


def compute_view_tag(shared: bytes) -> int:
    """First byte of SHA-256 of the shared point."""
    return shared_hash(shared)[0]


def shared_scalar(shared: bytes) -> int:
    return curve.hash_to_scalar(shared)


# ─── Keys and meta-address ───────────────────────────────────────────────


@dataclass(frozen=True)
class StealthMetaAddress:
    """A recipient's publishable identity."""
    scan_pubkey: bytes
    spend_pubkey: bytes
    version: int = META_VERSION

    def to_bytes(self) -> bytes:
        return bytes([self.version]) + self.scan_pubkey + self.spend_pubkey

    def encode(self) -> str:
        return META_PREFIX + base58.b58encode(self.to_bytes()).decode("ascii")

    def __str__(self) -> str:
        return self.encode()

    @classmethod
    def parse(cls, text: str) -> "StealthMetaAddress":
        """Decode ``st:<base58>``; any defect raises MetaAddressError."""
        if not isinstance(text, str) or not text.startswith(META_PREFIX):
            raise MetaAddressError(f"meta-address must start with {META_PREFIX!r}")
        body = text[len(META_PREFIX):]
        try:
            payload = base58.b58decode(body)
        except ValueError as exc:
            raise MetaAddressError("meta-address is not valid base58") from exc
        if len(payload) != META_PAYLOAD_LEN:
            raise MetaAddressError(
                f"meta-address payload must be {META_PAYLOAD_LEN} bytes, got {len(payload)}"
            )
        if payload[0] != META_VERSION:
            raise MetaAddressError(f"unsupported meta-address version {payload[0]:#04x}")
        return make_meta_address(
            spend_pub=payload[33:65], scan_pub=payload[1:33]
        )


def make_meta_address(spend_pub: bytes, scan_pub: bytes) -> StealthMetaAddress:
    """Validate both keys and wrap them in a versioned meta-address."""
    try:
        curve.decode_point(scan_pub)
        curve.decode_point(spend_pub)
    except InvalidPointError as exc:
        raise MetaAddressError(f"meta-address key is not a curve point: {exc}") from exc
    return StealthMetaAddress(scan_pubkey=bytes(scan_pub), spend_pubkey=bytes(spend_pub))


@dataclass(frozen=True)
class StealthKeys:
    """Recipient key material: scan and spend scalars plus their points."""
    scan_private: int
    spend_private: int

    @classmethod
    def generate(cls) -> "StealthKeys":
        return cls(scan_private=curve.random_scalar(), spend_private=curve.random_scalar())

    @classmethod
    def from_seed(cls, seed: bytes) -> "StealthKeys":
        """Deterministic keys from a seed (for tests and recovery)."""
        scan = curve.hash_to_scalar(b"shieldflow.scan" + seed)
        spend = curve.hash_to_scalar(b"shieldflow.spend" + seed)
        if scan == 0 or spend == 0:
            raise ValidationError("seed derives a zero scalar")
        return cls(scan_private=scan, spend_private=spend)

    @property
    def scan_public(self) -> bytes:
        return curve.base_mul(self.scan_private)

    @property
    def spend_public(self) -> bytes:
        return curve.base_mul(self.spend_private)

    def meta_address(self) -> StealthMetaAddress:
        return make_meta_address(spend_pub=self.spend_public, scan_pub=self.scan_public)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": META_VERSION,
            "scan_private": curve.scalar_to_bytes(self.scan_private).hex(),
            "spend_private": curve.scalar_to_bytes(self.spend_private).hex(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StealthKeys":
        try:
            scan = bytes.fromhex(data["scan_private"])
            spend = bytes.fromhex(data["spend_private"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("stealth key file is malformed") from exc
        return cls(
            scan_private=curve.scalar_from_bytes(scan),
            spend_private=curve.scalar_from_bytes(spend),
        )


# ─── Payment addresses ───────────────────────────────────────────────────


@dataclass(frozen=True)
class StealthAddress:
    """One-time payment destination."""
    address: bytes
    ephemeral_pubkey: bytes
    view_tag: int

    def to_announcement(self) -> bytes:
        return encode_announcement(self)


@dataclass(frozen=True)
class ViewResult:
    """A candidate recognised by :func:`scan`."""
    address: bytes
    ephemeral_pubkey: bytes
    shared_secret: bytes
    view_tag: int

    def spend_key(self, spend_private: int) -> int:
        return derive_spend_key(self.shared_secret, spend_private)


def derive_payment_address(
    meta: Union[StealthMetaAddress, str],
    ephemeral_private: Optional[int] = None,
) -> StealthAddress:
    """Derive a fresh one-time address for *meta*."""
    if isinstance(meta, str):
        meta = StealthMetaAddress.parse(meta)
    e_priv = ephemeral_private if ephemeral_private is not None else curve.random_scalar()
    e_pub = curve.base_mul(e_priv)
    shared = curve.ecdh(e_priv, meta.scan_pubkey)
    tweak = curve.base_mul(shared_scalar(shared))
    address = curve.point_add(meta.spend_pubkey, tweak)
    return StealthAddress(
        address=address,
        ephemeral_pubkey=e_pub,
        view_tag=compute_view_tag(shared),
    )


def scan(
    candidate: StealthAddress,
    scan_private: int,
    spend_public: bytes,
    verify_address: bool = True,
) -> Optional[ViewResult]:
    """Return a ViewResult if *candidate* is addressed to us, else None.

    Candidates come from untrusted chain data: a malformed ephemeral key
    is "not ours", never an exception.  With ``verify_address=False``
    only the view tag is checked and the match is provisional.
    """
    try:
        shared = curve.ecdh(scan_private, candidate.ephemeral_pubkey)
    except InvalidPointError as exc:
        logger.debug(f"Skipping candidate with bad ephemeral key: {exc}")
        return None

    tag = compute_view_tag(shared)
    if tag != candidate.view_tag:
        return None

    if verify_address:
        try:
            expected = curve.point_add(spend_public, curve.base_mul(shared_scalar(shared)))
        except InvalidPointError as exc:
            logger.debug(f"Tag matched but address derivation failed: {exc}")
            return None
        if expected != candidate.address:
            logger.debug("View tag collision; address does not match")
            return None

    return ViewResult(
        address=candidate.address,
        ephemeral_pubkey=candidate.ephemeral_pubkey,
        shared_secret=shared,
        view_tag=tag,
    )


def derive_spend_key(shared: bytes, spend_private: int) -> int:
    """One-time private scalar for an address recognised by :func:`scan`."""
    key = (spend_private + shared_scalar(shared)) % curve.CURVE_ORDER
    if key == 0:
        raise ValidationError("derived one-time key is zero")
    return key


# ─── Announcements ───────────────────────────────────────────────────────


def encode_announcement(sa: StealthAddress) -> bytes:
    if len(sa.ephemeral_pubkey) != curve.POINT_BYTES or len(sa.address) != curve.POINT_BYTES:
        raise ValidationError("announcement keys must be 32 bytes each")
    return bytes([sa.view_tag]) + sa.ephemeral_pubkey + sa.address


def parse_announcement(data: bytes) -> StealthAddress:
    if len(data) != ANNOUNCEMENT_LEN:
        raise ValidationError(
            f"announcement must be {ANNOUNCEMENT_LEN} bytes, got {len(data)}"
        )
    return StealthAddress(
        address=bytes(data[33:65]),
        ephemeral_pubkey=bytes(data[1:33]),
        view_tag=data[0],
    )


def scan_announcements(
    announcements: Iterable[Union[bytes, StealthAddress]],
    keys: StealthKeys,
) -> Iterator[ViewResult]:
    """Yield every announcement addressed to *keys*; malformed ones are skipped."""
    spend_public = keys.spend_public
    for item in announcements:
        if isinstance(item, StealthAddress):
            candidate = item
        else:
            try:
                candidate = parse_announcement(item)
            except ValidationError as exc:
                logger.debug(f"Skipping malformed announcement: {exc}")
                continue
        result = scan(candidate, keys.scan_private, spend_public)
        if result is not None:
            yield result
