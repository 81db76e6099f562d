"""
Ed25519 group arithmetic for the stealth-address protocol.

All point and scalar operations go through ``ecdsa``'s twisted-Edwards
implementation.  Points travel as 32-byte RFC 8032 encodings; scalars
are integers modulo the prime subgroup order ``L``.

Any result that is the neutral element, or any encoding that does not
decode to a curve point, raises :class:`InvalidPointError`.  There is no
fallback arithmetic.
"""

from __future__ import annotations

import hashlib
import secrets

from ecdsa.eddsa import curve_ed25519, generator_ed25519
from ecdsa.ellipticcurve import INFINITY, PointEdwards
from ecdsa.errors import MalformedPointError

from shieldflow_core.errors import InvalidPointError, ValidationError

POINT_BYTES = 32
SCALAR_BYTES = 32

#: Order of the Ed25519 prime-order subgroup.
CURVE_ORDER = generator_ed25519.order()

G = generator_ed25519


def _check_scalar(scalar: int) -> int:
    if isinstance(scalar, bool) or not isinstance(scalar, int):
        raise ValidationError(f"scalar must be an int, got {type(scalar).__name__}")
    scalar %= CURVE_ORDER
    if scalar == 0:
        raise ValidationError("scalar is zero modulo the curve order")
    return scalar


def _ensure_finite(point) -> PointEdwards:
    if point is INFINITY or point == INFINITY:
        raise InvalidPointError("operation produced the neutral element")
    return point


def random_scalar() -> int:
    """Uniform scalar in ``[1, L)``."""
    return secrets.randbelow(CURVE_ORDER - 1) + 1


def scalar_from_bytes(data: bytes) -> int:
    if len(data) != SCALAR_BYTES:
        raise ValidationError(f"scalar must be {SCALAR_BYTES} bytes, got {len(data)}")
    return _check_scalar(int.from_bytes(data, "little"))


def scalar_to_bytes(scalar: int) -> bytes:
    return _check_scalar(scalar).to_bytes(SCALAR_BYTES, "little")


def decode_point(data: bytes) -> PointEdwards:
    """Decode a 32-byte point, raising InvalidPointError on any defect."""
    if not isinstance(data, (bytes, bytearray)):
        raise InvalidPointError(f"point must be bytes, got {type(data).__name__}")
    if len(data) != POINT_BYTES:
        raise InvalidPointError(f"point must be {POINT_BYTES} bytes, got {len(data)}")
    try:
        point = PointEdwards.from_bytes(curve_ed25519, bytes(data))
    except MalformedPointError as exc:
        raise InvalidPointError(f"bytes are not a curve point: {exc}") from exc
    return _ensure_finite(point)


def encode_point(point: PointEdwards) -> bytes:
    return bytes(_ensure_finite(point).to_bytes())


def base_mul(scalar: int) -> bytes:
    """``scalar * G`` encoded."""
    return encode_point(G * _check_scalar(scalar))


def point_mul(scalar: int, point: bytes) -> bytes:
    """``scalar * P`` for an encoded point P."""
    return encode_point(decode_point(point) * _check_scalar(scalar))


def point_add(a: bytes, b: bytes) -> bytes:
    """Group addition of two encoded points."""
    return encode_point(decode_point(a) + decode_point(b))


def ecdh(private_scalar: int, public_point: bytes) -> bytes:
    """Shared point ``private * public`` as 32 bytes."""
    return point_mul(private_scalar, public_point)


def hash_to_scalar(data: bytes) -> int:
    """SHA-256 of *data*, read little-endian, reduced modulo L."""
    return int.from_bytes(hashlib.sha256(data).digest(), "little") % CURVE_ORDER
