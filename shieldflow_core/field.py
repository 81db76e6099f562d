"""
BN254 scalar-field helpers.

Field elements are plain Python ``int`` values in ``[0, FIELD_ORDER)``.
On the wire they are 32-byte little-endian integers; in exported notes
they are decimal strings.
"""

from __future__ import annotations

import secrets

from shieldflow_core.errors import FieldRangeError

FIELD_ORDER = (
    21888242871839275222246405745257275088548364400416034343698204186575808495617
)

FIELD_BYTES = 32


def check_field(value: int, name: str = "value") -> int:
    """Return *value* unchanged if it is a canonical field element."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise FieldRangeError(f"{name} must be an int, got {type(value).__name__}")
    if not 0 <= value < FIELD_ORDER:
        raise FieldRangeError(f"{name} is outside the scalar field")
    return value


def to_bytes_le(value: int) -> bytes:
    check_field(value)
    return value.to_bytes(FIELD_BYTES, "little")


def from_bytes_le(data: bytes) -> int:
    """Decode a 32-byte little-endian field element (non-canonical rejected)."""
    if len(data) != FIELD_BYTES:
        raise FieldRangeError(f"field element must be {FIELD_BYTES} bytes, got {len(data)}")
    return check_field(int.from_bytes(data, "little"))


def to_decimal(value: int) -> str:
    return str(check_field(value))


def from_decimal(text: str, name: str = "value") -> int:
    """Parse a decimal-string field element as found in exported notes."""
    if not isinstance(text, str):
        text = str(text)
    text = text.strip()
    if not (text.isascii() and text.isdigit()):
        raise FieldRangeError(f"{name} is not a decimal integer: {text[:24]!r}")
    return check_field(int(text), name)


def random_field_element() -> int:
    """Uniform non-zero field element from the OS CSPRNG."""
    return secrets.randbelow(FIELD_ORDER - 1) + 1


def encode_signed_amount(amount: int) -> int:
    """Map a signed public amount into the field (negatives wrap as p + amount)."""
    if amount < 0:
        if -amount >= FIELD_ORDER:
            raise FieldRangeError("public amount magnitude exceeds the field")
        return FIELD_ORDER + amount
    return check_field(amount, "public amount")


def decode_signed_amount(value: int) -> int:
    """Inverse of :func:`encode_signed_amount` (upper half is negative)."""
    check_field(value, "public amount")
    if value > FIELD_ORDER // 2:
        return value - FIELD_ORDER
    return value
