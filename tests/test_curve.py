"""
Tests for shieldflow_core.curve — Ed25519 arithmetic wrapper.

Covers:
  - Base point encoding matches RFC 8032
  - Scalar / point encodings and range checks
  - Group laws: aG + bG == (a+b)G, ECDH symmetry
  - Malformed encodings and the neutral element raise InvalidPointError
"""

import hashlib
import unittest

from shieldflow_core import curve
from shieldflow_core.errors import InvalidPointError, ValidationError

# RFC 8032 encoding of the Ed25519 base point
BASE_POINT_HEX = "5866666666666666666666666666666666666666666666666666666666666666"
IDENTITY = b"\x01" + b"\x00" * 31


class TestScalars(unittest.TestCase):

    def test_curve_order(self):
        self.assertEqual(curve.CURVE_ORDER, 2**252 + 27742317777372353535851937790883648493)

    def test_random_scalar_range(self):
        for _ in range(50):
            s = curve.random_scalar()
            self.assertTrue(0 < s < curve.CURVE_ORDER)

    def test_scalar_bytes_roundtrip(self):
        s = curve.random_scalar()
        self.assertEqual(curve.scalar_from_bytes(curve.scalar_to_bytes(s)), s)

    def test_zero_scalar_rejected(self):
        with self.assertRaises(ValidationError):
            curve.base_mul(0)
        with self.assertRaises(ValidationError):
            curve.base_mul(curve.CURVE_ORDER)

    def test_scalar_bytes_length(self):
        with self.assertRaises(ValidationError):
            curve.scalar_from_bytes(b"\x01" * 31)

    def test_hash_to_scalar_reduced(self):
        for i in range(20):
            self.assertLess(curve.hash_to_scalar(bytes([i])), curve.CURVE_ORDER)


class TestPoints(unittest.TestCase):

    def test_base_point_encoding(self):
        self.assertEqual(curve.base_mul(1).hex(), BASE_POINT_HEX)

    def test_decode_encode_roundtrip(self):
        enc = curve.base_mul(curve.random_scalar())
        self.assertEqual(curve.encode_point(curve.decode_point(enc)), enc)

    def test_addition_matches_scalar_sum(self):
        a, b = curve.random_scalar(), curve.random_scalar()
        self.assertEqual(
            curve.point_add(curve.base_mul(a), curve.base_mul(b)),
            curve.base_mul((a + b) % curve.CURVE_ORDER),
        )

    def test_ecdh_symmetric(self):
        a, b = curve.random_scalar(), curve.random_scalar()
        self.assertEqual(
            curve.ecdh(a, curve.base_mul(b)),
            curve.ecdh(b, curve.base_mul(a)),
        )

    def test_point_mul_matches_base_mul(self):
        a, b = curve.random_scalar(), curve.random_scalar()
        self.assertEqual(
            curve.point_mul(a, curve.base_mul(b)),
            curve.base_mul(a * b % curve.CURVE_ORDER),
        )

    def test_wrong_length(self):
        for data in (b"", b"\x01" * 31, b"\x01" * 33):
            with self.assertRaises(InvalidPointError):
                curve.decode_point(data)

    def test_not_bytes(self):
        with self.assertRaises(InvalidPointError):
            curve.decode_point("58" * 32)

    def test_identity_rejected(self):
        with self.assertRaises(InvalidPointError):
            curve.decode_point(IDENTITY)

    def test_off_curve_encodings_rejected(self):
        # Roughly half of all 32-byte strings are not valid y-coordinates.
        rejected = 0
        for i in range(64):
            data = hashlib.sha256(b"off-curve-%d" % i).digest()
            try:
                curve.decode_point(data)
            except InvalidPointError:
                rejected += 1
        self.assertGreater(rejected, 0)

    def test_cancelling_addition_is_hard_error(self):
        a = curve.random_scalar()
        with self.assertRaises(InvalidPointError):
            curve.point_add(curve.base_mul(a), curve.base_mul(curve.CURVE_ORDER - a))


if __name__ == "__main__":
    unittest.main()
