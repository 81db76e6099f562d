"""
Field-element hash primitive.

Commitments, nullifiers and tree nodes are all computed with one
:class:`FieldHasher`.  The hasher must match the external circuit bit for
bit, so it is injected rather than hard-wired: a Poseidon implementation
can be supplied by subclassing :class:`FieldHasher`.

The default :class:`KeccakFieldHasher` is

    keccak256(domain || arity || le32(x_1) || ... || le32(x_n)) mod p

with the domain tag and arity byte separating hashes of different shapes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from Crypto.Hash import keccak

from shieldflow_core.errors import FieldRangeError
from shieldflow_core.field import FIELD_ORDER, check_field, to_bytes_le


def keccak256(data: bytes) -> bytes:
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def keccak_to_field(data: bytes) -> int:
    """Reduce keccak256(data), read little-endian, into the scalar field."""
    return int.from_bytes(keccak256(data), "little") % FIELD_ORDER


class FieldHasher(ABC):
    """Hash of one or more field elements to a field element."""

    #: Short identifier stored alongside tree snapshots.
    name: str = "abstract"
    #: Bumped whenever the output for a given input changes.
    version: int = 0

    @property
    def tag(self) -> str:
        return f"{self.name}/v{self.version}"

    @abstractmethod
    def _hash(self, elements: tuple[int, ...]) -> int:
        ...

    def hash(self, *elements: int) -> int:
        if not elements:
            raise FieldRangeError("hash requires at least one element")
        for i, e in enumerate(elements):
            check_field(e, f"hash input {i}")
        return self._hash(elements)

    def hash2(self, left: int, right: int) -> int:
        return self.hash(left, right)


class KeccakFieldHasher(FieldHasher):
    name = "keccak256-bn254"
    version = 1

    def __init__(self, domain: bytes = b"shieldflow.hash") -> None:
        self.domain = domain

    @property
    def tag(self) -> str:
        if self.domain == b"shieldflow.hash":
            return super().tag
        return f"{super().tag}:{self.domain.hex()}"

    def _hash(self, elements: tuple[int, ...]) -> int:
        if len(elements) > 255:
            raise FieldRangeError("at most 255 elements per hash")
        buf = bytearray(self.domain)
        buf.append(len(elements))
        for e in elements:
            buf += to_bytes_le(e)
        return keccak_to_field(bytes(buf))


_DEFAULT = KeccakFieldHasher()


def default_hasher() -> FieldHasher:
    """The process-wide default hasher (stateless, safe to share)."""
    return _DEFAULT
