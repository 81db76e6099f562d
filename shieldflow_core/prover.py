"""
Proving-service client.

The Groth16 prover is an external collaborator consumed as

    prove(public_inputs, private_inputs) -> (pi_a, pi_b, pi_c)

Proof generation takes seconds, so it is awaited with a bounded timeout
and retried with backoff; after the last attempt the caller gets
:class:`ProofTimeout` or :class:`ProverError`, never a hang.  Cancelling
``ProvingClient.prove`` is always safe because nothing local is mutated
until a proof has been returned and the transaction confirmed.

Proof bytes (big-endian coordinates, as consumed by the on-chain
verifier):

    pi_a  64 bytes   G1  x || y
    pi_b 128 bytes   G2  x0 || x1 || y0 || y1
    pi_c  64 bytes   G1  x || y
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp

from shieldflow_core.circuit import CircuitInputs
from shieldflow_core.errors import ProofTimeout, ProverError, ValidationError

logger = logging.getLogger("shieldflow_prover")

# Seconds to wait for one proof before giving up on the attempt.
PROOF_TIMEOUT = 120.0

# Upper bound for the delay between attempts.
MAX_BACKOFF = 15.0

G1_BYTES = 64
G2_BYTES = 128


def _coord(value: Any) -> bytes:
    return int(value).to_bytes(32, "big")


@dataclass(frozen=True)
class Groth16Proof:
    pi_a: bytes
    pi_b: bytes
    pi_c: bytes

    def __post_init__(self) -> None:
        if len(self.pi_a) != G1_BYTES or len(self.pi_c) != G1_BYTES:
            raise ValidationError("pi_a and pi_c must be 64 bytes")
        if len(self.pi_b) != G2_BYTES:
            raise ValidationError("pi_b must be 128 bytes")

    @classmethod
    def from_snarkjs(cls, proof: dict[str, Any]) -> "Groth16Proof":
        """Convert snarkjs JSON (projective decimal coordinates) to bytes."""
        try:
            a, b, c = proof["pi_a"], proof["pi_b"], proof["pi_c"]
            return cls(
                pi_a=_coord(a[0]) + _coord(a[1]),
                pi_b=_coord(b[0][0]) + _coord(b[0][1]) + _coord(b[1][0]) + _coord(b[1][1]),
                pi_c=_coord(c[0]) + _coord(c[1]),
            )
        except (KeyError, IndexError, TypeError, ValueError, OverflowError) as exc:
            raise ProverError(f"malformed proof from prover: {exc}") from exc

    def to_bytes(self) -> bytes:
        return self.pi_a + self.pi_b + self.pi_c

    def to_dict(self) -> dict[str, str]:
        return {"pi_a": self.pi_a.hex(), "pi_b": self.pi_b.hex(), "pi_c": self.pi_c.hex()}


@dataclass(frozen=True)
class ProofResult:
    proof: Groth16Proof
    public_signals: list[str] = field(default_factory=list)


class Prover(ABC):
    """An external Groth16 proving engine."""

    @abstractmethod
    async def prove(
        self, public_inputs: dict[str, str], private_inputs: dict[str, Any]
    ) -> ProofResult:
        ...

    async def close(self) -> None:
        return None


# ─── Timeout / retry wrapper ─────────────────────────────────────────────


class ProvingClient:
    """Awaits a :class:`Prover` with a timeout and bounded retries."""

    def __init__(
        self,
        prover: Prover,
        timeout: float = PROOF_TIMEOUT,
        max_attempts: int = 2,
        backoff: float = 1.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.prover = prover
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.proofs_generated = 0

    async def prove(self, inputs: CircuitInputs) -> ProofResult:
        public = inputs.public_inputs()
        private = inputs.private_inputs()
        expected = inputs.public_signals()

        delay = self.backoff
        last_error: Exception = ProofTimeout("prover was never called")
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await asyncio.wait_for(
                    self.prover.prove(public, private), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                last_error = ProofTimeout(
                    f"no proof after {self.timeout:.1f}s (attempt {attempt}/{self.max_attempts})"
                )
                logger.warning(str(last_error))
            except ProverError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
                logger.warning(f"Prover attempt {attempt}/{self.max_attempts} failed: {exc}")
            else:
                if result.public_signals and list(result.public_signals) != expected:
                    raise ProverError("prover returned public signals for different inputs")
                self.proofs_generated += 1
                logger.info(f"Proof generated (attempt {attempt})")
                return result

            if attempt < self.max_attempts:
                await asyncio.sleep(delay)
                delay = min(delay * 1.5, MAX_BACKOFF)

        raise last_error

    async def close(self) -> None:
        await self.prover.close()


# ─── HTTP prover ─────────────────────────────────────────────────────────


class HttpProver(Prover):
    """Proving service reached over HTTP.

    POSTs ``{"public": {...}, "private": {...}}`` and expects
    ``{"proof": <snarkjs proof>, "publicSignals": [...]}``.
    """

    def __init__(self, url: str, request_timeout: float = PROOF_TIMEOUT) -> None:
        self.url = url
        self.request_timeout = request_timeout
        self._http_session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
        return self._http_session

    async def prove(
        self, public_inputs: dict[str, str], private_inputs: dict[str, Any]
    ) -> ProofResult:
        session = await self._get_session()
        body = {"public": public_inputs, "private": private_inputs}
        try:
            async with session.post(self.url, json=body) as resp:
                if resp.status >= 500:
                    raise ProverError(f"prover HTTP {resp.status}", retryable=True)
                if resp.status != 200:
                    text = await resp.text()
                    raise ProverError(f"prover rejected request: HTTP {resp.status} {text[:200]}")
                data = await resp.json()
        except aiohttp.ClientError as exc:
            raise ProverError(f"prover unreachable: {type(exc).__name__}", retryable=True) from exc

        if not isinstance(data, dict) or "proof" not in data:
            raise ProverError("prover response has no 'proof'")
        return ProofResult(
            proof=Groth16Proof.from_snarkjs(data["proof"]),
            public_signals=[str(s) for s in data.get("publicSignals", [])],
        )

    async def close(self) -> None:
        if self._http_session is not None and not self._http_session.closed:
            await self._http_session.close()
