"""
Integration tests for the aiohttp-backed collaborators.

Covers:
  - HttpLogSource: state and paginated commitments, 429 retried, 404 fatal
  - Reconciliation over HTTP end to end
  - HttpProver: snarkjs response decoding, 5xx retryable, 4xx fatal
"""

from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from shieldflow_core.chain import HttpLogSource, fetch_commitment_log
from shieldflow_core.errors import LogFetchError, ProverError
from shieldflow_core.field import to_bytes_le
from shieldflow_core.merkle import CommitmentTree
from shieldflow_core.prover import HttpProver
from shieldflow_core.reconcile import ChainReconciler

DEPTH = 8
LEAVES = [5000 + 3 * i for i in range(9)]

SNARKJS_PROOF = {
    "pi_a": ["11", "12", "1"],
    "pi_b": [["21", "22"], ["23", "24"], ["1", "0"]],
    "pi_c": ["31", "32", "1"],
    "protocol": "groth16",
    "curve": "bn128",
}


def _indexer_app(throttle_first: int = 0) -> web.Application:
    state = {"throttled": 0}
    root = CommitmentTree.from_leaves(LEAVES, depth=DEPTH).root

    async def get_state(request):
        return web.json_response({
            "root": to_bytes_le(root).hex(),
            "leafCount": len(LEAVES),
            "depth": DEPTH,
        })

    async def get_commitments(request):
        if state["throttled"] < throttle_first:
            state["throttled"] += 1
            return web.json_response({"error": "slow down"}, status=429)
        cursor = int(request.query.get("cursor", 0))
        limit = int(request.query.get("limit", 100))
        chunk = LEAVES[cursor:cursor + limit]
        end = cursor + len(chunk)
        return web.json_response({
            "entries": [
                {"leafIndex": cursor + i, "commitment": to_bytes_le(c).hex()}
                for i, c in enumerate(chunk)
            ],
            "nextCursor": end if end < len(LEAVES) else None,
        })

    app = web.Application()
    app.router.add_get("/state", get_state)
    app.router.add_get("/commitments", get_commitments)
    return app


def _prover_app(statuses: list[int]) -> web.Application:
    remaining = list(statuses)

    async def prove(request):
        body = await request.json()
        status = remaining.pop(0) if remaining else 200
        if status != 200:
            return web.json_response({"error": "nope"}, status=status)
        return web.json_response({
            "proof": SNARKJS_PROOF,
            "publicSignals": list(body["public"].values()),
        })

    app = web.Application()
    app.router.add_post("/prove", prove)
    return app


# ═══════════════════════════════════════════════════════════════════
#  Indexer
# ═══════════════════════════════════════════════════════════════════

class TestHttpLogSource:

    @pytest.mark.asyncio
    async def test_paginated_fetch_with_throttling(self):
        async with TestServer(_indexer_app(throttle_first=2)) as server:
            source = HttpLogSource(str(server.make_url("/")))
            try:
                entries = await fetch_commitment_log(
                    source, page_size=4, max_attempts=3, backoff=0.0
                )
            finally:
                await source.close()
        assert [e.commitment for e in entries] == LEAVES

    @pytest.mark.asyncio
    async def test_reconcile_over_http(self):
        async with TestServer(_indexer_app()) as server:
            source = HttpLogSource(str(server.make_url("/")))
            try:
                result = await ChainReconciler(depth=DEPTH).sync(source, page_size=5, backoff=0.0)
            finally:
                await source.close()
        assert not result.divergent
        assert result.tree.leaves() == LEAVES

    @pytest.mark.asyncio
    async def test_missing_route_is_fatal(self):
        app = web.Application()
        async with TestServer(app) as server:
            source = HttpLogSource(str(server.make_url("/")))
            try:
                with pytest.raises(LogFetchError):
                    await source.fetch_state()
            finally:
                await source.close()


# ═══════════════════════════════════════════════════════════════════
#  Prover
# ═══════════════════════════════════════════════════════════════════

class TestHttpProver:

    @pytest.mark.asyncio
    async def test_prove(self):
        async with TestServer(_prover_app([])) as server:
            prover = HttpProver(str(server.make_url("/prove")), request_timeout=5.0)
            try:
                result = await prover.prove({"merkle_root": "1"}, {"spending_key": "2"})
            finally:
                await prover.close()
        assert result.proof.pi_a[31] == 11
        assert result.proof.pi_b[127] == 24
        assert result.public_signals == ["1"]

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        async with TestServer(_prover_app([503])) as server:
            prover = HttpProver(str(server.make_url("/prove")))
            try:
                with pytest.raises(ProverError) as exc:
                    await prover.prove({}, {})
            finally:
                await prover.close()
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_client_error_is_fatal(self):
        async with TestServer(_prover_app([400])) as server:
            prover = HttpProver(str(server.make_url("/prove")))
            try:
                with pytest.raises(ProverError) as exc:
                    await prover.prove({}, {})
            finally:
                await prover.close()
        assert not exc.value.retryable
