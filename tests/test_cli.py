"""
Tests for the run_wallet command-line tool.

Covers:
  - keygen refuses to overwrite without --force
  - meta / pay / scan round trip through the key file
  - tree-root matches CommitmentTree
  - balance reads the notes file for the configured token mint
  - Typed errors become exit code 1
  - Notes file keeps spent flags and is replaced atomically
"""

import json
from unittest.mock import patch

import pytest

import run_wallet
from shieldflow_core.merkle import CommitmentTree
from shieldflow_core.notes import create_note


@pytest.fixture
def wallet_env(tmp_path, monkeypatch):
    monkeypatch.setenv("SHIELDFLOW_KEYS_FILE", str(tmp_path / "keys.json"))
    monkeypatch.setenv("SHIELDFLOW_NOTES_FILE", str(tmp_path / "notes.json"))
    monkeypatch.setenv("SHIELDFLOW_TREE_DEPTH", "6")
    with patch.object(run_wallet, "setup_logging"):
        yield tmp_path


async def _run(*argv):
    return await run_wallet.main(list(argv))


class TestCli:

    @pytest.mark.asyncio
    async def test_keygen_meta_pay_scan(self, wallet_env, capsys):
        assert await _run("keygen") == 0
        meta = capsys.readouterr().out.strip()
        assert meta.startswith("st:")

        assert await _run("keygen") == 1
        assert await _run("keygen", "--force") == 0
        meta = capsys.readouterr().out.strip()

        assert await _run("meta") == 0
        assert capsys.readouterr().out.strip() == meta

        assert await _run("pay", meta) == 0
        payment = json.loads(capsys.readouterr().out)
        assert len(bytes.fromhex(payment["announcement"])) == 65

        assert await _run("scan", payment["announcement"], "zz", "00" * 65) == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["address"] == payment["address"]

    @pytest.mark.asyncio
    async def test_tree_root(self, wallet_env, capsys):
        assert await _run("tree-root", "1", "2", "3") == 0
        expected = CommitmentTree.from_leaves([1, 2, 3], depth=6).root
        assert capsys.readouterr().out.strip() == str(expected)

    @pytest.mark.asyncio
    async def test_balance(self, wallet_env, monkeypatch, capsys):
        notes = [create_note(7, 1, 55), create_note(5, 1, 55), create_note(100, 1, 56)]
        (wallet_env / "notes.json").write_text(
            json.dumps({"version": 1, "notes": [n.to_dict() for n in notes]})
        )
        monkeypatch.setenv("SHIELDFLOW_TOKEN_MINT", "55")
        assert await _run("balance") == 0
        out = json.loads(capsys.readouterr().out)
        assert out["balance"] == 12
        assert out["notes"] == 2

    @pytest.mark.asyncio
    async def test_balance_skips_spent_notes(self, wallet_env, monkeypatch, capsys):
        notes = [create_note(7, 1, 55), create_note(5, 1, 55)]
        entries = [n.to_dict() for n in notes]
        entries[0]["spent"] = True
        (wallet_env / "notes.json").write_text(json.dumps({"version": 1, "notes": entries}))
        monkeypatch.setenv("SHIELDFLOW_TOKEN_MINT", "55")
        assert await _run("balance") == 0
        assert json.loads(capsys.readouterr().out)["balance"] == 5

    @pytest.mark.asyncio
    async def test_bad_meta_address(self, wallet_env):
        assert await _run("pay", "st:notbase58!") == 1

    @pytest.mark.asyncio
    async def test_missing_key_file(self, wallet_env):
        assert await _run("meta") == 1

    @pytest.mark.asyncio
    async def test_reconcile_without_url(self, wallet_env):
        assert await _run("reconcile") == 1


class TestNotesFile:

    def test_save_load_keeps_spent(self, tmp_path):
        ledger = run_wallet.NoteLedger()
        kept, spent = create_note(7, 1, 55), create_note(5, 1, 55)
        ledger.add(kept)
        ledger.add(spent)
        ledger.mark_spent(spent.commitment)
        path = str(tmp_path / "data" / "notes.json")

        run_wallet.save_ledger(ledger, path)
        loaded = run_wallet.load_ledger(path)
        assert len(loaded) == 2
        assert loaded.is_spent(spent.commitment)
        assert loaded.balance() == 7

    def test_write_atomic_replaces_without_leftovers(self, tmp_path):
        path = tmp_path / "notes.json"
        path.write_text("old")
        run_wallet.write_atomic(str(path), "new")
        assert path.read_text() == "new"
        assert [p.name for p in tmp_path.iterdir()] == ["notes.json"]

    def test_failed_write_keeps_old_file(self, tmp_path):
        path = tmp_path / "notes.json"
        path.write_text("old")
        with patch.object(run_wallet.os, "replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                run_wallet.write_atomic(str(path), "new")
        assert path.read_text() == "old"
