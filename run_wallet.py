#!/usr/bin/env python3
"""
ShieldFlow wallet tool — stealth keys, payment addresses, scanning and
chain reconciliation from the command line.

Usage:
    python run_wallet.py keygen
    python run_wallet.py meta
    python run_wallet.py pay st:<base58>
    python run_wallet.py scan <announcement-hex> [...]
    python run_wallet.py tree-root <commitment> [...]
    python run_wallet.py balance
    python run_wallet.py reconcile --url https://indexer.example/pool

Environment variables (alternative to flags):
    SHIELDFLOW_KEYS_FILE, SHIELDFLOW_NOTES_FILE, SHIELDFLOW_CHAIN_URL, SHIELDFLOW_TOKEN_MINT,
    SHIELDFLOW_LOG_LEVEL, SHIELDFLOW_LOG_FMT
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from pathlib import Path

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from shieldflow_core.chain import HttpLogSource  # noqa: E402
from shieldflow_core.config import ShieldFlowConfig, load_config  # noqa: E402
from shieldflow_core.errors import ShieldedError  # noqa: E402
from shieldflow_core.field import from_decimal  # noqa: E402
from shieldflow_core.logging_config import setup_logging  # noqa: E402
from shieldflow_core.merkle import CommitmentTree  # noqa: E402
from shieldflow_core.note_ledger import NoteLedger  # noqa: E402
from shieldflow_core.reconcile import ChainReconciler  # noqa: E402
from shieldflow_core.stealth import (  # noqa: E402
    StealthKeys,
    derive_payment_address,
    scan_announcements,
)

logger = logging.getLogger("shieldflow_cli")


# ===================================================================
#  Key file helpers
# ===================================================================

def load_keys(path: str) -> StealthKeys:
    with open(path, encoding="utf-8") as f:
        return StealthKeys.from_dict(json.load(f))


def write_atomic(path: str, text: str, mode: int = 0o600) -> None:
    """Write *text* to a sibling temp file, fsync it, then rename over *path*."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    with contextlib.suppress(OSError):
        os.chmod(tmp, mode)
    os.replace(tmp, p)


def save_keys(keys: StealthKeys, path: str) -> None:
    write_atomic(path, json.dumps(keys.to_dict(), indent=2))


def load_ledger(path: str) -> NoteLedger:
    ledger = NoteLedger()
    p = Path(path)
    if p.exists():
        ledger.restore(p.read_text(encoding="utf-8"))
    return ledger


def save_ledger(ledger: NoteLedger, path: str) -> None:
    write_atomic(path, ledger.export_json(include_spent=True))


# ===================================================================
#  Commands
# ===================================================================

def cmd_keygen(args, cfg: ShieldFlowConfig) -> int:
    if Path(cfg.wallet.keys_file).exists() and not args.force:
        logger.error(f"{cfg.wallet.keys_file} exists; pass --force to overwrite")
        return 1
    keys = StealthKeys.generate()
    save_keys(keys, cfg.wallet.keys_file)
    logger.info(f"Stealth keys written to {cfg.wallet.keys_file}")
    print(keys.meta_address().encode())
    return 0


def cmd_meta(args, cfg: ShieldFlowConfig) -> int:
    print(load_keys(cfg.wallet.keys_file).meta_address().encode())
    return 0


def cmd_pay(args, cfg: ShieldFlowConfig) -> int:
    sa = derive_payment_address(args.meta_address)
    print(json.dumps({
        "address": sa.address.hex(),
        "ephemeral_pubkey": sa.ephemeral_pubkey.hex(),
        "view_tag": sa.view_tag,
        "announcement": sa.to_announcement().hex(),
    }, indent=2))
    return 0


def cmd_scan(args, cfg: ShieldFlowConfig) -> int:
    keys = load_keys(cfg.wallet.keys_file)
    raw = []
    for text in args.announcements:
        try:
            raw.append(bytes.fromhex(text))
        except ValueError:
            logger.warning(f"Ignoring non-hex announcement {text[:16]}…")
    found = 0
    for result in scan_announcements(raw, keys):
        found += 1
        print(json.dumps({
            "address": result.address.hex(),
            "ephemeral_pubkey": result.ephemeral_pubkey.hex(),
        }))
    logger.info(f"{found} of {len(raw)} announcement(s) belong to this wallet")
    return 0


def cmd_balance(args, cfg: ShieldFlowConfig) -> int:
    mint = from_decimal(cfg.chain.token_mint, "token_mint")
    ledger = load_ledger(cfg.wallet.notes_file)
    print(json.dumps({
        "token_mint": str(mint),
        "balance": ledger.balance(mint),
        "notes": len(ledger.unspent(mint)),
    }, indent=2))
    return 0


def cmd_tree_root(args, cfg: ShieldFlowConfig) -> int:
    tree = CommitmentTree.from_leaves(
        (from_decimal(c, "commitment") for c in args.commitments), depth=cfg.tree.depth
    )
    print(tree.root)
    return 0


async def cmd_reconcile(args, cfg: ShieldFlowConfig) -> int:
    url = args.url or cfg.chain.url
    if not url:
        logger.error("no indexer URL: pass --url or set [chain] url")
        return 1
    ledger = load_ledger(cfg.wallet.notes_file)
    source = HttpLogSource(url)
    reconciler = ChainReconciler(depth=cfg.tree.depth)
    try:
        result = await reconciler.sync(
            source, ledger,
            page_size=cfg.chain.page_size,
            max_attempts=cfg.chain.max_attempts,
            backoff=cfg.chain.backoff_seconds,
        )
    finally:
        await source.close()

    save_ledger(ledger, cfg.wallet.notes_file)
    print(json.dumps({
        "leaf_count": result.state.leaf_count,
        "root": str(result.state.local_root),
        "on_chain_root": str(result.state.on_chain_root),
        "divergent": result.divergent,
        "indices_corrected": result.indices_corrected,
    }, indent=2))
    return 2 if result.divergent else 0


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv=None):
    p = argparse.ArgumentParser(description="ShieldFlow shielded wallet tool")
    p.add_argument("--config", default=None, help="Path to shieldflow.toml config file")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--log-format", default=None, choices=["human", "json"])
    sub = p.add_subparsers(dest="command", required=True)

    kg = sub.add_parser("keygen", help="Generate stealth scan/spend keys")
    kg.add_argument("--force", action="store_true", help="Overwrite an existing key file")

    sub.add_parser("meta", help="Print this wallet's stealth meta-address")

    pay = sub.add_parser("pay", help="Derive a one-time address for a meta-address")
    pay.add_argument("meta_address")

    sc = sub.add_parser("scan", help="Check announcements (hex) against this wallet")
    sc.add_argument("announcements", nargs="+")

    sub.add_parser("balance", help="Sum of stored notes for the configured token mint")

    tr = sub.add_parser("tree-root", help="Root of a fresh tree over the given commitments")
    tr.add_argument("commitments", nargs="*")

    rc = sub.add_parser("reconcile", help="Rebuild the tree from an indexer and fix notes")
    rc.add_argument("--url", default=None, help="Indexer base URL")
    return p.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    cfg = load_config(args.config)
    if args.log_level:
        cfg.logging.level = args.log_level.upper()
    if args.log_format:
        cfg.logging.format = args.log_format
    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    handlers = {
        "keygen": cmd_keygen,
        "meta": cmd_meta,
        "pay": cmd_pay,
        "scan": cmd_scan,
        "tree-root": cmd_tree_root,
        "balance": cmd_balance,
    }
    try:
        if args.command == "reconcile":
            return await cmd_reconcile(args, cfg)
        return handlers[args.command](args, cfg)
    except ShieldedError as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        return 1
    except FileNotFoundError as exc:
        logger.error(f"missing file: {exc.filename}")
        return 1


def main_sync():
    """Synchronous entry point for console_scripts."""
    code = 0
    with contextlib.suppress(KeyboardInterrupt):
        code = asyncio.run(main())
    sys.exit(code)


if __name__ == "__main__":
    main_sync()
