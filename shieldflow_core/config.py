"""
TOML-based configuration for ShieldFlow wallets.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from shieldflow_core.config import load_config
    cfg = load_config("shieldflow.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class TreeConfig:
    """Commitment tree shape.  Must match the on-chain tree and circuit."""
    depth: int = 20


@dataclass
class ProverConfig:
    """External Groth16 proving service."""
    url: str = ""                    # empty = no prover (read-only session)
    timeout_seconds: float = 120.0
    max_attempts: int = 2
    backoff_seconds: float = 1.0


@dataclass
class ChainConfig:
    """Commitment-log indexer used for reconciliation."""
    url: str = ""
    page_size: int = 100
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    token_mint: str = "0"            # decimal field element


@dataclass
class WalletConfig:
    """Local note and key files."""
    notes_file: str = "data/notes.json"
    keys_file: str = "data/stealth_keys.json"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class ShieldFlowConfig:
    """Top-level configuration container."""
    tree: TreeConfig = field(default_factory=TreeConfig)
    prover: ProverConfig = field(default_factory=ProverConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    wallet: WalletConfig = field(default_factory=WalletConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> ShieldFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        SHIELDFLOW_TREE_DEPTH       -> tree.depth
        SHIELDFLOW_PROVER_URL       -> prover.url
        SHIELDFLOW_PROVER_TIMEOUT   -> prover.timeout_seconds
        SHIELDFLOW_CHAIN_URL        -> chain.url
        SHIELDFLOW_CHAIN_PAGE_SIZE  -> chain.page_size
        SHIELDFLOW_TOKEN_MINT       -> chain.token_mint
        SHIELDFLOW_NOTES_FILE       -> wallet.notes_file
        SHIELDFLOW_KEYS_FILE        -> wallet.keys_file
        SHIELDFLOW_LOG_LEVEL        -> logging.level
        SHIELDFLOW_LOG_FMT          -> logging.format
    """
    cfg = ShieldFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("tree", cfg.tree),
                ("prover", cfg.prover),
                ("chain", cfg.chain),
                ("wallet", cfg.wallet),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("SHIELDFLOW_TREE_DEPTH"):
        cfg.tree.depth = int(v)
    if v := os.environ.get("SHIELDFLOW_PROVER_URL"):
        cfg.prover.url = v
    if v := os.environ.get("SHIELDFLOW_PROVER_TIMEOUT"):
        cfg.prover.timeout_seconds = float(v)
    if v := os.environ.get("SHIELDFLOW_CHAIN_URL"):
        cfg.chain.url = v
    if v := os.environ.get("SHIELDFLOW_CHAIN_PAGE_SIZE"):
        cfg.chain.page_size = int(v)
    if v := os.environ.get("SHIELDFLOW_TOKEN_MINT"):
        cfg.chain.token_mint = v
    if v := os.environ.get("SHIELDFLOW_NOTES_FILE"):
        cfg.wallet.notes_file = v
    if v := os.environ.get("SHIELDFLOW_KEYS_FILE"):
        cfg.wallet.keys_file = v
    if v := os.environ.get("SHIELDFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("SHIELDFLOW_LOG_FMT"):
        cfg.logging.format = v

    return cfg
