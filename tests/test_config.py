"""
Tests for shieldflow_core.config — TOML configuration and environment overrides.

Covers:
  - Default values for all dataclass sections
  - _merge helper (kebab-case keys, unknown keys ignored)
  - TOML parsing and section merging
  - Environment variable overrides and their precedence over TOML
  - Building a session from configuration
"""

from __future__ import annotations

import os
import tempfile
import textwrap
import unittest
from unittest.mock import patch

from shieldflow_core.config import (
    ChainConfig,
    LoggingConfig,
    ProverConfig,
    ShieldFlowConfig,
    TreeConfig,
    WalletConfig,
    _merge,
    load_config,
)
from shieldflow_core.prover import HttpProver, ProvingClient
from shieldflow_core.session import ShieldedSession


def _write_toml(content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
        f.write(textwrap.dedent(content))
    return f.name


# ═══════════════════════════════════════════════════════════════════
#  Defaults
# ═══════════════════════════════════════════════════════════════════

class TestDefaults(unittest.TestCase):

    def test_tree_defaults(self):
        self.assertEqual(TreeConfig().depth, 20)

    def test_prover_defaults(self):
        p = ProverConfig()
        self.assertEqual(p.url, "")
        self.assertEqual(p.timeout_seconds, 120.0)
        self.assertEqual(p.max_attempts, 2)

    def test_chain_defaults(self):
        c = ChainConfig()
        self.assertEqual(c.page_size, 100)
        self.assertEqual(c.max_attempts, 3)
        self.assertEqual(c.token_mint, "0")

    def test_wallet_defaults(self):
        self.assertTrue(WalletConfig().notes_file.endswith("notes.json"))

    def test_logging_defaults(self):
        log_cfg = LoggingConfig()
        self.assertEqual(log_cfg.level, "INFO")
        self.assertEqual(log_cfg.format, "human")
        self.assertIsNone(log_cfg.file)

    def test_container(self):
        cfg = ShieldFlowConfig()
        self.assertIsInstance(cfg.tree, TreeConfig)
        self.assertIsInstance(cfg.chain, ChainConfig)


# ═══════════════════════════════════════════════════════════════════
#  _merge helper
# ═══════════════════════════════════════════════════════════════════

class TestMerge(unittest.TestCase):

    def test_merge_updates_fields(self):
        c = ChainConfig()
        _merge(c, {"url": "http://indexer", "page_size": 25})
        self.assertEqual(c.url, "http://indexer")
        self.assertEqual(c.page_size, 25)

    def test_merge_hyphenated_keys(self):
        p = ProverConfig()
        _merge(p, {"timeout-seconds": 5.0})
        self.assertEqual(p.timeout_seconds, 5.0)

    def test_merge_ignores_unknown_keys(self):
        t = TreeConfig()
        _merge(t, {"arity": 4})
        self.assertFalse(hasattr(t, "arity"))


# ═══════════════════════════════════════════════════════════════════
#  TOML loading
# ═══════════════════════════════════════════════════════════════════

class TestLoadConfig(unittest.TestCase):

    def test_load_no_file(self):
        self.assertEqual(load_config(None).tree.depth, 20)

    def test_load_missing_file(self):
        cfg = load_config("/tmp/__nonexistent_shieldflow__.toml")
        self.assertEqual(cfg.chain.page_size, 100)

    def test_load_toml_file(self):
        path = _write_toml("""\
            [tree]
            depth = 16

            [prover]
            url = "http://prover:8080/prove"
            timeout-seconds = 30.0

            [chain]
            url = "http://indexer"
            page_size = 500
            token_mint = "424242"

            [logging]
            level = "DEBUG"
            format = "json"
        """)
        try:
            cfg = load_config(path)
        finally:
            os.unlink(path)
        self.assertEqual(cfg.tree.depth, 16)
        self.assertEqual(cfg.prover.url, "http://prover:8080/prove")
        self.assertEqual(cfg.prover.timeout_seconds, 30.0)
        self.assertEqual(cfg.chain.page_size, 500)
        self.assertEqual(cfg.chain.token_mint, "424242")
        self.assertEqual(cfg.logging.format, "json")


# ═══════════════════════════════════════════════════════════════════
#  Environment variable overrides
# ═══════════════════════════════════════════════════════════════════

class TestEnvOverrides(unittest.TestCase):

    @patch.dict(os.environ, {"SHIELDFLOW_TREE_DEPTH": "12"}, clear=False)
    def test_env_depth(self):
        self.assertEqual(load_config(None).tree.depth, 12)

    @patch.dict(os.environ, {"SHIELDFLOW_PROVER_TIMEOUT": "2.5"}, clear=False)
    def test_env_prover_timeout(self):
        self.assertEqual(load_config(None).prover.timeout_seconds, 2.5)

    @patch.dict(os.environ, {"SHIELDFLOW_CHAIN_PAGE_SIZE": "7"}, clear=False)
    def test_env_page_size(self):
        self.assertEqual(load_config(None).chain.page_size, 7)

    @patch.dict(os.environ, {"SHIELDFLOW_TOKEN_MINT": "99"}, clear=False)
    def test_env_token_mint(self):
        self.assertEqual(load_config(None).chain.token_mint, "99")

    @patch.dict(os.environ, {"SHIELDFLOW_LOG_LEVEL": "debug"}, clear=False)
    def test_env_log_level_uppercased(self):
        self.assertEqual(load_config(None).logging.level, "DEBUG")

    @patch.dict(os.environ, {"SHIELDFLOW_KEYS_FILE": "/tmp/keys.json"}, clear=False)
    def test_env_keys_file(self):
        self.assertEqual(load_config(None).wallet.keys_file, "/tmp/keys.json")

    @patch.dict(os.environ, {"SHIELDFLOW_CHAIN_URL": "http://env-indexer"}, clear=False)
    def test_env_wins_over_toml(self):
        path = _write_toml("""\
            [chain]
            url = "http://toml-indexer"
        """)
        try:
            cfg = load_config(path)
        finally:
            os.unlink(path)
        self.assertEqual(cfg.chain.url, "http://env-indexer")


# ═══════════════════════════════════════════════════════════════════
#  Session from configuration
# ═══════════════════════════════════════════════════════════════════

class TestSessionFromConfig(unittest.TestCase):

    def test_without_prover_url(self):
        cfg = ShieldFlowConfig()
        cfg.tree.depth = 6
        session = ShieldedSession.from_config(cfg, spending_key=11, token_mint=3)
        self.assertIsNone(session.prover)
        self.assertEqual(session.tree.depth, 6)
        self.assertEqual(session.token_mint, 3)

    def test_with_prover_url(self):
        cfg = ShieldFlowConfig()
        cfg.prover.url = "http://prover/prove"
        cfg.prover.timeout_seconds = 9.0
        session = ShieldedSession.from_config(cfg, spending_key=11)
        self.assertIsInstance(session.prover, ProvingClient)
        self.assertIsInstance(session.prover.prover, HttpProver)
        self.assertEqual(session.prover.timeout, 9.0)


if __name__ == "__main__":
    unittest.main()
