#!/usr/bin/env python3
"""
Run the ShieldFlow test suite, or part of it.

Usage:
    python run_tests.py                    # whole suite, stop on first failure
    python run_tests.py stealth merkle     # only tests/test_stealth.py and tests/test_merkle.py
    python run_tests.py -k stale           # filter by keyword
    python run_tests.py --fast             # skip slow statistical tests
    python run_tests.py --cov              # with coverage for shieldflow_core
    python run_tests.py -- --tb=long       # pass extra flags to pytest
"""

import argparse
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent
TESTS_DIR = ROOT / "tests"


def resolve_targets(areas: list[str]) -> list[str]:
    """Map area names like ``stealth`` to ``tests/test_stealth.py``."""
    if not areas:
        return [str(TESTS_DIR)]
    targets = []
    for area in areas:
        path = TESTS_DIR / f"test_{area.removeprefix('test_').removesuffix('.py')}.py"
        if not path.exists():
            available = sorted(p.stem[len("test_"):] for p in TESTS_DIR.glob("test_*.py"))
            raise SystemExit(f"no test module for {area!r}; choose from: {', '.join(available)}")
        targets.append(str(path))
    return targets


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the ShieldFlow test suite.")
    parser.add_argument(
        "areas",
        nargs="*",
        help="Test areas to run (e.g. merkle, stealth, session). Default: all.",
    )
    parser.add_argument(
        "-k",
        metavar="EXPRESSION",
        help="Only run tests matching the given pytest keyword expression.",
    )
    parser.add_argument(
        "--fast",
        action="store_true",
        help="Skip tests marked slow (large statistical runs).",
    )
    parser.add_argument(
        "--cov",
        action="store_true",
        help="Collect coverage for shieldflow_core (needs pytest-cov).",
    )
    args, extra = parser.parse_known_args()

    cmd = [sys.executable, "-m", "pytest", *resolve_targets(args.areas), "-x", "-v", "--tb=short"]
    if args.k:
        cmd += ["-k", args.k]
    if args.fast:
        cmd += ["-m", "not slow"]
    if args.cov:
        cmd += ["--cov=shieldflow_core", "--cov-report=term-missing"]
    cmd += [a for a in extra if a != "--"]

    print(f"=== Running {', '.join(args.areas) or 'all'} tests ===")
    return subprocess.call(cmd, cwd=ROOT)


if __name__ == "__main__":
    raise SystemExit(main())
