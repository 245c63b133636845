#!/usr/bin/env python3
"""Run repository checks: ruff, pyright, and optional tests.

Exits non-zero when a check fails so CI and local tooling can observe status.
Tests run with Qt in offscreen mode and a wall-clock limit, since a stuck
worker thread would otherwise hang the run.

Usage:
  python scripts/run_checks.py [--no-tests] [--timeout SECONDS] [-- pytest args...]
"""

from __future__ import annotations

import argparse
import os
import subprocess
import sys


def run(cmd: list[str], env: dict[str, str] | None = None, timeout: int | None = None) -> int:
    print("=>", " ".join(cmd))
    try:
        res = subprocess.run(cmd, check=False, env=env, timeout=timeout)
    except subprocess.TimeoutExpired:
        print(f"timed out after {timeout} seconds", file=sys.stderr)
        return 124
    return res.returncode


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--no-tests", action="store_true", help="Skip running pytest")
    parser.add_argument("--timeout", type=int, default=300, help="Maximum seconds for the pytest run")
    parser.add_argument("pytest_args", nargs=argparse.REMAINDER, help="Extra pytest args")
    args = parser.parse_args()

    rc = run([sys.executable, "-m", "ruff", "check", "--fix", "."])
    if rc != 0:
        print("ruff failed")
        return rc

    # pyright may only be on PATH on Windows
    rc = run([sys.executable, "-m", "pyright"]) if sys.platform != "win32" else run(["pyright"])
    if rc != 0:
        print("pyright failed")
        return rc

    if not args.no_tests:
        env = os.environ.copy()
        env.setdefault("QT_QPA_PLATFORM", "offscreen")
        extra = [a for a in args.pytest_args if a != "--"]
        rc = run([sys.executable, "-m", "pytest", "-q", *extra], env=env, timeout=args.timeout)
        if rc != 0:
            print("pytest failed")
            return rc

    print("All checks passed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
