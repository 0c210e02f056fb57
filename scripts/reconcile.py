#!/usr/bin/env python3
"""Repair state left inconsistent by interrupted two-step writes.

Two passes are available:

* ``follows``: make every ``following`` edge match a ``followers`` edge on
  the other user (and drop self-edges or edges to deleted users);
* ``chats``: point each chat's last-message reference at its newest message.

Both passes are idempotent; running them twice repairs nothing the second time.

Usage:
    python scripts/reconcile.py              # run both passes
    python scripts/reconcile.py --only chats

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: run against an empty in-memory store (smoke test)
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

PASSES = ("follows", "chats")


def run_reconciliation(passes: tuple[str, ...] = PASSES) -> dict:
    """Run the selected passes and return the number of repairs per pass."""
    # Import here to avoid loading config before env vars are set
    from devconnect.service.runtime import get_runtime

    runtime = get_runtime()
    results: dict[str, int] = {}
    if "follows" in passes:
        results["follows"] = runtime.social.reconcile()
    if "chats" in passes:
        results["chats"] = runtime.chat.reconcile()
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Run DevConnect reconciliation passes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--only",
        choices=PASSES,
        help="Run a single pass instead of all of them",
    )
    args = parser.parse_args()

    passes = (args.only,) if args.only else PASSES
    try:
        results = run_reconciliation(passes)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    for name, repaired in results.items():
        print(f"{name}: repaired {repaired}")


if __name__ == "__main__":
    main()
