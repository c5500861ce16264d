#!/usr/bin/env python3
"""Prune stale login attempts and sessions past both expiries.

Usage:
    DATABASE_URL=postgresql://... python scripts/prune_auth_records.py

    # Report what is configured without deleting anything:
    python scripts/prune_auth_records.py --dry-run

The running API already sweeps every CLEANUP_INTERVAL_SECONDS; this script is
for cron jobs on deployments that run the sweep out of process.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def prune(dry_run: bool = False) -> dict:
    """Run one sweep and return the number of rows removed per table."""
    # imported late so the environment below is in place before settings load
    from vib3sales.service.runtime import get_runtime

    runtime = get_runtime()
    if dry_run:
        window = runtime.settings.login_attempt_window
        print(f"[DRY RUN] Would delete login attempts older than {window}")
        print("[DRY RUN] Would delete sessions whose access and refresh tokens have expired")
        return {"login_attempts": 0, "sessions": 0}
    return runtime.sweep()


def main():
    parser = argparse.ArgumentParser(
        description="Prune stale Vib3 Idea Sales auth records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL environment variable required")
        sys.exit(1)

    # the sweep touches only the database
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        removed = prune(args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    for table, count in removed.items():
        print(f"  {table}: {count} removed")


if __name__ == "__main__":
    main()
