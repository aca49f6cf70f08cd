#!/usr/bin/env python3
"""Delete expired sessions and magic-link tokens once and exit.

Usage:
    # Against the configured Postgres database:
    DATABASE_URL=postgresql://... python scripts/sweep_expired.py

    # Show which backends would be swept without deleting anything:
    python scripts/sweep_expired.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: sweep the file-backed memory store instead
    SHARED_FS_ROOT: where the memory store keeps its snapshot
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep(dry_run: bool = False) -> dict:
    # Import here so env defaults below are applied before settings load
    from sesame.service.runtime import get_runtime

    runtime = get_runtime()
    store_type = type(runtime.store).__name__
    if dry_run:
        print(f"[DRY RUN] Would sweep expired sessions and magic links from {store_type}")
        return {"store": store_type, "status": "dry_run"}
    try:
        counts = await runtime.sweep()
    finally:
        await runtime.close()
    return {"store": store_type, "status": "swept", **counts}


def main():
    parser = argparse.ArgumentParser(
        description="Sweep expired Sesame sessions and magic links",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Error: set DATABASE_URL or USE_MEMORY_STORE=true")
        sys.exit(1)

    # Challenges are short-lived; a one-shot sweep does not need Redis.
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(sweep(args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "swept":
        print(f"Swept {result['store']}:")
        print(f"  Sessions removed: {result['sessions']}")
        print(f"  Magic links removed: {result['magic_links']}")


if __name__ == "__main__":
    main()
