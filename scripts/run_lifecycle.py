#!/usr/bin/env python3
"""Run the expiration sweep and/or the retention purge once.

For deployments that schedule lifecycle jobs with an external timer (cron,
systemd, a Kubernetes CronJob) and set SCHEDULER_ENABLED=false on the API
processes. Both jobs are idempotent and safe to overlap with a running API.

Usage:
    python scripts/run_lifecycle.py --sweep
    python scripts/run_lifecycle.py --purge --retention-days 120
    python scripts/run_lifecycle.py --sweep --purge --replay-dead-letters

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if unset)
    SHARED_FS_ROOT: shared volume holding keys and the audit dead-letter file
"""
from __future__ import annotations

import argparse
import os
import sys
from dataclasses import asdict
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def run(args: argparse.Namespace) -> dict:
    # Import here to avoid loading config before env vars are set
    from intakegate.service.lifecycle import run_expiration_sweep, run_retention_purge
    from intakegate.service.runtime import get_runtime

    runtime = get_runtime()
    settings = runtime.settings
    result: dict = {}

    if args.replay_dead_letters:
        result["replayed_audit_entries"] = runtime.audit.replay_dead_letters()

    if args.sweep:
        report = run_expiration_sweep(
            runtime.store,
            runtime.audit,
            runtime.tokens,
            batch_size=args.batch_size or settings.sweep_batch_size,
            activity_window=timedelta(minutes=settings.activity_window_minutes),
        )
        result["sweep"] = asdict(report)

    if args.purge:
        report = run_retention_purge(
            runtime.store,
            runtime.audit,
            retention_days=args.retention_days or settings.retention_days,
            refresh_token_purge_days=settings.refresh_token_purge_days,
            audit_retention_days=settings.audit_retention_days,
            batch_size=args.batch_size or settings.sweep_batch_size,
        )
        result["purge"] = asdict(report)

    runtime.close()
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Run intake session lifecycle jobs once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--sweep", action="store_true", help="Expire sessions past expires_at")
    parser.add_argument("--purge", action="store_true", help="Delete terminal sessions past retention")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override RETENTION_DAYS for this run",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="Override SWEEP_BATCH_SIZE")
    parser.add_argument(
        "--replay-dead-letters",
        action="store_true",
        help="Retry audit entries that previously failed to write",
    )

    args = parser.parse_args()

    if not (args.sweep or args.purge or args.replay_dead_letters):
        print("Error: choose at least one of --sweep, --purge, --replay-dead-letters")
        sys.exit(1)
    if args.retention_days is not None and args.retention_days <= 0:
        print("Error: --retention-days must be positive")
        sys.exit(1)

    # Lifecycle jobs never need the Redis cache
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL to work on the real database)")

    try:
        result = run(args)
    except Exception as e:
        print(f"Error: {type(e).__name__}")
        sys.exit(1)

    for job, summary in result.items():
        print(f"{job}: {summary}")
    failed = result.get("sweep", {}).get("failed", 0) + result.get("purge", {}).get("failed", 0)
    if failed:
        sys.exit(2)


if __name__ == "__main__":
    main()
