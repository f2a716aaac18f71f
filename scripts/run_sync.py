#!/usr/bin/env python3
"""
Run a data source sync from the command line

Runs batches back to back in this process (no continuation queue) until
the run completes, then optionally reconciles.

Usage:
    python -m scripts.run_sync --data-source-id 3
    python -m scripts.run_sync --data-source-id 3 --reset
    python -m scripts.run_sync --reconcile
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from outreach_sync.models.base import SessionLocal, init_db
from outreach_sync.services.reconciliation_service import Reconciler
from outreach_sync.services.sync_orchestrator import (
    SyncConflictError, SyncOrchestrator, SyncRequest, SyncSetupError,
)


def print_header(text):
    print(f"\n{'='*70}")
    print(f"  {text}")
    print('='*70)


async def sync_data_source(data_source_id: int, reset: bool) -> bool:
    orchestrator = SyncOrchestrator()
    first = True

    while True:
        try:
            outcome = await orchestrator.run(SyncRequest(
                data_source_id=data_source_id,
                reset=reset and first,
                auto_continue=False,
            ))
        except (SyncSetupError, SyncConflictError) as e:
            print(f"Sync rejected: {e}")
            return False
        first = False

        print(f"[batch {outcome.batch_number}] {outcome.message}")
        if outcome.complete:
            print(json.dumps(outcome.progress, indent=2))
            return True


def reconcile():
    db = SessionLocal()
    try:
        result = Reconciler(db).run()
    finally:
        db.close()

    print(f"Recalculated {result['recalculated']} campaigns, {result['issues_found']} issues")
    for issue in result["issues"]:
        print(f"  - {issue}")


async def main():
    parser = argparse.ArgumentParser(description="Run an outreach data source sync")
    parser.add_argument("--data-source-id", type=int, help="Data source to sync")
    parser.add_argument("--reset", action="store_true", help="Delete synced data for the source first")
    parser.add_argument("--reconcile", action="store_true", help="Run reconciliation afterwards")
    args = parser.parse_args()

    if args.data_source_id is None and not args.reconcile:
        parser.error("--data-source-id or --reconcile is required")

    init_db()
    ok = True

    if args.data_source_id is not None:
        print_header(f"Syncing data source {args.data_source_id}")
        ok = await sync_data_source(args.data_source_id, args.reset)

    if args.reconcile:
        print_header("Reconciliation")
        reconcile()

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
