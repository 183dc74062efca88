#!/usr/bin/env python3
"""CLI script to run Salesforce sync outside the API process.

Usage:
    python scripts/run_salesforce_sync.py --org 6f1c...        # incremental, configured direction
    python scripts/run_salesforce_sync.py --org 6f1c... --full --direction import_only
    python scripts/run_salesforce_sync.py --due               # every integration whose interval elapsed
    python scripts/run_salesforce_sync.py --generate-key      # print a new TOKEN_ENCRYPTION_KEY

Connects directly to the database using DATABASE_URL from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.tracker
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


def _print_summary(summary) -> None:
    print(f"Organization {summary.organization_id}: {summary.status.value}")
    print(f"  Direction: {summary.direction.value} (full_sync={summary.full_sync})")
    for label, result in (("Import", summary.import_result), ("Export", summary.export_result)):
        if result is None:
            continue
        print(f"  {label} ({result.duration_ms} ms):")
        for entity in ("accounts", "contacts", "opportunities"):
            stats = getattr(result, entity)
            print(
                f"    {entity:<14} created={stats.created} updated={stats.updated} "
                f"skipped={stats.skipped} errors={len(stats.errors)}"
            )
    for error in summary.errors[:10]:
        print(f"  ! {error}")


async def run(organization_id: str | None, due: bool, full_sync: bool, direction: str | None) -> int:
    from src.tracker.api.middleware.logging import configure_structlog
    from src.tracker.core.database import close_db, get_session, init_db
    from src.tracker.crm.repository import CRMRepository
    from src.tracker.integrations.salesforce.errors import SalesforceError
    from src.tracker.integrations.salesforce.jobs import run_due_syncs, run_salesforce_sync
    from src.tracker.integrations.salesforce.store import SalesforceIntegrationStore
    from src.tracker.integrations.salesforce.types import SyncDirection, SyncRunStatus

    configure_structlog()
    await init_db()
    crm_store = CRMRepository(session_factory=get_session)
    integrations = SalesforceIntegrationStore(session_factory=get_session)

    exit_code = 0
    try:
        if due:
            summaries = await run_due_syncs(integrations, crm_store)
            if not summaries:
                print("No Salesforce syncs due")
        else:
            summaries = [
                await run_salesforce_sync(
                    organization_id,
                    integrations,
                    crm_store,
                    full_sync=full_sync,
                    direction=SyncDirection(direction) if direction else None,
                )
            ]
        for summary in summaries:
            _print_summary(summary)
            if summary.status == SyncRunStatus.failed:
                exit_code = 1
    except SalesforceError as exc:
        print(f"Sync failed: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        await close_db()
    return exit_code


def main() -> None:
    parser = argparse.ArgumentParser(description="Run Salesforce sync")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--org", dest="organization_id", help="Organization ID to sync")
    target.add_argument("--due", action="store_true", help="Run every integration that is due")
    target.add_argument(
        "--generate-key", action="store_true", help="Print a new TOKEN_ENCRYPTION_KEY and exit"
    )
    parser.add_argument("--full", action="store_true", help="Ignore the sync cursor")
    parser.add_argument(
        "--direction",
        choices=["import_only", "export_only", "bidirectional"],
        default=None,
        help="Override the integration's configured direction",
    )
    args = parser.parse_args()

    if args.generate_key:
        from src.tracker.core.crypto import generate_key

        print(generate_key())
        return

    if args.due and (args.full or args.direction):
        parser.error("--full and --direction only apply to --org")

    sys.exit(asyncio.run(run(args.organization_id, args.due, args.full, args.direction)))


if __name__ == "__main__":
    main()
