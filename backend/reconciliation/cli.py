"""
Identity Reconciliation - Batch CLI

Run from the backend directory during a maintenance window:

    python -m reconciliation.cli snapshot
    python -m reconciliation.cli reconcile [--dry-run] [--no-snapshot]
    python -m reconciliation.cli verify
    python -m reconciliation.cli list-snapshots
    python -m reconciliation.cli rollback --yes

Results are printed as JSON. Exit status is 0 on success, 1 when the engine
reports an error, 2 on a usage error. Logs go to stderr.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from config import get_settings, require_signing_secret
from database import dispose_engine
from identity.errors import IdentityError
from logging_config import setup_logging
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.snapshot_service import SnapshotService
from services.store_provider import open_document_store

logger = logging.getLogger(__name__)

PERFORMED_BY = "cli"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reconciliation.cli",
        description="Reconcile legacy identity stores into the canonical store",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("snapshot", help="Copy both legacy stores under a fresh timestamp")

    reconcile = commands.add_parser("reconcile", help="Rebuild the canonical identity store")
    reconcile.add_argument("--dry-run", action="store_true", help="Build and verify without writing")
    reconcile.add_argument("--no-snapshot", action="store_true", help="Skip the pre-run snapshot")

    rollback = commands.add_parser(
        "rollback",
        help="Restore the newest snapshot set (deletes older sets and the canonical store)",
    )
    rollback.add_argument("--yes", action="store_true", help="Confirm the destructive rollback")

    commands.add_parser("verify", help="Audit the canonical store")
    commands.add_parser("list-snapshots", help="List snapshot sets, oldest first")
    return parser


async def run_command(args: argparse.Namespace) -> Dict[str, Any]:
    async with open_document_store() as store:
        if args.command == "snapshot":
            snapshot = await SnapshotService(store).create_snapshot(performed_by=PERFORMED_BY)
            return snapshot.to_dict()

        if args.command == "reconcile":
            report = await ReconciliationService(store).run(
                dry_run=args.dry_run,
                take_snapshot=not args.no_snapshot,
                performed_by=PERFORMED_BY,
            )
            return report.to_dict()

        if args.command == "rollback":
            restored = await SnapshotService(store).rollback(performed_by=PERFORMED_BY)
            return restored.to_dict()

        if args.command == "verify":
            return await ReconciliationService(store).verify_canonical_store()

        snapshots = await SnapshotService(store).list_snapshots()
        return {"snapshots": [s.to_dict() for s in snapshots], "count": len(snapshots)}


async def _main(args: argparse.Namespace) -> Dict[str, Any]:
    try:
        return await run_command(args)
    finally:
        if get_settings().STORAGE_BACKEND == "postgres":
            await dispose_engine()


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(
        level=args.log_level or settings.LOG_LEVEL,
        json_format=settings.is_production,
        stream=sys.stderr,
    )

    if args.command == "rollback" and not args.yes:
        parser.error("rollback is destructive; pass --yes to confirm")

    try:
        require_signing_secret(settings)
        result = asyncio.run(_main(args))
    except IdentityError as e:
        logger.error(f"{args.command} failed: {e.message}")
        print(json.dumps(e.to_dict(), indent=2, default=str))
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
