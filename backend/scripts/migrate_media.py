#!/usr/bin/env python3
"""Batch migration of legacy media into routed object storage.

Walks the given directories (or a table holding inline blobs), records each
asset in the migration ledger and uploads what is not yet migrated. Runs are
idempotent: a second run over the same sources uploads nothing.

Prints a deterministic JSON report and exits non-zero when any item failed.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Sequence

import psycopg

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from portal_media.config import Settings, settings  # noqa: E402
from portal_media.db import create_pool  # noqa: E402
from portal_media.logging_utils import setup_logging  # noqa: E402
from portal_media.repositories.migration_records import (  # noqa: E402
    LedgerError,
    MigrationLedger,
    PostgresMigrationLedger,
    build_ledger,
)
from portal_media.services.media_sources import scan_database_blobs  # noqa: E402
from portal_media.services.reconciler import ReconcileReport, Reconciler  # noqa: E402
from portal_media.services.storage_service import (  # noqa: E402
    ObjectStorage,
    build_object_storage,
)
from portal_media.services.uploader import Uploader  # noqa: E402
from portal_media.services.verifier import Verifier  # noqa: E402

logger = logging.getLogger("migrate_media")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Migrate legacy media files into object storage buckets."
    )
    parser.add_argument(
        "directories",
        nargs="*",
        help="Source directories to scan recursively.",
    )
    parser.add_argument(
        "--media-type",
        default=None,
        help="Logical media category (calendar, forum, vendors, banner, ...).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Record PENDING ledger rows and report what would be uploaded.",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Parallel uploads (default: RECONCILE_CONCURRENCY).",
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Re-read migrated objects after the run and mark them verified.",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Include ledger totals in the report.",
    )
    parser.add_argument(
        "--from-table",
        default=None,
        help="Read media from inline blobs in this table instead of directories.",
    )
    parser.add_argument("--blob-column", default=None, help="Column holding the bytes.")
    parser.add_argument("--filename-column", default=None, help="Optional filename column.")
    parser.add_argument("--id-column", default="id", help="Primary key column (default: id).")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    if (args.directories or args.from_table) and not args.media_type:
        parser.error("--media-type is required when migrating")
    if args.from_table and not args.blob_column:
        parser.error("--blob-column is required with --from-table")
    if not args.directories and not args.from_table and not args.stats:
        parser.error("provide source directories, --from-table or --stats")
    if args.concurrency is not None and args.concurrency < 1:
        parser.error("--concurrency must be at least 1")
    return args


def format_report(report: ReconcileReport | None, stats: dict[str, int] | None = None) -> str:
    payload: dict[str, Any] = report.as_dict() if report is not None else {}
    if stats is not None:
        payload["ledger"] = stats
    return json.dumps(payload, indent=2, sort_keys=True)


def exit_code(report: ReconcileReport | None) -> int:
    if report is None:
        return 0
    return 0 if report.failed == 0 else 1


def _install_cancel_handler(cancel_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _cancel() -> None:
        if not cancel_event.is_set():
            logger.warning("Interrupt received; finishing in-flight uploads")
            cancel_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _cancel)
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable off the main thread and on Windows.
            continue


async def run(
    args: argparse.Namespace,
    config: Settings = settings,
    *,
    ledger: MigrationLedger | None = None,
    storage: ObjectStorage | None = None,
    cancel_event: asyncio.Event | None = None,
) -> tuple[ReconcileReport | None, dict[str, int] | None]:
    ledger = ledger or build_ledger(config)
    storage = storage or build_object_storage(config)
    if config.storage_backend == "memory" and not args.dry_run:
        logger.warning("STORAGE_BACKEND=memory: uploads will not outlive this process")

    uploader = Uploader(
        storage,
        base_url=config.public_base_url,
        max_attempts=config.upload_max_attempts,
        backoff_base_seconds=config.upload_backoff_base_seconds,
    )
    reconciler = Reconciler(
        ledger,
        uploader,
        Verifier(storage, ledger),
        concurrency=config.reconcile_concurrency,
    )
    if cancel_event is None:
        cancel_event = asyncio.Event()
        _install_cancel_handler(cancel_event)

    blob_pool = None
    await ledger.open()
    try:
        await ledger.ensure_schema()
        report: ReconcileReport | None = None
        if args.from_table:
            if isinstance(ledger, PostgresMigrationLedger):
                pool = ledger.pool
            else:
                if config.database_url is None:
                    raise LedgerError("DATABASE_URL is required to read blobs from a table")
                blob_pool = pool = create_pool(config)
                await pool.open(wait=True, timeout=config.ledger_timeout_seconds)
            scan = await scan_database_blobs(
                pool,
                table=args.from_table,
                blob_column=args.blob_column,
                id_column=args.id_column,
                filename_column=args.filename_column,
            )
            report = ReconcileReport(
                scanned=scan.scanned,
                skipped=len(scan.duplicates),
                dry_run=args.dry_run,
            )
            report = await reconciler.run_candidates(
                scan.candidates,
                args.media_type,
                report=report,
                dry_run=args.dry_run,
                concurrency=args.concurrency,
                verify=args.verify,
                cancel_event=cancel_event,
            )
        elif args.directories:
            report = await reconciler.run(
                args.directories,
                args.media_type,
                dry_run=args.dry_run,
                concurrency=args.concurrency,
                verify=args.verify,
                cancel_event=cancel_event,
            )
        stats = (await ledger.stats()).as_dict() if args.stats else None
        return report, stats
    finally:
        if blob_pool is not None:
            await blob_pool.close()
        await ledger.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        report, stats = asyncio.run(run(args))
    except LedgerError as exc:
        print(f"Ledger error: {exc}", file=sys.stderr)
        return 2
    except psycopg.Error as exc:
        print(f"Database error: {exc}", file=sys.stderr)
        return 2
    print(format_report(report, stats))
    return exit_code(report)


if __name__ == "__main__":
    raise SystemExit(main())
