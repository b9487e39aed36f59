from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass
from pathlib import Path

from .. import metrics
from ..logging_context import report_exception
from ..repositories.migration_records import LedgerError, MigrationLedger
from ..utils.media_status import MigrationStatus
from .media_sources import MediaCandidate, file_candidate, scan_directories
from .uploader import Uploader
from .verifier import Verifier

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconcileReport:
    scanned: int = 0
    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    planned: int = 0
    verified: int = 0
    verification_failed: int = 0
    dry_run: bool = False
    cancelled: bool = False

    def as_dict(self) -> dict[str, int | bool]:
        return asdict(self)


class Reconciler:
    """Drives discovered media through the ledger, uploader and verifier."""

    def __init__(
        self,
        ledger: MigrationLedger,
        uploader: Uploader,
        verifier: Verifier | None = None,
        *,
        concurrency: int = 4,
    ) -> None:
        self._ledger = ledger
        self._uploader = uploader
        self._verifier = verifier
        self._concurrency = max(1, int(concurrency))

    async def run(
        self,
        source_directories: Sequence[str | Path],
        media_type: str,
        *,
        dry_run: bool = False,
        concurrency: int | None = None,
        verify: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconcileReport:
        scan = await asyncio.to_thread(scan_directories, source_directories)
        report = ReconcileReport(
            scanned=scan.scanned,
            skipped=len(scan.duplicates),
            dry_run=dry_run,
        )
        logger.info(
            "Reconcile scan media_type=%s directories=%s scanned=%s unique=%s duplicates=%s",
            media_type,
            [str(directory) for directory in source_directories],
            scan.scanned,
            len(scan.candidates),
            len(scan.duplicates),
        )
        return await self.run_candidates(
            scan.candidates,
            media_type,
            report=report,
            dry_run=dry_run,
            concurrency=concurrency,
            verify=verify,
            cancel_event=cancel_event,
        )

    async def run_candidates(
        self,
        candidates: Iterable[MediaCandidate],
        media_type: str,
        *,
        report: ReconcileReport | None = None,
        dry_run: bool = False,
        concurrency: int | None = None,
        verify: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconcileReport:
        if report is None:
            report = ReconcileReport(dry_run=dry_run)
        queue: asyncio.Queue[MediaCandidate] = asyncio.Queue()
        for candidate in candidates:
            queue.put_nowait(candidate)
        if report.scanned == 0:
            report.scanned = queue.qsize()

        pool_size = min(max(1, int(concurrency or self._concurrency)), max(1, queue.qsize()))
        workers = [
            asyncio.create_task(
                self._worker(queue, media_type, report, dry_run, cancel_event),
                name=f"reconcile-worker-{index}",
            )
            for index in range(pool_size)
        ]
        await asyncio.gather(*workers)

        if cancel_event is not None and cancel_event.is_set():
            report.cancelled = True
            logger.warning(
                "Reconcile cancelled with %s item(s) not dispatched", queue.qsize()
            )

        if verify and not dry_run and self._verifier is not None:
            verification = await self._verifier.verify_unverified(
                limit=max(100, report.scanned)
            )
            report.verified += verification.verified
            report.verification_failed += verification.failed

        logger.info("Reconcile finished media_type=%s report=%s", media_type, report.as_dict())
        return report

    async def migrate_file(self, path: str | Path, media_type: str) -> ReconcileReport:
        """Migrate a single legacy file outside of a batch run."""

        return await self.run_candidates([file_candidate(Path(path))], media_type, concurrency=1)

    async def _worker(
        self,
        queue: asyncio.Queue[MediaCandidate],
        media_type: str,
        report: ReconcileReport,
        dry_run: bool,
        cancel_event: asyncio.Event | None,
    ) -> None:
        while cancel_event is None or not cancel_event.is_set():
            try:
                candidate = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                outcome = await self._process(candidate, media_type, dry_run)
            except Exception as exc:
                logger.exception("Unexpected error migrating %s", candidate.source_location)
                report_exception(exc, media_type=media_type)
                outcome = "failed"
            setattr(report, outcome, getattr(report, outcome) + 1)
            metrics.media_reconcile_items_total.labels(outcome=outcome).inc()
            queue.task_done()

    async def _process(self, candidate: MediaCandidate, media_type: str, dry_run: bool) -> str:
        try:
            record = await self._ledger.upsert_pending(
                candidate.source_type,
                candidate.source_location,
                media_type,
                filename=candidate.filename,
            )
        except LedgerError as exc:
            logger.error("Ledger unavailable for %s: %s", candidate.source_location, exc)
            return "failed"

        if record.migration_status == MigrationStatus.migrated:
            logger.debug("Already migrated, skipping %s", candidate.source_location)
            return "skipped"
        if dry_run:
            logger.info(
                "Dry run: would upload %s to %s/%s",
                candidate.source_location,
                record.media_bucket,
                record.storage_key,
            )
            return "planned"

        try:
            data = await candidate.loader()
        except FileNotFoundError:
            logger.warning("Source vanished before upload, skipping %s", candidate.source_location)
            return "skipped"
        except OSError as exc:
            return await self._fail(record.id, candidate, f"read failed: {exc}")

        result = await self._uploader.upload(data, media_type, candidate.filename)
        if not result.ok:
            return await self._fail(record.id, candidate, result.error or "upload failed")

        try:
            outcome = await self._ledger.mark_migrated(record.id)
        except LedgerError as exc:
            # The object is stored; the next run finds it present and commits.
            logger.error("Could not commit migration of %s: %s", candidate.source_location, exc)
            return "failed"
        if not outcome.ok:
            logger.error(
                "Ledger rejected migration of %s: %s", candidate.source_location, outcome.reason
            )
            return "failed"
        return "uploaded"

    async def _fail(self, record_id: str, candidate: MediaCandidate, message: str) -> str:
        logger.error("Migration failed for %s: %s", candidate.source_location, message)
        try:
            await self._ledger.mark_failed(record_id, message)
        except LedgerError as exc:
            logger.error("Could not record failure of %s: %s", candidate.source_location, exc)
        return "failed"


__all__ = ["ReconcileReport", "Reconciler"]
