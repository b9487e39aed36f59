from __future__ import annotations

import logging
from dataclasses import dataclass

from .. import metrics
from ..repositories.migration_records import LedgerError, MigrationLedger, MigrationRecord
from ..utils.media_paths import detect_content_type, media_family, sniff_media_family
from ..utils.media_status import MigrationStatus
from .storage_service import ObjectStorage, StorageObjectNotFoundError, StorageServiceError

logger = logging.getLogger(__name__)

_CHECKED_FAMILIES = frozenset({"image", "video", "svg", "pdf", "zip"})


@dataclass(slots=True)
class VerificationReport:
    checked: int = 0
    verified: int = 0
    failed: int = 0


class Verifier:
    """Re-reads migrated objects and records the result in the ledger."""

    def __init__(self, storage: ObjectStorage, ledger: MigrationLedger) -> None:
        self._storage = storage
        self._ledger = ledger

    def _discrepancy(self, record: MigrationRecord, reason: str, detail: str) -> bool:
        logger.error(
            "Verification failed for %s/%s (record %s): %s",
            record.media_bucket,
            record.storage_key,
            record.id,
            detail,
            extra={"anomaly": "migrated_unreadable", "reason": reason},
        )
        metrics.media_verification_failures_total.labels(reason=reason).inc()
        return False

    async def verify(self, record: MigrationRecord) -> bool:
        if record.migration_status != MigrationStatus.migrated:
            logger.warning(
                "Skipping verification of record %s with status %s",
                record.id,
                record.migration_status,
            )
            return False

        try:
            stored = await self._storage.get(record.media_bucket, record.storage_key)
        except StorageObjectNotFoundError:
            return self._discrepancy(record, "missing", "object not found")
        except StorageServiceError as exc:
            return self._discrepancy(record, "unreadable", str(exc))

        if not stored.data:
            return self._discrepancy(record, "empty", "object has zero length")

        expected = media_family(detect_content_type(record.storage_key))
        actual = sniff_media_family(stored.data)
        if expected in _CHECKED_FAMILIES and actual is not None and actual != expected:
            return self._discrepancy(
                record,
                "type_mismatch",
                f"expected {expected} content, found {actual}",
            )

        try:
            outcome = await self._ledger.mark_verified(record.id)
        except LedgerError as exc:
            logger.error("Could not record verification for %s: %s", record.id, exc)
            return False
        if outcome.ok:
            logger.info(
                "Verified %s/%s (%s bytes)",
                record.media_bucket,
                record.storage_key,
                len(stored.data),
            )
        return outcome.ok

    async def verify_unverified(self, limit: int = 100) -> VerificationReport:
        report = VerificationReport()
        for record in await self._ledger.list_unverified(limit):
            report.checked += 1
            if await self.verify(record):
                report.verified += 1
            else:
                report.failed += 1
        return report


__all__ = ["VerificationReport", "Verifier"]
