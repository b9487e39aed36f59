import pytest

from portal_media.services.storage_service import StorageServiceError
from portal_media.services.verifier import Verifier
from portal_media.utils.media_status import SourceType

from .utils import PNG_BYTES

pytestmark = pytest.mark.anyio("asyncio")


async def _migrated(ledger, filename, media_type="community"):
    record = await ledger.upsert_pending(
        SourceType.filesystem, f"/legacy/{filename}", media_type
    )
    await ledger.mark_migrated(record.id)
    return await ledger.get(record.id)


async def test_verify_marks_readable_object(ledger, storage):
    record = await _migrated(ledger, "group.png")
    await storage.put(record.media_bucket, record.storage_key, PNG_BYTES, "image/png")

    assert await Verifier(storage, ledger).verify(record) is True

    verified = await ledger.get(record.id)
    assert verified.verification_status is True
    assert verified.verified_at is not None


async def test_verify_reports_missing_object(ledger, storage, caplog):
    record = await _migrated(ledger, "gone.png")

    with caplog.at_level("ERROR"):
        assert await Verifier(storage, ledger).verify(record) is False

    assert (await ledger.get(record.id)).verification_status is False
    assert any(getattr(entry, "anomaly", None) == "migrated_unreadable" for entry in caplog.records)


async def test_verify_detects_content_type_mismatch(ledger, storage):
    record = await _migrated(ledger, "flyer.png")
    await storage.put(record.media_bucket, record.storage_key, b"%PDF-1.4 ...", "image/png")

    assert await Verifier(storage, ledger).verify(record) is False
    assert (await ledger.get(record.id)).verification_status is False


async def test_verify_rejects_empty_object(ledger, storage):
    record = await _migrated(ledger, "blank.png")
    await storage.put(record.media_bucket, record.storage_key, b"", "image/png")

    assert await Verifier(storage, ledger).verify(record) is False


async def test_verify_skips_records_that_are_not_migrated(ledger, storage):
    record = await ledger.upsert_pending(SourceType.filesystem, "/legacy/p.png", "community")
    await storage.put(record.media_bucket, record.storage_key, PNG_BYTES, "image/png")

    assert await Verifier(storage, ledger).verify(record) is False
    assert (await ledger.get(record.id)).verification_status is False


async def test_verify_treats_storage_errors_as_unreadable(ledger, storage, monkeypatch):
    record = await _migrated(ledger, "flaky.png")

    async def failing_get(bucket, key):
        raise StorageServiceError("bad gateway", status_code=502)

    monkeypatch.setattr(storage, "get", failing_get)

    assert await Verifier(storage, ledger).verify(record) is False


async def test_verify_unverified_counts_results(ledger, storage):
    good = await _migrated(ledger, "one.png")
    missing = await _migrated(ledger, "two.png")
    await storage.put(good.media_bucket, good.storage_key, PNG_BYTES, "image/png")

    report = await Verifier(storage, ledger).verify_unverified()

    assert (report.checked, report.verified, report.failed) == (2, 1, 1)
    assert [r.id for r in await ledger.list_unverified()] == [missing.id]
