import asyncio

import pytest

from portal_media.repositories.migration_records import LedgerError, SqliteMigrationLedger
from portal_media.utils.media_status import MigrationStatus, SourceType

pytestmark = pytest.mark.anyio("asyncio")

SOURCE = "/srv/public/uploads/calendar/event.jpg"


async def test_upsert_pending_creates_routed_record(ledger):
    record = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")

    assert record.migration_status == MigrationStatus.pending
    assert record.media_bucket == "CALENDAR"
    assert record.storage_key == "calendar/event.jpg"
    assert record.filename == "event.jpg"
    assert record.migrated_at is None
    assert record.verification_status is False
    assert record.verified_at is None


async def test_upsert_pending_is_idempotent(ledger):
    first = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")
    second = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")

    assert first.id == second.id
    assert (await ledger.stats()).total == 1


async def test_concurrent_upserts_yield_single_record(ledger):
    records = await asyncio.gather(
        *[
            ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")
            for _ in range(10)
        ]
    )

    assert len({record.id for record in records}) == 1
    assert (await ledger.stats()).total == 1


async def test_same_source_different_category_is_a_separate_record(ledger):
    calendar = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")
    forum = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "forum")

    assert calendar.id != forum.id
    assert forum.media_bucket == "FORUM"


async def test_failed_record_is_reset_to_pending(ledger):
    record = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")
    assert (await ledger.mark_failed(record.id, "timeout")).ok

    failed = await ledger.get(record.id)
    assert failed.migration_status == MigrationStatus.failed
    assert failed.error_message == "timeout"

    retried = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")
    assert retried.id == record.id
    assert retried.migration_status == MigrationStatus.pending
    assert retried.error_message is None


async def test_mark_migrated_sets_timestamp_once(ledger):
    record = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")

    assert (await ledger.mark_migrated(record.id)).ok
    migrated = await ledger.get(record.id)
    assert migrated.migration_status == MigrationStatus.migrated
    assert migrated.migrated_at is not None

    assert (await ledger.mark_migrated(record.id)).ok
    again = await ledger.get(record.id)
    assert again.migrated_at == migrated.migrated_at


async def test_upsert_returns_migrated_record_untouched(ledger):
    record = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")
    await ledger.mark_migrated(record.id)

    existing = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")

    assert existing.migration_status == MigrationStatus.migrated


async def test_mark_failed_refuses_to_regress_migrated_record(ledger):
    record = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")
    await ledger.mark_migrated(record.id)

    outcome = await ledger.mark_failed(record.id, "late failure")

    assert not outcome.ok
    assert outcome.reason == "already_migrated"
    current = await ledger.get(record.id)
    assert current.migration_status == MigrationStatus.migrated
    assert current.error_message is None


async def test_mark_verified_requires_migrated_record(ledger):
    record = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")

    outcome = await ledger.mark_verified(record.id)
    assert not outcome.ok
    assert outcome.reason == "not_migrated"

    await ledger.mark_migrated(record.id)
    assert (await ledger.mark_verified(record.id)).ok
    verified = await ledger.get(record.id)
    assert verified.verification_status is True
    assert verified.verified_at is not None


async def test_mark_verified_keeps_first_verification_time(ledger):
    record = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")
    await ledger.mark_migrated(record.id)
    assert (await ledger.mark_verified(record.id)).ok
    first = (await ledger.get(record.id)).verified_at

    again = await ledger.mark_verified(record.id)

    assert again.ok
    assert (await ledger.get(record.id)).verified_at == first


async def test_unknown_record_reports_not_found(ledger):
    assert (await ledger.mark_migrated("missing")).reason == "not_found"
    assert (await ledger.mark_failed("missing", "boom")).reason == "not_found"
    assert (await ledger.mark_verified("missing")).reason == "not_found"
    assert await ledger.get("missing") is None


async def test_error_message_is_truncated(ledger):
    record = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")
    await ledger.mark_failed(record.id, "x" * 2000)

    failed = await ledger.get(record.id)
    assert len(failed.error_message) == 500
    assert failed.error_message.endswith("...")


async def test_find_by_source_filters_by_status(ledger):
    record = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")

    assert (await ledger.find_by_source(SOURCE)).id == record.id
    assert await ledger.find_by_source(SOURCE, status=MigrationStatus.migrated) is None

    await ledger.mark_migrated(record.id)
    found = await ledger.find_by_source(SOURCE, status=MigrationStatus.migrated)
    assert found is not None
    assert found.storage_key == "calendar/event.jpg"


async def test_listing_stats_and_purge(ledger):
    pending = await ledger.upsert_pending(SourceType.filesystem, "/a/one.jpg", "forum")
    migrated = await ledger.upsert_pending(SourceType.filesystem, "/a/two.jpg", "forum")
    failed = await ledger.upsert_pending(SourceType.database, "posts.image.3", "forum")
    await ledger.mark_migrated(migrated.id)
    await ledger.mark_failed(failed.id, "bad gateway")

    assert [r.id for r in await ledger.list_by_status(MigrationStatus.pending)] == [pending.id]
    assert [r.id for r in await ledger.list_by_status(MigrationStatus.failed)] == [failed.id]
    assert [r.id for r in await ledger.list_unverified()] == [migrated.id]
    assert (await ledger.get(failed.id)).source_type == SourceType.database

    stats = await ledger.stats()
    assert stats.as_dict() == {
        "total": 3,
        "pending": 1,
        "migrated": 1,
        "failed": 1,
        "verified": 0,
    }

    assert await ledger.purge(pending.id) is True
    assert await ledger.purge(pending.id) is False
    assert (await ledger.stats()).total == 2


async def test_closed_ledger_raises_ledger_error(tmp_path):
    ledger = SqliteMigrationLedger(str(tmp_path / "closed.sqlite3"))

    with pytest.raises(LedgerError):
        await ledger.get("anything")


async def test_ledger_survives_reopen(test_settings, ledger):
    record = await ledger.upsert_pending(SourceType.filesystem, SOURCE, "calendar")
    await ledger.mark_migrated(record.id)

    reopened = SqliteMigrationLedger(test_settings.sqlite_path)
    await reopened.open()
    try:
        await reopened.ensure_schema()
        persisted = await reopened.get(record.id)
    finally:
        await reopened.close()

    assert persisted.migration_status == MigrationStatus.migrated
