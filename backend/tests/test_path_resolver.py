import pytest

from portal_media.repositories.migration_records import LedgerError
from portal_media.services.path_resolver import PathResolver
from portal_media.utils.media_status import ResolutionSource, SourceType

from .utils import JPEG_BYTES, write_file

pytestmark = pytest.mark.anyio("asyncio")


def _resolver(ledger, storage, legacy_root, **kwargs) -> PathResolver:
    return PathResolver(
        ledger,
        storage,
        base_url="/storage-proxy",
        legacy_root=legacy_root,
        **kwargs,
    )


async def test_ledger_hit_wins(ledger, storage, legacy_root):
    ref = "/uploads/calendar/gala.jpg"
    record = await ledger.upsert_pending(SourceType.filesystem, ref, "calendar")
    await ledger.mark_migrated(record.id)
    await storage.put("CALENDAR", "calendar/gala.jpg", JPEG_BYTES, "image/jpeg")
    write_file(legacy_root / "uploads" / "calendar" / "gala.jpg", JPEG_BYTES)

    resolved = await _resolver(ledger, storage, legacy_root).resolve(ref, "calendar")

    assert resolved.source == ResolutionSource.ledger
    assert resolved.url == "/storage-proxy/CALENDAR/calendar/gala.jpg"
    assert not resolved.is_default


async def test_ledger_matches_source_path_under_legacy_root(ledger, storage, legacy_root):
    source = (legacy_root / "uploads" / "forum" / "thread.png").as_posix()
    record = await ledger.upsert_pending(SourceType.filesystem, source, "forum")
    await ledger.mark_migrated(record.id)

    resolved = await _resolver(ledger, storage, legacy_root).resolve(
        "https://old.example.com/uploads/forum/thread.png", "forum"
    )

    assert resolved.source == ResolutionSource.ledger
    assert (resolved.bucket, resolved.key) == ("FORUM", "forum/thread.png")


async def test_pending_ledger_record_is_ignored(ledger, storage, legacy_root):
    ref = "/uploads/vendors/shop.jpg"
    await ledger.upsert_pending(SourceType.filesystem, ref, "vendors")

    resolved = await _resolver(ledger, storage, legacy_root).resolve(ref, "vendors")

    assert resolved.source == ResolutionSource.default


async def test_convention_hit_checks_routed_bucket(ledger, storage, legacy_root):
    await storage.put("SALE", "real_estate/house.jpg", JPEG_BYTES, "image/jpeg")

    resolved = await _resolver(ledger, storage, legacy_root).resolve(
        "/uploads/real_estate/house.jpg", "real_estate"
    )

    assert resolved.source == ResolutionSource.convention
    assert resolved.url == "/storage-proxy/SALE/real_estate/house.jpg"


async def test_direct_storage_reference_is_honoured(ledger, storage, legacy_root):
    await storage.put("FORUM", "forum/reply.png", JPEG_BYTES, "image/png")

    resolved = await _resolver(ledger, storage, legacy_root).resolve(
        "/api/storage-proxy/FORUM/forum/reply.png", "community"
    )

    assert resolved.source == ResolutionSource.convention
    assert (resolved.bucket, resolved.key) == ("FORUM", "forum/reply.png")


async def test_legacy_hit_schedules_lazy_migration(ledger, storage, legacy_root):
    path = write_file(legacy_root / "uploads" / "calendar" / "poster.jpg", JPEG_BYTES)
    calls = []

    async def lazy_migrate(found, media_type):
        calls.append((found, media_type))

    resolver = _resolver(ledger, storage, legacy_root, lazy_migrate=lazy_migrate)
    resolved = await resolver.resolve("/uploads/calendar/poster.jpg", "calendar")
    await resolver.drain()

    assert resolved.source == ResolutionSource.legacy
    assert resolved.url == "/legacy-media/uploads/calendar/poster.jpg"
    assert calls == [(path, "calendar")]


async def test_lazy_migration_failure_does_not_break_resolution(ledger, storage, legacy_root, caplog):
    write_file(legacy_root / "community" / "meetup.jpg", JPEG_BYTES)

    async def lazy_migrate(found, media_type):
        raise RuntimeError("storage offline")

    resolver = _resolver(ledger, storage, legacy_root, lazy_migrate=lazy_migrate)
    resolved = await resolver.resolve("meetup.jpg", "community")
    await resolver.drain()

    assert resolved.source == ResolutionSource.legacy
    assert resolved.url == "/legacy-media/community/meetup.jpg"
    assert "Lazy migration failed" in caplog.text


@pytest.mark.parametrize(
    ("media_type", "placeholder"),
    [
        ("calendar", "default-event-image.svg"),
        ("forum", "default-forum-image.svg"),
        ("banner", "banner-placeholder.svg"),
        ("vendors", "default-vendor-image.svg"),
        ("real_estate", "default-listing-image.svg"),
        ("community", "default-community-image.svg"),
        ("podcasts", "default-image.svg"),
    ],
)
async def test_miss_falls_back_to_category_placeholder(
    ledger, storage, legacy_root, media_type, placeholder
):
    resolved = await _resolver(ledger, storage, legacy_root).resolve(
        "/uploads/nowhere/missing.jpg", media_type
    )

    assert resolved.is_default
    assert resolved.source == ResolutionSource.default
    assert resolved.url == f"/placeholders/{placeholder}"


async def test_ledger_outage_falls_through_to_convention(ledger, storage, legacy_root, monkeypatch):
    await storage.put("CALENDAR", "calendar/late.jpg", JPEG_BYTES, "image/jpeg")

    async def broken_find(*args, **kwargs):
        raise LedgerError("database unavailable")

    monkeypatch.setattr(ledger, "find_by_source", broken_find)

    resolved = await _resolver(ledger, storage, legacy_root).resolve(
        "/uploads/calendar/late.jpg", "calendar"
    )

    assert resolved.source == ResolutionSource.convention


async def test_chain_order_is_configurable(ledger, storage, legacy_root):
    ref = "/uploads/calendar/both.jpg"
    record = await ledger.upsert_pending(SourceType.filesystem, ref, "calendar")
    await ledger.mark_migrated(record.id)
    write_file(legacy_root / "uploads" / "calendar" / "both.jpg", JPEG_BYTES)

    resolver = _resolver(ledger, storage, legacy_root, chain=("legacy", "ledger", "default"))
    resolved = await resolver.resolve(ref, "calendar")

    assert resolver.chain[-1] == ResolutionSource.default
    assert resolved.source == ResolutionSource.legacy


async def test_fetch_serves_stored_object(ledger, storage, legacy_root):
    await storage.put("VENDORS", "vendors/logo.jpg", JPEG_BYTES, "image/jpeg")

    asset = await _resolver(ledger, storage, legacy_root).fetch("VENDORS", "vendors/logo.jpg")

    assert asset.body == JPEG_BYTES
    assert asset.content_type == "image/jpeg"
    assert asset.source == ResolutionSource.convention
    assert not asset.is_default


async def test_fetch_finds_object_in_routed_bucket(ledger, storage, legacy_root):
    await storage.put("VENDORS", "vendors/misfiled.jpg", JPEG_BYTES, "image/jpeg")

    asset = await _resolver(ledger, storage, legacy_root).fetch("DEFAULT", "vendors/misfiled.jpg")

    assert asset.body == JPEG_BYTES


async def test_fetch_falls_back_to_legacy_then_placeholder(ledger, storage, legacy_root):
    write_file(legacy_root / "uploads" / "forum" / "old.jpg", JPEG_BYTES)
    resolver = _resolver(ledger, storage, legacy_root)

    legacy = await resolver.fetch("FORUM", "forum/old.jpg")
    missing = await resolver.fetch("FORUM", "forum/never.jpg")

    assert legacy.source == ResolutionSource.legacy
    assert legacy.body == JPEG_BYTES
    assert missing.is_default
    assert missing.content_type == "image/svg+xml"
    assert missing.body.lstrip().startswith(b"<svg")


@pytest.mark.parametrize("media_type", ["..", "../..", "calendar/../..", "/etc"])
async def test_legacy_lookup_rejects_unsafe_media_type(ledger, storage, legacy_root, media_type):
    write_file(legacy_root.parent / "creds.env", b"SECRET=1")
    calls = []

    async def lazy_migrate(found, category):
        calls.append(found)

    resolver = _resolver(ledger, storage, legacy_root, lazy_migrate=lazy_migrate)
    resolved = await resolver.resolve("creds.env", media_type)
    await resolver.drain()

    assert resolved.source == ResolutionSource.default
    assert resolved.is_default
    assert calls == []


async def test_legacy_lookup_ignores_symlink_out_of_root(ledger, storage, legacy_root, tmp_path):
    outside = tmp_path / "outside"
    write_file(outside / "poster.jpg", JPEG_BYTES)
    (legacy_root / "calendar").symlink_to(outside, target_is_directory=True)

    resolved = await _resolver(ledger, storage, legacy_root).resolve("poster.jpg", "calendar")

    assert resolved.source == ResolutionSource.default


async def test_fetch_rejects_dot_segments_in_key(ledger, storage, legacy_root):
    write_file(legacy_root.parent / "secret.txt", b"TOP-SECRET")
    await storage.put("DEFAULT", "../secret.txt", b"TOP-SECRET", "text/plain")
    calls = []

    async def lazy_migrate(found, category):
        calls.append(found)

    resolver = _resolver(ledger, storage, legacy_root, lazy_migrate=lazy_migrate)
    asset = await resolver.fetch("DEFAULT", "../secret.txt")
    await resolver.drain()

    assert asset.is_default
    assert asset.body != b"TOP-SECRET"
    assert calls == []
