import pytest

from portal_media.services.bucket_router import (
    BUCKETS,
    DEFAULT_BUCKET,
    MEDIA_TYPE_TO_BUCKET,
    is_known_bucket,
    resolve_bucket,
    validate_bucket_table,
)


@pytest.mark.parametrize(
    ("media_type", "bucket"),
    [
        ("calendar", "CALENDAR"),
        ("events", "CALENDAR"),
        ("Forum-Media", "FORUM"),
        ("forum_comment", "FORUM"),
        ("vendors", "VENDORS"),
        ("real_estate", "SALE"),
        ("for_sale", "SALE"),
        ("community", "COMMUNITY"),
        ("banner", "DEFAULT"),
    ],
)
def test_resolve_bucket_routes_known_categories(media_type, bucket):
    assert resolve_bucket(media_type) == bucket


@pytest.mark.parametrize("media_type", ["podcasts", "", "  ", None])
def test_resolve_bucket_falls_back_to_default(media_type):
    assert resolve_bucket(media_type) == DEFAULT_BUCKET


def test_every_route_targets_a_known_bucket():
    assert set(MEDIA_TYPE_TO_BUCKET.values()) <= BUCKETS
    validate_bucket_table()


def test_routing_table_is_read_only():
    with pytest.raises(TypeError):
        MEDIA_TYPE_TO_BUCKET["calendar"] = "FORUM"  # type: ignore[index]


def test_is_known_bucket_is_exact():
    assert is_known_bucket("CALENDAR")
    assert not is_known_bucket("calendar")
    assert not is_known_bucket("uploads")
    assert not is_known_bucket(None)
