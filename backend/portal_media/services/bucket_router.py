"""Logical media category to object-storage bucket routing."""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from ..config import ConfigurationError

DEFAULT_BUCKET = "DEFAULT"

BUCKETS: frozenset[str] = frozenset(
    {"DEFAULT", "CALENDAR", "FORUM", "VENDORS", "SALE", "COMMUNITY"}
)

MEDIA_TYPE_TO_BUCKET: Mapping[str, str] = MappingProxyType(
    {
        "calendar": "CALENDAR",
        "calendar-media": "CALENDAR",
        "event": "CALENDAR",
        "events": "CALENDAR",
        "forum": "FORUM",
        "forum-media": "FORUM",
        "forum_post": "FORUM",
        "forum_comment": "FORUM",
        "vendor": "VENDORS",
        "vendors": "VENDORS",
        "vendor-media": "VENDORS",
        "real_estate": "SALE",
        "real_estate_media": "SALE",
        "for_sale": "SALE",
        "community": "COMMUNITY",
        "community-media": "COMMUNITY",
        "banner": DEFAULT_BUCKET,
        "banner-slides": DEFAULT_BUCKET,
        "avatar": DEFAULT_BUCKET,
        "icon": DEFAULT_BUCKET,
        "videos": DEFAULT_BUCKET,
        "general": DEFAULT_BUCKET,
    }
)


def resolve_bucket(media_type: str | None) -> str:
    """Map a media category to its bucket; unknown categories use DEFAULT."""

    normalized = (media_type or "").strip().lower()
    return MEDIA_TYPE_TO_BUCKET.get(normalized, DEFAULT_BUCKET)


def is_known_bucket(bucket: str | None) -> bool:
    return (bucket or "") in BUCKETS


def validate_bucket_table() -> None:
    if DEFAULT_BUCKET not in BUCKETS:
        raise ConfigurationError("no DEFAULT bucket configured")
    unknown = sorted(set(MEDIA_TYPE_TO_BUCKET.values()) - BUCKETS)
    if unknown:
        raise ConfigurationError(f"media types routed to unknown buckets: {unknown}")


__all__ = [
    "BUCKETS",
    "DEFAULT_BUCKET",
    "MEDIA_TYPE_TO_BUCKET",
    "is_known_bucket",
    "resolve_bucket",
    "validate_bucket_table",
]
