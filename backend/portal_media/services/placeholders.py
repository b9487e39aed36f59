from __future__ import annotations

from pathlib import Path

PLACEHOLDER_ROOT = Path(__file__).resolve().parents[1] / "assets" / "placeholders"

DEFAULT_PLACEHOLDER = "default-image.svg"

PLACEHOLDERS: dict[str, str] = {
    "calendar": "default-event-image.svg",
    "calendar-media": "default-event-image.svg",
    "event": "default-event-image.svg",
    "events": "default-event-image.svg",
    "forum": "default-forum-image.svg",
    "forum-media": "default-forum-image.svg",
    "forum_post": "default-forum-image.svg",
    "forum_comment": "default-forum-image.svg",
    "banner": "banner-placeholder.svg",
    "banner-slides": "banner-placeholder.svg",
    "vendor": "default-vendor-image.svg",
    "vendors": "default-vendor-image.svg",
    "vendor-media": "default-vendor-image.svg",
    "real_estate": "default-listing-image.svg",
    "real_estate_media": "default-listing-image.svg",
    "for_sale": "default-listing-image.svg",
    "community": "default-community-image.svg",
    "community-media": "default-community-image.svg",
}

# Served when the placeholder files themselves are unavailable.
FALLBACK_SVG = (
    b'<svg xmlns="http://www.w3.org/2000/svg" width="400" height="300" '
    b'viewBox="0 0 400 300"><rect width="400" height="300" fill="#e5e7eb"/></svg>'
)


def placeholder_for(media_type: str | None) -> str:
    normalized = (media_type or "").strip().lower()
    return PLACEHOLDERS.get(normalized, DEFAULT_PLACEHOLDER)


def placeholder_root(directory: str | None = None) -> Path:
    return Path(directory) if directory else PLACEHOLDER_ROOT


def read_placeholder(name: str, directory: str | None = None) -> bytes:
    path = placeholder_root(directory) / name
    try:
        return path.read_bytes()
    except OSError:
        return FALLBACK_SVG
