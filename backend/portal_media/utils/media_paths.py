"""Helpers for storage keys, legacy references and content types."""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from urllib.parse import unquote, urlparse

_CATEGORY_RE = re.compile(r"[a-z0-9][a-z0-9_-]*")

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".bmp": "image/bmp",
    ".ico": "image/x-icon",
    ".avif": "image/avif",
    ".mp4": "video/mp4",
    ".m4v": "video/x-m4v",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".ogv": "video/ogg",
    ".pdf": "application/pdf",
    ".zip": "application/zip",
}

PROXY_SEGMENTS = ("api/storage-proxy", "storage-proxy")


def detect_content_type(filename: str) -> str:
    suffix = PurePosixPath(filename or "").suffix.lower()
    return CONTENT_TYPES.get(suffix, DEFAULT_CONTENT_TYPE)


def media_family(content_type: str | None) -> str:
    """Collapse a MIME type to the family used for verification."""

    normalized = (content_type or "").split(";", 1)[0].strip().lower()
    if normalized == "image/svg+xml":
        return "svg"
    if normalized.startswith("image/"):
        return "image"
    if normalized.startswith("video/"):
        return "video"
    if normalized == "application/pdf":
        return "pdf"
    if normalized == "application/zip":
        return "zip"
    return "other"


def sniff_media_family(data: bytes) -> str | None:
    """Guess the media family from leading magic bytes; None when unknown."""

    head = data[:64]
    if head.startswith(b"\x89PNG") or head.startswith(b"\xff\xd8\xff"):
        return "image"
    if head.startswith(b"GIF8") or head.startswith(b"BM"):
        return "image"
    if head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return "image"
    if head.startswith(b"RIFF") and head[8:12] == b"AVI ":
        return "video"
    if head[4:8] == b"ftyp":
        brand = head[8:12]
        return "image" if brand in {b"avif", b"avis", b"heic"} else "video"
    if head.startswith(b"\x1a\x45\xdf\xa3"):
        return "video"
    if head.startswith(b"%PDF"):
        return "pdf"
    if head.startswith(b"PK\x03\x04"):
        return "zip"
    stripped = head.lstrip()
    if stripped.startswith(b"<svg") or stripped.startswith(b"<?xml"):
        return "svg"
    return None


def extension_for_bytes(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return ".png"
    if data.startswith(b"\xff\xd8\xff"):
        return ".jpg"
    if data.startswith(b"GIF8"):
        return ".gif"
    if data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return ".webp"
    if data.startswith(b"PK\x03\x04"):
        return ".zip"
    if data.startswith(b"%PDF"):
        return ".pdf"
    return ".bin"


def safe_filename(filename: str | None) -> str:
    name = PurePosixPath((filename or "").replace("\\", "/")).name.strip()
    if name in {"", ".", ".."}:
        return ""
    return name


def safe_category(media_type: str | None) -> str:
    """Lowercased category slug, or "" when it is not a plain single segment."""

    category = (media_type or "").strip().lower()
    if not _CATEGORY_RE.fullmatch(category):
        return ""
    return category


def has_dot_segments(key: str | None) -> bool:
    return any(part in {".", ".."} for part in (key or "").replace("\\", "/").split("/"))


def build_storage_key(media_type: str, filename: str) -> str:
    category = safe_category(media_type) or "general"
    return f"{category}/{safe_filename(filename)}"


def build_object_url(base_url: str, bucket: str, key: str) -> str:
    return f"{base_url.rstrip('/')}/{bucket}/{key.lstrip('/')}"


def normalize_reference(ref: str | None) -> str:
    """Reduce a legacy URL or path to a clean, slash-separated path."""

    raw = (ref or "").strip()
    if not raw:
        return ""
    parsed = urlparse(raw)
    path = unquote(parsed.path if parsed.scheme or parsed.netloc else raw.split("?", 1)[0])
    path = path.split("#", 1)[0].replace("\\", "/")
    while "//" in path:
        path = path.replace("//", "/")
    return path


def reference_basename(ref: str | None) -> str:
    return safe_filename(normalize_reference(ref))


def parse_storage_reference(
    ref: str | None,
    *,
    known_buckets: frozenset[str],
    base_url: str | None = None,
) -> tuple[str, str] | None:
    """Return (bucket, key) when ``ref`` already points into object storage."""

    raw = (ref or "").strip()
    if not raw:
        return None
    if base_url and raw.startswith(base_url.rstrip("/") + "/"):
        remainder = raw[len(base_url.rstrip("/")) + 1 :]
    else:
        remainder = normalize_reference(raw).lstrip("/")
        for segment in PROXY_SEGMENTS:
            if remainder.startswith(segment + "/"):
                remainder = remainder[len(segment) + 1 :]
                break
    remainder = normalize_reference(remainder).lstrip("/")
    bucket, _, key = remainder.partition("/")
    if bucket not in known_buckets or not key or has_dot_segments(key) or not safe_filename(key):
        return None
    return bucket, key
