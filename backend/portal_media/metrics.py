from __future__ import annotations

from prometheus_client import Counter

media_uploads_total = Counter(
    "media_uploads_total",
    "Uploads attempted by the media uploader, by bucket and outcome.",
    ["bucket", "outcome"],
)
media_upload_retries_total = Counter(
    "media_upload_retries_total",
    "Number of upload retries scheduled after transient storage failures.",
)
media_resolutions_total = Counter(
    "media_resolutions_total",
    "Media references resolved, by the fallback step that answered.",
    ["source"],
)
media_resolution_misses_total = Counter(
    "media_resolution_misses_total",
    "Media references that fell through to a placeholder.",
    ["media_type"],
)
media_verification_failures_total = Counter(
    "media_verification_failures_total",
    "Migrated objects that could not be read back or had the wrong type.",
    ["reason"],
)
media_reconcile_items_total = Counter(
    "media_reconcile_items_total",
    "Items processed by the reconciler, by outcome.",
    ["outcome"],
)
