from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .. import metrics
from ..utils.media_paths import (
    build_object_url,
    build_storage_key,
    detect_content_type,
    safe_filename,
)
from .bucket_router import resolve_bucket
from .storage_service import ObjectStorage, StorageServiceError

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class UploadResult:
    ok: bool
    bucket: str
    key: str
    content_type: str
    url: str | None = None
    attempts: int = 0
    already_present: bool = False
    error: str | None = None


def compute_backoff(attempt: int, *, base_seconds: float, max_seconds: float = 30.0) -> float:
    return min(base_seconds * (2 ** max(0, attempt - 1)), max_seconds)


class Uploader:
    """Writes media bytes to their routed bucket, idempotently by key.

    The uploader never touches the ledger; callers record the transition
    around :meth:`upload`.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        *,
        base_url: str,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._base_url = base_url
        self._max_attempts = max(1, int(max_attempts))
        self._backoff_base = max(0.0, float(backoff_base_seconds))
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        return self._base_url

    def target(self, media_type: str, filename: str) -> tuple[str, str]:
        return resolve_bucket(media_type), build_storage_key(media_type, filename)

    def url_for(self, bucket: str, key: str) -> str:
        return build_object_url(self._base_url, bucket, key)

    async def upload(self, data: bytes, media_type: str, filename: str) -> UploadResult:
        bucket, key = self.target(media_type, filename)
        content_type = detect_content_type(filename)
        if not safe_filename(filename):
            return UploadResult(
                ok=False,
                bucket=bucket,
                key=key,
                content_type=content_type,
                error="invalid filename",
            )

        try:
            present = await self._storage.exists(bucket, key)
        except StorageServiceError as exc:
            # Existence is only an optimisation; fall through to the write.
            logger.debug("Existence check failed for %s/%s: %s", bucket, key, exc)
            present = False
        if present:
            # Same key means same asset; differing content is not detected.
            logger.info("Object already present, skipping transfer %s/%s", bucket, key)
            metrics.media_uploads_total.labels(bucket=bucket, outcome="present").inc()
            return UploadResult(
                ok=True,
                bucket=bucket,
                key=key,
                content_type=content_type,
                url=self.url_for(bucket, key),
                already_present=True,
            )

        last_error: StorageServiceError | None = None
        attempt = 0
        while attempt < self._max_attempts:
            attempt += 1
            try:
                await self._storage.put(bucket, key, data, content_type)
            except StorageServiceError as exc:
                last_error = exc
                if not exc.transient or attempt >= self._max_attempts:
                    break
                delay = compute_backoff(attempt, base_seconds=self._backoff_base)
                logger.warning(
                    "Upload attempt %s/%s failed for %s/%s; retrying in %.2fs: %s",
                    attempt,
                    self._max_attempts,
                    bucket,
                    key,
                    delay,
                    exc,
                )
                metrics.media_upload_retries_total.inc()
                await self._sleep(delay)
                continue

            logger.info(
                "Uploaded %s/%s (%s bytes, %s) in %s attempt(s)",
                bucket,
                key,
                len(data),
                content_type,
                attempt,
            )
            metrics.media_uploads_total.labels(bucket=bucket, outcome="uploaded").inc()
            return UploadResult(
                ok=True,
                bucket=bucket,
                key=key,
                content_type=content_type,
                url=self.url_for(bucket, key),
                attempts=attempt,
            )

        message = str(last_error) if last_error else "upload failed"
        logger.error(
            "Upload failed for %s/%s after %s attempt(s): %s",
            bucket,
            key,
            attempt,
            message,
        )
        metrics.media_uploads_total.labels(bucket=bucket, outcome="failed").inc()
        return UploadResult(
            ok=False,
            bucket=bucket,
            key=key,
            content_type=content_type,
            attempts=attempt,
            error=message,
        )


__all__ = ["UploadResult", "Uploader", "compute_backoff"]
