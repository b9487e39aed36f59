"""Resolve a logical media reference to a retrievable URL.

Strategies run in the configured order and the first hit wins. Only the
legacy step has a side effect: it schedules a background migration of the
file it found and returns immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .. import metrics
from ..config import FALLBACK_STEPS
from ..logging_context import report_exception
from ..repositories.migration_records import LedgerError, MigrationLedger
from ..utils.media_paths import (
    build_object_url,
    build_storage_key,
    detect_content_type,
    has_dot_segments,
    normalize_reference,
    parse_storage_reference,
    reference_basename,
    safe_category,
)
from ..utils.media_status import MigrationStatus, ResolutionSource
from .bucket_router import BUCKETS, DEFAULT_BUCKET, resolve_bucket
from .placeholders import placeholder_for, read_placeholder
from .storage_service import ObjectStorage, StorageObjectNotFoundError, StorageServiceError

logger = logging.getLogger(__name__)

LazyMigrateFn = Callable[[Path, str], Awaitable[object]]


@dataclass(frozen=True, slots=True)
class ResolvedAsset:
    url: str
    source: ResolutionSource
    is_default: bool = False
    bucket: str | None = None
    key: str | None = None


@dataclass(frozen=True, slots=True)
class ServedAsset:
    body: bytes
    content_type: str
    source: ResolutionSource
    is_default: bool = False


class PathResolver:
    def __init__(
        self,
        ledger: MigrationLedger,
        storage: ObjectStorage,
        *,
        base_url: str,
        legacy_root: str | Path,
        legacy_directories: Sequence[str] = ("uploads/{media_type}", "{media_type}"),
        legacy_url_prefix: str = "/legacy-media",
        placeholder_url_prefix: str = "/placeholders",
        placeholder_dir: str | None = None,
        chain: Sequence[str] = FALLBACK_STEPS,
        lazy_migrate: LazyMigrateFn | None = None,
    ) -> None:
        self._ledger = ledger
        self._storage = storage
        self._base_url = base_url
        self._legacy_root = Path(legacy_root)
        self._legacy_root_resolved = self._legacy_root.resolve()
        self._legacy_directories = tuple(legacy_directories)
        self._legacy_url_prefix = legacy_url_prefix.rstrip("/")
        self._placeholder_url_prefix = placeholder_url_prefix.rstrip("/")
        self._placeholder_dir = placeholder_dir
        steps = [ResolutionSource(step) for step in chain if step != "default"]
        self._chain = (*steps, ResolutionSource.default)
        self._lazy_migrate = lazy_migrate
        self._inflight: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def chain(self) -> tuple[ResolutionSource, ...]:
        return self._chain

    async def resolve(self, logical_ref: str, media_type: str) -> ResolvedAsset:
        steps = {
            ResolutionSource.ledger: self._from_ledger,
            ResolutionSource.convention: self._from_convention,
            ResolutionSource.legacy: self._from_legacy,
        }
        for source in self._chain:
            if source == ResolutionSource.default:
                break
            resolved = await steps[source](logical_ref, media_type)
            if resolved is not None:
                metrics.media_resolutions_total.labels(source=str(source)).inc()
                return resolved
        return self._placeholder(logical_ref, media_type)

    async def fetch(self, bucket: str, key: str) -> ServedAsset:
        """Return bytes for ``bucket/key``, falling back like :meth:`resolve`."""

        media_type, _, _ = key.partition("/")
        if has_dot_segments(key):
            logger.warning(
                "Rejected storage proxy key with dot segments %s/%s",
                bucket,
                key,
                extra={"anomaly": "path_traversal"},
            )
            return await self._serve_placeholder(bucket, key, "")
        basename = reference_basename(key)
        locations = [(bucket, key)]
        if basename:
            for alternate in (
                (resolve_bucket(media_type), build_storage_key(media_type, basename)),
                (DEFAULT_BUCKET, key),
            ):
                if alternate not in locations:
                    locations.append(alternate)

        for candidate_bucket, candidate_key in locations:
            try:
                stored = await self._storage.get(candidate_bucket, candidate_key)
            except StorageObjectNotFoundError:
                continue
            except StorageServiceError as exc:
                logger.warning(
                    "Storage read failed for %s/%s: %s", candidate_bucket, candidate_key, exc
                )
                continue
            if (candidate_bucket, candidate_key) != (bucket, key):
                logger.info(
                    "Served %s/%s from alternate location %s/%s",
                    bucket,
                    key,
                    candidate_bucket,
                    candidate_key,
                )
            content_type = detect_content_type(candidate_key)
            if content_type == "application/octet-stream":
                content_type = stored.content_type
            metrics.media_resolutions_total.labels(source="convention").inc()
            return ServedAsset(
                body=stored.data,
                content_type=content_type,
                source=ResolutionSource.convention,
            )

        if basename and ResolutionSource.legacy in self._chain:
            path = await self._find_legacy_file(basename, media_type)
            if path is not None:
                try:
                    body = await asyncio.to_thread(path.read_bytes)
                except OSError as exc:
                    logger.warning("Legacy file unreadable %s: %s", path, exc)
                else:
                    self._schedule_migration(path, media_type)
                    metrics.media_resolutions_total.labels(source="legacy").inc()
                    return ServedAsset(
                        body=body,
                        content_type=detect_content_type(path.name),
                        source=ResolutionSource.legacy,
                    )

        return await self._serve_placeholder(bucket, key, media_type)

    async def _serve_placeholder(self, bucket: str, key: str, media_type: str) -> ServedAsset:
        name = placeholder_for(media_type)
        logger.info(
            "Storage proxy miss for %s/%s; serving placeholder %s",
            bucket,
            key,
            name,
            extra={"media_type": media_type},
        )
        metrics.media_resolution_misses_total.labels(
            media_type=safe_category(media_type) or "unknown"
        ).inc()
        body = await asyncio.to_thread(read_placeholder, name, self._placeholder_dir)
        return ServedAsset(
            body=body,
            content_type="image/svg+xml",
            source=ResolutionSource.default,
            is_default=True,
        )

    async def drain(self) -> None:
        """Wait for scheduled lazy migrations to settle."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _ledger_keys(self, logical_ref: str) -> list[str]:
        keys = [logical_ref]
        normalized = normalize_reference(logical_ref)
        if normalized:
            keys.append(normalized)
            keys.append((self._legacy_root / normalized.lstrip("/")).as_posix())
        return list(dict.fromkeys(key for key in keys if key))

    async def _from_ledger(self, logical_ref: str, media_type: str) -> ResolvedAsset | None:
        for source_location in self._ledger_keys(logical_ref):
            try:
                record = await self._ledger.find_by_source(
                    source_location, status=MigrationStatus.migrated
                )
            except LedgerError as exc:
                logger.warning("Ledger lookup failed for %s: %s", logical_ref, exc)
                return None
            if record is not None:
                return ResolvedAsset(
                    url=build_object_url(self._base_url, record.media_bucket, record.storage_key),
                    source=ResolutionSource.ledger,
                    bucket=record.media_bucket,
                    key=record.storage_key,
                )
        return None

    async def _from_convention(self, logical_ref: str, media_type: str) -> ResolvedAsset | None:
        locations: list[tuple[str, str]] = []
        direct = parse_storage_reference(
            logical_ref, known_buckets=BUCKETS, base_url=self._base_url
        )
        if direct is not None:
            locations.append(direct)
        basename = reference_basename(logical_ref)
        if basename:
            guess = (resolve_bucket(media_type), build_storage_key(media_type, basename))
            if guess not in locations:
                locations.append(guess)

        for bucket, key in locations:
            try:
                present = await self._storage.exists(bucket, key)
            except StorageServiceError as exc:
                logger.warning("Existence check failed for %s/%s: %s", bucket, key, exc)
                continue
            if present:
                return ResolvedAsset(
                    url=build_object_url(self._base_url, bucket, key),
                    source=ResolutionSource.convention,
                    bucket=bucket,
                    key=key,
                )
        return None

    async def _from_legacy(self, logical_ref: str, media_type: str) -> ResolvedAsset | None:
        basename = reference_basename(logical_ref)
        if not basename:
            return None
        path = await self._find_legacy_file(basename, media_type)
        if path is None:
            return None
        self._schedule_migration(path, media_type)
        relative = path.relative_to(self._legacy_root).as_posix()
        return ResolvedAsset(
            url=f"{self._legacy_url_prefix}/{relative}",
            source=ResolutionSource.legacy,
        )

    async def _find_legacy_file(self, basename: str, media_type: str) -> Path | None:
        category = safe_category(media_type)
        if not category:
            return None
        for template in self._legacy_directories:
            directory = template.format(media_type=category).strip("/")
            candidate = self._legacy_root / directory / basename if directory else self._legacy_root / basename
            try:
                found = await asyncio.to_thread(self._is_legacy_file, candidate)
            except OSError:
                found = False
            if found:
                return candidate
        return None

    def _is_legacy_file(self, candidate: Path) -> bool:
        if not candidate.resolve().is_relative_to(self._legacy_root_resolved):
            logger.warning(
                "Legacy candidate %s escapes the legacy root",
                candidate,
                extra={"anomaly": "path_traversal"},
            )
            return False
        return candidate.is_file()

    def _placeholder(self, logical_ref: str, media_type: str) -> ResolvedAsset:
        name = placeholder_for(media_type)
        logger.info(
            "No asset found for %s; using placeholder %s",
            logical_ref,
            name,
            extra={"media_type": media_type},
        )
        metrics.media_resolutions_total.labels(source="default").inc()
        metrics.media_resolution_misses_total.labels(
            media_type=safe_category(media_type) or "unknown"
        ).inc()
        return ResolvedAsset(
            url=f"{self._placeholder_url_prefix}/{name}",
            source=ResolutionSource.default,
            is_default=True,
        )

    def _schedule_migration(self, path: Path, media_type: str) -> None:
        if self._lazy_migrate is None:
            return
        token = path.as_posix()
        if token in self._inflight:
            return
        self._inflight.add(token)
        task = asyncio.create_task(self._run_lazy_migration(path, media_type))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_lazy_migration(self, path: Path, media_type: str) -> None:
        try:
            await self._lazy_migrate(path, media_type)
            logger.info("Lazy migration finished for %s", path)
        except Exception as exc:
            logger.exception("Lazy migration failed for %s", path)
            report_exception(exc, media_type=media_type or "unknown")
        finally:
            self._inflight.discard(path.as_posix())


__all__ = ["LazyMigrateFn", "PathResolver", "ResolvedAsset", "ServedAsset"]
