"""Discovery of legacy media: filesystem directories and inline database blobs."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from psycopg import sql
from psycopg_pool import AsyncConnectionPool

from ..utils.media_paths import extension_for_bytes, safe_filename
from ..utils.media_status import SourceType

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[bytes]]


@dataclass(frozen=True, slots=True)
class MediaCandidate:
    source_type: SourceType
    source_location: str
    filename: str
    loader: Loader = field(compare=False, repr=False)


@dataclass(slots=True)
class ScanResult:
    candidates: list[MediaCandidate]
    scanned: int = 0
    duplicates: list[str] = field(default_factory=list)


def file_candidate(path: Path) -> MediaCandidate:
    resolved = Path(path)

    async def _load() -> bytes:
        return await asyncio.to_thread(resolved.read_bytes)

    return MediaCandidate(
        source_type=SourceType.filesystem,
        source_location=resolved.as_posix(),
        filename=resolved.name,
        loader=_load,
    )


def _iter_files(directory: Path) -> Iterable[Path]:
    for root, dirnames, filenames in os.walk(directory):
        dirnames[:] = sorted(name for name in dirnames if not name.startswith("."))
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            yield Path(root) / name


def scan_directories(directories: Iterable[str | Path]) -> ScanResult:
    """Walk each directory recursively; the first file with a given name wins."""

    result = ScanResult(candidates=[])
    seen: set[str] = set()
    for entry in directories:
        directory = Path(entry)
        if not directory.is_dir():
            logger.warning("Source directory missing, skipping: %s", directory)
            continue
        for path in _iter_files(directory):
            result.scanned += 1
            if path.name in seen:
                result.duplicates.append(path.as_posix())
                logger.info("Duplicate filename skipped: %s", path)
                continue
            seen.add(path.name)
            result.candidates.append(file_candidate(path))
    return result


async def scan_database_blobs(
    pool: AsyncConnectionPool,
    *,
    table: str,
    blob_column: str,
    id_column: str = "id",
    filename_column: str | None = None,
) -> ScanResult:
    """Build candidates for media stored inline in ``table.blob_column``.

    Only ids, filenames and a short header are read during the scan; each
    candidate fetches its blob when it is uploaded.
    """

    filename_expr = (
        sql.Identifier(filename_column) if filename_column else sql.SQL("NULL")
    )
    query = sql.SQL(
        "SELECT {id} AS id, {filename} AS filename, substring({blob} from 1 for 16) AS head "
        "FROM {table} WHERE {blob} IS NOT NULL ORDER BY {id}"
    ).format(
        id=sql.Identifier(id_column),
        filename=filename_expr,
        blob=sql.Identifier(blob_column),
        table=sql.Identifier(table),
    )
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(query)
            rows = await cur.fetchall()

    result = ScanResult(candidates=[])
    seen: set[str] = set()
    for row_id, stored_name, head in rows:
        result.scanned += 1
        filename = safe_filename(stored_name) if stored_name else ""
        if not filename:
            extension = extension_for_bytes(bytes(head or b""))
            filename = f"{table}-{blob_column}-{row_id}{extension}"
        if filename in seen:
            result.duplicates.append(f"{table}.{blob_column}.{row_id}")
            continue
        seen.add(filename)
        result.candidates.append(
            MediaCandidate(
                source_type=SourceType.database,
                source_location=f"{table}.{blob_column}.{row_id}",
                filename=filename,
                loader=_blob_loader(pool, table, blob_column, id_column, row_id),
            )
        )
    return result


def _blob_loader(
    pool: AsyncConnectionPool,
    table: str,
    blob_column: str,
    id_column: str,
    row_id: object,
) -> Loader:
    query = sql.SQL("SELECT {blob} FROM {table} WHERE {id} = %s").format(
        blob=sql.Identifier(blob_column),
        table=sql.Identifier(table),
        id=sql.Identifier(id_column),
    )

    async def _load() -> bytes:
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, (row_id,))
                row = await cur.fetchone()
        if row is None or row[0] is None:
            raise FileNotFoundError(f"{table}.{blob_column}.{row_id} no longer holds data")
        return bytes(row[0])

    return _load


__all__ = [
    "MediaCandidate",
    "ScanResult",
    "file_candidate",
    "scan_database_blobs",
    "scan_directories",
]
