"""Durable ledger of media migrations.

Every discovered asset gets one row keyed by (source_location, media_bucket,
storage_key). Rows move PENDING -> MIGRATED or PENDING -> FAILED -> PENDING;
verification is a separate flag that may only be raised on MIGRATED rows.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Mapping, Sequence
from uuid import uuid4

import aiosqlite
import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from ..config import Settings
from ..db import create_pool
from ..services.bucket_router import resolve_bucket
from ..utils.media_paths import build_storage_key, safe_filename
from ..utils.media_status import MigrationStatus, SourceType

logger = logging.getLogger(__name__)

TABLE = "migration_records"

_COLUMNS = """
    id,
    source_type,
    source_location,
    media_bucket,
    media_type,
    storage_key,
    migration_status,
    error_message,
    migrated_at,
    verification_status,
    verified_at,
    created_at,
    updated_at
"""

_TIMESTAMP_COLUMNS = ("migrated_at", "verified_at", "created_at", "updated_at")

_ERROR_MESSAGE_LIMIT = 500


class LedgerError(RuntimeError):
    """Raised when the ledger's backing store cannot be read or written."""


@dataclass(frozen=True, slots=True)
class Outcome:
    ok: bool
    reason: str | None = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str) -> "Outcome":
        return cls(ok=False, reason=reason)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    id: str
    source_type: SourceType
    source_location: str
    media_bucket: str
    media_type: str
    storage_key: str
    migration_status: MigrationStatus
    error_message: str | None
    migrated_at: datetime | None
    verification_status: bool
    verified_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def filename(self) -> str:
        return PurePosixPath(self.storage_key).name


@dataclass(frozen=True, slots=True)
class LedgerStats:
    total: int
    pending: int
    migrated: int
    failed: int
    verified: int

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "migrated": self.migrated,
            "failed": self.failed,
            "verified": self.verified,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _truncate(message: str, limit: int = _ERROR_MESSAGE_LIMIT) -> str:
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _record_from_row(row: Mapping[str, Any]) -> MigrationRecord:
    timestamps = {column: _parse_timestamp(row[column]) for column in _TIMESTAMP_COLUMNS}
    return MigrationRecord(
        id=str(row["id"]),
        source_type=SourceType(row["source_type"]),
        source_location=row["source_location"],
        media_bucket=row["media_bucket"],
        media_type=row["media_type"],
        storage_key=row["storage_key"],
        migration_status=MigrationStatus(row["migration_status"]),
        error_message=row["error_message"],
        verification_status=bool(row["verification_status"]),
        **timestamps,
    )


class MigrationLedger:
    """SQL ledger operations shared by the PostgreSQL and SQLite backends.

    Subclasses provide ``_fetchall``/``_execute`` and the schema statements;
    queries are written with ``%s`` placeholders.
    """

    schema_statements: Sequence[str] = ()

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def _fetchall(self, query: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        raise NotImplementedError

    async def _fetchone(self, query: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        rows = await self._fetchall(query, params)
        return rows[0] if rows else None

    async def ensure_schema(self) -> None:
        for statement in self.schema_statements:
            await self._execute(statement)

    async def ping(self) -> None:
        await self._fetchone("SELECT 1 AS ok")

    async def get(self, record_id: str) -> MigrationRecord | None:
        row = await self._fetchone(
            f"SELECT {_COLUMNS} FROM {TABLE} WHERE id = %s",
            (record_id,),
        )
        return _record_from_row(row) if row else None

    async def upsert_pending(
        self,
        source_type: SourceType | str,
        source_location: str,
        media_type: str,
        *,
        filename: str | None = None,
    ) -> MigrationRecord:
        """Insert a PENDING row or return the existing one.

        FAILED rows are reset to PENDING so they are retried; MIGRATED rows are
        returned untouched.
        """

        bucket = resolve_bucket(media_type)
        key = build_storage_key(media_type, filename or safe_filename(source_location))
        now = _now()
        await self._execute(
            f"""
            INSERT INTO {TABLE} (
                id,
                source_type,
                source_location,
                media_bucket,
                media_type,
                storage_key,
                migration_status,
                verification_status,
                created_at,
                updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (source_location, media_bucket, storage_key) DO NOTHING
            """,
            (
                uuid4().hex,
                str(SourceType(source_type)),
                source_location,
                bucket,
                media_type,
                key,
                str(MigrationStatus.pending),
                False,
                now,
                now,
            ),
        )
        retried = await self._execute(
            f"""
            UPDATE {TABLE}
               SET migration_status = %s,
                   error_message = NULL,
                   updated_at = %s
             WHERE source_location = %s
               AND media_bucket = %s
               AND storage_key = %s
               AND migration_status = %s
            """,
            (
                str(MigrationStatus.pending),
                now,
                source_location,
                bucket,
                key,
                str(MigrationStatus.failed),
            ),
        )
        if retried:
            logger.info(
                "Retrying failed migration source=%s bucket=%s key=%s",
                source_location,
                bucket,
                key,
            )
        row = await self._fetchone(
            f"""
            SELECT {_COLUMNS} FROM {TABLE}
             WHERE source_location = %s
               AND media_bucket = %s
               AND storage_key = %s
            """,
            (source_location, bucket, key),
        )
        if row is None:
            raise LedgerError(f"ledger row vanished after upsert: {source_location}")
        return _record_from_row(row)

    async def mark_migrated(self, record_id: str) -> Outcome:
        now = _now()
        updated = await self._execute(
            f"""
            UPDATE {TABLE}
               SET migration_status = %s,
                   migrated_at = %s,
                   error_message = NULL,
                   updated_at = %s
             WHERE id = %s
               AND migration_status <> %s
            """,
            (
                str(MigrationStatus.migrated),
                now,
                now,
                record_id,
                str(MigrationStatus.migrated),
            ),
        )
        if updated:
            return Outcome.success()
        record = await self.get(record_id)
        if record is None:
            logger.warning("mark_migrated: migration record %s not found", record_id)
            return Outcome.failure("not_found")
        # Already migrated; keep the original migrated_at.
        return Outcome.success()

    async def mark_failed(self, record_id: str, error_message: str) -> Outcome:
        message = _truncate(error_message or "unknown error")
        updated = await self._execute(
            f"""
            UPDATE {TABLE}
               SET migration_status = %s,
                   error_message = %s,
                   updated_at = %s
             WHERE id = %s
               AND migration_status <> %s
            """,
            (
                str(MigrationStatus.failed),
                message,
                _now(),
                record_id,
                str(MigrationStatus.migrated),
            ),
        )
        if updated:
            return Outcome.success()
        record = await self.get(record_id)
        if record is None:
            logger.warning("mark_failed: migration record %s not found", record_id)
            return Outcome.failure("not_found")
        logger.warning(
            "Refusing MIGRATED -> FAILED regression for record %s (%s/%s): %s",
            record_id,
            record.media_bucket,
            record.storage_key,
            message,
            extra={"anomaly": "migrated_to_failed"},
        )
        return Outcome.failure("already_migrated")

    async def mark_verified(self, record_id: str) -> Outcome:
        now = _now()
        updated = await self._execute(
            f"""
            UPDATE {TABLE}
               SET verification_status = %s,
                   verified_at = %s,
                   updated_at = %s
             WHERE id = %s
               AND migration_status = %s
               AND verification_status = %s
            """,
            (True, now, now, record_id, str(MigrationStatus.migrated), False),
        )
        if updated:
            return Outcome.success()
        record = await self.get(record_id)
        if record is None:
            logger.warning("mark_verified: migration record %s not found", record_id)
            return Outcome.failure("not_found")
        if record.migration_status == MigrationStatus.migrated and record.verification_status:
            # Keep the first verification time.
            return Outcome.success()
        logger.warning(
            "mark_verified ignored for record %s with status %s",
            record_id,
            record.migration_status,
        )
        return Outcome.failure("not_migrated")

    async def find_by_source(
        self,
        source_location: str,
        *,
        status: MigrationStatus | None = None,
    ) -> MigrationRecord | None:
        query = f"SELECT {_COLUMNS} FROM {TABLE} WHERE source_location = %s"
        params: list[Any] = [source_location]
        if status is not None:
            query += " AND migration_status = %s"
            params.append(str(status))
        query += " ORDER BY updated_at DESC, id LIMIT 1"
        row = await self._fetchone(query, params)
        return _record_from_row(row) if row else None

    async def list_by_status(
        self, status: MigrationStatus, limit: int = 100
    ) -> list[MigrationRecord]:
        rows = await self._fetchall(
            f"""
            SELECT {_COLUMNS} FROM {TABLE}
             WHERE migration_status = %s
             ORDER BY created_at, id
             LIMIT %s
            """,
            (str(status), max(0, int(limit))),
        )
        return [_record_from_row(row) for row in rows]

    async def list_unverified(self, limit: int = 100) -> list[MigrationRecord]:
        rows = await self._fetchall(
            f"""
            SELECT {_COLUMNS} FROM {TABLE}
             WHERE migration_status = %s
               AND verification_status = %s
             ORDER BY migrated_at, id
             LIMIT %s
            """,
            (str(MigrationStatus.migrated), False, max(0, int(limit))),
        )
        return [_record_from_row(row) for row in rows]

    async def stats(self) -> LedgerStats:
        row = await self._fetchone(
            f"""
            SELECT
              COUNT(*) AS total,
              COALESCE(SUM(CASE WHEN migration_status = %s THEN 1 ELSE 0 END), 0) AS pending,
              COALESCE(SUM(CASE WHEN migration_status = %s THEN 1 ELSE 0 END), 0) AS migrated,
              COALESCE(SUM(CASE WHEN migration_status = %s THEN 1 ELSE 0 END), 0) AS failed,
              COALESCE(SUM(CASE WHEN verification_status THEN 1 ELSE 0 END), 0) AS verified
            FROM {TABLE}
            """,
            (
                str(MigrationStatus.pending),
                str(MigrationStatus.migrated),
                str(MigrationStatus.failed),
            ),
        )
        row = row or {}
        return LedgerStats(
            total=int(row.get("total") or 0),
            pending=int(row.get("pending") or 0),
            migrated=int(row.get("migrated") or 0),
            failed=int(row.get("failed") or 0),
            verified=int(row.get("verified") or 0),
        )

    async def purge(self, record_id: str) -> bool:
        """Hard-delete a ledger row. Administrative use only."""

        deleted = await self._execute(f"DELETE FROM {TABLE} WHERE id = %s", (record_id,))
        if deleted:
            logger.info("Purged migration record %s", record_id)
        return bool(deleted)


_POSTGRES_SCHEMA = (
    f"""
    CREATE TABLE IF NOT EXISTS {TABLE} (
      id text PRIMARY KEY,
      source_type text NOT NULL,
      source_location text NOT NULL,
      media_bucket text NOT NULL,
      media_type text NOT NULL,
      storage_key text NOT NULL,
      migration_status text NOT NULL DEFAULT 'pending',
      error_message text,
      migrated_at timestamptz,
      verification_status boolean NOT NULL DEFAULT false,
      verified_at timestamptz,
      created_at timestamptz NOT NULL DEFAULT now(),
      updated_at timestamptz NOT NULL DEFAULT now(),
      CONSTRAINT {TABLE}_source_target_key
        UNIQUE (source_location, media_bucket, storage_key),
      CONSTRAINT {TABLE}_status_check
        CHECK (migration_status IN ('pending', 'migrated', 'failed')),
      CONSTRAINT {TABLE}_migrated_at_check
        CHECK ((migration_status = 'migrated') = (migrated_at IS NOT NULL)),
      CONSTRAINT {TABLE}_verified_at_check
        CHECK (verification_status = (verified_at IS NOT NULL))
    )
    """,
    f"CREATE INDEX IF NOT EXISTS {TABLE}_status_idx ON {TABLE} (migration_status)",
    f"CREATE INDEX IF NOT EXISTS {TABLE}_source_idx ON {TABLE} (source_location)",
)

_SQLITE_SCHEMA = (
    f"""
    CREATE TABLE IF NOT EXISTS {TABLE} (
      id TEXT PRIMARY KEY,
      source_type TEXT NOT NULL,
      source_location TEXT NOT NULL,
      media_bucket TEXT NOT NULL,
      media_type TEXT NOT NULL,
      storage_key TEXT NOT NULL,
      migration_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (migration_status IN ('pending', 'migrated', 'failed')),
      error_message TEXT,
      migrated_at TEXT,
      verification_status INTEGER NOT NULL DEFAULT 0,
      verified_at TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      UNIQUE (source_location, media_bucket, storage_key),
      CHECK ((migration_status = 'migrated') = (migrated_at IS NOT NULL)),
      CHECK (verification_status = (verified_at IS NOT NULL))
    )
    """,
    f"CREATE INDEX IF NOT EXISTS {TABLE}_status_idx ON {TABLE} (migration_status)",
    f"CREATE INDEX IF NOT EXISTS {TABLE}_source_idx ON {TABLE} (source_location)",
)


class PostgresMigrationLedger(MigrationLedger):
    schema_statements = _POSTGRES_SCHEMA

    def __init__(self, pool: AsyncConnectionPool, *, timeout: float = 10.0) -> None:
        self._pool = pool
        self._timeout = timeout

    @property
    def pool(self) -> AsyncConnectionPool:
        return self._pool

    async def open(self) -> None:
        if self._pool.closed:
            await self._pool.open(wait=True, timeout=self._timeout)

    async def close(self) -> None:
        await self._pool.close()

    async def _fetchall(self, query: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        try:
            async with self._pool.connection(timeout=self._timeout) as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(query, params)
                    rows = await cur.fetchall()
        except psycopg.Error as exc:
            raise LedgerError(f"ledger query failed: {exc}") from exc
        return [dict(row) for row in rows]

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        try:
            async with self._pool.connection(timeout=self._timeout) as conn:
                async with conn.cursor() as cur:
                    await cur.execute(query, params)
                    rowcount = cur.rowcount
                await conn.commit()
        except psycopg.Error as exc:
            raise LedgerError(f"ledger write failed: {exc}") from exc
        return max(0, rowcount)


def _sqlite_param(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class SqliteMigrationLedger(MigrationLedger):
    """Single-file ledger for local runs and tests.

    The connection runs in autocommit mode; each statement is atomic on its
    own, which is all the ledger operations rely on.
    """

    schema_statements = _SQLITE_SCHEMA

    def __init__(self, path: str, *, timeout: float = 10.0) -> None:
        self._path = path
        self._timeout = timeout
        self._conn: aiosqlite.Connection | None = None

    async def open(self) -> None:
        if self._conn is not None:
            return
        try:
            self._conn = await aiosqlite.connect(
                self._path, timeout=self._timeout, isolation_level=None
            )
        except sqlite3.Error as exc:
            raise LedgerError(f"cannot open ledger at {self._path}: {exc}") from exc
        self._conn.row_factory = aiosqlite.Row

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise LedgerError("ledger is not open")
        return self._conn

    @staticmethod
    def _translate(query: str, params: Sequence[Any]) -> tuple[str, list[Any]]:
        return query.replace("%s", "?"), [_sqlite_param(value) for value in params]

    async def _fetchall(self, query: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        sql, values = self._translate(query, params)
        try:
            async with self._connection().execute(sql, values) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.Error as exc:
            raise LedgerError(f"ledger query failed: {exc}") from exc
        return [dict(row) for row in rows]

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        sql, values = self._translate(query, params)
        try:
            async with self._connection().execute(sql, values) as cursor:
                rowcount = cursor.rowcount
        except sqlite3.Error as exc:
            raise LedgerError(f"ledger write failed: {exc}") from exc
        return max(0, rowcount)


def build_ledger(config: Settings, *, pool: AsyncConnectionPool | None = None) -> MigrationLedger:
    if config.ledger_backend == "postgres":
        if pool is None:
            pool = create_pool(config)
        return PostgresMigrationLedger(pool, timeout=config.ledger_timeout_seconds)
    return SqliteMigrationLedger(config.sqlite_path, timeout=config.ledger_timeout_seconds)


__all__ = [
    "LedgerError",
    "LedgerStats",
    "MigrationLedger",
    "MigrationRecord",
    "Outcome",
    "PostgresMigrationLedger",
    "SqliteMigrationLedger",
    "build_ledger",
]
