"""Migration ledger states and resolution sources.

The string values are stored in the ledger and echoed in HTTP headers and CLI
reports, so they must stay stable.
"""

from __future__ import annotations

from enum import StrEnum


class SourceType(StrEnum):
    filesystem = "filesystem"
    database = "database"


class MigrationStatus(StrEnum):
    pending = "pending"
    migrated = "migrated"
    failed = "failed"


class ResolutionSource(StrEnum):
    ledger = "ledger"
    convention = "convention"
    legacy = "legacy"
    default = "default"

