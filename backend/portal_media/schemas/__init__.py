from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from ..utils.media_status import MigrationStatus, ResolutionSource, SourceType


class MigrationRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source_type: SourceType
    source_location: str
    media_bucket: str
    media_type: str
    storage_key: str
    migration_status: MigrationStatus
    migrated_at: Optional[datetime] = None
    verification_status: bool = False
    verified_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class MigrationRecordListResponse(BaseModel):
    items: List[MigrationRecordResponse]


class MigrationStatsResponse(BaseModel):
    total: int = 0
    pending: int = 0
    migrated: int = 0
    failed: int = 0
    verified: int = 0


class VerifyResponse(BaseModel):
    id: str
    verified: bool
    verified_at: Optional[datetime] = None


class ResolvedAssetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    url: str
    source: ResolutionSource
    is_default: bool = False
    bucket: Optional[str] = None
    key: Optional[str] = None


__all__ = [
    "MigrationRecordListResponse",
    "MigrationRecordResponse",
    "MigrationStatsResponse",
    "ResolvedAssetResponse",
    "VerifyResponse",
]
