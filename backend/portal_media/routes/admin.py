from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from .. import schemas
from ..dependencies import Ledger, MediaVerifier, require_admin_token
from ..utils.media_status import MigrationStatus

router = APIRouter(
    prefix="/admin/migrations",
    tags=["admin"],
    dependencies=[Depends(require_admin_token)],
)


@router.get("/stats", response_model=schemas.MigrationStatsResponse)
async def migration_stats(ledger: Ledger):
    stats = await ledger.stats()
    return schemas.MigrationStatsResponse(**stats.as_dict())


@router.get("", response_model=schemas.MigrationRecordListResponse)
async def list_migrations(
    ledger: Ledger,
    status_filter: MigrationStatus = Query(MigrationStatus.failed, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
):
    records = await ledger.list_by_status(status_filter, limit)
    return schemas.MigrationRecordListResponse(
        items=[schemas.MigrationRecordResponse.model_validate(record) for record in records]
    )


@router.post("/{record_id}/verify", response_model=schemas.VerifyResponse)
async def verify_migration(record_id: str, ledger: Ledger, verifier: MediaVerifier):
    record = await ledger.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Migration record not found")
    if record.migration_status != MigrationStatus.migrated:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Record is {record.migration_status}, not migrated",
        )
    verified = await verifier.verify(record)
    refreshed = await ledger.get(record_id) or record
    return schemas.VerifyResponse(
        id=record_id,
        verified=verified,
        verified_at=refreshed.verified_at,
    )


@router.delete("/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def purge_migration(record_id: str, ledger: Ledger):
    if not await ledger.purge(record_id):
        raise HTTPException(status_code=404, detail="Migration record not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
