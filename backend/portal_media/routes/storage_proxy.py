from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Response

from .. import schemas
from ..dependencies import Resolver
from ..logging_context import set_media_context
from ..services.bucket_router import is_known_bucket

logger = logging.getLogger(__name__)

router = APIRouter(tags=["media"])

_CACHE_HIT = "public, max-age=3600"
_CACHE_DEFAULT = "no-cache"


@router.get("/storage-proxy/{bucket}/{key:path}")
@router.get("/api/storage-proxy/{bucket}/{key:path}", include_in_schema=False)
async def storage_proxy(bucket: str, key: str, resolver: Resolver):
    if not is_known_bucket(bucket):
        raise HTTPException(status_code=404, detail="Unknown bucket")
    if not key.strip("/"):
        raise HTTPException(status_code=404, detail="Object key required")
    set_media_context(f"{bucket}/{key}")

    asset = await resolver.fetch(bucket, key)
    headers = {
        "X-Media-Source": str(asset.source),
        "Cache-Control": _CACHE_DEFAULT if asset.is_default else _CACHE_HIT,
    }
    if asset.is_default:
        headers["X-Media-Default"] = "true"
    return Response(content=asset.body, media_type=asset.content_type, headers=headers)


@router.get("/media/resolve", response_model=schemas.ResolvedAssetResponse)
async def resolve_media(
    resolver: Resolver,
    ref: str = Query(..., min_length=1),
    media_type: str = Query(..., min_length=1),
):
    set_media_context(ref)
    resolved = await resolver.resolve(ref, media_type)
    return schemas.ResolvedAssetResponse.model_validate(resolved)
