from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from .config import Settings
from .repositories.migration_records import MigrationLedger
from .services.path_resolver import PathResolver
from .services.verifier import Verifier


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_ledger(request: Request) -> MigrationLedger:
    return request.app.state.ledger


def get_resolver(request: Request) -> PathResolver:
    return request.app.state.resolver


def get_verifier(request: Request) -> Verifier:
    return request.app.state.verifier


async def require_admin_token(
    request: Request,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    expected = get_settings(request).admin_api_token
    if not expected:
        return
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
        )


Ledger = Annotated[MigrationLedger, Depends(get_ledger)]
Resolver = Annotated[PathResolver, Depends(get_resolver)]
MediaVerifier = Annotated[Verifier, Depends(get_verifier)]
