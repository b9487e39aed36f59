import logging
from contextlib import asynccontextmanager
from pathlib import Path

import sentry_sdk
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .config import Settings, settings
from .logging_utils import setup_logging
from .middleware.request_context import RequestContextMiddleware
from .repositories.migration_records import LedgerError, MigrationLedger, build_ledger
from .routes import admin, storage_proxy
from .services.bucket_router import validate_bucket_table
from .services.path_resolver import PathResolver
from .services.placeholders import placeholder_root
from .services.reconciler import Reconciler
from .services.storage_service import ObjectStorage, build_object_storage
from .services.uploader import Uploader
from .services.verifier import Verifier

logger = logging.getLogger(__name__)

setup_logging()


def _init_sentry(config: Settings) -> None:
    if not config.sentry_dsn:
        return
    sentry_sdk.init(
        dsn=config.sentry_dsn,
        traces_sample_rate=config.sentry_traces_sample_rate,
    )


def create_app(
    config: Settings = settings,
    *,
    ledger: MigrationLedger | None = None,
    storage: ObjectStorage | None = None,
) -> FastAPI:
    _init_sentry(config)
    ledger = ledger or build_ledger(config)
    storage = storage or build_object_storage(config)
    uploader = Uploader(
        storage,
        base_url=config.public_base_url,
        max_attempts=config.upload_max_attempts,
        backoff_base_seconds=config.upload_backoff_base_seconds,
    )
    verifier = Verifier(storage, ledger)
    reconciler = Reconciler(
        ledger, uploader, verifier, concurrency=config.reconcile_concurrency
    )
    resolver = PathResolver(
        ledger,
        storage,
        base_url=config.public_base_url,
        legacy_root=config.legacy_media_root,
        legacy_directories=config.legacy_directories,
        legacy_url_prefix=config.legacy_media_url_prefix,
        placeholder_url_prefix=config.placeholder_url_prefix,
        placeholder_dir=config.placeholder_dir,
        chain=config.fallback_chain,
        lazy_migrate=reconciler.migrate_file,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        validate_bucket_table()
        await ledger.open()
        await ledger.ensure_schema()
        logger.info(
            "Media engine ready ledger=%s storage=%s chain=%s",
            config.ledger_backend,
            config.storage_backend,
            ",".join(config.fallback_chain),
        )
        try:
            yield
        finally:
            await resolver.drain()
            await ledger.close()

    app = FastAPI(title="Portal Media Engine", version="0.1.0", lifespan=lifespan)
    app.state.settings = config
    app.state.ledger = ledger
    app.state.storage = storage
    app.state.uploader = uploader
    app.state.verifier = verifier
    app.state.reconciler = reconciler
    app.state.resolver = resolver

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "X-Requested-With",
            "X-Request-ID",
            "X-Admin-Token",
        ],
        expose_headers=["X-Media-Source", "X-Media-Default", "X-Request-ID"],
    )

    app.mount(
        config.placeholder_url_prefix,
        StaticFiles(directory=placeholder_root(config.placeholder_dir), check_dir=False),
        name="placeholders",
    )
    app.mount(
        config.legacy_media_url_prefix,
        StaticFiles(directory=Path(config.legacy_media_root), check_dir=False),
        name="legacy-media",
    )

    app.include_router(storage_proxy.router)
    app.include_router(admin.router)

    @app.exception_handler(LedgerError)
    async def ledger_unavailable(request: Request, exc: LedgerError):
        logger.error("Ledger error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "ledger unavailable"})

    @app.get("/healthz")
    async def healthz():
        return {"ok": True, "message": "Media engine responding"}

    @app.get("/readyz")
    async def readyz():
        try:
            await ledger.ping()
        except LedgerError as exc:
            raise HTTPException(status_code=503, detail="ledger unavailable") from exc
        return {"ok": True, "ledger": "ready"}

    @app.get("/metrics")
    def metrics_endpoint():
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
