"""FastAPI application entrypoint.

Builds the SyncContext in the lifespan, maps sync errors to HTTP responses,
includes the sync router and exposes a healthcheck endpoint.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import Settings, get_settings
from .routers import meta_sync as meta_sync_router
from .schemas import ErrorResponse
from .services.insight_store import SyncInProgressError
from .services.local_cache import StorageExhaustedError
from .services.meta_ads_client import ErrorCode, MetaAdsClientError, guidance_for
from .services.sync_orchestrator import SyncContext, UnknownAccountError
from .telemetry import init_sentry
from .utils.env import load_env_file


# Meta error class -> HTTP status returned to our own callers
_META_STATUS = {
    ErrorCode.AUTH_ERROR: 401,
    ErrorCode.PERMISSION_ERROR: 403,
    ErrorCode.RATE_LIMIT: 429,
    ErrorCode.DATE_LIMIT: 422,
    ErrorCode.API_ERROR: 400,
    ErrorCode.SERVER_ERROR: 502,
    ErrorCode.NETWORK_ERROR: 504,
}


def _error_response(status_code: int, code: ErrorCode, message: str, **extra) -> JSONResponse:
    body = ErrorResponse(code=code.value, message=message, guidance=guidance_for(code), **extra)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SyncInProgressError)
    async def sync_in_progress_handler(request: Request, exc: SyncInProgressError):
        return _error_response(409, exc.code, exc.message, account_id=exc.account_id)

    @app.exception_handler(StorageExhaustedError)
    async def storage_exhausted_handler(request: Request, exc: StorageExhaustedError):
        return _error_response(507, exc.code, exc.message, account_id=exc.account_id)

    @app.exception_handler(UnknownAccountError)
    async def unknown_account_handler(request: Request, exc: UnknownAccountError):
        return _error_response(404, ErrorCode.API_ERROR, str(exc), account_id=exc.account_id)

    @app.exception_handler(MetaAdsClientError)
    async def meta_error_handler(request: Request, exc: MetaAdsClientError):
        return _error_response(
            _META_STATUS.get(exc.code, 502),
            exc.code,
            exc.message,
            status_code=exc.status_code,
        )


def create_app(settings: Optional[Settings] = None, context: Optional[SyncContext] = None) -> FastAPI:
    """Build the app; tests pass their own settings and a prebuilt SyncContext."""
    if settings is None:
        load_env_file()
        settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)
        sync_context = context or SyncContext.from_settings(settings)
        app.state.sync_context = sync_context
        logger.info(f"[STARTUP] Sync engine ready ({len(sync_context.accounts)} account(s))")
        try:
            yield
        finally:
            await sync_context.aclose()
            logger.info("[SHUTDOWN] Sync engine closed")

    app = FastAPI(
        title="adsync API",
        description="""
        Meta Ads insight synchronization engine.

        - Full, incremental and initial syncs with retention probing
        - Cached insights with cursor pagination and aggregate stats
        - Sync status, change history and cache usage diagnostics
        """,
        version="0.1.0",
        lifespan=lifespan,
    )

    register_exception_handlers(app)
    app.include_router(meta_sync_router.router)

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
