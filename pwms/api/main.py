"""PWMS Sync API - FastAPI application."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException

from .. import __version__
from ..storage import RemoteStore, StorageBackend
from .config import Settings, get_settings
from .context import Context, build_context
from .logging_config import configure_logging, get_logger
from .rate_limit import limiter
from .routes import local_sync_router, quality_router, shipment_router, sync_router

logger = get_logger("pwms.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    context = app.state.context
    settings = context.settings
    logger.info(
        f"Starting PWMS Sync API (storage={context.store.backend_name}, "
        f"local_first={context.local_first}, debug={settings.debug})"
    )

    timer = None
    if context.engine is not None and settings.sync_interval_seconds > 0:
        timer = asyncio.create_task(context.engine.run_periodic(settings.sync_interval_seconds))
    yield
    # Shutdown
    if timer is not None:
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass
    if context.local is not None:
        context.local.close()
    logger.info("Shutting down PWMS Sync API")


def create_app(
    settings: Settings | None = None,
    backend: StorageBackend | None = None,
    remote: RemoteStore | None = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Settings to use (default: ``get_settings()``).
        backend: Storage backend override, mainly for tests.
        remote: Remote store override for the sync engine.
    """
    settings = settings or get_settings()
    configure_logging(settings.debug)

    app = FastAPI(
        title="PWMS Sync API",
        description="Offline-first sync for production and warehouse data",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = build_context(settings, backend=backend, remote=remote)

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        content = {"success": False, "error": "Invalid request body"}
        if settings.debug:
            content["details"] = str(exc.errors())
        return JSONResponse(status_code=400, content=content)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        content = {"success": False, "error": "Internal server error"}
        if settings.debug:
            content["details"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(quality_router)
    app.include_router(shipment_router)
    app.include_router(sync_router)
    app.include_router(local_sync_router)

    @app.get("/")
    async def root():
        """Service banner."""
        return {
            "service": "pwms-sync",
            "version": __version__,
            "status": "ok",
        }

    @app.get("/health")
    async def health(context: Context):
        """Health check reporting the active storage backend."""
        storage = {
            "backend": context.store.backend_name,
            "durable": context.store.durable,
            "changes": await context.changelog.count(),
        }
        if context.local_first:
            storage["queueCount"] = context.local.queue.count()
            storage["syncState"] = context.engine.state.value

        return {
            "success": True,
            "status": "healthy" if context.store.durable else "degraded",
            "storage": storage,
        }

    return app


app = create_app()
