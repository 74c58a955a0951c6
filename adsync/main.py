"""AdSync — FastAPI Application Entry Point.

Meta Ads data synchronization service: scheduled and on-demand syncs,
webhook-driven cache invalidation, and cached read APIs for the dashboard.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from adsync.api.deps import Services, build_services
from adsync.api.health_routes import router as health_router
from adsync.api.meta_routes import router as meta_router
from adsync.api.sync_routes import router as sync_router
from adsync.api.webhook_routes import router as webhook_router
from adsync.config import settings
from adsync.core.errors import AuthError, StorageError, UpstreamError, ValidationError
from adsync.core.logging import get_logger
from adsync.database import check_connection

logger = get_logger("main")


def register_exception_handlers(app: FastAPI) -> None:
    """Map the error taxonomy onto HTTP responses without leaking internals."""

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(
            {"error": "Invalid request", "field": exc.field, "reason": exc.reason},
            status_code=400,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = str(first.get("loc", ["request"])[-1])
        return JSONResponse(
            {"error": "Invalid request", "field": field, "reason": first.get("msg", "invalid")},
            status_code=400,
        )

    @app.exception_handler(AuthError)
    async def auth_error(request: Request, exc: AuthError):
        return JSONResponse({"error": str(exc)}, status_code=exc.status_code)

    @app.exception_handler(UpstreamError)
    async def upstream_error(request: Request, exc: UpstreamError):
        logger.error(
            f"Upstream failure on {request.url.path}: {exc}",
            extra={"endpoint": request.url.path, "status_code": exc.status_code},
        )
        return JSONResponse(
            {"error": "Upstream request failed", "upstream_status": exc.status_code},
            status_code=502,
        )

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError):
        logger.error(f"Storage failure on {request.url.path}: {exc}")
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}: {exc}")
        return JSONResponse({"error": "Internal server error"}, status_code=500)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the app. Injected services are used as-is and the scheduler is not started."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle."""
        owned = services is None
        app.state.services = services or build_services()
        current = app.state.services
        logger.info("🚀 AdSync starting up...")
        if owned:
            if check_connection(current.store.engine):
                try:
                    current.store.init_schema()
                except Exception as e:
                    logger.error(f"❌ Table creation failed: {e}")
            else:
                logger.error("❌ Database NOT connected — endpoints will fail")
            await current.cache.connect()
            if current.scheduler:
                current.scheduler.start()
        yield
        if owned:
            if current.scheduler:
                current.scheduler.stop()
            await current.client.close()
            await current.cache.close()
        logger.info("AdSync shut down")

    app = FastAPI(
        title="AdSync",
        description="Meta Ads synchronization and caching service.",
        version=settings.app_version,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Routers
    app.include_router(sync_router)
    app.include_router(meta_router)
    app.include_router(webhook_router)
    app.include_router(health_router)
    return app


app = create_app()
