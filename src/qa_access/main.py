"""Main FastAPI application for QA Access."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .api.routes import router as api_router
from .config import get_settings
from .credits.usage import usage_counter
from .database.connection import db_manager
from .database.migrations import create_tables
from .errors import AccessError
from .observability.logging import configure_logging
from .security.permissions import validate_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()

    configure_logging(
        environment=settings.environment,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    # Malformed role/permission tables are fatal
    validate_registry()

    if db_manager.engine is None:
        db_manager.initialize()
    await create_tables()

    # Periodically flush the in-memory API call counter
    app.state.usage_flush_stop = asyncio.Event()
    app.state.usage_flush_task = asyncio.create_task(
        usage_counter.run_flush_loop(
            app.state.usage_flush_stop,
            interval_seconds=settings.usage_flush_interval_seconds,
        )
    )

    logger.info("%s v%s started", settings.app_name, settings.app_version)
    logger.info("Environment: %s", settings.environment)

    yield

    # Shutdown
    logger.info("Shutting down %s...", settings.app_name)

    # Stop the flush loop and persist remaining API call increments
    app.state.usage_flush_stop.set()
    await app.state.usage_flush_task
    await usage_counter.flush()

    await db_manager.close()
    logger.info("Database connections closed")


async def access_error_handler(request: Request, exc: AccessError) -> JSONResponse:
    """Map the error taxonomy to its HTTP status with a stable error code."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message},
    )


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Role, permission and credit authorization for the QA auditing platform",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.add_exception_handler(AccessError, access_error_handler)

    # CORS middleware, configurable origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    from .middleware.usage_tracking import UsageTrackingMiddleware
    app.add_middleware(UsageTrackingMiddleware, counter=usage_counter)

    # Rate limiting runs outermost: throttled requests never reach auth
    from .middleware.rate_limit import RateLimiter, RateLimitMiddleware
    rate_limiter = RateLimiter(default_rpm=settings.rate_limit_rpm)
    app.add_middleware(RateLimitMiddleware, rate_limiter=rate_limiter)

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/health/ready")
    async def health_ready():
        """Readiness probe: DB reachable."""
        checks = {}
        try:
            from sqlalchemy import text

            from .database.connection import get_db_context
            async with get_db_context() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as e:
            checks["database"] = f"error: {e}"
            return JSONResponse(
                status_code=503, content={"status": "not_ready", "checks": checks}
            )

        checks["pending_api_calls"] = usage_counter.pending()
        return {"status": "ready", "checks": checks}

    if settings.enable_metrics:
        @app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from .observability.metrics import generate_metrics_text
            return PlainTextResponse(
                generate_metrics_text(),
                media_type="text/plain; version=0.0.4; charset=utf-8",
            )

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "qa_access.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
