"""FastAPI application entry point for license-sync.

External license reconciliation REST API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from licsync import __version__
from licsync.api import register_exception_handlers
from licsync.cache import close_cache
from licsync.config import get_settings
from licsync.db import close_all_connections
from licsync.logging import get_logger, setup_logging

# Initialize logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown events."""
    from licsync.db import create_tables
    from licsync.reconciliation import close_coordinator, get_coordinator

    # Startup
    settings = get_settings()
    logger.info(
        "Starting license-sync API",
        extra={
            "environment": settings.environment,
            "debug": settings.api_debug,
        },
    )

    if settings.is_development:
        await create_tables()

    # Fail sync runs left running by a previous server lifetime
    coordinator = await get_coordinator()
    orphaned = await coordinator.stores.operations.fail_orphaned(
        "Server restarted - run cancelled"
    )
    if orphaned:
        logger.info(f"Marked {orphaned} orphaned sync run(s) from previous session as failed")

    yield

    # Shutdown
    logger.info("Shutting down license-sync API")
    await close_coordinator()
    await close_cache()
    await close_all_connections()


# Create FastAPI application
settings = get_settings()

app = FastAPI(
    title="License Sync API",
    description="External license reconciliation and duplicate consolidation",
    version=__version__,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


# =========================
# Health Check Endpoints
# =========================


@app.get("/health", tags=["Health"])
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "license-sync"}


@app.get("/health/ready", tags=["Health"])
async def readiness_check():
    """Readiness check that verifies database connectivity."""
    from licsync.db import get_db_session, get_redis

    checks = {
        "database": "unknown",
        "redis": "unknown",
    }

    try:
        async with get_db_session() as session:
            await session.execute(text("SELECT 1"))
            checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)}"

    try:
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = "healthy"
    except Exception as e:
        checks["redis"] = f"unhealthy: {str(e)}"

    all_healthy = all(v == "healthy" for v in checks.values())
    status_code = 200 if all_healthy else 503

    return JSONResponse(
        status_code=status_code,
        content={
            "status": "ready" if all_healthy else "not_ready",
            "checks": checks,
        },
    )


@app.get("/health/live", tags=["Health"])
async def liveness_check():
    """Liveness check - just confirms the service is running."""
    return {"status": "alive"}


# =========================
# API Routers
# =========================

from licsync.api.duplicates import router as duplicates_router  # noqa: E402
from licsync.api.sync import router as sync_router  # noqa: E402

app.include_router(sync_router, prefix="/api/v1", tags=["External Licenses"])
app.include_router(duplicates_router, prefix="/api/v1", tags=["Duplicates"])


# =========================
# Root Endpoint
# =========================


@app.get("/", tags=["Root"])
async def root():
    """API root endpoint."""
    return {
        "name": "License Sync API",
        "version": __version__,
        "docs": "/docs" if settings.is_development else None,
    }
