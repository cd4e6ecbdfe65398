"""
FastAPI Application

Main entry point for the synthetic store analytics API.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from datagen.cache import AggregateCache
from datagen.config import get_settings
from datagen.database.connection import close_database, init_database
from datagen.errors import (
    AggregateNotReady,
    BatchCommitError,
    ConstraintViolation,
    DatagenError,
    ParentNotFoundError,
    RefreshInProgress,
    UnknownAggregateError,
)
from datagen.serving.analytics import AnalyticsService
from datagen.serving.api.middleware import RequestLoggingMiddleware
from datagen.serving.api.routes import aggregates_router, analytics_router, health_router

logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES = (
    (AggregateNotReady, 404),
    (UnknownAggregateError, 404),
    (RefreshInProgress, 409),
    (ParentNotFoundError, 409),
    (ConstraintViolation, 422),
    (BatchCommitError, 500),
)


def attach_services(app: FastAPI, engine: AsyncEngine, cache: Optional[AggregateCache] = None) -> None:
    """Store the engine, cache and analytics service on ``app.state``"""
    cache = cache or AggregateCache(engine)
    app.state.engine = engine
    app.state.cache = cache
    app.state.analytics = AnalyticsService(engine, cache)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    owns_engine = getattr(app.state, "engine", None) is None
    if owns_engine:
        from datagen.config.logging import configure_logging
        configure_logging()
        logger.info("Starting analytics API")
        attach_services(app, await init_database())

    await app.state.cache.setup()

    yield

    if owns_engine:
        logger.info("Shutting down...")
        await close_database()


async def datagen_error_handler(request: Request, exc: DatagenError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS_CODES if isinstance(exc, cls)), 500)
    logger.warning(
        "Request failed",
        path=request.url.path,
        error=type(exc).__name__,
        status_code=status_code,
        message=exc.message,
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def timeout_error_handler(request: Request, exc: asyncio.TimeoutError) -> JSONResponse:
    return JSONResponse(status_code=504, content={"error": "TimeoutError", "message": str(exc)})


def create_app(engine: Optional[AsyncEngine] = None, cache: Optional[AggregateCache] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: Pre-built engine; when omitted the lifespan initializes the
            configured database and disposes it on shutdown
        cache: Pre-built aggregate cache for ``engine``

    Returns:
        Configured FastAPI app instance
    """
    settings = get_settings()
    app = FastAPI(
        title="Synthetic Store Analytics API",
        description="Cached analytical aggregates over a generated e-commerce store",
        version=settings.version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    if engine is not None:
        attach_services(app, engine, cache)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(DatagenError, datagen_error_handler)
    app.add_exception_handler(asyncio.TimeoutError, timeout_error_handler)

    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(analytics_router, prefix="/api/v1/analytics", tags=["Analytics"])
    app.include_router(aggregates_router, prefix="/api/v1/aggregates", tags=["Aggregates"])

    @app.get("/api/v1/info")
    async def api_info():
        """API information endpoint."""
        return {
            "name": "Synthetic Store Analytics API",
            "version": settings.version,
            "environment": settings.app_env,
            "documentation": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
