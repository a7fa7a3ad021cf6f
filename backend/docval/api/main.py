"""
Docs Validation Orchestrator - FastAPI Application
==================================================

The process entry point: logging, the validation router, and the TTL
reaper that runs alongside it.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from docval.api import validation
from docval.core.config import settings
from docval.core.database import close_db, get_db_session, init_db
from docval.core.schemas import ErrorResponse, HealthResponse
from docval.core.validation.errors import DocvalError
from docval.core.validation.reaper import TTLReaper


def configure_logging() -> None:
    """Route stdlib and structlog output through one renderer."""
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL)
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.is_production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup creates the schema and the service, then starts the reaper
    unless disabled. Shutdown cancels in-flight runs before the engine
    is disposed.
    """
    logger.info(
        "orchestrator_starting",
        version=settings.APP_VERSION,
        namespace=settings.K8S_NAMESPACE,
        ttl_hours=settings.TTL_HOURS,
    )
    await init_db()
    service = validation.get_validation_service()

    app.state.reaper = None
    if settings.REAPER_ENABLED and not settings.is_test:
        app.state.reaper = TTLReaper(service.store, service.pods)
        await app.state.reaper.start()

    yield

    if app.state.reaper is not None:
        await app.state.reaper.stop()
    await service.shutdown()
    await close_db()
    logger.info("orchestrator_stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Agentic documentation validation and remediation",
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DocvalError)
    async def domain_exception_handler(request: Request, exc: DocvalError) -> JSONResponse:
        """Domain errors that escape a route keep their HTTP mapping."""
        http_exc = validation.http_error(exc)
        return JSONResponse(
            status_code=http_exc.status_code,
            content=ErrorResponse(
                error=type(exc).__name__,
                detail=str(exc),
                code=type(exc).__name__.upper(),
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_exception", exc_info=exc, path=request.url.path, method=request.method)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=str(exc) if settings.is_development else "An unexpected error occurred",
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """Report whether the session store is reachable."""
        database = "connected"
        try:
            async with get_db_session() as db:
                await db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning("health_check_database_failure", error=str(e))
            database = "unavailable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
        )

    app.include_router(validation.router, prefix=settings.API_V1_PREFIX)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "api": settings.API_V1_PREFIX,
            "sessions": f"{settings.API_V1_PREFIX}/validation/sessions",
            "ttl_hours": settings.TTL_HOURS,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docval.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
    )
