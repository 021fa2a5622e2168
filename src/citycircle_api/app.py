from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from citycircle_api.core.settings import settings
from citycircle_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.errors import LoopsError
from .workers import SettlementSweepWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweep_worker = SettlementSweepWorker(
        session_factory=_session_factory,
        interval_seconds=settings.settlement_sweep_interval_seconds,
        trigger_label=settings.settlement_sweep_trigger_label,
    )
    app.state.settlement_sweep_worker = sweep_worker

    sweep_enabled = settings.settlement_sweep_enabled
    if sweep_enabled:
        # the loop's first iteration doubles as the startup expiry pass
        sweep_worker.start()
        logger.info(
            "Settlement sweep worker enabled",
            interval_seconds=sweep_worker.interval_seconds,
            lookback_days=settings.settlement_lookback_days,
        )
    else:
        logger.info(
            "Settlement sweep worker disabled",
            reason="settlement_sweep_enabled is false",
        )

    try:
        yield
    finally:
        if sweep_enabled and sweep_worker.is_running:
            await sweep_worker.stop()


def add_exception_handlers(app: FastAPI) -> None:
    """Render domain failures as ``{"error": kind, "detail": message}``."""

    @app.exception_handler(LoopsError)
    async def loops_error_handler(request: Request, exc: LoopsError) -> JSONResponse:
        logger.info(
            "Request rejected",
            path=request.url.path,
            error_kind=exc.kind,
            detail=exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.kind, "detail": exc.message},
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.opt(exception=exc).error("Database error while handling request", path=request.url.path)
        return JSONResponse(
            status_code=503,
            content={"error": "service_unavailable", "detail": "The service is temporarily unavailable"},
        )


def create_app() -> FastAPI:
    """Application factory for the CityCircle Loops API."""
    configure_logging(
        service_name="citycircle-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="CityCircle Loops API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="citycircle-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    add_exception_handlers(app)
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
