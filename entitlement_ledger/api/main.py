"""
Main FastAPI application.

Entitlement and settlement ledger API with:
- CORS configuration
- Ledger error mapping to stable error codes
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from entitlement_ledger import __version__
from entitlement_ledger.config import Settings, get_settings
from entitlement_ledger.core.errors import LedgerError
from entitlement_ledger.core.services import LedgerServices, build_services
from entitlement_ledger.database.connection import close_db, init_db
from entitlement_ledger.monitoring.health import HealthCheck
from entitlement_ledger.monitoring.logging import setup_logging

from .routes import (
    account_router,
    admin_router,
    audit_router,
    entitlement_router,
    internal_router,
    monitoring_router,
    payout_router,
    promo_router,
    settlement_router,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Creates the schema on the global engine at startup and disposes of it
    at shutdown. Applications built around injected services manage their
    own storage.
    """
    settings: Settings = app.state.services.settings
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

    if app.state.owns_database:
        try:
            await init_db()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

    yield

    logger.info("application_shutdown")
    if app.state.owns_database:
        try:
            await close_db()
            logger.info("database_connections_closed")
        except Exception as e:
            logger.error("database_shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        request_id=request_id,
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        duration = time.time() - start_time
        logger.info(
            "request_completed",
            request_id=request_id,
            status_code=response.status_code,
            duration_seconds=duration,
        )
        return response

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            "request_failed",
            request_id=request_id,
            error=str(e),
            duration_seconds=duration,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Map ledger errors to their status and safe message."""
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "ledger_error",
        error_code=exc.error_code,
        error=exc.message,
        path=request.url.path,
        **{k: str(v) for k, v in exc.context.items()},
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies use the same error envelope as ledger errors."""
    logger.warning("request_validation_failed", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "code": "validation_error",
                "message": "The request contains invalid data.",
                "type": "RequestValidationError",
                "fields": jsonable_encoder(exc.errors()),
            }
        },
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "internal_error",
                "message": "An unexpected error occurred. Please try again later.",
                "type": "InternalError",
            }
        },
    )


def create_app(
    services: Optional[LedgerServices] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Optional pre-wired ledger services (defaults to the global
            engine and settings)
        settings: Optional settings used when ``services`` is not given

    Returns:
        FastAPI: The application
    """
    settings = services.settings if services is not None else (settings or get_settings())
    # Runs once per worker process.
    setup_logging(settings)
    owns_database = services is None
    services = services or build_services(settings=settings)

    app = FastAPI(
        title="Entitlement & Settlement Ledger",
        description=(
            "Course access rights, payment settlements, instructor payouts and an "
            "append-only audit trail for privileged actions."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = services
    app.state.owns_database = owns_database
    app.state.health_check = HealthCheck(services.batches.session_factory)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(account_router)
    app.include_router(entitlement_router)
    app.include_router(settlement_router)
    app.include_router(promo_router)
    app.include_router(payout_router)
    app.include_router(audit_router)
    app.include_router(admin_router)
    app.include_router(internal_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point: serve the API through the app factory."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "entitlement_ledger.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
