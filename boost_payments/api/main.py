"""
Main FastAPI application.

Boost payment API with:
- CORS configuration
- Error envelopes for classified and unexpected failures
- Request ID tracking
- Structured logging
- Prometheus metrics
- Background maintenance owned by the lifespan
"""
import math
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from boost_payments import __version__
from boost_payments.config import Settings, get_settings
from boost_payments.core.errors import (
    BoostError,
    ErrorCode,
    ErrorKind,
    infrastructure_failure,
    log_boost_error,
)
from boost_payments.database.connection import close_db, get_session_factory, init_db
from boost_payments.database.repository import SQLAlchemyBoostRepository
from boost_payments.monitoring.logging import setup_logging

from .dependencies import BoostServices, build_services
from .routes import monitoring_router, payment_router

logger = structlog.get_logger(__name__)


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def create_app(
    settings: Optional[Settings] = None, services: Optional[BoostServices] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings (cached environment settings by default)
        services: Pre-built service graph; when omitted the lifespan builds one
            backed by the database

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            signature_test_mode=settings.signature_test_mode,
        )

        owns_database = services is None
        if owns_database:
            try:
                await init_db()
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise
            session_factory = get_session_factory()
            app.state.services = build_services(
                settings,
                SQLAlchemyBoostRepository(session_factory),
                session_factory=session_factory,
            )
        else:
            app.state.services = services

        app.state.services.maintenance.start()

        yield

        logger.info("application_shutdown")
        await app.state.services.close()
        if owns_database:
            try:
                await close_db()
                logger.info("database_connections_closed")
            except Exception as e:
                logger.error("database_shutdown_error", error=str(e))

    app = FastAPI(
        title="Boost Payments",
        description=(
            "Boost order payments with idempotent, retried transactions and "
            "verified Billplz notifications."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Attach a request ID to the log context and the response."""
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(BoostError)
    async def boost_error_handler(request: Request, exc: BoostError) -> JSONResponse:
        log_boost_error(exc, path=request.url.path)
        headers = {}
        if exc.kind is ErrorKind.RATE_LIMITED and "retryAfterMs" in exc.details:
            headers["Retry-After"] = str(max(1, math.ceil(exc.details["retryAfterMs"] / 1000)))
        return JSONResponse(
            status_code=exc.http_status,
            content=exc.to_response(
                request_id=_request_id(request), include_details=not settings.is_production
            ),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        error = BoostError(
            ErrorKind.VALIDATION,
            "Invalid request data",
            code=ErrorCode.INVALID_INPUT,
            details={
                "errors": [
                    {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
                    for e in exc.errors()
                ]
            },
        )
        log_boost_error(error, path=request.url.path)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error.to_response(request_id=_request_id(request), include_details=True),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=exc,
        )
        error = infrastructure_failure(
            "An unexpected error occurred. Please try again later.",
            operation="request",
            code=ErrorCode.INTERNAL_ERROR,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error.to_response(request_id=_request_id(request)),
        )

    app.include_router(payment_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def _build_default_app() -> FastAPI:
    setup_logging()
    return create_app()


app = _build_default_app()


def run() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "boost_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
