"""
Main FastAPI application entry point.
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from aihub.core.config import Settings, get_settings
from aihub.gateway import GatewayError, GatewayRuntime, RequestTimingMiddleware, v2_router
from aihub.gateway.middleware import add_request_id


def configure_logging(settings: Settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log.level.upper(), logging.INFO),
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            add_request_id,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.log.format == "json" else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


def _error_response(status_code: int, message: str, error_type: str, code: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type, "code": code or error_type}},
    )


def create_app(runtime: Optional[GatewayRuntime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the gateway application.

    Args:
        runtime: Pre-built runtime (tests inject fakes); built from settings when omitted
        settings: Settings override
    """
    settings = settings or (runtime.settings if runtime is not None else get_settings())
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting application", version=settings.app.version, env=settings.app.env)

        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = GatewayRuntime.from_settings(settings)
        await app.state.runtime.startup()

        logger.info(
            "Configuration loaded",
            app_name=settings.app.name,
            db_host=settings.database.host,
            max_provider_retries=settings.gateway.max_provider_retries,
        )

        yield

        logger.info("Shutting down application")
        await app.state.runtime.shutdown()

    app = FastAPI(
        title=settings.app.name,
        version=settings.app.version,
        description="AIHub - AI model gateway",
        docs_url="/docs" if settings.docs_enabled else None,
        redoc_url="/redoc" if settings.docs_enabled else None,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # ========================================================================
    # Middleware
    # ========================================================================

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log request start, completion and duration."""
        request_id = getattr(request.state, "request_id", None)
        start_time = time.time()

        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            request_id=request_id,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                duration_ms=round((time.time() - start_time) * 1000, 2),
                request_id=request_id,
            )
            raise

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.time() - start_time) * 1000, 2),
            request_id=request_id,
        )
        return response

    # Outermost: request id and timings exist before anything else runs
    app.add_middleware(RequestTimingMiddleware, log_requests=settings.log.requests)

    # ========================================================================
    # Exception Handlers
    # ========================================================================

    @app.exception_handler(GatewayError)
    async def gateway_exception_handler(request: Request, exc: GatewayError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "Gateway request failed",
            path=request.url.path,
            status_code=exc.status_code,
            error_type=exc.error_type,
            error=exc.message,
            request_id=getattr(request.state, "request_id", None),
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_error_body())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, str(exc.detail), "http_error", str(exc.status_code))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            field = ".".join(str(loc) for loc in errors[0].get("loc", ()))
            message = f"{field}: {errors[0].get('msg')}"
        else:
            message = "Request validation failed"
        return _error_response(400, message, "invalid_request_error", "VALIDATION_ERROR")

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            error=str(exc),
            exc_info=exc,
        )
        return _error_response(
            500,
            "An internal error occurred" if not settings.app.debug else str(exc),
            "internal_error",
            "INTERNAL_ERROR",
        )

    # ========================================================================
    # Routes
    # ========================================================================

    app.include_router(v2_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": settings.app.version}

    return app


app = create_app()
