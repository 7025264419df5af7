"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.routes import health, timeline
from app.core.config import get_settings
from app.core.correlation import CORRELATION_HEADER, CorrelationMiddleware
from app.core.logging import configure_logging
from app.services.exceptions import ServiceError

configure_logging()

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings = get_settings()
    logger.info(
        "application_starting",
        app_name=app.title,
        detection_service_url=settings.detection_service_url,
        invalidation_batch_size=settings.invalidation_max_batch_size,
    )

    if not settings.is_configured:
        logger.warning(
            "application_not_fully_configured",
            message="Supabase credentials not set. Timeline storage will be unavailable.",
        )

    yield

    logger.info("application_shutting_down")


def _error_body(
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the structured error envelope, tagged with the request's correlation ID."""
    details = dict(details or {})
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id:
        details["correlationId"] = correlation_id
    return {"error": {"code": code, "message": message, "details": details}}


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail
        if isinstance(detail, dict) and "error" in detail:
            # AppException or a ServiceError converted by a route
            error = detail["error"]
            content = _error_body(request, error["code"], error["message"], error.get("details"))
        else:
            content = _error_body(
                request,
                f"HTTP_{exc.status_code}",
                str(detail) if detail else "An error occurred",
            )
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        logger.warning(
            "service_error_unhandled_by_route",
            path=str(request.url.path),
            code=exc.code,
            error=exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.code, exc.message, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        field_errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        logger.warning("validation_error", path=str(request.url.path), errors=field_errors)
        return JSONResponse(
            status_code=422,
            content=_error_body(request, "VALIDATION_ERROR", "Request validation failed", {"fields": field_errors}),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error_type=type(exc).__name__,
        )
        # Internals stay in the logs
        return JSONResponse(
            status_code=500,
            content=_error_body(request, "INTERNAL_ERROR", "An unexpected error occurred"),
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="GPS movement timeline caching and regeneration - Backend API",
        version=settings.api_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # Added last so CORS runs first and also decorates error responses
    app.add_middleware(CorrelationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[CORRELATION_HEADER],
    )

    _register_exception_handlers(app)

    app.include_router(health.router, prefix="/api")
    app.include_router(timeline.router, prefix="/api")

    return app


app = create_app()


@app.get("/")
async def root() -> dict[str, str]:
    """Service banner with links to health and timeline endpoints."""
    payload: dict[str, str] = {
        "message": "GeoTimeline Backend API",
        "health": "/api/health",
        "timeline": "/api/users/{user_id}/timeline",
    }
    if get_settings().debug:
        payload["docs"] = "/docs"
    return payload
