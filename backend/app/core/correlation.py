"""Correlation ID middleware for request tracing.

Each request gets a correlation_id that is:

1. Taken from the X-Correlation-ID header, or generated as a new UUID
2. Bound to every log line of the request via structlog.contextvars
3. Stored on request.state for the error handlers in app.main
4. Echoed back in the response headers
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Assigns a correlation ID to every request and its log lines."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        try:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            # Prevent leakage into the next request served by this worker
            structlog.contextvars.unbind_contextvars("correlation_id")


def get_correlation_id() -> str | None:
    """Get the correlation_id bound to the current context, if any."""
    return structlog.contextvars.get_contextvars().get("correlation_id")
