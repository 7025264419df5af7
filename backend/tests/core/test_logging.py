"""Tests for structured logging and correlation ID propagation.

Tests cover:
- Correlation ID middleware and propagation
- Log context includes user_id and correlation_id
- Console vs JSON rendering by environment
"""

import asyncio
import io
import json
import logging
import uuid
from unittest.mock import MagicMock, patch

import pytest
import structlog
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.correlation import (
    CORRELATION_HEADER,
    CorrelationMiddleware,
    get_correlation_id,
)
from app.core.logging import configure_logging


@pytest.fixture
def test_app() -> FastAPI:
    """Create a test FastAPI app with CorrelationMiddleware."""
    app = FastAPI()
    app.add_middleware(CorrelationMiddleware)

    @app.get("/test")
    async def test_endpoint() -> dict[str, str | None]:
        return {"correlation_id": get_correlation_id()}

    @app.get("/test-async")
    async def test_async_endpoint() -> dict[str, str | None]:
        await asyncio.sleep(0.01)
        return {"correlation_id": get_correlation_id()}

    return app


@pytest.fixture
def captured_logs():
    """Route structlog output to an in-memory JSON stream."""
    output = io.StringIO()
    structlog.reset_defaults()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=False,
    )
    yield output
    structlog.reset_defaults()


class TestCorrelationMiddleware:
    """Tests for CorrelationMiddleware."""

    def test_generates_correlation_id_when_not_provided(self, test_app: FastAPI) -> None:
        client = TestClient(test_app)

        response = client.get("/test")

        assert response.status_code == 200
        corr_id = response.headers[CORRELATION_HEADER]
        uuid.UUID(corr_id)
        assert response.json()["correlation_id"] == corr_id

    def test_uses_existing_correlation_id_from_header(self, test_app: FastAPI) -> None:
        client = TestClient(test_app)

        response = client.get("/test", headers={CORRELATION_HEADER: "provided-id-12345"})

        assert response.headers[CORRELATION_HEADER] == "provided-id-12345"
        assert response.json()["correlation_id"] == "provided-id-12345"

    def test_correlation_id_survives_await(self, test_app: FastAPI) -> None:
        client = TestClient(test_app)

        response = client.get("/test-async", headers={CORRELATION_HEADER: "async-id-67890"})

        assert response.json()["correlation_id"] == "async-id-67890"

    def test_correlation_id_cleared_after_request(self, test_app: FastAPI) -> None:
        client = TestClient(test_app)

        client.get("/test", headers={CORRELATION_HEADER: "first-request-id"})
        second = client.get("/test").json()["correlation_id"]

        assert second != "first-request-id"
        uuid.UUID(second)


class TestGetCorrelationId:
    """Tests for get_correlation_id helper function."""

    def test_returns_none_outside_request_context(self) -> None:
        structlog.contextvars.clear_contextvars()

        assert get_correlation_id() is None

    def test_returns_correlation_id_when_bound(self) -> None:
        structlog.contextvars.bind_contextvars(correlation_id="bound-correlation-id")
        try:
            assert get_correlation_id() == "bound-correlation-id"
        finally:
            structlog.contextvars.unbind_contextvars("correlation_id")


class TestLoggingConfiguration:
    """Tests for logging configuration."""

    @pytest.mark.parametrize(
        ("debug", "renderer"),
        [(True, structlog.dev.ConsoleRenderer), (False, structlog.processors.JSONRenderer)],
    )
    def test_renderer_follows_debug_flag(self, debug: bool, renderer: type) -> None:
        with patch("app.core.logging.get_settings") as mock_get_settings:
            mock_get_settings.return_value = MagicMock(debug=debug)
            structlog.reset_defaults()

            configure_logging()

        try:
            processors = structlog.get_config()["processors"]
            assert isinstance(processors[-1], renderer)
            assert structlog.contextvars.merge_contextvars in processors
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            structlog.reset_defaults()


class TestLogContext:
    """Tests for fields merged from the context."""

    def test_log_includes_correlation_id(self, captured_logs: io.StringIO) -> None:
        structlog.contextvars.bind_contextvars(correlation_id="test-corr-123")
        try:
            structlog.get_logger().info("timeline_requested", days=3)
        finally:
            structlog.contextvars.unbind_contextvars("correlation_id")

        log_data = json.loads(captured_logs.getvalue())
        assert log_data["correlation_id"] == "test-corr-123"
        assert log_data["event"] == "timeline_requested"
        assert log_data["days"] == 3

    def test_log_includes_user_id_when_bound(self, captured_logs: io.StringIO) -> None:
        structlog.contextvars.bind_contextvars(user_id="user-abc-123")
        try:
            structlog.get_logger().info("regeneration_queued")
        finally:
            structlog.contextvars.unbind_contextvars("user_id")

        log_data = json.loads(captured_logs.getvalue())
        assert log_data["user_id"] == "user-abc-123"
        assert log_data["level"] == "info"
