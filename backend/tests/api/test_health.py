"""Tests for health check endpoints."""

from unittest.mock import MagicMock

import pytest
from httpx import AsyncClient

from app.core.config import Settings, get_settings
from app.services.queue_metrics_service import get_queue_metrics_service


@pytest.fixture
def metrics(override_dependency) -> MagicMock:
    service = MagicMock()
    service.check_health.return_value = {
        "status": "healthy",
        "redisConnected": True,
        "queueDepths": {"default": 0, "high": 2, "low": 5},
    }
    override_dependency(get_queue_metrics_service, service)
    return service


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    """Test basic health check endpoint returns healthy status."""
    response = await client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["data"]["status"] == "healthy"
    assert data["data"]["service"] == "geotimeline-backend"


@pytest.mark.asyncio
async def test_liveness_check(client: AsyncClient) -> None:
    """Test liveness check endpoint returns alive status."""
    response = await client.get("/api/health/live")

    assert response.status_code == 200
    data = response.json()
    assert data["data"]["status"] == "alive"


@pytest.mark.asyncio
async def test_readiness_check_ready(client: AsyncClient, metrics: MagicMock, override_dependency) -> None:
    """Test readiness is reported once Supabase and Redis are available."""
    override_dependency(
        get_settings,
        Settings(_env_file=None, supabase_url="https://example.supabase.co", supabase_key="anon-key"),
    )

    response = await client.get("/api/health/ready")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "ready"
    assert data["checks"] == {"supabase_configured": True, "redis_connected": True}
    assert data["queueDepths"]["low"] == 5


@pytest.mark.asyncio
async def test_readiness_check_without_supabase(client: AsyncClient, metrics: MagicMock, override_dependency) -> None:
    """Test readiness check reports not_ready without Supabase credentials."""
    override_dependency(get_settings, Settings(_env_file=None, supabase_url="", supabase_key=""))

    response = await client.get("/api/health/ready")

    data = response.json()["data"]
    assert data["status"] == "not_ready"
    assert data["checks"]["supabase_configured"] is False


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient) -> None:
    """Test root endpoint returns welcome message."""
    response = await client.get("/")

    assert response.status_code == 200
    data = response.json()
    assert "GeoTimeline" in data["message"]
    assert data["health"] == "/api/health"
