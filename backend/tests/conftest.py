"""Pytest configuration and shared fixtures."""

from collections.abc import AsyncGenerator, Iterator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.main import app


@pytest.fixture
def anyio_backend() -> str:
    """Configure anyio backend for async tests."""
    return "asyncio"


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client.

    Yields:
        Configured AsyncClient for testing.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def override_dependency() -> Iterator:
    """Override a FastAPI dependency for the duration of a test.

    Yields:
        Callable taking the dependency factory and its replacement.
    """

    def _override(dependency, replacement) -> None:
        app.dependency_overrides[dependency] = lambda: replacement

    yield _override
    app.dependency_overrides.clear()
