"""
Tests for health check endpoints.
"""

import platform

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    """Health reports version, interpreter and cache size."""
    response = await client.get("/health")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "ok"
    assert data["version"] == "0.1.0"
    assert data["python"] == platform.python_version()
    assert data["cache_entries"] == 0
    assert data["now"]


@pytest.mark.asyncio
async def test_ping(client: AsyncClient) -> None:
    """Test ping endpoint."""
    response = await client.get("/ping")
    assert response.status_code == 200
    assert response.json() == {"pong": True}


@pytest.mark.asyncio
async def test_live(client: AsyncClient) -> None:
    """Test liveness endpoint."""
    response = await client.get("/live")
    assert response.status_code == 200
    assert response.json() == {"alive": True}


@pytest.mark.asyncio
async def test_ready(client: AsyncClient) -> None:
    """Test readiness endpoint."""
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json() == {"ready": True}


@pytest.mark.asyncio
async def test_metrics(client: AsyncClient) -> None:
    """Prometheus text exposes the unwrap metrics."""
    await client.get("/ping")
    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "vastunwrap_http_requests_total" in response.text
    assert "vastunwrap_resolutions_total" in response.text


@pytest.mark.asyncio
async def test_request_id_header(client: AsyncClient) -> None:
    response = await client.get("/ping")
    assert response.headers["X-Request-ID"]
    assert response.headers["X-Response-Time"].endswith("ms")
