"""Tests for health check endpoints."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test basic health check endpoint."""
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()

    assert data["status"] == "healthy"
    assert "timestamp" in data
    assert "version" in data
    assert "environment" in data
    assert data["dependencies"]["database"]["status"] == "healthy"
    assert data["dependencies"]["events"]["type"] == "mock"


@pytest.mark.asyncio
async def test_database_health_reports_pool(client: AsyncClient, seed):
    """Database health includes the port pool by status."""
    await seed.port()
    await seed.port()

    response = await client.get("/health/database")

    assert response.status_code == 200
    details = response.json()["details"]
    assert details["dialect"] == "sqlite"
    assert details["port_pool"] == {"AVAILABLE": 2}


@pytest.mark.asyncio
async def test_version_endpoint(client: AsyncClient):
    """Test version information endpoint."""
    response = await client.get("/version")

    assert response.status_code == 200
    data = response.json()

    assert "version" in data
    assert "environment" in data
    assert data["api_version"] == "v1"
    assert data["service"] == "port-allocation-service"


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient):
    """Test root endpoint."""
    response = await client.get("/")

    assert response.status_code == 200
    data = response.json()

    assert data["service"] == "port-allocation-service"
    assert data["status"] == "running"


@pytest.mark.asyncio
async def test_responses_carry_request_id(client: AsyncClient):
    """The logging middleware echoes a request id."""
    response = await client.get("/", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
