"""
Tests for health check and metrics endpoints.
"""
import pytest
from httpx import AsyncClient
from fastapi import status

from dbuser_operator.api.health import operator_state


@pytest.mark.asyncio
async def test_health_check(test_client: AsyncClient):
    """Test basic health check endpoint."""
    response = await test_client.get("/health/")
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert "timestamp" in data


@pytest.mark.asyncio
async def test_liveness(test_client: AsyncClient):
    """Test Kubernetes liveness check."""
    response = await test_client.get("/health/live")
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["status"] == "alive"
    assert "timestamp" in data


@pytest.mark.asyncio
async def test_readiness_before_startup(test_client: AsyncClient):
    """Not ready until the operator has started."""
    operator_state.reset()
    response = await test_client.get("/health/ready")
    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json()["status"] == "not_ready"


@pytest.mark.asyncio
async def test_readiness_after_startup(test_client: AsyncClient):
    operator_state.mark_ready()
    response = await test_client.get("/health/ready")
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "ready"


@pytest.mark.asyncio
async def test_readiness_drops_while_stopping(test_client: AsyncClient):
    operator_state.mark_ready()
    operator_state.mark_stopping()
    response = await test_client.get("/health/ready")
    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    response = await test_client.get("/health/startup")
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "started"


@pytest.mark.asyncio
async def test_startup(test_client: AsyncClient):
    """Test Kubernetes startup check."""
    operator_state.reset()
    response = await test_client.get("/health/startup")
    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    data = response.json()
    assert data["status"] == "starting"
    assert "timestamp" in data


@pytest.mark.asyncio
async def test_metrics_endpoint(test_client: AsyncClient):
    response = await test_client.get("/metrics/")
    assert response.status_code == status.HTTP_200_OK
    assert "dbuser_reconciliation" in response.text
