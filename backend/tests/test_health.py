"""
Tests for the FastAPI application: health reporting and which routes sit
behind the API key.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from recon_engine.config import Settings
from recon_engine.main import SERVICE_NAME, app


@pytest.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.anyio
async def test_health_reports_connected_database(client):
    with patch("recon_engine.main.check_db_connection", new_callable=AsyncMock, return_value=True):
        response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "service": SERVICE_NAME,
        "database": "connected",
    }


@pytest.mark.anyio
async def test_health_degrades_when_engine_cannot_connect(client):
    """An unreachable database still answers 200 so orchestrators can read the body."""
    broken_engine = MagicMock()
    broken_engine.begin.side_effect = OSError("connection refused")

    with patch("recon_engine.database.engine", broken_engine):
        response = await client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "degraded"
    assert data["database"] == "disconnected"
    broken_engine.begin.assert_called_once()


@pytest.mark.anyio
async def test_health_is_public_but_workflow_routes_need_api_key(client):
    settings = Settings(api_key="service-key")
    execution_path = f"/api/workflows/executions/{uuid.uuid4()}"

    with patch("recon_engine.auth.get_settings", return_value=settings), \
            patch("recon_engine.main.check_db_connection", new_callable=AsyncMock, return_value=True):
        health = await client.get("/api/health")
        missing = await client.get(execution_path)
        wrong = await client.get(execution_path, headers={"Authorization": "Bearer nope"})

    assert health.status_code == 200
    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json()["detail"] == "Invalid API key"
