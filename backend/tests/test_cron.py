"""
Tests for the cron endpoints (scheduler tick / stale sweep over HTTP).
"""

from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from recon_engine.config import Settings
from recon_engine.database import get_db
from recon_engine.dependencies import get_cache
from recon_engine.main import app


@pytest.fixture
async def client(db, cache):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_cache] = lambda: cache
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.mark.anyio
async def test_scheduler_requires_secret(client):
    stats = {"checked": 2, "created": 1, "dispatched": 1, "skipped_active": 0, "invalid": 0}
    with patch("recon_engine.routers.cron.get_settings", return_value=Settings(cron_secret="s3cret")), \
            patch("recon_engine.routers.cron.run_scheduled_workflows", new=AsyncMock(return_value=stats)) as tick:
        denied = await client.post("/api/cron/scheduler", headers={"X-Cron-Secret": "wrong"})
        allowed = await client.post("/api/cron/scheduler", headers={"Authorization": "Bearer s3cret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json() == {"status": "ok", "result": stats}
    tick.assert_awaited_once()


@pytest.mark.anyio
async def test_unconfigured_secret_is_server_error(client):
    with patch("recon_engine.routers.cron.get_settings", return_value=Settings(cron_secret="")):
        response = await client.post("/api/cron/reconciler", headers={"X-Cron-Secret": ""})
    assert response.status_code == 500


@pytest.mark.anyio
async def test_reconciler_respects_enable_flag(client):
    settings = Settings(cron_secret="s3cret", workflow_stale_sweep_enabled=False)
    sweep = AsyncMock()
    with patch("recon_engine.routers.cron.get_settings", return_value=settings), \
            patch("recon_engine.routers.cron.reconcile_stale_executions", new=sweep):
        response = await client.post("/api/cron/reconciler", headers={"X-Cron-Secret": "s3cret"})

    assert response.json() == {"status": "disabled"}
    sweep.assert_not_awaited()
