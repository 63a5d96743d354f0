"""
Cron endpoints — scheduler tick and stale-execution sweep over HTTP.

For deployments without Celery beat: an external cron calls these every
minute with X-Cron-Secret: <CRON_SECRET> (or Authorization: Bearer <CRON_SECRET>).
"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.config import get_settings
from recon_engine.database import get_db
from recon_engine.dependencies import get_cache
from recon_engine.services.execution_reconciler import reconcile_stale_executions
from recon_engine.services.workflow_scheduler import run_scheduled_workflows

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    # Accept X-Cron-Secret header or Bearer token
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if token != secret:
        raise HTTPException(401, "Invalid cron secret")


@router.post("/scheduler")
async def cron_scheduler(
    _: None = Depends(_require_cron_secret),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_cache),
):
    """Create executions for workflows whose schedule is due."""
    stats = await run_scheduled_workflows(db, cache)
    logger.info(f"Cron scheduler tick: {stats}")
    return {"status": "ok", "result": stats}


@router.post("/reconciler")
async def cron_reconciler(
    _: None = Depends(_require_cron_secret),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_cache),
):
    """Sweep stalled executions."""
    if not get_settings().workflow_stale_sweep_enabled:
        return {"status": "disabled"}
    stats = await reconcile_stale_executions(db, cache)
    logger.info(f"Cron stale sweep: {stats}")
    return {"status": "ok", "result": stats}
