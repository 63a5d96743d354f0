"""
Workflows Router — trigger, cancel and inspect workflow executions.
All queries are scoped to the caller's tenant (X-Tenant-Id).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.auth import TenantContext, get_tenant_context
from recon_engine.database import get_db
from recon_engine.dependencies import get_cache, get_event_sink
from recon_engine.errors import InvalidTransitionError, ValidationError
from recon_engine.models import ExecutionStatus
from recon_engine.services import execution_state
from recon_engine.services.workflow_log import get_execution_logs
from recon_engine.services.workflow_processor import get_progress
from recon_engine.services.workflow_service import (
    cancel_execution,
    execution_to_dict,
    get_workflow,
    list_executions,
    trigger_manual,
)
from recon_engine.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Schemas ──────────────────────────────────────────────────────────
class TriggerRequest(BaseModel):
    since: Optional[str] = None
    until: Optional[str] = None


async def _get_execution_or_404(db: AsyncSession, execution_id: str, ctx: TenantContext):
    execution = await execution_state.get_execution(db, parse_uuid(execution_id, "execution_id"), ctx.tenant_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution


# ── Executions ───────────────────────────────────────────────────────

@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
):
    execution = await _get_execution_or_404(db, execution_id, ctx)
    return execution_to_dict(execution)


@router.get("/executions/{execution_id}/progress")
async def get_execution_progress(
    execution_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_cache),
):
    """Authoritative counters plus the live per-day snapshot (when still cached)."""
    execution = await _get_execution_or_404(db, execution_id, ctx)
    return await get_progress(execution, cache)


@router.get("/executions/{execution_id}/logs")
async def get_logs(
    execution_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
):
    execution = await _get_execution_or_404(db, execution_id, ctx)
    logs = await get_execution_logs(db, execution.id, ctx.tenant_id)
    return {
        "execution_id": str(execution.id),
        "logs": [
            {
                "id": str(entry.id),
                "level": entry.level,
                "event": entry.event,
                "message": entry.message,
                "metadata": entry.details or {},
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in logs
        ],
    }


@router.post("/executions/{execution_id}/cancel")
async def cancel(
    execution_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    sink=Depends(get_event_sink),
):
    execution = await _get_execution_or_404(db, execution_id, ctx)
    try:
        execution = await cancel_execution(db, execution, sink)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return execution_to_dict(execution)


# ── Workflows ────────────────────────────────────────────────────────

@router.post("/{workflow_id}/trigger", status_code=202)
async def trigger(
    workflow_id: str,
    body: TriggerRequest | None = None,
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_cache),
):
    """Start a manual run. Queued behind the tenant's active execution if there is one."""
    workflow = await get_workflow(db, parse_uuid(workflow_id, "workflow_id"), ctx.tenant_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")

    body = body or TriggerRequest()
    try:
        execution, mode = await trigger_manual(db, workflow, since=body.since, until=body.until, cache=cache)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "execution": execution_to_dict(execution),
        "dispatched": mode is not None,
        "dispatch_mode": mode,
    }


@router.get("/{workflow_id}/executions")
async def get_workflow_executions(
    workflow_id: str,
    status: Optional[ExecutionStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
):
    workflow = await get_workflow(db, parse_uuid(workflow_id, "workflow_id"), ctx.tenant_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")

    executions, total = await list_executions(
        db, workflow.id, ctx.tenant_id, status=status.value if status else None, limit=limit, offset=offset,
    )
    return {
        "workflow_id": str(workflow.id),
        "total": total,
        "executions": [execution_to_dict(e) for e in executions],
    }
