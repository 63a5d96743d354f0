"""
Workflow Service — tenant-facing operations on workflows and executions:
manual trigger, cancellation, listing and serialization.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.errors import InvalidTransitionError, ValidationError
from recon_engine.models import (
    ACTIVE_STATUSES,
    ExecutionStatus,
    LogLevel,
    TriggerType,
    Workflow,
    WorkflowExecution,
)
from recon_engine.services import events, execution_state
from recon_engine.services.workflow_log import create_log
from recon_engine.services.workflow_scheduler import create_execution, submit_execution

logger = logging.getLogger(__name__)


async def get_workflow(db: AsyncSession, workflow_id: uuid.UUID, tenant_id: uuid.UUID) -> Optional[Workflow]:
    result = await db.execute(
        select(Workflow).where(Workflow.id == workflow_id, Workflow.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def trigger_manual(
    db: AsyncSession,
    workflow: Workflow,
    since: Optional[str] = None,
    until: Optional[str] = None,
    cache=None,
) -> tuple[WorkflowExecution, Optional[str]]:
    """
    Create a MANUAL execution and dispatch it (or leave it PENDING behind the
    tenant's active run). Returns (execution, dispatch mode or None).
    Raises ValidationError for disabled workflows and bad ranges.
    """
    if not workflow.enabled:
        raise ValidationError(f"Workflow {workflow.name!r} is disabled")

    execution = await create_execution(db, workflow, TriggerType.MANUAL, since=since, until=until)
    await create_log(
        db, execution.id, execution.tenant_id, "execution:created",
        f"Manual run requested for {execution.date_range_since}..{execution.date_range_until}",
    )
    mode = await submit_execution(db, execution, cache)
    logger.info(f"Manual trigger of workflow {workflow.id}: execution {execution.id} ({mode or 'pending'})")
    return execution, mode


async def cancel_execution(db: AsyncSession, execution: WorkflowExecution, event_sink=None) -> WorkflowExecution:
    """
    PENDING/RUNNING -> CANCELLED with completed_at and duration. A running
    processor notices at its next checkpoint. Raises InvalidTransitionError
    for terminal executions.
    """
    if execution.status not in ACTIVE_STATUSES:
        raise InvalidTransitionError(f"Execution is already {execution.status}")

    changed = await execution_state.transition(
        db,
        execution.id,
        ExecutionStatus.CANCELLED,
        ACTIVE_STATUSES,
        **execution_state.terminal_values(execution),
    )
    if not changed:
        await db.refresh(execution)
        raise InvalidTransitionError(f"Execution is already {execution.status}")

    await create_log(
        db, execution.id, execution.tenant_id, events.EXECUTION_CANCELLED,
        "Cancellation requested", level=LogLevel.WARN,
    )
    await db.commit()
    logger.info(f"Execution {execution.id} cancelled (tenant {execution.tenant_id})")
    if event_sink is not None:
        await event_sink.emit(execution.id, events.EXECUTION_CANCELLED, {"requested": True}, tenant_id=execution.tenant_id)
    return execution


async def list_executions(
    db: AsyncSession,
    workflow_id: uuid.UUID,
    tenant_id: uuid.UUID,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[WorkflowExecution], int]:
    filters = [WorkflowExecution.workflow_id == workflow_id, WorkflowExecution.tenant_id == tenant_id]
    if status:
        filters.append(WorkflowExecution.status == ExecutionStatus(status).value)

    total = (await db.execute(select(func.count(WorkflowExecution.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(WorkflowExecution)
        .where(*filters)
        .order_by(WorkflowExecution.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def execution_to_dict(execution: WorkflowExecution) -> dict:
    return {
        "id": str(execution.id),
        "workflow_id": str(execution.workflow_id),
        "tenant_id": str(execution.tenant_id),
        "team_id": str(execution.team_id) if execution.team_id else None,
        "trigger_type": execution.trigger_type,
        "status": execution.status,
        "date_range": {"since": execution.date_range_since, "until": execution.date_range_until},
        "total_days": execution.total_days,
        "days_processed": execution.days_processed,
        "meta_fetched": execution.meta_fetched,
        "pos_fetched": execution.pos_fetched,
        "errors": execution.errors or [],
        "started_at": _iso(execution.started_at),
        "completed_at": _iso(execution.completed_at),
        "duration": execution.duration,
        "created_at": _iso(execution.created_at),
    }
