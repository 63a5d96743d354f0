"""
Execution status bookkeeping shared by the processor, the queue hooks, the
stale sweep and the API.

Status changes go through transition(), a conditional UPDATE guarded by the
expected current statuses. Two writers racing (a cancel request and the
processor finishing, say) therefore cannot overwrite each other: the loser
sees rowcount 0 and re-reads.
"""

import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.errors import ExecutionError
from recon_engine.models import (
    ACTIVE_STATUSES,
    ExecutionStatus,
    WorkflowExecution,
)
from recon_engine.utils import elapsed_ms, utcnow

logger = logging.getLogger(__name__)


async def get_execution(
    db: AsyncSession, execution_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None
) -> Optional[WorkflowExecution]:
    query = (
        select(WorkflowExecution)
        .where(WorkflowExecution.id == execution_id)
        .execution_options(populate_existing=True)
    )
    if tenant_id is not None:
        query = query.where(WorkflowExecution.tenant_id == tenant_id)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def fetch_status(db: AsyncSession, execution_id: uuid.UUID) -> Optional[str]:
    """Read the persisted status column, bypassing the identity map."""
    result = await db.execute(select(WorkflowExecution.status).where(WorkflowExecution.id == execution_id))
    return result.scalar_one_or_none()


async def transition(
    db: AsyncSession,
    execution_id: uuid.UUID,
    to_status: ExecutionStatus,
    from_statuses: Iterable[str],
    **values,
) -> bool:
    """
    Move an execution to `to_status` only if it is currently in one of
    `from_statuses`. Extra column values are written in the same statement.
    Returns True when the row changed. Does not commit.
    """
    allowed = [ExecutionStatus(s).value for s in from_statuses]
    result = await db.execute(
        update(WorkflowExecution)
        .where(WorkflowExecution.id == execution_id, WorkflowExecution.status.in_(allowed))
        .values(status=ExecutionStatus(to_status).value, updated_at=utcnow(), **values)
        .execution_options(synchronize_session="fetch")
    )
    changed = result.rowcount > 0
    if not changed:
        logger.debug(f"Execution {execution_id}: transition to {to_status} skipped (not in {allowed})")
    return changed


async def touch(db: AsyncSession, execution_id: uuid.UUID) -> None:
    """Refresh updated_at so the stale sweep sees the execution as alive."""
    await db.execute(
        update(WorkflowExecution)
        .where(WorkflowExecution.id == execution_id)
        .values(updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )


async def clear_dispatch(db: AsyncSession, execution_id: uuid.UUID) -> bool:
    """Forget how a PENDING execution was dispatched. Does not commit."""
    result = await db.execute(
        update(WorkflowExecution)
        .where(
            WorkflowExecution.id == execution_id,
            WorkflowExecution.status == ExecutionStatus.PENDING.value,
        )
        .values(dispatch_mode=None)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount > 0


def terminal_values(execution: WorkflowExecution, now=None) -> dict:
    """completed_at + duration for a terminal transition."""
    now = now or utcnow()
    return {"completed_at": now, "duration": elapsed_ms(execution.started_at or execution.created_at, now)}


async def mark_failed(
    db: AsyncSession,
    execution: WorkflowExecution,
    source: str,
    message: str,
    date: str = "N/A",
    kind: str = "system",
) -> bool:
    """Append a synthetic error and move PENDING/RUNNING to FAILED. Does not commit."""
    errors = list(execution.errors or [])
    errors.append(ExecutionError(date=date, source=source, message=message, kind=kind).to_dict())
    return await transition(
        db,
        execution.id,
        ExecutionStatus.FAILED,
        ACTIVE_STATUSES,
        errors=errors,
        **terminal_values(execution),
    )


# ── Per-tenant single flight ──────────────────────────────────────────

async def tenant_has_running(db: AsyncSession, tenant_id: uuid.UUID, exclude_id: Optional[uuid.UUID] = None) -> bool:
    query = select(func.count(WorkflowExecution.id)).where(
        WorkflowExecution.tenant_id == tenant_id,
        WorkflowExecution.status == ExecutionStatus.RUNNING.value,
    )
    if exclude_id is not None:
        query = query.where(WorkflowExecution.id != exclude_id)
    return (await db.execute(query)).scalar_one() > 0


async def tenant_has_active(db: AsyncSession, tenant_id: uuid.UUID, exclude_id: Optional[uuid.UUID] = None) -> bool:
    """True if the tenant has another PENDING or RUNNING execution."""
    query = select(func.count(WorkflowExecution.id)).where(
        WorkflowExecution.tenant_id == tenant_id,
        WorkflowExecution.status.in_(ACTIVE_STATUSES),
    )
    if exclude_id is not None:
        query = query.where(WorkflowExecution.id != exclude_id)
    return (await db.execute(query)).scalar_one() > 0


async def workflow_has_active(db: AsyncSession, workflow_id: uuid.UUID) -> bool:
    query = select(func.count(WorkflowExecution.id)).where(
        WorkflowExecution.workflow_id == workflow_id,
        WorkflowExecution.status.in_(ACTIVE_STATUSES),
    )
    return (await db.execute(query)).scalar_one() > 0


async def tenant_has_dispatched_pending(db: AsyncSession, tenant_id: uuid.UUID) -> bool:
    """True if a PENDING execution of the tenant is already with a worker (queued or inline)."""
    query = select(func.count(WorkflowExecution.id)).where(
        WorkflowExecution.tenant_id == tenant_id,
        WorkflowExecution.status == ExecutionStatus.PENDING.value,
        WorkflowExecution.dispatch_mode.isnot(None),
    )
    return (await db.execute(query)).scalar_one() > 0


async def oldest_pending(db: AsyncSession, tenant_id: uuid.UUID) -> Optional[WorkflowExecution]:
    """Oldest PENDING execution of the tenant that has not been dispatched yet."""
    result = await db.execute(
        select(WorkflowExecution)
        .where(
            WorkflowExecution.tenant_id == tenant_id,
            WorkflowExecution.status == ExecutionStatus.PENDING.value,
            WorkflowExecution.dispatch_mode.is_(None),
        )
        .order_by(WorkflowExecution.created_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()
