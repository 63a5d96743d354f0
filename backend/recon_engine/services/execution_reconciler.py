"""
Stale-execution sweep.

An execution whose row has not been touched for WORKFLOW_EXECUTION_STALE_MINUTES
while PENDING or RUNNING is checked against the queue and brought back in line:

    job active            -> RUNNING (touched)
    job waiting / delayed -> PENDING (touched)
    job completed         -> COMPLETED
    job failed / missing  -> FAILED with a "reconciler" error, then the tenant's
                             next PENDING execution is dispatched

PENDING executions that were never dispatched (queued behind another run of
the same tenant) are not stale: they are dispatched once the tenant is free.
"""

import asyncio
import enum
import logging
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from celery.result import AsyncResult
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.config import get_settings
from recon_engine.models import ACTIVE_STATUSES, ExecutionStatus, WorkflowExecution
from recon_engine.services import execution_state, workflow_queue
from recon_engine.utils import utcnow

logger = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    MISSING = "missing"


_CELERY_STATES = {
    "STARTED": JobState.ACTIVE,
    "RETRY": JobState.DELAYED,
    "SUCCESS": JobState.COMPLETED,
    "FAILURE": JobState.FAILED,
    "REVOKED": JobState.FAILED,
}


def map_celery_state(state: str, has_marker: bool) -> JobState:
    """
    Celery reports PENDING for any task id it knows nothing about, so a job
    that is still in the broker and one that was lost look the same. The
    Redis job marker written at enqueue time tells them apart.
    """
    if state in _CELERY_STATES:
        return _CELERY_STATES[state]
    if state in ("PENDING", "RECEIVED"):
        return JobState.WAITING if has_marker else JobState.MISSING
    logger.warning(f"Unknown Celery task state {state!r}, treating as active")
    return JobState.ACTIVE


async def celery_job_state(execution_id: uuid.UUID, cache=None) -> JobState:
    """Look up the Celery task for an execution (task id == execution id)."""
    from recon_engine.worker import celery_app

    task_id = str(execution_id)
    state = await asyncio.to_thread(lambda: AsyncResult(task_id, app=celery_app).state)
    has_marker = False
    if cache is not None:
        try:
            has_marker = await cache.has_job_marker(task_id)
        except RedisError as e:
            logger.warning(f"Job marker lookup failed for execution {task_id}: {e}")
            # Without the marker a queued job is indistinguishable from a lost one
            has_marker = True
    return map_celery_state(state, has_marker)


async def find_stale_executions(db: AsyncSession, cutoff: datetime) -> list[WorkflowExecution]:
    result = await db.execute(
        select(WorkflowExecution)
        .where(
            WorkflowExecution.status.in_(ACTIVE_STATUSES),
            WorkflowExecution.updated_at < cutoff,
        )
        .order_by(WorkflowExecution.updated_at.asc())
    )
    return list(result.scalars().all())


async def reconcile_stale_executions(
    db: AsyncSession,
    cache=None,
    job_state: Optional[Callable[..., Awaitable[JobState]]] = None,
    now: Optional[datetime] = None,
    allow_inline: bool = True,
) -> dict:
    """One sweep. Returns per-outcome counts."""
    settings = get_settings()
    job_state = job_state or celery_job_state
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.workflow_execution_stale_minutes)
    stats = {"checked": 0, "running": 0, "pending": 0, "completed": 0, "failed": 0, "dispatched": 0}

    stale_ids = [e.id for e in await find_stale_executions(db, cutoff)]
    for execution_id in stale_ids:
        # Re-read each row: an earlier iteration may have committed or rolled back
        execution = await execution_state.get_execution(db, execution_id)
        if execution is None or execution.status not in ACTIVE_STATUSES:
            continue
        stats["checked"] += 1
        tenant_id = execution.tenant_id

        if execution.dispatch_mode is None and execution.status == ExecutionStatus.PENDING.value:
            # Never dispatched: waiting for the tenant's running execution to finish
            dispatched = await workflow_queue.enqueue_next_pending_for_tenant(
                db, tenant_id, cache, allow_inline=allow_inline
            )
            if dispatched:
                stats["dispatched"] += 1
            continue

        if execution.dispatch_mode == workflow_queue.DISPATCH_INLINE:
            # An inline run lives and dies with its process; a silent one is gone
            state = JobState.MISSING
        else:
            state = await job_state(execution_id, cache)

        outcome = await _apply_job_state(db, execution, state)
        stats[outcome] += 1
        if outcome == "failed":
            logger.warning(f"Stale execution {execution_id} marked failed (job {state.value})")
            dispatched = await workflow_queue.enqueue_next_pending_for_tenant(
                db, tenant_id, cache, allow_inline=allow_inline
            )
            if dispatched:
                stats["dispatched"] += 1

    if stats["checked"]:
        logger.info(f"Stale execution sweep: {stats}")
    return stats


async def _apply_job_state(db: AsyncSession, execution: WorkflowExecution, state: JobState) -> str:
    execution_id = execution.id
    if state == JobState.ACTIVE:
        try:
            if execution.status == ExecutionStatus.RUNNING.value:
                await execution_state.touch(db, execution_id)
            else:
                await execution_state.transition(
                    db, execution_id, ExecutionStatus.RUNNING, [ExecutionStatus.PENDING],
                    started_at=execution.started_at or utcnow(),
                )
            await db.commit()
        except IntegrityError:
            # Another execution of the tenant holds the running slot; the job will defer itself
            await db.rollback()
            logger.info(f"Execution {execution_id}: job active but tenant slot taken, left pending")
        return "running"

    if state in (JobState.WAITING, JobState.DELAYED):
        await execution_state.transition(
            db, execution_id, ExecutionStatus.PENDING, ACTIVE_STATUSES,
        )
        await db.commit()
        return "pending"

    if state == JobState.COMPLETED:
        await execution_state.transition(
            db, execution_id, ExecutionStatus.COMPLETED, ACTIVE_STATUSES,
            **execution_state.terminal_values(execution),
        )
        await db.commit()
        return "completed"

    await execution_state.mark_failed(
        db,
        execution,
        source="reconciler",
        message=f"Execution stalled and its queue job is {state.value}",
        kind="reconciler",
    )
    await db.commit()
    return "failed"
