"""
Queue dispatch for workflow executions.

Executions are sent to Celery with task_id = execution id, so the same
execution is never queued under two ids. A Redis job marker is set alongside;
the stale sweep uses it to tell "waiting in the broker" from "lost".
When WORKFLOW_PROCESS_INLINE is set, or the broker refuses the message, the
execution runs in-process as a background task instead.
"""

import asyncio
import logging
import uuid
from typing import Optional

from kombu.exceptions import OperationalError as BrokerError
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.config import get_settings
from recon_engine.models import WorkflowExecution
from recon_engine.services import execution_state

logger = logging.getLogger(__name__)

DISPATCH_QUEUE = "queue"
DISPATCH_INLINE = "inline"

# Strong references to inline runs; the event loop only keeps weak ones
_inline_tasks: set[asyncio.Task] = set()


def job_payload(execution: WorkflowExecution) -> dict:
    return {
        "execution_id": str(execution.id),
        "tenant_id": str(execution.tenant_id),
        "workflow_id": str(execution.workflow_id),
    }


async def enqueue_job(execution: WorkflowExecution, cache=None) -> bool:
    """Send the execution to Celery. Returns False if the broker is unavailable."""
    from recon_engine.worker import process_workflow_execution

    execution_id = str(execution.id)
    if cache is not None:
        try:
            await cache.mark_job_enqueued(execution_id)
        except RedisError as e:
            logger.warning(f"Could not set job marker for execution {execution_id}: {e}")

    try:
        await asyncio.to_thread(
            process_workflow_execution.apply_async,
            kwargs=job_payload(execution),
            task_id=execution_id,
        )
    except (BrokerError, RedisError, OSError) as e:
        logger.warning(f"Queue unavailable for execution {execution_id}: {e}")
        if cache is not None:
            try:
                await cache.clear_job_marker(execution_id)
            except RedisError as marker_err:
                logger.debug(f"Job marker cleanup failed for execution {execution_id}: {marker_err}")
        return False

    logger.info(f"Enqueued execution {execution_id} (tenant {execution.tenant_id})")
    return True


def run_inline(execution_id: uuid.UUID) -> asyncio.Task:
    """Process an execution on the running event loop, in the background."""
    from recon_engine.services.workflow_processor import run_execution

    task = asyncio.create_task(run_execution(execution_id))
    _inline_tasks.add(task)
    task.add_done_callback(_inline_tasks.discard)
    logger.info(f"Execution {execution_id} running inline")
    return task


async def dispatch_execution(
    db: AsyncSession,
    execution: WorkflowExecution,
    cache=None,
    allow_inline: bool = True,
) -> Optional[str]:
    """
    Hand a committed PENDING execution to a worker. Records how it was
    dispatched and commits that. Returns "queue", "inline" or None when it
    could not be dispatched (left PENDING for the stale sweep).
    """
    settings = get_settings()
    mode = None
    if not settings.workflow_process_inline and await enqueue_job(execution, cache):
        mode = DISPATCH_QUEUE
    elif allow_inline:
        mode = DISPATCH_INLINE

    if mode is None:
        logger.warning(f"Execution {execution.id} left pending: no queue and inline disabled")
        return None

    execution.dispatch_mode = mode
    await db.commit()
    if mode == DISPATCH_INLINE:
        run_inline(execution.id)
    return mode


async def enqueue_next_pending_for_tenant(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    cache=None,
    allow_inline: bool = True,
) -> Optional[uuid.UUID]:
    """
    Dispatch the tenant's oldest never-dispatched PENDING execution, unless
    one is RUNNING or another PENDING one is already with a worker (sending
    it again would put a second message with the same task id in the broker).
    Returns the dispatched execution id.
    """
    if await execution_state.tenant_has_running(db, tenant_id):
        return None
    if await execution_state.tenant_has_dispatched_pending(db, tenant_id):
        logger.debug(f"Tenant {tenant_id} already has a dispatched pending execution")
        return None
    execution = await execution_state.oldest_pending(db, tenant_id)
    if execution is None:
        return None
    mode = await dispatch_execution(db, execution, cache, allow_inline=allow_inline)
    if mode is None:
        return None
    logger.info(f"Dispatched next pending execution {execution.id} for tenant {tenant_id} ({mode})")
    return execution.id


# ── Queue lifecycle hooks (called from Celery signals) ───────────────

async def handle_job_failed(db: AsyncSession, execution_id: uuid.UUID, message: str) -> bool:
    """The Celery task itself crashed: FAILED with a queue error."""
    execution = await execution_state.get_execution(db, execution_id)
    if execution is None:
        return False
    changed = await execution_state.mark_failed(db, execution, source="queue", message=message, kind="queue")
    await db.commit()
    if changed:
        logger.error(f"Execution {execution_id} failed in queue: {message}")
    return changed
