"""
Celery worker — workflow executions, the scheduler tick and the stale sweep.

Run with:
    celery -A recon_engine.worker worker --loglevel=info
    celery -A recon_engine.worker beat --loglevel=info

Each task body is async and runs in a fresh event loop (asyncio.run); the
SQLAlchemy engine's pool is disposed at the end of every task because pooled
asyncpg connections are bound to the loop that opened them.
"""

import asyncio
import logging
import uuid

from celery import Celery
from celery.signals import task_failure, task_prerun

from recon_engine.config import get_settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()

celery_app = Celery("recon_engine", broker=settings.broker_url, backend=settings.result_backend)
celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=settings.timezone,
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=settings.progress_ttl_seconds,
    broker_transport_options={"client_class": "redis"},
)

celery_app.conf.beat_schedule = {
    "dispatch-scheduled-workflows": {
        "task": "workflows.dispatch_scheduled",
        "schedule": float(settings.workflow_scheduler_interval_seconds),
    },
}
if settings.workflow_stale_sweep_enabled:
    celery_app.conf.beat_schedule["reconcile-stale-executions"] = {
        "task": "workflows.reconcile_stale",
        "schedule": float(settings.workflow_stale_sweep_interval_seconds),
    }


def _run_async(coro_factory, *args, **kwargs):
    """Run an async job in a fresh loop and release DB connections afterwards."""
    from recon_engine.database import dispose_engine

    async def runner():
        try:
            return await coro_factory(*args, **kwargs)
        finally:
            await dispose_engine()

    return asyncio.run(runner())


# ── Task bodies ───────────────────────────────────────────────────────

async def _process(execution_id: str):
    from recon_engine.services.workflow_processor import run_execution

    # Inside a worker an inline fallback would die with this task's event loop
    return await run_execution(uuid.UUID(execution_id), allow_inline=False)


async def _dispatch_scheduled():
    from recon_engine.database import async_session
    from recon_engine.services.cache import CacheStore
    from recon_engine.services.workflow_scheduler import run_scheduled_workflows

    cache = CacheStore()
    try:
        async with async_session() as db:
            return await run_scheduled_workflows(db, cache)
    finally:
        await cache.close()


async def _reconcile_stale():
    from recon_engine.database import async_session
    from recon_engine.services.cache import CacheStore
    from recon_engine.services.execution_reconciler import reconcile_stale_executions

    cache = CacheStore()
    try:
        async with async_session() as db:
            return await reconcile_stale_executions(db, cache, allow_inline=False)
    finally:
        await cache.close()


async def _job_failed(execution_id: str, message: str):
    from recon_engine.database import async_session
    from recon_engine.services.cache import CacheStore
    from recon_engine.services.workflow_queue import enqueue_next_pending_for_tenant, handle_job_failed
    from recon_engine.services.execution_state import get_execution

    cache = CacheStore()
    try:
        async with async_session() as db:
            changed = await handle_job_failed(db, uuid.UUID(execution_id), message)
            execution = await get_execution(db, uuid.UUID(execution_id))
            if changed and execution is not None:
                await enqueue_next_pending_for_tenant(db, execution.tenant_id, cache, allow_inline=False)
            return changed
    finally:
        await cache.close()


# ── Tasks ─────────────────────────────────────────────────────────────

@celery_app.task(name="workflows.process_execution", bind=True, acks_late=True)
def process_workflow_execution(self, execution_id: str, tenant_id: str = None, workflow_id: str = None):
    """Process one workflow execution (task id == execution id)."""
    logger.info(f"Processing execution {execution_id} (tenant {tenant_id}, workflow {workflow_id})")
    status = _run_async(_process, execution_id)
    return {"execution_id": execution_id, "status": status}


@celery_app.task(name="workflows.dispatch_scheduled")
def dispatch_scheduled_workflows():
    """Create executions for workflows whose cron schedule is due."""
    return _run_async(_dispatch_scheduled)


@celery_app.task(name="workflows.reconcile_stale")
def reconcile_stale_executions():
    """Bring stalled PENDING/RUNNING executions back in line with the queue."""
    return _run_async(_reconcile_stale)


# ── Job lifecycle signals ─────────────────────────────────────────────

@task_prerun.connect(sender=process_workflow_execution)
def _on_job_active(sender=None, task_id=None, **kwargs):
    # PENDING -> RUNNING is claimed by the processor itself, after the single-flight check
    logger.info(f"Job {task_id} active")


@task_failure.connect(sender=process_workflow_execution)
def _on_job_failed(sender=None, task_id=None, exception=None, **kwargs):
    if not task_id:
        return
    message = f"Queue job failed: {type(exception).__name__}: {exception}"[:500]
    try:
        _run_async(_job_failed, task_id, message)
    except Exception as e:
        logger.error(f"Failure hook failed for execution {task_id}: {e}")
