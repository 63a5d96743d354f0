"""
Tests for execution dispatch: Celery enqueue with job markers, inline
fallback, and handing the tenant slot to the next PENDING execution.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from kombu.exceptions import OperationalError

from recon_engine.models import ExecutionStatus
from recon_engine.services import workflow_queue
from recon_engine.services.execution_state import get_execution
from recon_engine.utils import utcnow
from factories import TENANT, add_execution, add_workflow


@pytest.mark.anyio
async def test_enqueue_uses_execution_id_as_task_id(db, cache, fake_redis):
    workflow = await add_workflow(db)
    execution = await add_execution(db, workflow)

    with patch("recon_engine.worker.process_workflow_execution") as task:
        assert await workflow_queue.enqueue_job(execution, cache) is True

    task.apply_async.assert_called_once_with(
        kwargs={
            "execution_id": str(execution.id),
            "tenant_id": str(TENANT),
            "workflow_id": str(workflow.id),
        },
        task_id=str(execution.id),
    )
    assert await cache.has_job_marker(execution.id)


@pytest.mark.anyio
async def test_broker_failure_clears_marker(db, cache):
    workflow = await add_workflow(db)
    execution = await add_execution(db, workflow)

    with patch("recon_engine.worker.process_workflow_execution") as task:
        task.apply_async.side_effect = OperationalError("Connection refused")
        assert await workflow_queue.enqueue_job(execution, cache) is False

    assert not await cache.has_job_marker(execution.id)


@pytest.mark.anyio
async def test_dispatch_falls_back_to_inline(db, cache):
    workflow = await add_workflow(db)
    execution = await add_execution(db, workflow)
    run_inline = MagicMock()

    with patch.object(workflow_queue, "enqueue_job", new=AsyncMock(return_value=False)), \
            patch.object(workflow_queue, "run_inline", new=run_inline):
        mode = await workflow_queue.dispatch_execution(db, execution, cache)

    assert mode == workflow_queue.DISPATCH_INLINE
    run_inline.assert_called_once_with(execution.id)
    assert (await get_execution(db, execution.id)).dispatch_mode == workflow_queue.DISPATCH_INLINE


@pytest.mark.anyio
async def test_dispatch_without_queue_or_inline_leaves_pending(db, cache):
    workflow = await add_workflow(db)
    execution = await add_execution(db, workflow)

    with patch.object(workflow_queue, "enqueue_job", new=AsyncMock(return_value=False)):
        mode = await workflow_queue.dispatch_execution(db, execution, cache, allow_inline=False)

    assert mode is None
    execution = await get_execution(db, execution.id)
    assert execution.dispatch_mode is None
    assert execution.status == ExecutionStatus.PENDING.value


@pytest.mark.anyio
async def test_next_pending_waits_for_running_execution(db, cache):
    workflow = await add_workflow(db)
    running = await add_execution(db, workflow, status=ExecutionStatus.RUNNING, started_at=utcnow())
    first = await add_execution(db, workflow)
    await add_execution(db, workflow)
    dispatch = AsyncMock(return_value="queue")

    with patch.object(workflow_queue, "dispatch_execution", new=dispatch):
        assert await workflow_queue.enqueue_next_pending_for_tenant(db, TENANT, cache) is None

        running.status = ExecutionStatus.COMPLETED.value
        await db.commit()
        assert await workflow_queue.enqueue_next_pending_for_tenant(db, TENANT, cache) == first.id

    dispatch.assert_awaited_once()


@pytest.mark.anyio
async def test_next_pending_skips_executions_already_with_a_worker(db, cache):
    workflow = await add_workflow(db)
    queued = await add_execution(db, workflow, dispatch_mode=workflow_queue.DISPATCH_QUEUE)
    behind = await add_execution(db, workflow)
    dispatch = AsyncMock(return_value="queue")

    with patch.object(workflow_queue, "dispatch_execution", new=dispatch):
        # the queued job is still in the broker; nothing is sent twice
        assert await workflow_queue.enqueue_next_pending_for_tenant(db, TENANT, cache) is None
        dispatch.assert_not_awaited()

        queued.status = ExecutionStatus.COMPLETED.value
        await db.commit()
        assert await workflow_queue.enqueue_next_pending_for_tenant(db, TENANT, cache) == behind.id

    dispatch.assert_awaited_once()
    assert dispatch.await_args.args[1].id == behind.id
