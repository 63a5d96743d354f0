"""
Tests for cron evaluation and the scheduler tick.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from recon_engine.errors import ValidationError
from recon_engine.models import ExecutionStatus, TriggerType, WorkflowExecution
from recon_engine.services.workflow_scheduler import (
    create_execution,
    is_cron_due,
    parse_cron,
    run_scheduled_workflows,
)
from recon_engine.utils import utcnow
from factories import add_execution, add_workflow


@pytest.mark.parametrize("expression", ["", "* * * *", "61 * * * *", "* 25 * * *", "every day"])
def test_parse_cron_rejects_invalid(expression):
    with pytest.raises(ValidationError):
        parse_cron(expression)


def test_cron_due_in_business_timezone():
    # 06:00 Asia/Manila == 22:00 UTC the previous day
    now = datetime(2025, 3, 1, 22, 0, 30)
    assert is_cron_due("0 6 * * *", None, now, "Asia/Manila")
    assert not is_cron_due("0 6 * * *", None, now, "UTC")
    assert not is_cron_due("0 6 * * *", now.replace(second=0), now + timedelta(minutes=5), "Asia/Manila")


def test_day_of_week_uses_sunday_zero():
    sunday_local_noon = datetime(2025, 3, 2, 4, 0)  # 12:00 Manila, Sunday
    assert is_cron_due("0 12 * * 0", None, sunday_local_noon, "Asia/Manila")
    assert not is_cron_due("0 12 * * 1", None, sunday_local_noon, "Asia/Manila")


def test_missed_ticks_do_not_catch_up_beyond_window():
    last_run = datetime(2025, 3, 1, 0, 0)
    now = datetime(2025, 3, 1, 0, 30)
    assert is_cron_due("*/5 * * * *", last_run, now, "UTC")
    assert not is_cron_due("0 0 * * *", last_run, now, "UTC")


@pytest.mark.anyio
async def test_custom_range_requires_both_bounds(db):
    workflow = await add_workflow(db)
    with pytest.raises(ValidationError):
        await create_execution(db, workflow, TriggerType.MANUAL, since="2025-03-01")
    with pytest.raises(ValidationError):
        await create_execution(db, workflow, TriggerType.MANUAL, since="2025-03-05", until="2025-03-01")


@pytest.mark.anyio
async def test_tick_creates_and_dispatches_due_workflow(db, cache):
    workflow = await add_workflow(db, schedule="* * * * *", date_range={"type": "rolling", "offset_days": 1})
    dispatch = AsyncMock(return_value="queue")

    with patch("recon_engine.services.workflow_queue.dispatch_execution", new=dispatch):
        stats = await run_scheduled_workflows(db, cache, now=utcnow())

    assert stats == {"checked": 1, "created": 1, "dispatched": 1, "skipped_active": 0, "invalid": 0}
    execution = (await db.execute(select(WorkflowExecution))).scalar_one()
    assert execution.workflow_id == workflow.id
    assert execution.trigger_type == TriggerType.SCHEDULED.value
    assert execution.status == ExecutionStatus.PENDING.value
    assert execution.date_range_since == execution.date_range_until
    dispatch.assert_awaited_once()


@pytest.mark.anyio
async def test_tick_skips_workflow_with_active_execution(db, cache):
    await add_workflow(db, schedule="* * * * *")
    dispatch = AsyncMock(return_value="queue")

    with patch("recon_engine.services.workflow_queue.dispatch_execution", new=dispatch):
        await run_scheduled_workflows(db, cache, now=utcnow())
        stats = await run_scheduled_workflows(db, cache, now=utcnow() + timedelta(minutes=2))

    assert stats["skipped_active"] == 1
    assert stats["created"] == 0
    assert dispatch.await_count == 1


@pytest.mark.anyio
async def test_new_execution_waits_while_tenant_is_busy(db, cache):
    busy = await add_workflow(db, name="Backfill")
    await add_execution(db, busy, status=ExecutionStatus.RUNNING, started_at=utcnow())
    await add_workflow(db, schedule="* * * * *")
    dispatch = AsyncMock(return_value="queue")

    with patch("recon_engine.services.workflow_queue.dispatch_execution", new=dispatch):
        stats = await run_scheduled_workflows(db, cache, now=utcnow())

    assert stats["created"] == 1
    assert stats["dispatched"] == 0
    dispatch.assert_not_awaited()
    waiting = (await db.execute(
        select(WorkflowExecution).where(WorkflowExecution.trigger_type == TriggerType.SCHEDULED.value)
    )).scalar_one()
    assert waiting.status == ExecutionStatus.PENDING.value
    assert waiting.dispatch_mode is None


@pytest.mark.anyio
async def test_disabled_and_invalid_schedules(db, cache):
    await add_workflow(db, schedule="* * * * *", enabled=False)
    await add_workflow(db, schedule="not a cron")

    stats = await run_scheduled_workflows(db, cache, now=utcnow())

    assert stats["checked"] == 1
    assert stats["invalid"] == 1
    assert stats["created"] == 0
