"""
Workflow scheduler — creates executions for cron-scheduled workflows.

Called once a minute (Celery beat, or POST /api/cron/scheduler where beat is
not deployed). A workflow is due when a minute matching its cron expression
falls between its last scheduled run and now. The look-back is capped at two
ticks, so a scheduler that was down for hours does not fire a burst of
catch-up runs.

Cron expressions are standard 5-field strings parsed with
celery.schedules.crontab and evaluated in the business timezone, with
Celery's semantics: day-of-month and day-of-week must both match.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from celery.schedules import ParseException, crontab
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.config import get_settings
from recon_engine.errors import ValidationError
from recon_engine.models import ExecutionStatus, TriggerType, Workflow, WorkflowExecution
from recon_engine.services import execution_state, workflow_queue
from recon_engine.services.date_range import (
    calculate_date_range,
    get_total_days,
    parse_date,
    resolve_workflow_date_range,
    validate_range,
)
from recon_engine.utils import utcnow

logger = logging.getLogger(__name__)


def parse_cron(expression: str) -> crontab:
    """Parse "m h dom mon dow". Raises ValidationError."""
    parts = (expression or "").split()
    if len(parts) != 5:
        raise ValidationError(f"Cron expression must have 5 fields, got {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = parts
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )
    except (ParseException, ValueError) as exc:
        raise ValidationError(f"Invalid cron expression {expression!r}: {exc}") from exc


def cron_matches(schedule: crontab, local_dt: datetime) -> bool:
    # crontab numbers weekdays Sunday=0; datetime.weekday() is Monday=0
    return (
        local_dt.minute in schedule.minute
        and local_dt.hour in schedule.hour
        and local_dt.day in schedule.day_of_month
        and local_dt.month in schedule.month_of_year
        and (local_dt.weekday() + 1) % 7 in schedule.day_of_week
    )


def last_due_at(schedule: crontab, after: datetime, now: datetime, tz_name: Optional[str] = None) -> Optional[datetime]:
    """
    Latest matching minute in (after, now], as naive UTC; None if not due.
    Both bounds are naive UTC.
    """
    tz = ZoneInfo(tz_name or get_settings().timezone)
    minute = now.replace(second=0, microsecond=0)
    while minute > after:
        local = minute.replace(tzinfo=timezone.utc).astimezone(tz)
        if cron_matches(schedule, local):
            return minute
        minute -= timedelta(minutes=1)
    return None


def is_cron_due(expression: str, last_run_at: Optional[datetime], now: datetime, tz_name: Optional[str] = None) -> bool:
    return last_due_at(parse_cron(expression), last_run_at or now - timedelta(minutes=1), now, tz_name) is not None


# ── Execution creation ────────────────────────────────────────────────

async def create_execution(
    db: AsyncSession,
    workflow: Workflow,
    trigger_type: TriggerType,
    since: Optional[str] = None,
    until: Optional[str] = None,
) -> WorkflowExecution:
    """Insert a PENDING execution for the workflow's (or the given) date range. Flushes only."""
    if since or until:
        if not (since and until):
            raise ValidationError("Both since and until are required for a custom range")
        validate_range(parse_date(since, "since"), parse_date(until, "until"))
    else:
        since, until = calculate_date_range(resolve_workflow_date_range(workflow.date_range, workflow.sources))

    execution = WorkflowExecution(
        workflow_id=workflow.id,
        tenant_id=workflow.tenant_id,
        team_id=workflow.team_id,
        trigger_type=TriggerType(trigger_type).value,
        status=ExecutionStatus.PENDING.value,
        date_range_since=since,
        date_range_until=until,
        total_days=get_total_days(since, until),
        errors=[],
    )
    db.add(execution)
    await db.flush()
    return execution


async def submit_execution(db: AsyncSession, execution: WorkflowExecution, cache=None) -> Optional[str]:
    """
    Commit a new execution and dispatch it, unless the tenant already has
    another PENDING/RUNNING one; then it waits its turn as PENDING.
    """
    busy = await execution_state.tenant_has_active(db, execution.tenant_id, exclude_id=execution.id)
    await db.commit()
    if busy:
        logger.info(f"Execution {execution.id} queued behind tenant {execution.tenant_id}'s active execution")
        return None
    return await workflow_queue.dispatch_execution(db, execution, cache)


async def _last_scheduled_at(db: AsyncSession, workflow_id: uuid.UUID) -> Optional[datetime]:
    result = await db.execute(
        select(func.max(WorkflowExecution.created_at)).where(
            WorkflowExecution.workflow_id == workflow_id,
            WorkflowExecution.trigger_type == TriggerType.SCHEDULED.value,
        )
    )
    return result.scalar_one_or_none()


async def run_scheduled_workflows(db: AsyncSession, cache=None, now: Optional[datetime] = None) -> dict:
    """One scheduler tick. Returns counts for logging / the cron endpoint."""
    settings = get_settings()
    now = now or utcnow()
    window_start = now - timedelta(seconds=max(settings.workflow_scheduler_interval_seconds, 60) * 2)
    stats = {"checked": 0, "created": 0, "dispatched": 0, "skipped_active": 0, "invalid": 0}

    result = await db.execute(
        select(Workflow)
        .where(Workflow.enabled.is_(True), Workflow.schedule.isnot(None), Workflow.schedule != "")
        .order_by(Workflow.created_at)
    )
    workflows = list(result.scalars().all())

    for workflow in workflows:
        stats["checked"] += 1
        try:
            schedule = parse_cron(workflow.schedule)
        except ValidationError as e:
            stats["invalid"] += 1
            logger.warning(f"Workflow {workflow.id} has an invalid schedule: {e}")
            continue

        last_run = await _last_scheduled_at(db, workflow.id)
        after = max(last_run, window_start) if last_run else window_start
        if last_due_at(schedule, after, now, settings.timezone) is None:
            continue

        if await execution_state.workflow_has_active(db, workflow.id):
            stats["skipped_active"] += 1
            logger.info(f"Workflow {workflow.id} is due but still has an active execution; skipping this tick")
            continue

        try:
            execution = await create_execution(db, workflow, TriggerType.SCHEDULED)
        except ValidationError as e:
            stats["invalid"] += 1
            logger.warning(f"Workflow {workflow.id} could not be scheduled: {e}")
            continue

        stats["created"] += 1
        mode = await submit_execution(db, execution, cache)
        if mode:
            stats["dispatched"] += 1
        logger.info(
            f"Scheduled execution {execution.id} for workflow {workflow.id} "
            f"({execution.date_range_since}..{execution.date_range_until}, {mode or 'pending'})"
        )

    return stats
