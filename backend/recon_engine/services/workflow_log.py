"""
Durable execution log — one row per notable event of a workflow execution.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.models import LogLevel, WorkflowExecutionLog

logger = logging.getLogger(__name__)


async def create_log(
    db: AsyncSession,
    execution_id: uuid.UUID,
    tenant_id: uuid.UUID,
    event: str,
    message: str,
    level: LogLevel | str = LogLevel.INFO,
    details: Optional[dict] = None,
) -> WorkflowExecutionLog:
    """Add a log row to the session (committed with the caller's unit of work)."""
    entry = WorkflowExecutionLog(
        execution_id=execution_id,
        tenant_id=tenant_id,
        level=LogLevel(level).value,
        event=event,
        message=message,
        details=details or {},
    )
    db.add(entry)
    return entry


async def get_execution_logs(db: AsyncSession, execution_id: uuid.UUID, tenant_id: uuid.UUID) -> list[WorkflowExecutionLog]:
    result = await db.execute(
        select(WorkflowExecutionLog)
        .where(
            WorkflowExecutionLog.execution_id == execution_id,
            WorkflowExecutionLog.tenant_id == tenant_id,
        )
        .order_by(WorkflowExecutionLog.created_at.asc())
    )
    return list(result.scalars().all())
