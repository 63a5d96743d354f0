"""
Execution event sink — publishes live progress/log events to Redis pub/sub.

Channels:
  workflow:execution:{execution_id}
  workflow:tenant:{tenant_id}

Delivery is fire-and-forget: a failed publish is logged and never affects
the execution.
"""

import json
import logging
from typing import Optional

import redis.asyncio as aioredis

from recon_engine.config import get_settings
from recon_engine.utils import utcnow

logger = logging.getLogger(__name__)

EXECUTION_STARTED = "execution:started"
EXECUTION_PROGRESS = "execution:progress"
EXECUTION_DATE_STARTED = "execution:date_started"
EXECUTION_META_FETCHED = "execution:meta_fetched"
EXECUTION_POS_FETCHED = "execution:pos_fetched"
EXECUTION_ERROR = "execution:error"
EXECUTION_RECONCILE_SALES_SKIPPED = "execution:reconcile_sales_skipped"
EXECUTION_COMPLETED = "execution:completed"
EXECUTION_COMPLETED_WITH_ERRORS = "execution:completed_with_errors"
EXECUTION_FAILED = "execution:failed"
EXECUTION_CANCELLED = "execution:cancelled"
MARKETING_UPDATED = "marketing:updated"


class EventSink:
    def __init__(self, client: Optional[aioredis.Redis] = None, prefix: Optional[str] = None):
        settings = get_settings()
        self._client = client or aioredis.from_url(settings.redis_url, decode_responses=True)
        self._owns_client = client is None
        self.prefix = settings.cache_prefix if prefix is None else prefix

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    async def emit(self, execution_id, event: str, payload: Optional[dict] = None, tenant_id=None) -> None:
        message = json.dumps(
            {
                "event": event,
                "execution_id": str(execution_id),
                "tenant_id": str(tenant_id) if tenant_id else None,
                "timestamp": utcnow().isoformat(),
                "data": payload or {},
            },
            default=str,
        )
        try:
            await self._client.publish(f"{self.prefix}workflow:execution:{execution_id}", message)
            if tenant_id:
                await self._client.publish(f"{self.prefix}workflow:tenant:{tenant_id}", message)
        except Exception as e:
            logger.warning(f"Event publish failed ({event} for execution {execution_id}): {e}")
