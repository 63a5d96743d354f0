"""
Redis-backed cache store: analytics version counters, execution progress
snapshots and queue job markers.

Progress snapshots are ephemeral (24h TTL) and never authoritative; the
workflow_executions row holds the counters that must survive eviction.
"""

import json
import logging
from typing import Optional

import redis.asyncio as aioredis

from recon_engine.config import get_settings
from recon_engine.utils import utcnow

logger = logging.getLogger(__name__)


def progress_key(execution_id) -> str:
    return f"workflow:execution:{execution_id}:progress"


def job_marker_key(execution_id) -> str:
    return f"workflow:job:{execution_id}"


def version_key(tenant_id) -> str:
    return f"analytics:{tenant_id}:version"


def empty_snapshot(date: Optional[str] = None, meta_total: int = 0, pos_total: int = 0) -> dict:
    return {
        "date": date,
        "meta_processed": 0,
        "meta_total": meta_total,
        "pos_processed": 0,
        "pos_total": pos_total,
        "updated_at": utcnow().isoformat(),
    }


class CacheStore:
    """Thin async wrapper over a Redis client; keys are namespaced by CACHE_PREFIX."""

    def __init__(self, client: Optional[aioredis.Redis] = None, prefix: Optional[str] = None, ttl: Optional[int] = None):
        settings = get_settings()
        self._client = client or aioredis.from_url(settings.redis_url, decode_responses=True)
        self._owns_client = client is None
        self.prefix = settings.cache_prefix if prefix is None else prefix
        self.ttl = ttl or settings.progress_ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    # ── Analytics invalidation ────────────────────────────────────────

    async def bump_version(self, tenant_id) -> int:
        """Increment the tenant's analytics cache version."""
        return await self._client.incr(self._key(version_key(tenant_id)))

    # ── Progress snapshots ────────────────────────────────────────────

    async def get_progress(self, execution_id) -> Optional[dict]:
        raw = await self._client.get(self._key(progress_key(execution_id)))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable progress snapshot for execution {execution_id}")
            return None

    async def set_progress(self, execution_id, snapshot: dict) -> dict:
        snapshot = {**snapshot, "updated_at": utcnow().isoformat()}
        await self._client.set(self._key(progress_key(execution_id)), json.dumps(snapshot), ex=self.ttl)
        return snapshot

    # ── Queue job markers ─────────────────────────────────────────────

    async def mark_job_enqueued(self, execution_id) -> None:
        await self._client.set(self._key(job_marker_key(execution_id)), "queued", ex=self.ttl)

    async def has_job_marker(self, execution_id) -> bool:
        return bool(await self._client.exists(self._key(job_marker_key(execution_id))))

    async def clear_job_marker(self, execution_id) -> None:
        await self._client.delete(self._key(job_marker_key(execution_id)))
