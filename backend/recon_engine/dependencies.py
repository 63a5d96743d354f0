"""
FastAPI dependencies for the Redis-backed cache store and event sink.
"""

from recon_engine.services.cache import CacheStore
from recon_engine.services.events import EventSink


async def get_cache():
    cache = CacheStore()
    try:
        yield cache
    finally:
        await cache.close()


async def get_event_sink():
    sink = EventSink()
    try:
        yield sink
    finally:
        await sink.close()
