"""
Shared redis.asyncio client for the API and worker processes.

Checkpoints, the run queue and run status events all go through the one
process-wide client; stores accept an explicit `client` so tests can hand
them an in-memory double.
"""
import json
from typing import Optional, Any

import redis.asyncio as redis

from dungeon_runs.core.config import settings

_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Process-wide client, created on first use (no I/O until the first command)."""
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


async def init_redis() -> redis.Redis:
    return get_redis()


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def _pick(client: Optional[redis.Redis]) -> redis.Redis:
    return client if client is not None else get_redis()


async def cache_get(key: str, client: Optional[redis.Redis] = None) -> Optional[Any]:
    """JSON value stored under `key`, or None when the key is missing or expired."""
    data = await _pick(client).get(key)
    return json.loads(data) if data else None


async def cache_set(key: str, value: Any, ttl: int, client: Optional[redis.Redis] = None) -> None:
    await _pick(client).setex(key, ttl, json.dumps(value))


async def cache_delete(key: str, client: Optional[redis.Redis] = None) -> int:
    return await _pick(client).delete(key)


async def publish_event(channel: str, data: dict, client: Optional[redis.Redis] = None) -> int:
    """Publish `data` as JSON; returns the number of subscribers that received it."""
    return await _pick(client).publish(channel, json.dumps(data))
