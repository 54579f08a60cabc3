"""
Reliable job queue on Redis lists.

    queue:<name>:waiting               LPUSH by producers, consumed from the right
    queue:<name>:processing:<worker>   jobs a worker has reserved but not acked
    queue:<name>:heartbeat:<worker>    expires when the worker dies
    queue:<name>:failed                dead-letter list

A job stays in its worker's processing list until ack/fail, so a crashed
worker's jobs are moved back to waiting by `recover_stalled` (at-least-once
delivery).
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as redis

from dungeon_runs.core.cache import get_redis
from dungeon_runs.core.config import settings
from dungeon_runs.core.db import utcnow

logger = logging.getLogger(__name__)

SIMULATE_RUN = "simulate-run"


@dataclass(frozen=True)
class Job:
    id: str
    name: str
    data: dict[str, Any]
    enqueued_at: str
    raw: str  # exact list element, needed for LREM

    @classmethod
    def parse(cls, raw: str) -> "Job":
        env = json.loads(raw)
        return cls(
            id=str(env["id"]),
            name=str(env["name"]),
            data=dict(env.get("data") or {}),
            enqueued_at=str(env.get("enqueuedAt", "")),
            raw=raw,
        )


class RunQueue:
    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        name: str | None = None,
        worker_id: str | None = None,
    ):
        self._client = client
        self.name = name or settings.RUN_QUEUE_NAME
        self.worker_id = worker_id or uuid.uuid4().hex[:12]

    @property
    def redis(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    @property
    def waiting_key(self) -> str:
        return f"queue:{self.name}:waiting"

    @property
    def failed_key(self) -> str:
        return f"queue:{self.name}:failed"

    def processing_key(self, worker_id: str | None = None) -> str:
        return f"queue:{self.name}:processing:{worker_id or self.worker_id}"

    def heartbeat_key(self, worker_id: str | None = None) -> str:
        return f"queue:{self.name}:heartbeat:{worker_id or self.worker_id}"

    async def add(self, name: str, data: dict[str, Any]) -> str:
        job_id = uuid.uuid4().hex
        envelope = {"id": job_id, "name": name, "data": data, "enqueuedAt": utcnow().isoformat()}
        await self.redis.lpush(self.waiting_key, json.dumps(envelope))
        return job_id

    async def reserve(self, timeout: float = 5) -> Job | None:
        raw = await self.redis.blmove(self.waiting_key, self.processing_key(), timeout, "RIGHT", "LEFT")
        if raw is None:
            return None
        try:
            return Job.parse(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Dropping malformed job {raw!r}: {e}")
            await self.redis.lrem(self.processing_key(), 1, raw)
            await self.redis.lpush(self.failed_key, json.dumps({"raw": raw, "error": str(e)}))
            return None

    async def ack(self, job: Job) -> None:
        await self.redis.lrem(self.processing_key(), 1, job.raw)

    async def fail(self, job: Job, error: BaseException | str) -> None:
        await self.redis.lrem(self.processing_key(), 1, job.raw)
        entry = {
            "id": job.id,
            "name": job.name,
            "data": job.data,
            "enqueuedAt": job.enqueued_at,
            "failedAt": utcnow().isoformat(),
            "error": str(error),
        }
        await self.redis.lpush(self.failed_key, json.dumps(entry))

    async def heartbeat(self, ttl: int) -> None:
        await self.redis.setex(self.heartbeat_key(), ttl, "1")

    async def recover_stalled(self) -> int:
        """Move jobs held by workers without a live heartbeat back to waiting."""
        prefix = f"queue:{self.name}:processing:"
        moved = 0
        async for key in self.redis.scan_iter(match=f"{prefix}*"):
            worker_id = key[len(prefix):]
            if worker_id == self.worker_id:
                continue
            if await self.redis.exists(self.heartbeat_key(worker_id)):
                continue
            while await self.redis.lmove(key, self.waiting_key, "LEFT", "RIGHT") is not None:
                moved += 1
        if moved:
            logger.warning(f"Recovered {moved} stalled jobs from dead workers")
        return moved

    async def depth(self) -> int:
        return int(await self.redis.llen(self.waiting_key))
