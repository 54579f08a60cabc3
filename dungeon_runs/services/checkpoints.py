"""
Per-level run progress in Redis.

A checkpoint only saves replay work after a worker crash. The run row and the
adventurer rows stay authoritative, so every operation here swallows store
errors: a missing checkpoint means "start the run from level 1".
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import redis.asyncio as redis

from dungeon_runs.core.cache import cache_delete, cache_get, cache_set, get_redis
from dungeon_runs.core.config import settings
from dungeon_runs.core.db import utcnow
from dungeon_runs.core.results import Outcome

logger = logging.getLogger(__name__)

KEY_PREFIX = "dungeon_run:checkpoint:"


def checkpoint_key(run_id: str) -> str:
    return f"{KEY_PREFIX}{run_id}"


@dataclass
class PartyMemberStats:
    token_id: str
    health: int
    max_health: int
    mana: int
    max_mana: int
    experience: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "health": self.health,
            "maxHealth": self.max_health,
            "mana": self.mana,
            "maxMana": self.max_mana,
            "experience": self.experience,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PartyMemberStats":
        return cls(
            token_id=str(data["tokenId"]),
            health=int(data["health"]),
            max_health=int(data["maxHealth"]),
            mana=int(data.get("mana", 0)),
            max_mana=int(data.get("maxMana", 0)),
            experience=int(data.get("experience", 0)),
        )


@dataclass
class Checkpoint:
    run_id: str
    level: int  # last completed level
    party_stats: list[PartyMemberStats] = field(default_factory=list)
    total_xp: int = 0
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "level": self.level,
            "partyStats": [p.to_dict() for p in self.party_stats],
            "totalXp": self.total_xp,
            "timestamp": self.timestamp or utcnow().isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        return cls(
            run_id=str(data["runId"]),
            level=int(data["level"]),
            party_stats=[PartyMemberStats.from_dict(p) for p in data.get("partyStats") or []],
            total_xp=int(data.get("totalXp", 0)),
            timestamp=str(data.get("timestamp", "")),
        )


class CheckpointStore:
    def __init__(self, client: Optional[redis.Redis] = None, ttl_sec: int | None = None):
        self._client = client
        self.ttl_sec = ttl_sec or settings.CHECKPOINT_TTL_SEC

    @property
    def redis(self) -> redis.Redis:
        # lazy: the worker may start before Redis is reachable
        if self._client is None:
            self._client = get_redis()
        return self._client

    async def save(self, checkpoint: Checkpoint) -> Outcome[None]:
        try:
            await cache_set(
                checkpoint_key(checkpoint.run_id), checkpoint.to_dict(), ttl=self.ttl_sec, client=self.redis
            )
        except Exception as e:
            logger.warning(f"Failed to save checkpoint for run {checkpoint.run_id} at level {checkpoint.level}: {e}")
            return Outcome.failure("save_checkpoint", e)
        return Outcome.success()

    async def load(self, run_id: str) -> Checkpoint | None:
        try:
            data = await cache_get(checkpoint_key(run_id), client=self.redis)
        except Exception as e:
            logger.warning(f"Failed to load checkpoint for run {run_id} (starting fresh): {e}")
            return None
        if not data:
            return None
        try:
            return Checkpoint.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable checkpoint for run {run_id}: {e}")
            return None

    async def delete(self, run_id: str) -> Outcome[None]:
        try:
            await cache_delete(checkpoint_key(run_id), client=self.redis)
        except Exception as e:
            logger.warning(f"Failed to clean up checkpoint for run {run_id}: {e}")
            return Outcome.failure("delete_checkpoint", e)
        return Outcome.success()
