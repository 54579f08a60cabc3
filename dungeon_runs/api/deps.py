from fastapi import Depends
import redis.asyncio as redis

from dungeon_runs.core.cache import get_redis
from dungeon_runs.core.db import SessionLocal
from dungeon_runs.core.queue import RunQueue
from dungeon_runs.services.adventurers import AdventurerService
from dungeon_runs.services.dungeons import DungeonRepository
from dungeon_runs.services.hero_locks import HeroLockStore
from dungeon_runs.services.rate_limiter import RateLimiter
from dungeon_runs.services.run_creation import RunCreationService
from dungeon_runs.services.run_store import RunStore


async def get_db():
    async with SessionLocal() as session:
        yield session


def get_redis_client() -> redis.Redis:
    return get_redis()


def get_run_store() -> RunStore:
    return RunStore()


def get_dungeon_repository() -> DungeonRepository:
    return DungeonRepository()


def get_hero_lock_store() -> HeroLockStore:
    return HeroLockStore(adventurers=AdventurerService())


def get_rate_limiter() -> RateLimiter:
    return RateLimiter()


def get_run_queue(client: redis.Redis = Depends(get_redis_client)) -> RunQueue:
    return RunQueue(client)


def get_run_creation_service(
    runs: RunStore = Depends(get_run_store),
    locks: HeroLockStore = Depends(get_hero_lock_store),
    limiter: RateLimiter = Depends(get_rate_limiter),
    queue: RunQueue = Depends(get_run_queue),
    dungeons: DungeonRepository = Depends(get_dungeon_repository),
) -> RunCreationService:
    return RunCreationService(runs, locks, limiter, queue, dungeons)
