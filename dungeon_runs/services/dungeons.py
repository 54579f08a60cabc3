import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dungeon_runs.core.db import SessionLocal
from dungeon_runs.models.dungeon import Dungeon

logger = logging.getLogger(__name__)


class DungeonRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = SessionLocal):
        self._session_factory = session_factory

    async def get(self, dungeon_id: str) -> Dungeon | None:
        async with self._session_factory() as session:
            return await session.get(Dungeon, dungeon_id)

    async def resolve(self, dungeon_id: str | None) -> Dungeon | None:
        """
        Clients send either the dungeon id or its seed slug. Falls back to the
        most recently created dungeon so a run can always start.
        """
        async with self._session_factory() as session:
            if dungeon_id:
                dungeon = await session.get(Dungeon, dungeon_id)
                if dungeon is not None:
                    return dungeon
                dungeon = (
                    await session.execute(select(Dungeon).where(Dungeon.seed == dungeon_id))
                ).scalars().first()
                if dungeon is not None:
                    return dungeon
                logger.info(f"Dungeon {dungeon_id} not found by id or seed, using any available dungeon")
            return (
                await session.execute(select(Dungeon).order_by(Dungeon.created_at.desc()).limit(1))
            ).scalars().first()
