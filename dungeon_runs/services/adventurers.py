"""
Adventurer tracking: the persistent health, mana and experience of each hero.

Rows are created lazily the first time a hero enters a dungeon.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dungeon_runs.core.config import settings
from dungeon_runs.core.db import SessionLocal, utcnow
from dungeon_runs.models.adventurer import Adventurer
from dungeon_runs.services.hero_locks import HeroRef

logger = logging.getLogger(__name__)

BASE_HEALTH = 100
BASE_MANA = 50
BASE_STATS = {"attack": 10, "armor": 2}
XP_PER_LEVEL = 100

UPDATABLE = ("health", "mana", "experience")


@dataclass
class AdventurerRecord:
    hero: HeroRef
    name: str
    level: int
    experience: int
    health: int
    max_health: int
    mana: int
    max_mana: int
    stats: dict[str, int] = field(default_factory=dict)

    @property
    def token_id(self) -> str:
        return self.hero.token_id

    @property
    def alive(self) -> bool:
        return self.health > 0

    @property
    def attack(self) -> int:
        return int(self.stats.get("attack", BASE_STATS["attack"]))

    @property
    def armor(self) -> int:
        return int(self.stats.get("armor", BASE_STATS["armor"]))

    @classmethod
    def from_row(cls, row: Adventurer) -> "AdventurerRecord":
        return cls(
            hero=HeroRef(row.contract_address, row.token_id),
            name=row.name,
            level=row.level,
            experience=row.experience,
            health=row.health,
            max_health=row.max_health,
            mana=row.mana,
            max_mana=row.max_mana,
            stats=dict(row.stats or {}),
        )


def level_for(experience: int) -> int:
    return 1 + max(0, experience) // XP_PER_LEVEL


class AdventurerService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = SessionLocal, chain_id: int | None = None):
        self._session_factory = session_factory
        self.chain_id = chain_id or settings.CHAIN_ID

    def _key(self, hero: HeroRef) -> tuple[str, str, int]:
        return (hero.contract_address, hero.token_id, self.chain_id)

    async def get_adventurer(self, hero: HeroRef) -> AdventurerRecord | None:
        async with self._session_factory() as session:
            row = await session.get(Adventurer, self._key(hero))
            return AdventurerRecord.from_row(row) if row else None

    async def initialize_adventurer(self, hero: HeroRef, name: str | None = None) -> AdventurerRecord:
        async with self._session_factory() as session:
            row = await session.get(Adventurer, self._key(hero))
            if row is None:
                row = Adventurer(
                    contract_address=hero.contract_address,
                    token_id=hero.token_id,
                    chain_id=self.chain_id,
                    name=name or f"Hero #{hero.token_id}",
                    level=1,
                    experience=0,
                    health=BASE_HEALTH,
                    max_health=BASE_HEALTH,
                    mana=BASE_MANA,
                    max_mana=BASE_MANA,
                    stats=dict(BASE_STATS),
                    last_update_reason="initialize",
                    updated_at=utcnow(),
                )
                session.add(row)
                await session.commit()
                logger.info(f"Initialized adventurer for hero {hero.token_id}")
            return AdventurerRecord.from_row(row)

    async def get_or_initialize(self, hero: HeroRef) -> AdventurerRecord:
        record = await self.get_adventurer(hero)
        if record is None:
            record = await self.initialize_adventurer(hero)
        return record

    async def update_adventurer_stats(self, hero: HeroRef, updates: dict[str, Any], reason: str) -> AdventurerRecord:
        """
        Write health/mana/experience. Health and mana are clamped to
        [0, max]; level follows experience. Raises LookupError for unknown heroes.
        """
        async with self._session_factory() as session:
            row = await session.get(Adventurer, self._key(hero))
            if row is None:
                raise LookupError(f"Adventurer not found for hero {hero.token_id}")
            for key in UPDATABLE:
                if key not in updates or updates[key] is None:
                    continue
                value = int(updates[key])
                if key == "health":
                    value = min(max(value, 0), row.max_health)
                elif key == "mana":
                    value = min(max(value, 0), row.max_mana)
                setattr(row, key, value)
            row.level = max(row.level, level_for(row.experience))
            row.last_update_reason = reason
            row.updated_at = utcnow()
            await session.commit()
            return AdventurerRecord.from_row(row)

    async def restore_adventurer(
        self, hero: HeroRef, restore_health: bool = True, restore_mana: bool = True
    ) -> AdventurerRecord:
        async with self._session_factory() as session:
            row = await session.get(Adventurer, self._key(hero))
            if row is None:
                raise LookupError(f"Adventurer not found for hero {hero.token_id}")
            if restore_health:
                row.health = row.max_health
            if restore_mana:
                row.mana = row.max_mana
            row.last_update_reason = "restore"
            row.updated_at = utcnow()
            await session.commit()
            return AdventurerRecord.from_row(row)
