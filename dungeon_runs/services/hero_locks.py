"""
Hero exclusivity.

A hero row in `hero_states` with status=dungeon and locked_until in the future
belongs to the run in current_run_id. Locking and unlocking are best-effort
(logged, never raised); only `fetch_states` propagates errors because lock
verification must fail closed.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dungeon_runs.core.config import settings
from dungeon_runs.core.db import SessionLocal, as_utc, upsert, utcnow
from dungeon_runs.core.results import Outcome
from dungeon_runs.models.hero_lock import HeroLock, HeroLockStatus, hero_sources_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeroRef:
    contract_address: str
    token_id: str

    @classmethod
    def from_party(cls, party: Iterable[Any], contract_address: str | None = None) -> list["HeroRef"]:
        contract = contract_address or settings.HERO_CONTRACT_ADDRESS
        return [cls(contract, str(token_id)) for token_id in party]


@dataclass(frozen=True)
class HeroLockState:
    contract_address: str
    token_id: str
    status: HeroLockStatus
    locked_until: Optional[datetime] = None
    current_run_id: Optional[str] = None

    @property
    def ref(self) -> HeroRef:
        return HeroRef(self.contract_address, self.token_id)

    def is_locked(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return (
            self.status == HeroLockStatus.DUNGEON
            and self.locked_until is not None
            and self.locked_until > now
        )

    def held_by(self, run_id: str) -> bool:
        return self.status == HeroLockStatus.DUNGEON and self.current_run_id == run_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "contractAddress": self.contract_address,
            "tokenId": self.token_id,
            "status": self.status.value,
            "lockedUntil": self.locked_until.isoformat() if self.locked_until else None,
            "currentRunId": self.current_run_id,
        }

    @classmethod
    def from_row(cls, row: HeroLock) -> "HeroLockState":
        return cls(
            contract_address=row.contract_address,
            token_id=row.token_id,
            status=HeroLockStatus(row.status),
            locked_until=as_utc(row.locked_until),
            current_run_id=row.current_run_id,
        )


@dataclass(frozen=True)
class Availability:
    locked: bool
    locked_heroes: list[HeroLockState]


def _dedupe(heroes: Iterable[HeroRef]) -> list[HeroRef]:
    return list(dict.fromkeys(heroes))


def _match(heroes: Sequence[HeroRef]):
    # (contract, token) pairs grouped per contract; tuple IN is not portable
    by_contract: dict[str, list[str]] = defaultdict(list)
    for h in heroes:
        by_contract[h.contract_address].append(h.token_id)
    return or_(
        *(
            and_(HeroLock.contract_address == contract, HeroLock.token_id.in_(token_ids))
            for contract, token_ids in by_contract.items()
        )
    )


class HeroLockStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
        adventurers=None,
        lock_hours: int | None = None,
    ):
        self._session_factory = session_factory
        # AdventurerService, used for HP restore on unlock
        self.adventurers = adventurers
        self.lock_duration = timedelta(hours=lock_hours or settings.HERO_LOCK_HOURS)

    async def check_availability(self, heroes: Sequence[HeroRef]) -> Availability:
        heroes = _dedupe(heroes)
        if not heroes:
            return Availability(False, [])

        now = utcnow()
        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(HeroLock).where(
                            _match(heroes),
                            HeroLock.status == HeroLockStatus.DUNGEON.value,
                            HeroLock.locked_until > now,
                        )
                    )
                ).scalars().all()
        except Exception as e:
            logger.warning(f"Error checking hero availability (treating as available): {e}")
            return Availability(False, [])

        locked = [HeroLockState.from_row(r) for r in rows]
        return Availability(bool(locked), locked)

    async def lock(self, run_id: str, heroes: Sequence[HeroRef]) -> Outcome[int]:
        """
        Take the heroes for `run_id` until now + lock duration.

        Only idle, expired or already-owned rows are taken: a live lock held by
        another run is left alone and the returned count comes up short, which
        lock verification then reports.
        """
        heroes = _dedupe(heroes)
        if not heroes:
            return Outcome.success(0)

        now = utcnow()
        locked_until = now + self.lock_duration
        # dungeon -> dungeon is only a refresh: the old lock must be expired or ours
        fresh = [s for s in hero_sources_for(HeroLockStatus.DUNGEON) if s != HeroLockStatus.DUNGEON.value]
        try:
            async with self._session_factory() as session:
                stmt = upsert(session, HeroLock).values(
                    [
                        {
                            "contract_address": h.contract_address,
                            "token_id": h.token_id,
                            "status": HeroLockStatus.DUNGEON.value,
                            "locked_until": locked_until,
                            "current_run_id": run_id,
                            "updated_at": now,
                        }
                        for h in heroes
                    ]
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[HeroLock.contract_address, HeroLock.token_id],
                    set_={
                        "status": stmt.excluded.status,
                        "locked_until": stmt.excluded.locked_until,
                        "current_run_id": stmt.excluded.current_run_id,
                        "updated_at": stmt.excluded.updated_at,
                    },
                    where=or_(
                        HeroLock.status.in_(fresh),
                        HeroLock.locked_until.is_(None),
                        HeroLock.locked_until <= now,
                        HeroLock.current_run_id == run_id,
                    ),
                ).returning(HeroLock.token_id)
                taken = (await session.execute(stmt)).scalars().all()
                await session.commit()
        except Exception as e:
            logger.warning(f"Error locking heroes for run {run_id} (ignoring): {e}")
            return Outcome.failure("lock_heroes", e)

        if len(taken) != len(heroes):
            logger.warning(f"Run {run_id} locked {len(taken)} of {len(heroes)} heroes; the rest are held by another run")
        return Outcome.success(len(taken))

    async def fetch_states(self, heroes: Sequence[HeroRef]) -> dict[HeroRef, HeroLockState]:
        heroes = _dedupe(heroes)
        if not heroes:
            return {}
        async with self._session_factory() as session:
            rows = (await session.execute(select(HeroLock).where(_match(heroes)))).scalars().all()
        states = (HeroLockState.from_row(r) for r in rows)
        return {s.ref: s for s in states}

    async def _restore(self, heroes: Sequence[HeroRef]) -> None:
        if self.adventurers is None:
            logger.warning("HP restore requested but no adventurer service is configured")
            return
        logger.info(f"Restoring HP for {len(heroes)} heroes before unlock")
        for hero in heroes:
            try:
                await self.adventurers.restore_adventurer(hero, restore_health=True, restore_mana=True)
            except Exception as e:
                logger.error(f"Error restoring HP for hero {hero.token_id}: {e}")

    async def unlock(
        self,
        heroes: Sequence[HeroRef],
        restore_hp: bool = False,
        run_id: str | None = None,
    ) -> Outcome[int]:
        """
        Return heroes to idle, optionally restoring health and mana first.

        Only dungeon rows move; with `run_id` only rows that run still owns.
        Repeating an unlock is a no-op.
        """
        heroes = _dedupe(heroes)
        if not heroes:
            logger.info("No heroes to unlock")
            return Outcome.success(0)

        if restore_hp:
            await self._restore(heroes)

        conditions = [_match(heroes), HeroLock.status.in_(hero_sources_for(HeroLockStatus.IDLE))]
        if run_id is not None:
            conditions.append(HeroLock.current_run_id == run_id)

        try:
            async with self._session_factory() as session:
                released = (
                    await session.execute(
                        update(HeroLock)
                        .where(*conditions)
                        .values(
                            status=HeroLockStatus.IDLE.value,
                            locked_until=None,
                            current_run_id=None,
                            updated_at=utcnow(),
                        )
                        .returning(HeroLock.token_id)
                        .execution_options(synchronize_session=False)
                    )
                ).scalars().all()
                await session.commit()
        except Exception as e:
            logger.error(f"Error unlocking heroes {[h.token_id for h in heroes]}: {e}")
            return Outcome.failure("unlock_heroes", e)

        logger.info(f"Unlocked {len(released)} heroes")
        if len(released) != len(heroes):
            logger.warning(f"Expected to unlock {len(heroes)} heroes but only unlocked {len(released)}")
        return Outcome.success(len(released))

    async def release_runs(self, run_ids: Sequence[str]) -> Outcome[int]:
        """Free every hero still held by one of `run_ids` (no HP restore)."""
        if not run_ids:
            return Outcome.success(0)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(HeroLock)
                    .where(
                        HeroLock.status.in_(hero_sources_for(HeroLockStatus.IDLE)),
                        HeroLock.current_run_id.in_(list(run_ids)),
                    )
                    .values(
                        status=HeroLockStatus.IDLE.value,
                        locked_until=None,
                        current_run_id=None,
                        updated_at=utcnow(),
                    )
                    .returning(HeroLock.token_id)
                    .execution_options(synchronize_session=False)
                )
                released = result.scalars().all()
                await session.commit()
        except Exception as e:
            logger.error(f"Error releasing heroes of runs {list(run_ids)}: {e}")
            return Outcome.failure("release_runs", e)
        return Outcome.success(len(released))
