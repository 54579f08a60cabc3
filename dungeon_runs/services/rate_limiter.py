"""Per-wallet daily run counter (rolling 24h window from the first run)."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import case
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dungeon_runs.core.config import settings
from dungeon_runs.core.db import SessionLocal, as_utc, upsert, utcnow
from dungeon_runs.core.results import Outcome
from dungeon_runs.models.daily_stats import UserDungeonStats

logger = logging.getLogger(__name__)

WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class DailyStats:
    daily_runs: int
    last_reset: datetime | None
    needs_reset: bool

    def remaining(self, limit: int) -> int:
        return max(0, limit - self.daily_runs)


def normalize_wallet(address: str) -> str:
    return (address or "").strip().lower()


class RateLimiter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
        whitelist: Iterable[str] | None = None,
        free_runs_limit: int | None = None,
    ):
        self._session_factory = session_factory
        if whitelist is None:
            whitelist = settings.RATE_LIMIT_WHITELIST
        self.whitelist = frozenset(normalize_wallet(a) for a in whitelist if a)
        self.free_runs_limit = settings.FREE_RUNS_LIMIT if free_runs_limit is None else free_runs_limit

    def is_whitelisted(self, wallet: str) -> bool:
        return normalize_wallet(wallet) in self.whitelist

    async def get_daily_stats(self, wallet: str) -> DailyStats:
        """
        Usage inside the current window. Whitelisted wallets and unreadable
        rows report zero usage so run creation is never blocked by this check.
        """
        if self.is_whitelisted(wallet):
            return DailyStats(daily_runs=0, last_reset=utcnow(), needs_reset=False)

        try:
            async with self._session_factory() as session:
                row = await session.get(UserDungeonStats, normalize_wallet(wallet))
        except Exception as e:
            logger.warning(f"Failed to read daily run stats for {wallet} (allowing): {e}")
            return DailyStats(daily_runs=0, last_reset=None, needs_reset=False)

        if row is None:
            # first run
            return DailyStats(daily_runs=0, last_reset=None, needs_reset=False)

        last_reset = as_utc(row.last_reset_time)
        if utcnow() - last_reset >= WINDOW:
            return DailyStats(daily_runs=0, last_reset=last_reset, needs_reset=True)
        return DailyStats(daily_runs=row.daily_runs_count, last_reset=last_reset, needs_reset=False)

    async def has_free_runs(self, wallet: str) -> bool:
        stats = await self.get_daily_stats(wallet)
        return stats.daily_runs < self.free_runs_limit

    async def increment_daily_run(self, wallet: str) -> Outcome[None]:
        """
        Count one run. A single upsert: new wallets and stale windows start
        over at 1 with a fresh reset time, everyone else gets +1.
        """
        if self.is_whitelisted(wallet):
            return Outcome.success()

        now = utcnow()
        stale = UserDungeonStats.last_reset_time <= now - WINDOW
        try:
            async with self._session_factory() as session:
                stmt = upsert(session, UserDungeonStats).values(
                    wallet_address=normalize_wallet(wallet),
                    daily_runs_count=1,
                    last_reset_time=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[UserDungeonStats.wallet_address],
                    set_={
                        "daily_runs_count": case(
                            (stale, 1), else_=UserDungeonStats.daily_runs_count + 1
                        ),
                        "last_reset_time": case(
                            (stale, stmt.excluded.last_reset_time),
                            else_=UserDungeonStats.last_reset_time,
                        ),
                    },
                )
                await session.execute(stmt)
                await session.commit()
        except Exception as e:
            logger.warning(f"Error updating daily run stats for {wallet} (ignoring): {e}")
            return Outcome.failure("increment_daily_run", e)
        return Outcome.success()

    async def usage(self, wallet: str) -> dict:
        stats = await self.get_daily_stats(wallet)
        return {
            "dailyRuns": stats.daily_runs,
            "freeRunsLimit": self.free_runs_limit,
            "remainingFreeRuns": stats.remaining(self.free_runs_limit),
        }

