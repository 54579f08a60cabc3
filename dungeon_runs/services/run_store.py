"""Run rows and their guarded status transitions."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional, Sequence

import redis.asyncio as redis
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dungeon_runs.core.cache import publish_event
from dungeon_runs.core.db import SessionLocal, utcnow
from dungeon_runs.models.dungeon import Dungeon
from dungeon_runs.models.run import Run, RunResult, RunStatus, sources_for

logger = logging.getLogger(__name__)

TERMINAL = [RunStatus.COMPLETED.value, RunStatus.FAILED.value]


def run_channel(run_id: str) -> str:
    return f"runs:{run_id}"


async def publish_run_status(run_id: str, data: dict[str, Any], client: Optional[redis.Redis] = None) -> None:
    try:
        await publish_event(run_channel(run_id), {"runId": run_id, **data}, client=client)
    except Exception as e:
        logger.warning(f"Failed to publish status for run {run_id}: {e}")


class RunStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = SessionLocal):
        self._session_factory = session_factory

    async def insert_run(
        self,
        dungeon_id: str,
        party: Sequence[str],
        seed: str,
        wallet_address: str | None = None,
    ) -> Run:
        async with self._session_factory() as session:
            run = Run(
                dungeon_id=dungeon_id,
                party=[str(p) for p in party],
                seed=seed,
                status=RunStatus.QUEUED.value,
                start_time=utcnow(),
                wallet_address=wallet_address.lower() if wallet_address else None,
            )
            session.add(run)
            await session.commit()
            return run

    async def get(self, run_id: str) -> Run | None:
        async with self._session_factory() as session:
            return await session.get(Run, run_id)

    async def get_with_dungeon(self, run_id: str) -> tuple[Run, Dungeon | None] | None:
        async with self._session_factory() as session:
            run = await session.get(Run, run_id)
            if run is None:
                return None
            return run, await session.get(Dungeon, run.dungeon_id)

    async def get_active_run(self, wallet_address: str) -> Run | None:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(Run)
                    .where(
                        Run.wallet_address == wallet_address.lower(),
                        Run.end_time.is_(None),
                        Run.status.not_in(TERMINAL),
                    )
                    .order_by(Run.start_time.desc())
                    .limit(1)
                )
            ).scalars().first()

    async def set_job_id(self, run_id: str, job_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Run)
                .where(Run.id == run_id)
                .values(job_id=job_id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def transition(self, run_id: str, target: RunStatus, **values: Any) -> bool:
        """
        Move a run to `target` only from a status RUN_TRANSITIONS allows.
        Returns False when the row was not in an allowed source status, so
        repeating a transition is a no-op.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Run)
                .where(Run.id == run_id, Run.status.in_(sources_for(target)))
                .values(status=target.value, **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount > 0

    async def mark_running(self, run_id: str) -> bool:
        return await self.transition(run_id, RunStatus.RUNNING)

    async def finalize(
        self,
        run_id: str,
        status: RunStatus,
        result: RunResult,
        summary: dict[str, Any] | None = None,
    ) -> bool:
        values: dict[str, Any] = {"end_time": utcnow(), "result": result.value}
        if summary is not None:
            values["summary"] = summary
        return await self.transition(run_id, status, **values)

    async def fail_orphaned(self, older_than: timedelta) -> list[Run]:
        """
        Fail queued runs that never got a job (creation died between insert
        and enqueue). Returns the runs that were actually moved.
        """
        cutoff = utcnow() - older_than
        async with self._session_factory() as session:
            candidates = (
                await session.execute(
                    select(Run).where(
                        Run.status == RunStatus.QUEUED.value,
                        Run.job_id.is_(None),
                        Run.start_time < cutoff,
                    )
                )
            ).scalars().all()

        failed: list[Run] = []
        for run in candidates:
            if await self.finalize(run.id, RunStatus.FAILED, RunResult.ERROR, {"reason": "orphaned"}):
                failed.append(run)
        if failed:
            logger.warning(f"Failed {len(failed)} orphaned runs: {[r.id for r in failed]}")
        return failed
