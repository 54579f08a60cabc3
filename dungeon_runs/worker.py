"""
Run simulation worker.

    python -m dungeon_runs.worker

Reserves `simulate-run` jobs with bounded concurrency, keeps a heartbeat so
other workers can recover its jobs if it dies, and periodically fails runs
that were inserted but never enqueued.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from datetime import timedelta

from dungeon_runs.core.cache import close_redis, get_redis, init_redis
from dungeon_runs.core.config import settings
from dungeon_runs.core.init_db import ensure_schema
from dungeon_runs.core.queue import SIMULATE_RUN, Job, RunQueue
from dungeon_runs.services.adventurers import AdventurerService
from dungeon_runs.services.checkpoints import CheckpointStore
from dungeon_runs.services.dungeons import DungeonRepository
from dungeon_runs.services.hero_locks import HeroLockStore
from dungeon_runs.services.run_engine import RunExecutionEngine, RunJob
from dungeon_runs.services.run_store import RunStore

logger = logging.getLogger(__name__)


class Worker:
    def __init__(
        self,
        queue: RunQueue,
        engine: RunExecutionEngine,
        runs: RunStore,
        locks: HeroLockStore,
        concurrency: int | None = None,
        heartbeat_sec: int | None = None,
        sweep_interval_sec: int | None = None,
        orphaned_after: timedelta | None = None,
    ):
        self.queue = queue
        self.engine = engine
        self.runs = runs
        self.locks = locks
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.heartbeat_sec = heartbeat_sec or settings.WORKER_HEARTBEAT_SEC
        self.sweep_interval_sec = sweep_interval_sec or settings.ORPHAN_SWEEP_INTERVAL_SEC
        self.orphaned_after = orphaned_after or timedelta(minutes=settings.ORPHANED_RUN_MINUTES)
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        logger.info(f"Worker {self.queue.worker_id} stopping")
        self._stopping.set()

    async def handle(self, job: Job) -> None:
        """Process one reserved job, then ack it or dead-letter it."""
        if job.name != SIMULATE_RUN:
            logger.error(f"Unknown job type {job.name!r} ({job.id})")
            await self.queue.fail(job, f"unknown job type {job.name}")
            return
        try:
            await self.engine.process(RunJob.from_data(job.data))
        except Exception as e:
            logger.error(f"Job {job.id} failed: {e!r}")
            await self.queue.fail(job, e)
            return
        await self.queue.ack(job)
        logger.info(f"Job {job.id} for run {job.data.get('runId')} completed")

    async def sweep_orphans(self) -> int:
        orphans = await self.runs.fail_orphaned(self.orphaned_after)
        if orphans:
            await self.locks.release_runs([r.id for r in orphans])
        return len(orphans)

    async def _heartbeat_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.queue.heartbeat(self.heartbeat_sec * 3)
            except Exception as e:
                logger.warning(f"Heartbeat failed: {e}")
            await asyncio.sleep(self.heartbeat_sec)

    async def _sweep_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.sweep_orphans()
                await self.queue.recover_stalled()
            except Exception as e:
                logger.warning(f"Orphan sweep failed: {e}")
            await asyncio.sleep(self.sweep_interval_sec)

    async def _run_one(self, job: Job, slots: asyncio.Semaphore) -> None:
        try:
            await self.handle(job)
        except Exception as e:
            logger.exception(f"Unexpected error handling job {job.id}: {e}")
        finally:
            slots.release()

    async def run(self) -> None:
        await self.queue.heartbeat(self.heartbeat_sec * 3)
        await self.queue.recover_stalled()

        background = [
            asyncio.create_task(self._heartbeat_loop()),
            asyncio.create_task(self._sweep_loop()),
        ]
        slots = asyncio.Semaphore(self.concurrency)
        in_flight: set[asyncio.Task] = set()
        logger.info(f"Worker {self.queue.worker_id} listening on {self.queue.name} (concurrency {self.concurrency})")

        try:
            while not self._stopping.is_set():
                await slots.acquire()
                try:
                    job = await self.queue.reserve(timeout=1)
                except Exception as e:
                    slots.release()
                    logger.error(f"Failed to reserve job: {e}")
                    await asyncio.sleep(1)
                    continue
                if job is None:
                    slots.release()
                    continue
                task = asyncio.create_task(self._run_one(job, slots))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)


def build_worker() -> Worker:
    client = get_redis()
    adventurers = AdventurerService()
    runs = RunStore()
    locks = HeroLockStore(adventurers=adventurers)
    engine = RunExecutionEngine(
        runs=runs,
        dungeons=DungeonRepository(),
        locks=locks,
        checkpoints=CheckpointStore(client),
        adventurers=adventurers,
        redis_client=client,
    )
    return Worker(RunQueue(client), engine, runs, locks)


async def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    await ensure_schema()
    await init_redis()
    worker = build_worker()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.run()
    finally:
        await close_redis()


if __name__ == "__main__":
    asyncio.run(main())
