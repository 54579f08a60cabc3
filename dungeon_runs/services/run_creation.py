"""
Run creation: validate, insert, lock, verify, enqueue, count.

A job is only enqueued after every hero row has been read back as owned by
the new run. A run whose verification fails stays queued without a job and is
later failed by the orphan sweep.
"""
from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Optional, Sequence

from dungeon_runs.core.config import settings
from dungeon_runs.core.errors import (
    HeroesUnavailable,
    HeroLockVerificationFailed,
    InvalidRunRequest,
    PaymentRequired,
    RunCreationFailed,
)
from dungeon_runs.core.queue import SIMULATE_RUN, RunQueue
from dungeon_runs.core.db import as_utc
from dungeon_runs.models.run import Run, run_to_dict
from dungeon_runs.services.dungeons import DungeonRepository
from dungeon_runs.services.hero_locks import HeroLockStore, HeroRef
from dungeon_runs.services.rate_limiter import RateLimiter
from dungeon_runs.services.run_store import RunStore

logger = logging.getLogger(__name__)

MISSING_FIELDS = "Missing required fields: dungeonId, party (array)"
HEROES_LOCKED = "One or more heroes are currently locked in another dungeon run"
PAYMENT_REQUIRED = "Free runs exhausted. Payment required."
CREATE_FAILED = "Failed to create run"


def generate_seed() -> str:
    return f"run-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class RunCreationService:
    def __init__(
        self,
        runs: RunStore,
        locks: HeroLockStore,
        limiter: RateLimiter,
        queue: RunQueue,
        dungeons: DungeonRepository,
        contract_address: str | None = None,
    ):
        self.runs = runs
        self.locks = locks
        self.limiter = limiter
        self.queue = queue
        self.dungeons = dungeons
        self.contract_address = contract_address or settings.HERO_CONTRACT_ADDRESS

    async def _verify_locks(self, run_id: str, heroes: Sequence[HeroRef]) -> None:
        try:
            states = await self.locks.fetch_states(heroes)
        except Exception as e:
            logger.error(f"Could not read hero states to verify run {run_id}: {e}")
            raise HeroLockVerificationFailed(f"Failed to lock heroes for run: {e}") from e

        missing = [h.token_id for h in heroes if h not in states or not states[h].held_by(run_id)]
        if missing:
            raise HeroLockVerificationFailed(
                f"Failed to lock heroes for run: heroes {', '.join(missing)} are not locked by run {run_id}",
                {"heroes": missing},
            )

    async def create_run(
        self,
        dungeon_id: Optional[str],
        party: Any,
        seed: Optional[str] = None,
        wallet_address: Optional[str] = None,
        payment_hash: Optional[str] = None,
    ) -> dict[str, Any]:
        if not dungeon_id or not isinstance(party, (list, tuple)) or len(party) == 0:
            raise InvalidRunRequest(MISSING_FIELDS)

        party = [str(p) for p in party]
        heroes = HeroRef.from_party(party, self.contract_address)

        availability = await self.locks.check_availability(heroes)
        if availability.locked:
            raise HeroesUnavailable(
                HEROES_LOCKED,
                {"lockedHeroes": [h.to_dict() for h in availability.locked_heroes]},
            )

        if wallet_address and not payment_hash:
            if not await self.limiter.has_free_runs(wallet_address):
                raise PaymentRequired(PAYMENT_REQUIRED, {"requiresPayment": True})
        # TODO: verify payment_hash against the chain once settlement is wired up

        dungeon = await self.dungeons.resolve(dungeon_id)
        resolved_id = dungeon.id if dungeon is not None else dungeon_id

        try:
            run: Run = await self.runs.insert_run(
                dungeon_id=resolved_id,
                party=party,
                seed=seed or generate_seed(),
                wallet_address=wallet_address,
            )
        except Exception as e:
            logger.error(f"Database insert failed for dungeon {resolved_id}: {e}")
            raise RunCreationFailed(CREATE_FAILED) from e

        await self.locks.lock(run.id, heroes)

        try:
            await self._verify_locks(run.id, heroes)
        except HeroLockVerificationFailed as e:
            logger.error(f"Hero lock verification failed for run {run.id}: {e.message}")
            # release only what this run managed to take; another run's locks stay
            await self.locks.unlock(heroes, run_id=run.id)
            raise

        start_time = as_utc(run.start_time)
        try:
            job_id = await self.queue.add(
                SIMULATE_RUN,
                {
                    "runId": run.id,
                    "dungeonId": resolved_id,
                    "party": party,
                    "seed": run.seed,
                    "startTime": int(start_time.timestamp() * 1000),
                },
            )
        except Exception as e:
            logger.error(f"Failed to enqueue run {run.id}: {e}")
            await self.locks.unlock(heroes, run_id=run.id)
            raise RunCreationFailed(CREATE_FAILED) from e

        try:
            await self.runs.set_job_id(run.id, job_id)
            run.job_id = job_id
        except Exception as e:
            logger.warning(f"Failed to record job {job_id} on run {run.id}: {e}")

        if wallet_address:
            await self.limiter.increment_daily_run(wallet_address)

        logger.info(f"Run {run.id} queued as job {job_id} with party {party}")
        return run_to_dict(run)
