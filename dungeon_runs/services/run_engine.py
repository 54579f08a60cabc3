"""
Run execution: the worker side of a run.

    received -> loading -> simulating(level 1..N) -> completed | failed

Every exit path settles the run row, releases the heroes this run holds and
drops the checkpoint. Failures additionally restore the party's HP, and the
original exception is re-raised so the queue dead-letters the job.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

import redis.asyncio as redis

from dungeon_runs.core.config import settings
from dungeon_runs.core.errors import DungeonNotFound, RunNotFound
from dungeon_runs.core.results import NonFatalError
from dungeon_runs.models.dungeon import Dungeon
from dungeon_runs.models.run import RunResult, RunStatus
from dungeon_runs.services import combat as default_combat
from dungeon_runs.services.adventurers import AdventurerRecord, AdventurerService
from dungeon_runs.services.checkpoints import Checkpoint, CheckpointStore, PartyMemberStats
from dungeon_runs.services.combat import CombatResult, CombatState, Encounter
from dungeon_runs.services.dungeon_generator import Room, ThemedDungeonGenerator
from dungeon_runs.services.dungeons import DungeonRepository
from dungeon_runs.services.hero_locks import HeroLockStore, HeroRef
from dungeon_runs.services.run_store import RunStore, publish_run_status

logger = logging.getLogger(__name__)

TRAP_DISARM_CHANCE = 0.4
TREASURES = ["Gilded Chalice", "Runed Dagger", "Moonstone Ring", "Ancient Scroll", "Bag of Coins"]


@dataclass(frozen=True)
class RunJob:
    run_id: str
    dungeon_id: str
    party: list[str]
    seed: str
    start_time: Optional[int] = None  # epoch ms

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> "RunJob":
        return cls(
            run_id=str(data["runId"]),
            dungeon_id=str(data["dungeonId"]),
            party=[str(p) for p in data["party"]],
            seed=str(data["seed"]),
            start_time=data.get("startTime"),
        )


@dataclass
class RunOutcome:
    run_id: str
    result: RunResult
    levels_completed: int
    total_xp: int
    events: list[dict[str, Any]] = field(default_factory=list)
    party: list[AdventurerRecord] = field(default_factory=list)
    persist_errors: list[NonFatalError] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "levelsCompleted": self.levels_completed,
            "totalXp": self.total_xp,
            "events": self.events,
            "finalParty": [
                {"tokenId": m.token_id, "health": m.health, "mana": m.mana, "experience": m.experience}
                for m in self.party
            ],
        }


def _event(kind: str, level: int, room_type: str, description: str, **extra: Any) -> dict[str, Any]:
    return {"type": kind, "level": level, "roomType": room_type, "description": description, **extra}


class RunExecutionEngine:
    def __init__(
        self,
        runs: RunStore,
        dungeons: DungeonRepository,
        locks: HeroLockStore,
        checkpoints: CheckpointStore,
        adventurers: AdventurerService,
        generator: Optional[ThemedDungeonGenerator] = None,
        initialize_combat: Callable[..., CombatState] = default_combat.initialize_combat,
        run_combat: Callable[[CombatState], Awaitable[CombatResult]] = default_combat.run_combat,
        redis_client: Optional[redis.Redis] = None,
        timeout_sec: float | None = None,
        max_levels: int | None = None,
        contract_address: str | None = None,
    ):
        self.runs = runs
        self.dungeons = dungeons
        self.locks = locks
        self.checkpoints = checkpoints
        self.adventurers = adventurers
        self.generator = generator or ThemedDungeonGenerator()
        self.initialize_combat = initialize_combat
        self.run_combat = run_combat
        self.redis_client = redis_client
        self.timeout_sec = timeout_sec or settings.RUN_TIMEOUT_SEC
        self.max_levels = max_levels or settings.MAX_DUNGEON_LEVELS
        self.contract_address = contract_address or settings.HERO_CONTRACT_ADDRESS

    async def process(self, job: RunJob) -> RunOutcome | None:
        heroes = HeroRef.from_party(job.party, self.contract_address)
        try:
            run = await self.runs.get(job.run_id)
            if run is not None and RunStatus(run.status).is_terminal:
                logger.info(f"Run {job.run_id} is already {run.status}, skipping redelivered job")
                return None
            return await asyncio.wait_for(self._execute(job, heroes, run is not None), self.timeout_sec)
        except asyncio.TimeoutError as e:
            logger.error(f"Run {job.run_id} timed out after {self.timeout_sec}s")
            await self._fail(job, heroes, RunResult.TIMEOUT, e)
            raise
        except Exception as e:
            logger.exception(f"Run {job.run_id} failed: {e}")
            await self._fail(job, heroes, RunResult.ERROR, e)
            raise

    async def _execute(self, job: RunJob, heroes: Sequence[HeroRef], run_exists: bool) -> RunOutcome:
        if not run_exists:
            raise RunNotFound(f"Run {job.run_id} not found")

        dungeon = await self.dungeons.get(job.dungeon_id)
        if dungeon is None:
            raise DungeonNotFound(f"Dungeon {job.dungeon_id} not found")

        # a redelivered job finds the run already running and resumes it
        if await self.runs.mark_running(job.run_id):
            await publish_run_status(job.run_id, {"status": RunStatus.RUNNING.value}, self.redis_client)

        party = [await self.adventurers.get_or_initialize(h) for h in heroes]
        checkpoint = await self.checkpoints.load(job.run_id)
        if checkpoint is not None:
            start_level, total_xp = self._resume(party, checkpoint)
            logger.info(f"Run {job.run_id} resuming at level {start_level} from checkpoint")
        else:
            start_level, total_xp = 1, 0
            await self._reset_health(party)

        outcome = await self._simulate(job, dungeon, party, start_level, total_xp)
        await self._complete(job, heroes, outcome)
        return outcome

    def _resume(self, party: Sequence[AdventurerRecord], checkpoint: Checkpoint) -> tuple[int, int]:
        saved = {p.token_id: p for p in checkpoint.party_stats}
        for member in party:
            stats = saved.get(member.token_id)
            if stats is None:
                continue
            member.health = stats.health
            member.max_health = stats.max_health
            member.mana = stats.mana
            member.max_mana = stats.max_mana
            member.experience = stats.experience
        return checkpoint.level + 1, checkpoint.total_xp

    async def _reset_health(self, party: Sequence[AdventurerRecord]) -> None:
        """Fresh runs start at full health, persisted before level 1."""
        for member in party:
            member.health = member.max_health
            try:
                await self.adventurers.update_adventurer_stats(
                    member.hero, {"health": member.max_health}, reason="run_start_reset"
                )
            except Exception as e:
                logger.error(f"Failed to persist HP reset for hero {member.token_id}: {e}")

    async def _simulate(
        self,
        job: RunJob,
        dungeon: Dungeon,
        party: list[AdventurerRecord],
        start_level: int,
        total_xp: int,
    ) -> RunOutcome:
        max_level = min(max(1, dungeon.depth or 1), self.max_levels)
        events: list[dict[str, Any]] = []
        levels_completed = start_level - 1
        result = RunResult.VICTORY

        level = start_level
        while level <= max_level:
            if not any(m.alive for m in party):
                events.append(_event("party_wipe", level, "combat", "All party members have been defeated"))
                result = RunResult.DEFEAT
                break

            room = self.generator.generate_room(dungeon, level, job.seed)
            events.append(_event("room_enter", level, room.type, f"Entered {room.name}: {room.description}"))

            xp, defeated = await self._play_room(job.seed, room, party, events)
            total_xp += xp
            levels_completed = level

            await self.checkpoints.save(
                Checkpoint(
                    run_id=job.run_id,
                    level=level,
                    party_stats=[
                        PartyMemberStats(
                            token_id=m.token_id,
                            health=m.health,
                            max_health=m.max_health,
                            mana=m.mana,
                            max_mana=m.max_mana,
                            experience=m.experience,
                        )
                        for m in party
                    ],
                    total_xp=total_xp,
                )
            )

            if defeated or not any(m.alive for m in party):
                logger.info(f"Run {job.run_id}: party defeated at level {level}")
                result = RunResult.DEFEAT
                break
            level += 1

        return RunOutcome(
            run_id=job.run_id,
            result=result,
            levels_completed=levels_completed,
            total_xp=total_xp,
            events=events,
            party=party,
        )

    async def _play_room(
        self, seed: str, room: Room, party: list[AdventurerRecord], events: list[dict[str, Any]]
    ) -> tuple[int, bool]:
        """Returns (xp awarded, party defeated)."""
        level = room.level
        alive = [m for m in party if m.alive]

        if room.is_combat:
            encounter: Encounter | None = room.encounter
            if encounter is None or not encounter.monsters:
                events.append(_event("room_empty", level, room.type, "Room appears empty"))
                return 0, False
            state = self.initialize_combat(alive, encounter, f"{seed}-combat-{level}", room.id)
            outcome = await self.run_combat(state)
            by_id = {m.token_id: m for m in party}
            for token_id, update in outcome.party_updates.items():
                member = by_id.get(token_id)
                if member is None:
                    continue
                member.health = max(0, min(int(update.get("health", member.health)), member.max_health))
                member.mana = max(0, min(int(update.get("mana", member.mana)), member.max_mana))
            if not outcome.victory:
                events.append(_event("combat_defeat", level, room.type, "Party was defeated"))
                return 0, True
            xp = outcome.xp_awarded
            share = xp // len(party)
            for member in party:
                member.experience += share
            events.append(
                _event(
                    "combat_victory",
                    level,
                    room.type,
                    f"Defeated {len(encounter.monsters)} monster(s) - {len(outcome.turns)} blows, {xp} XP",
                )
            )
            return xp, False

        rng = random.Random(f"{seed}-{room.type}-{level}")
        if room.type == "trap":
            if rng.random() < TRAP_DISARM_CHANCE:
                xp = 5 * level
                share = xp // len(party)
                for member in party:
                    member.experience += share
                events.append(_event("trap_disarmed", level, room.type, "The party disarmed a trap"))
                return xp, False
            total = 0
            for member in alive:
                damage = rng.randint(3, 8) + level // 2
                member.health = max(0, member.health - damage)
                total += damage
            events.append(_event("trap_triggered", level, room.type, f"A trap dealt {total} damage"))
            return 0, not any(m.alive for m in party)

        if room.type == "treasure":
            events.append(_event("treasure_found", level, room.type, f"Found {rng.choice(TREASURES)}"))
            return 0, False

        if room.type == "safe":
            for member in alive:
                member.health = member.max_health
                member.mana = member.max_mana
            events.append(_event("rest", level, room.type, "Party rested and recovered"))
            return 0, False

        events.append(_event("room_explored", level, room.type, "Room explored"))
        return 0, False

    async def _persist_party(self, party: Sequence[AdventurerRecord]) -> list[NonFatalError]:
        results = await asyncio.gather(
            *(
                self.adventurers.update_adventurer_stats(
                    m.hero,
                    {"health": m.health, "mana": m.mana, "experience": m.experience},
                    reason="run_complete",
                )
                for m in party
            ),
            return_exceptions=True,
        )
        errors = []
        for member, res in zip(party, results):
            if isinstance(res, Exception):
                logger.error(f"Error updating stats for hero {member.token_id}: {res}")
                errors.append(NonFatalError(f"update_adventurer_stats:{member.token_id}", str(res)))
        return errors

    async def _complete(self, job: RunJob, heroes: Sequence[HeroRef], outcome: RunOutcome) -> None:
        outcome.persist_errors = await self._persist_party(outcome.party)
        await self.runs.finalize(job.run_id, RunStatus.COMPLETED, outcome.result, outcome.summary())
        await self.locks.unlock(heroes, restore_hp=False, run_id=job.run_id)
        await self.checkpoints.delete(job.run_id)
        await publish_run_status(
            job.run_id,
            {"status": RunStatus.COMPLETED.value, "result": outcome.result.value},
            self.redis_client,
        )
        logger.info(
            f"Run {job.run_id} completed: {outcome.result.value} after {outcome.levels_completed} levels, "
            f"{outcome.total_xp} XP"
        )

    async def _fail(self, job: RunJob, heroes: Sequence[HeroRef], result: RunResult, error: Any) -> None:
        try:
            await self.runs.finalize(job.run_id, RunStatus.FAILED, result, {"error": str(error) or result.value})
        except Exception as e:
            logger.error(f"Failed to mark run {job.run_id} as failed: {e}")
        await self.locks.unlock(heroes, restore_hp=True, run_id=job.run_id)
        await self.checkpoints.delete(job.run_id)
        await publish_run_status(
            job.run_id, {"status": RunStatus.FAILED.value, "result": result.value}, self.redis_client
        )
