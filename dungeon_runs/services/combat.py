"""
Seeded turn-based combat.

The same (party, encounter, seed) always yields the same fight, so a resumed
run replays an interrupted level identically.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Sequence

SPELL_COST = 10
SPELL_CHANCE = 0.3
MAX_TURNS = 200


@dataclass
class Monster:
    name: str
    hp: int
    attack: int
    armor: int = 0
    xp: int = 10

    @classmethod
    def scaled(cls, name: str, level: int, boss: bool = False) -> "Monster":
        mult = 3 if boss else 1
        return cls(
            name=name,
            hp=(12 + 3 * level) * mult,
            attack=4 + level // 2 + (3 if boss else 0),
            armor=level // 5,
            xp=(8 + 2 * level) * mult,
        )


@dataclass
class Encounter:
    type: str  # combat | boss
    difficulty: int
    monsters: list[Monster] = field(default_factory=list)


@dataclass
class Combatant:
    id: str
    side: str  # party | monster
    name: str
    hp: int
    max_hp: int
    attack: int
    armor: int
    mana: int = 0
    xp: int = 0

    @property
    def alive(self) -> bool:
        return self.hp > 0


@dataclass
class CombatState:
    room_id: str
    seed: str
    entities: list[Combatant]
    rng: random.Random

    def side(self, name: str) -> list[Combatant]:
        return [e for e in self.entities if e.side == name and e.alive]


@dataclass
class CombatResult:
    result: str  # victory | defeat
    turns: list[dict[str, Any]]
    party_updates: dict[str, dict[str, int]]  # token_id -> {health, mana}
    xp_awarded: int

    @property
    def victory(self) -> bool:
        return self.result == "victory"


def initialize_combat(party: Sequence[Any], encounter: Encounter, seed: str, room_id: str = "") -> CombatState:
    """`party` is any sequence of adventurer records (token_id, health, mana, attack, armor)."""
    entities = [
        Combatant(
            id=member.token_id,
            side="party",
            name=member.name,
            hp=member.health,
            max_hp=member.max_health,
            attack=member.attack,
            armor=member.armor,
            mana=member.mana,
        )
        for member in party
    ]
    for i, m in enumerate(encounter.monsters):
        entities.append(
            Combatant(
                id=f"{m.name.lower().replace(' ', '-')}-{i}",
                side="monster",
                name=m.name,
                hp=m.hp,
                max_hp=m.hp,
                attack=m.attack,
                armor=m.armor,
                xp=m.xp,
            )
        )
    return CombatState(room_id=room_id, seed=seed, entities=entities, rng=random.Random(seed))


def _strike(state: CombatState, actor: Combatant, target: Combatant, turn: int) -> dict[str, Any]:
    rng = state.rng
    action = "attack"
    power = actor.attack
    if actor.side == "party" and actor.mana >= SPELL_COST and rng.random() < SPELL_CHANCE:
        action = "spell"
        actor.mana -= SPELL_COST
        power *= 2
    critical = rng.random() < 0.05
    damage = max(1, power + rng.randint(0, 4) - target.armor)
    if critical:
        damage *= 2
    target.hp = max(0, target.hp - damage)
    return {
        "turnNumber": turn,
        "actorId": actor.id,
        "targetId": target.id,
        "action": action,
        "damage": damage,
        "critical": critical,
    }


async def run_combat(state: CombatState, max_turns: int = MAX_TURNS) -> CombatResult:
    turns: list[dict[str, Any]] = []
    turn = 0
    while state.side("party") and state.side("monster") and turn < max_turns:
        turn += 1
        order = [e for e in state.entities if e.alive]
        state.rng.shuffle(order)
        for actor in order:
            if not actor.alive:
                continue
            foes = state.side("monster" if actor.side == "party" else "party")
            if not foes:
                break
            turns.append(_strike(state, actor, state.rng.choice(foes), turn))
        # let the event loop run between rounds (timeouts, cancellation)
        await asyncio.sleep(0)

    won = bool(state.side("party")) and not state.side("monster")
    party_updates = {
        e.id: {"health": e.hp, "mana": e.mana} for e in state.entities if e.side == "party"
    }
    xp = sum(e.xp for e in state.entities if e.side == "monster") if won else 0
    return CombatResult(
        result="victory" if won else "defeat",
        turns=turns,
        party_updates=party_updates,
        xp_awarded=xp,
    )
