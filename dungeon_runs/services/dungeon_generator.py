import random
from dataclasses import dataclass
from typing import Any, Optional

from dungeon_runs.models.dungeon import Dungeon
from dungeon_runs.services.combat import Encounter, Monster

ROOM_TYPES = ("combat", "boss", "mid_boss", "trap", "treasure", "safe")

# weights for ordinary levels; bosses are placed by position
ROOM_WEIGHTS = [("combat", 50), ("trap", 15), ("treasure", 15), ("safe", 20)]

DEFAULT_ENEMIES = ["Skeleton", "Goblin", "Giant Rat", "Cultist"]
DEFAULT_BOSS = "Lich"

ROOM_NAMES = {
    "combat": "Guard Chamber",
    "boss": "Throne of the Deep",
    "mid_boss": "Warden's Hall",
    "trap": "Trapped Corridor",
    "treasure": "Forgotten Vault",
    "safe": "Quiet Shrine",
}


@dataclass
class Room:
    id: str
    level: int
    type: str
    name: str
    description: str
    encounter: Optional[Encounter] = None

    @property
    def is_combat(self) -> bool:
        return self.type in ("combat", "boss", "mid_boss")


class ThemedDungeonGenerator:
    """Rooms come from the dungeon's pre-generated levelLayout when present,
    otherwise they are rolled from `<seed>-level-<n>`."""

    def _layout_entry(self, dungeon: Dungeon, level: int) -> dict[str, Any] | None:
        layout = (dungeon.map or {}).get("levelLayout") or []
        for entry in layout:
            if isinstance(entry, dict) and int(entry.get("level", -1)) == level:
                return entry
        return None

    def _room_type(self, rng: random.Random, level: int, depth: int) -> str:
        if level == depth:
            return "boss"
        if level % 5 == 0:
            return "mid_boss"
        types, weights = zip(*ROOM_WEIGHTS)
        return rng.choices(types, weights=weights)[0]

    def _encounter(self, rng: random.Random, dungeon: Dungeon, level: int, room_type: str) -> Encounter:
        theme = dungeon.theme or {}
        enemies = theme.get("enemies") or DEFAULT_ENEMIES
        if room_type in ("boss", "mid_boss"):
            boss = theme.get("boss") or DEFAULT_BOSS
            name = boss if room_type == "boss" else rng.choice(enemies) + " Champion"
            return Encounter(type="boss", difficulty=level, monsters=[Monster.scaled(name, level, boss=True)])
        count = min(1 + level // 4, 4)
        return Encounter(
            type="combat",
            difficulty=count,
            monsters=[Monster.scaled(rng.choice(enemies), level) for _ in range(count)],
        )

    def generate_room(self, dungeon: Dungeon, level: int, seed: str) -> Room:
        rng = random.Random(f"{seed}-level-{level}")
        depth = max(1, dungeon.depth or 1)
        entry = self._layout_entry(dungeon, level) or {}

        room_type = entry.get("type") if entry.get("type") in ROOM_TYPES else self._room_type(rng, level, depth)
        theme_name = (dungeon.theme or {}).get("name", dungeon.name)
        room = Room(
            id=str(entry.get("id") or f"room-{level}"),
            level=level,
            type=room_type,
            name=entry.get("name") or ROOM_NAMES[room_type],
            description=entry.get("description") or f"Level {level} of {theme_name}",
        )
        if room.is_combat:
            room.encounter = self._encounter(rng, dungeon, level, room_type)
        return room
