import enum
from datetime import datetime
from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column
from dungeon_runs.core.db import Base


class HeroLockStatus(str, enum.Enum):
    IDLE = "idle"
    DUNGEON = "dungeon"


# idle <-> dungeon; a dungeon -> dungeon move is a lock refresh by the owning run
HERO_LOCK_TRANSITIONS: dict[HeroLockStatus, frozenset[HeroLockStatus]] = {
    HeroLockStatus.IDLE: frozenset({HeroLockStatus.DUNGEON}),
    HeroLockStatus.DUNGEON: frozenset({HeroLockStatus.IDLE, HeroLockStatus.DUNGEON}),
}


def hero_sources_for(target: HeroLockStatus) -> list[str]:
    """Statuses a hero row may move to `target` from, as stored column values."""
    return [s.value for s, allowed in HERO_LOCK_TRANSITIONS.items() if target in allowed]


class HeroLock(Base):
    __tablename__ = "hero_states"
    contract_address: Mapped[str] = mapped_column(String(64), primary_key=True)
    token_id: Mapped[str] = mapped_column(String(80), primary_key=True)

    status: Mapped[str] = mapped_column(String(16), default=HeroLockStatus.IDLE.value)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_run_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
