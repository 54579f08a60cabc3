from datetime import datetime
from sqlalchemy import DateTime, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column
from dungeon_runs.core.db import Base


class Adventurer(Base):
    __tablename__ = "adventurers"
    contract_address: Mapped[str] = mapped_column(String(64), primary_key=True)
    token_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)

    name: Mapped[str] = mapped_column(String(128))
    level: Mapped[int] = mapped_column(Integer, default=1)
    experience: Mapped[int] = mapped_column(Integer, default=0)

    health: Mapped[int] = mapped_column(Integer)
    max_health: Mapped[int] = mapped_column(Integer)
    mana: Mapped[int] = mapped_column(Integer)
    max_mana: Mapped[int] = mapped_column(Integer)

    stats: Mapped[dict] = mapped_column(JSON, default=dict)  # attack, armor, ...
    last_update_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
