import uuid
from datetime import datetime
from typing import Any
from sqlalchemy import DateTime, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column
from dungeon_runs.core.db import Base, as_utc


class Dungeon(Base):
    __tablename__ = "dungeons"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(128))
    seed: Mapped[str] = mapped_column(String(128), unique=True)  # also the url slug
    depth: Mapped[int] = mapped_column(Integer, default=10)
    theme: Mapped[dict] = mapped_column(JSON, default=dict)  # {name, enemies, description}
    map: Mapped[dict] = mapped_column(JSON, default=dict)  # optional levelLayout
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def dungeon_to_dict(dungeon: Dungeon) -> dict[str, Any]:
    created = as_utc(dungeon.created_at)
    return {
        "id": dungeon.id,
        "name": dungeon.name,
        "seed": dungeon.seed,
        "depth": dungeon.depth,
        "theme": dungeon.theme or {},
        "map": dungeon.map or {},
        "createdAt": created.isoformat() if created else None,
    }
