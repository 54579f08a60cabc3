from datetime import datetime
from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from dungeon_runs.core.db import Base


class UserDungeonStats(Base):
    __tablename__ = "user_dungeon_stats"
    wallet_address: Mapped[str] = mapped_column(String(64), primary_key=True)  # lower-cased
    daily_runs_count: Mapped[int] = mapped_column(Integer, default=0)
    last_reset_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
