import enum
import uuid
from datetime import datetime
from typing import Any
from sqlalchemy import DateTime, JSON, String
from sqlalchemy.orm import Mapped, mapped_column
from dungeon_runs.core.db import Base, as_utc


class RunStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return not RUN_TRANSITIONS[self]


RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


def sources_for(target: RunStatus) -> list[str]:
    """Statuses a run may move to `target` from, as stored column values."""
    return [s.value for s, allowed in RUN_TRANSITIONS.items() if target in allowed]


class RunResult(str, enum.Enum):
    VICTORY = "victory"
    DEFEAT = "defeat"
    ERROR = "error"
    TIMEOUT = "timeout"


class Run(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    dungeon_id: Mapped[str] = mapped_column(String(36), index=True)
    party: Mapped[list] = mapped_column(JSON)  # token ids as strings
    seed: Mapped[str] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(16), default=RunStatus.QUEUED.value, index=True)

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    result: Mapped[str | None] = mapped_column(String(16), nullable=True)

    wallet_address: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # levels, xp, event log


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def run_to_dict(run: Run) -> dict[str, Any]:
    return {
        "id": run.id,
        "dungeonId": run.dungeon_id,
        "party": list(run.party or []),
        "seed": run.seed,
        "status": run.status,
        "startTime": _iso(run.start_time),
        "endTime": _iso(run.end_time),
        "result": run.result,
        "walletAddress": run.wallet_address,
        "jobId": run.job_id,
        "summary": run.summary,
    }
