# dungeon_runs/core/init_db.py
from __future__ import annotations

import logging

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine

from dungeon_runs.core.db import Base, engine as default_engine

# Register every table on Base.metadata
from dungeon_runs.models import adventurer, daily_stats, dungeon, hero_lock, run  # noqa: F401

logger = logging.getLogger(__name__)

# One global lock id for schema bootstrap (any int64 is fine)
BOOTSTRAP_LOCK_ID = 924173

# Common Postgres SQLSTATE codes we can safely ignore for idempotent bootstrap
# 42P07 duplicate_table, 42710 duplicate_object, 42P06 duplicate_schema
IGNORABLE_SQLSTATES = {"42P07", "42710", "42P06"}


def _sqlstate(exc: Exception) -> str | None:
    # asyncpg exceptions often have .sqlstate; SQLAlchemy wraps in DBAPIError with .orig
    for obj in (exc, getattr(exc, "orig", None)):
        if not obj:
            continue
        val = getattr(obj, "sqlstate", None) or getattr(obj, "pgcode", None)
        if val:
            return str(val)
    return None


def _is_ignorable(exc: Exception) -> bool:
    if _sqlstate(exc) in IGNORABLE_SQLSTATES:
        return True
    return "already exists" in str(exc).lower()


async def ensure_schema(engine: AsyncEngine | None = None) -> None:
    """
    Creates missing tables (hero_states, runs, user_dungeon_stats, dungeons, adventurers).

    Protection:
      - pg_advisory_xact_lock to prevent concurrent bootstrap when the API and
        several workers start at once
      - ignores harmless duplicate DDL if another instance won the race anyway
    """
    engine = engine or default_engine

    try:
        async with engine.begin() as conn:
            if conn.dialect.name == "postgresql":
                await conn.exec_driver_sql(f"SELECT pg_advisory_xact_lock({BOOTSTRAP_LOCK_ID});")
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        if _is_ignorable(e):
            logger.info(f"Schema already bootstrapped by another instance: {e}")
            return
        if isinstance(e, DBAPIError) and e.orig:
            raise e.orig
        raise
