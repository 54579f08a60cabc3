import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_WHITELIST", "")

import fnmatch

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from dungeon_runs.core.db import utcnow
from dungeon_runs.core.init_db import ensure_schema
from dungeon_runs.models.dungeon import Dungeon


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands this service uses."""

    def __init__(self):
        self.kv: dict[str, str] = {}
        self.ttl: dict[str, int] = {}
        self.lists: dict[str, list[str]] = {}
        self.published: list[tuple[str, str]] = []
        self.broken = False
        self.calls: list[str] = []

    def _check(self, op: str):
        self.calls.append(op)
        if self.broken:
            raise RedisConnectionError("Connection refused")

    async def ping(self):
        self._check("ping")
        return True

    async def get(self, key):
        self._check("get")
        return self.kv.get(key)

    async def setex(self, key, ttl, value):
        self._check("setex")
        self.kv[key] = value
        self.ttl[key] = int(ttl)
        return True

    async def delete(self, *keys):
        self._check("delete")
        removed = 0
        for key in keys:
            removed += int(self.kv.pop(key, None) is not None)
            removed += int(self.lists.pop(key, None) is not None)
        return removed

    async def exists(self, *keys):
        self._check("exists")
        return sum(1 for k in keys if k in self.kv or self.lists.get(k))

    async def publish(self, channel, message):
        self._check("publish")
        self.published.append((channel, message))
        return 0

    async def lpush(self, key, *values):
        self._check("lpush")
        lst = self.lists.setdefault(key, [])
        for v in values:
            lst.insert(0, v)
        return len(lst)

    def _pop(self, key, side):
        lst = self.lists.get(key)
        if not lst:
            return None
        value = lst.pop(0) if side == "LEFT" else lst.pop()
        if not lst:
            del self.lists[key]
        return value

    def _push(self, key, side, value):
        lst = self.lists.setdefault(key, [])
        if side == "LEFT":
            lst.insert(0, value)
        else:
            lst.append(value)

    async def lmove(self, first_list, second_list, src="LEFT", dest="RIGHT"):
        self._check("lmove")
        value = self._pop(first_list, src)
        if value is not None:
            self._push(second_list, dest, value)
        return value

    async def blmove(self, first_list, second_list, timeout, src="LEFT", dest="RIGHT"):
        self._check("blmove")
        value = self._pop(first_list, src)
        if value is not None:
            self._push(second_list, dest, value)
        return value

    async def lrem(self, key, count, value):
        self._check("lrem")
        lst = self.lists.get(key, [])
        removed = 0
        while value in lst and (count == 0 or removed < abs(count)):
            lst.remove(value)
            removed += 1
        if key in self.lists and not lst:
            del self.lists[key]
        return removed

    async def lrange(self, key, start, end):
        self._check("lrange")
        lst = self.lists.get(key, [])
        return lst[start:] if end == -1 else lst[start:end + 1]

    async def llen(self, key):
        self._check("llen")
        return len(self.lists.get(key, []))

    async def scan_iter(self, match=None):
        self._check("scan_iter")
        for key in list(self.kv) + list(self.lists):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self):
        return None


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    # file-backed so concurrent sessions get their own connections
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'runs.db'}", poolclass=NullPool)
    await ensure_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def dungeon(session_factory):
    async with session_factory() as session:
        d = Dungeon(
            name="Crypt of Ash",
            seed="crypt-of-ash",
            depth=3,
            theme={"name": "Crypt of Ash", "enemies": ["Skeleton"], "boss": "Ash Lich"},
            map={},
            created_at=utcnow(),
        )
        session.add(d)
        await session.commit()
        return d
