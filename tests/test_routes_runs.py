import httpx
import pytest
import pytest_asyncio

from dungeon_runs.api import deps
from dungeon_runs.core.queue import RunQueue
from dungeon_runs.main import app
from dungeon_runs.services.dungeons import DungeonRepository
from dungeon_runs.services.hero_locks import HeroLockStore
from dungeon_runs.services.rate_limiter import RateLimiter
from dungeon_runs.services.run_store import RunStore

WALLET = "0x00000000000000000000000000000000000000b2"


@pytest_asyncio.fixture
async def client(session_factory, fake_redis):
    async def db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides.update(
        {
            deps.get_db: db,
            deps.get_redis_client: lambda: fake_redis,
            deps.get_run_store: lambda: RunStore(session_factory),
            deps.get_dungeon_repository: lambda: DungeonRepository(session_factory),
            deps.get_hero_lock_store: lambda: HeroLockStore(session_factory),
            deps.get_rate_limiter: lambda: RateLimiter(session_factory, whitelist=(), free_runs_limit=1),
            deps.get_run_queue: lambda: RunQueue(fake_redis, worker_id="api"),
        }
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_create_run_returns_queued_run(client, dungeon):
    resp = await client.post(
        "/api/runs",
        json={"dungeonId": dungeon.id, "party": ["1", "2"], "walletAddress": WALLET},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "queued"
    assert body["party"] == ["1", "2"]
    assert body["walletAddress"] == WALLET
    assert body["jobId"]


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{}, {"dungeonId": "crypt-of-ash"}, {"party": ["1"]}])
async def test_missing_fields_are_a_bad_request(client, dungeon, payload):
    resp = await client.post("/api/runs", json=payload)

    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing required fields: dungeonId, party (array)"}


@pytest.mark.asyncio
async def test_busy_heroes_conflict(client, dungeon):
    await client.post("/api/runs", json={"dungeonId": dungeon.id, "party": ["1"]})

    resp = await client.post("/api/runs", json={"dungeonId": dungeon.id, "party": ["1"]})

    assert resp.status_code == 409
    body = resp.json()
    assert body["lockedHeroes"][0]["tokenId"] == "1"
    assert body["lockedHeroes"][0]["status"] == "dungeon"


@pytest.mark.asyncio
async def test_payment_required_after_free_runs(client, dungeon):
    first = await client.post("/api/runs", json={"dungeonId": dungeon.id, "party": ["1"], "walletAddress": WALLET})
    assert first.status_code == 200

    resp = await client.post("/api/runs", json={"dungeonId": dungeon.id, "party": ["2"], "walletAddress": WALLET})

    assert resp.status_code == 402
    assert resp.json() == {"error": "Free runs exhausted. Payment required.", "requiresPayment": True}


@pytest.mark.asyncio
async def test_active_run_and_stats_for_wallet(client, dungeon):
    created = (
        await client.post("/api/runs", json={"dungeonId": dungeon.id, "party": ["1"], "walletAddress": WALLET})
    ).json()

    active = await client.get("/api/runs", params={"wallet": WALLET.upper().replace("0X", "0x")})
    stats = await client.get("/api/runs/stats", params={"wallet": WALLET})

    assert active.json()["activeRun"]["id"] == created["id"]
    assert stats.json() == {"dailyRuns": 1, "freeRunsLimit": 1, "remainingFreeRuns": 0}


@pytest.mark.asyncio
async def test_wallet_is_required_for_lookups(client):
    assert (await client.get("/api/runs")).json() == {"error": "Wallet address required"}
    assert (await client.get("/api/runs/stats")).status_code == 400


@pytest.mark.asyncio
async def test_get_run_includes_dungeon(client, dungeon):
    created = (await client.post("/api/runs", json={"dungeonId": dungeon.seed, "party": ["3"]})).json()

    resp = await client.get(f"/api/runs/{created['id']}")

    assert resp.status_code == 200
    assert resp.json()["dungeon"]["seed"] == "crypt-of-ash"


@pytest.mark.asyncio
async def test_unknown_run_is_not_found(client, dungeon):
    resp = await client.get("/api/runs/does-not-exist")

    assert resp.status_code == 404
    assert resp.json() == {"error": "Run not found"}


@pytest.mark.asyncio
async def test_health_reports_dependencies(client, fake_redis, dungeon):
    await client.post("/api/runs", json={"dungeonId": dungeon.id, "party": ["1"]})

    basic = await client.get("/health")
    detailed = await client.get("/health/detailed")

    assert basic.json() == {"status": "healthy", "environment": "test"}
    body = detailed.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] is True
    assert body["queueDepth"] == 1

    fake_redis.broken = True
    degraded = (await client.get("/health/detailed")).json()
    assert degraded["status"] == "degraded"
    assert "redis_error" in degraded["checks"]


@pytest.mark.asyncio
async def test_unexpected_creation_error_is_a_json_500(client, dungeon, fake_redis):
    class UnreachableDungeons:
        async def resolve(self, dungeon_id):
            raise ConnectionError("database connection reset")

    app.dependency_overrides[deps.get_dungeon_repository] = UnreachableDungeons

    resp = await client.post("/api/runs", json={"dungeonId": dungeon.id, "party": ["1"]})

    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to create run"}
    assert "queue:run-simulation:waiting" not in fake_redis.lists
