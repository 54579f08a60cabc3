import json

import pytest

from dungeon_runs.services.checkpoints import Checkpoint, CheckpointStore, PartyMemberStats, checkpoint_key


def sample(run_id="run-1", level=3):
    return Checkpoint(
        run_id=run_id,
        level=level,
        party_stats=[PartyMemberStats("1", health=40, max_health=100, mana=5, max_mana=50, experience=120)],
        total_xp=60,
    )


@pytest.mark.asyncio
async def test_save_writes_json_with_ttl(fake_redis):
    store = CheckpointStore(fake_redis, ttl_sec=3600)

    outcome = await store.save(sample())

    assert outcome.ok
    key = checkpoint_key("run-1")
    assert key == "dungeon_run:checkpoint:run-1"
    assert fake_redis.ttl[key] == 3600
    payload = json.loads(fake_redis.kv[key])
    assert payload["runId"] == "run-1"
    assert payload["level"] == 3
    assert payload["partyStats"][0] == {
        "tokenId": "1",
        "health": 40,
        "maxHealth": 100,
        "mana": 5,
        "maxMana": 50,
        "experience": 120,
    }
    assert payload["timestamp"]


@pytest.mark.asyncio
async def test_load_returns_saved_progress(fake_redis):
    store = CheckpointStore(fake_redis)
    await store.save(sample(level=4))

    loaded = await store.load("run-1")

    assert loaded.level == 4
    assert loaded.total_xp == 60
    assert loaded.party_stats[0].health == 40


@pytest.mark.asyncio
async def test_missing_or_corrupt_checkpoint_means_fresh_start(fake_redis):
    store = CheckpointStore(fake_redis)
    fake_redis.kv[checkpoint_key("run-2")] = json.dumps({"runId": "run-2"})

    assert await store.load("run-1") is None
    assert await store.load("run-2") is None


@pytest.mark.asyncio
async def test_unavailable_store_never_raises(fake_redis, caplog):
    fake_redis.broken = True
    store = CheckpointStore(fake_redis)

    saved = await store.save(sample())
    loaded = await store.load("run-1")
    deleted = await store.delete("run-1")

    assert not saved.ok and saved.error.operation == "save_checkpoint"
    assert loaded is None
    assert not deleted.ok
    assert "Failed to save checkpoint" in caplog.text
    assert "Failed to clean up checkpoint" in caplog.text


@pytest.mark.asyncio
async def test_delete_removes_key(fake_redis):
    store = CheckpointStore(fake_redis)
    await store.save(sample())

    assert (await store.delete("run-1")).ok
    assert checkpoint_key("run-1") not in fake_redis.kv
