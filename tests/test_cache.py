import json

import pytest

from dungeon_runs.core.cache import cache_delete, cache_get, cache_set, publish_event


@pytest.mark.asyncio
async def test_json_values_round_trip_with_ttl(fake_redis):
    await cache_set("k", {"level": 2}, ttl=60, client=fake_redis)

    assert fake_redis.ttl["k"] == 60
    assert await cache_get("k", client=fake_redis) == {"level": 2}
    assert await cache_delete("k", client=fake_redis) == 1
    assert await cache_get("k", client=fake_redis) is None


@pytest.mark.asyncio
async def test_publish_sends_json(fake_redis):
    await publish_event("runs:r1", {"status": "running"}, client=fake_redis)

    channel, message = fake_redis.published[0]
    assert channel == "runs:r1"
    assert json.loads(message) == {"status": "running"}
