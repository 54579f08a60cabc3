import json

import pytest

from dungeon_runs.core.queue import SIMULATE_RUN, RunQueue


@pytest.mark.asyncio
async def test_jobs_are_reserved_in_fifo_order(fake_redis):
    queue = RunQueue(fake_redis, name="run-simulation", worker_id="w1")
    first = await queue.add(SIMULATE_RUN, {"runId": "r1"})
    await queue.add(SIMULATE_RUN, {"runId": "r2"})

    job = await queue.reserve(timeout=0)

    assert job.id == first
    assert job.name == "simulate-run"
    assert job.data == {"runId": "r1"}
    assert await queue.depth() == 1
    assert fake_redis.lists["queue:run-simulation:processing:w1"] == [job.raw]


@pytest.mark.asyncio
async def test_ack_removes_job_from_processing(fake_redis):
    queue = RunQueue(fake_redis, worker_id="w1")
    await queue.add(SIMULATE_RUN, {"runId": "r1"})
    job = await queue.reserve(timeout=0)

    await queue.ack(job)

    assert queue.processing_key() not in fake_redis.lists
    assert await queue.reserve(timeout=0) is None


@pytest.mark.asyncio
async def test_fail_moves_job_to_dead_letter_list(fake_redis):
    queue = RunQueue(fake_redis, worker_id="w1")
    await queue.add(SIMULATE_RUN, {"runId": "r1"})
    job = await queue.reserve(timeout=0)

    await queue.fail(job, RuntimeError("combat exploded"))

    failed = [json.loads(raw) for raw in fake_redis.lists[queue.failed_key]]
    assert failed[0]["id"] == job.id
    assert failed[0]["error"] == "combat exploded"
    assert queue.processing_key() not in fake_redis.lists


@pytest.mark.asyncio
async def test_jobs_of_dead_workers_are_recovered(fake_redis):
    dead = RunQueue(fake_redis, worker_id="dead")
    alive = RunQueue(fake_redis, worker_id="alive")
    busy = RunQueue(fake_redis, worker_id="busy")
    await dead.add(SIMULATE_RUN, {"runId": "r1"})
    await dead.add(SIMULATE_RUN, {"runId": "r2"})
    await dead.reserve(timeout=0)
    await busy.heartbeat(30)
    await busy.reserve(timeout=0)

    moved = await alive.recover_stalled()

    assert moved == 1
    job = await alive.reserve(timeout=0)
    assert job.data == {"runId": "r1"}
    assert fake_redis.lists[busy.processing_key()]


@pytest.mark.asyncio
async def test_malformed_job_is_dead_lettered(fake_redis):
    queue = RunQueue(fake_redis, worker_id="w1")
    await fake_redis.lpush(queue.waiting_key, "not json")

    assert await queue.reserve(timeout=0) is None
    assert len(fake_redis.lists[queue.failed_key]) == 1
    assert queue.processing_key() not in fake_redis.lists
