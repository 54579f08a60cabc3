from datetime import timedelta

import pytest
from sqlalchemy import update

from dungeon_runs.core.db import utcnow
from dungeon_runs.models.run import RUN_TRANSITIONS, Run, RunResult, RunStatus, run_to_dict, sources_for
from dungeon_runs.services.run_store import RunStore


def test_only_completed_and_failed_are_terminal():
    assert [s for s in RunStatus if s.is_terminal] == [RunStatus.COMPLETED, RunStatus.FAILED]
    assert RunStatus.RUNNING not in RUN_TRANSITIONS[RunStatus.RUNNING]
    assert sorted(sources_for(RunStatus.FAILED)) == ["queued", "running"]
    assert sources_for(RunStatus.COMPLETED) == ["running"]


@pytest.mark.asyncio
async def test_run_moves_queued_running_completed(session_factory, dungeon):
    store = RunStore(session_factory)
    run = await store.insert_run(dungeon.id, ["1"], "s", wallet_address="0xABC")

    assert run.wallet_address == "0xabc"
    assert await store.mark_running(run.id)
    assert await store.finalize(run.id, RunStatus.COMPLETED, RunResult.VICTORY, {"levelsCompleted": 3})

    stored = await store.get(run.id)
    as_dict = run_to_dict(stored)
    assert as_dict["status"] == "completed"
    assert as_dict["result"] == "victory"
    assert as_dict["endTime"] is not None
    assert as_dict["summary"] == {"levelsCompleted": 3}


@pytest.mark.asyncio
async def test_terminal_runs_never_change_again(session_factory, dungeon):
    store = RunStore(session_factory)
    run = await store.insert_run(dungeon.id, ["1"], "s")
    await store.mark_running(run.id)
    await store.finalize(run.id, RunStatus.FAILED, RunResult.TIMEOUT)

    assert not await store.mark_running(run.id)
    assert not await store.finalize(run.id, RunStatus.COMPLETED, RunResult.VICTORY)
    stored = await store.get(run.id)
    assert stored.status == "failed"
    assert stored.result == "timeout"


@pytest.mark.asyncio
async def test_queued_run_cannot_complete_without_running(session_factory, dungeon):
    store = RunStore(session_factory)
    run = await store.insert_run(dungeon.id, ["1"], "s")

    assert not await store.finalize(run.id, RunStatus.COMPLETED, RunResult.VICTORY)
    assert (await store.get(run.id)).status == "queued"


@pytest.mark.asyncio
async def test_active_run_lookup_ignores_finished_runs(session_factory, dungeon):
    store = RunStore(session_factory)
    done = await store.insert_run(dungeon.id, ["1"], "s", wallet_address="0xabc")
    await store.mark_running(done.id)
    await store.finalize(done.id, RunStatus.COMPLETED, RunResult.DEFEAT)

    assert await store.get_active_run("0xABC") is None

    live = await store.insert_run(dungeon.id, ["2"], "s", wallet_address="0xabc")
    assert (await store.get_active_run("0xabc")).id == live.id


@pytest.mark.asyncio
async def test_orphaned_runs_without_a_job_are_failed(session_factory, dungeon):
    store = RunStore(session_factory)
    orphan = await store.insert_run(dungeon.id, ["1"], "s")
    enqueued = await store.insert_run(dungeon.id, ["2"], "s")
    await store.set_job_id(enqueued.id, "job-1")
    fresh = await store.insert_run(dungeon.id, ["3"], "s")
    async with session_factory() as session:
        await session.execute(
            update(Run)
            .where(Run.id.in_([orphan.id, enqueued.id]))
            .values(start_time=utcnow() - timedelta(hours=1))
        )
        await session.commit()

    failed = await store.fail_orphaned(timedelta(minutes=15))

    assert [r.id for r in failed] == [orphan.id]
    stored = await store.get(orphan.id)
    assert stored.status == "failed"
    assert stored.result == "error"
    assert stored.summary == {"reason": "orphaned"}
    assert (await store.get(enqueued.id)).status == "queued"
    assert (await store.get(fresh.id)).status == "queued"
