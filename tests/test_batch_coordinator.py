import asyncio

import pytest
import pytest_asyncio

from conftest import MemoryStore, make_job, settle
from dlqueue.core.batch_coordinator import BatchCoordinator
from dlqueue.core.events import EventKind
from dlqueue.exceptions import JobConflictError
from dlqueue.models.batch import Batch, BatchMember
from dlqueue.models.job import JobStatus


def make_batch(out_dir, count=3, batch_id="pl", deselect=(), **extra):
    members = [
        BatchMember(
            member_id=f"m{i}",
            title=f"Track {i}",
            source_locator=f"https://www.youtube.com/watch?v=m{i}",
            index=i,
            selected=i not in deselect,
        )
        for i in range(1, count + 1)
    ]
    return Batch(
        id=batch_id, title="Mix", output_directory=str(out_dir), members=members, **extra
    )


@pytest_asyncio.fixture
async def make_coordinator(make_engine):
    created = []

    async def _make(max_concurrent=2, batch_gate=None, store=None):
        engine, supervisor, store = make_engine(max_concurrent=max_concurrent, store=store)
        await engine.start()
        coordinator = BatchCoordinator(engine, store, batch_gate=batch_gate)
        await coordinator.start()
        created.append((engine, coordinator))
        return coordinator, engine, supervisor, store

    yield _make
    for engine, coordinator in created:
        await coordinator.close()
        await engine.shutdown()


def finished_events(subscription):
    events = []
    while not subscription.queue.empty():
        event = subscription.queue.get_nowait()
        if event is not None and event.kind is EventKind.BATCH_FINISHED:
            events.append(event)
    return events


@pytest.mark.asyncio
async def test_batch_members_share_engine_limit(make_coordinator, out_dir):
    coordinator, engine, supervisor, store = await make_coordinator(max_concurrent=2)
    subscription = coordinator.events.subscribe()

    progress = await coordinator.submit_batch(make_batch(out_dir, count=5))
    await settle()
    assert progress.total == 5
    assert supervisor.started == ["pl::m1", "pl::m2"]

    job = engine.get("pl::m1")
    assert job.output_base_name == "01 - Track 1"
    assert job.group_id == "pl"

    for _ in range(5):
        running = supervisor.running_ids
        assert 1 <= len(running) <= 2
        supervisor.handles[running[0]].finish(0)
        await settle()

    assert supervisor.peak == 2
    progress = coordinator.progress("pl")
    assert (progress.completed, progress.failed, progress.finished) == (5, 0, True)
    assert len(finished_events(subscription)) == 1
    assert [b.id for b in store.batches] == ["pl"]


@pytest.mark.asyncio
async def test_deselected_members_are_not_counted(make_coordinator, out_dir):
    coordinator, engine, supervisor, _ = await make_coordinator(max_concurrent=3)
    await coordinator.submit_batch(make_batch(out_dir, count=3, deselect={2}))
    await settle()
    assert supervisor.started == ["pl::m1", "pl::m3"]

    supervisor.handles["pl::m1"].finish(0)
    supervisor.handles["pl::m3"].finish(1, ["ERROR: Video unavailable"])
    progress = await coordinator.wait_finished("pl", timeout=1)

    assert (progress.total, progress.completed, progress.failed) == (2, 1, 1)
    assert progress.finished
    assert engine.get("pl::m2") is None


@pytest.mark.asyncio
async def test_batch_gate_throttles_submission(make_coordinator, out_dir):
    coordinator, engine, supervisor, _ = await make_coordinator(max_concurrent=3, batch_gate=1)
    await coordinator.submit_batch(make_batch(out_dir, count=3))
    await settle()

    assert supervisor.started == ["pl::m1"]
    assert engine.get("pl::m2") is None
    assert not coordinator.progress("pl").finished

    supervisor.handles["pl::m1"].finish(1, ["ERROR: HTTP Error 403: Forbidden"])
    await settle()
    assert supervisor.started == ["pl::m1", "pl::m2"]

    supervisor.handles["pl::m2"].finish(0)
    await settle()
    supervisor.handles["pl::m3"].finish(0)
    progress = await coordinator.wait_finished("pl", timeout=1)
    assert (progress.completed, progress.failed) == (2, 1)


@pytest.mark.asyncio
async def test_cancel_batch_leaves_other_jobs_alone(make_coordinator, out_dir):
    coordinator, engine, supervisor, store = await make_coordinator(max_concurrent=2, batch_gate=1)
    await engine.submit(make_job("solo", out_dir))
    await coordinator.submit_batch(make_batch(out_dir, count=3))
    await settle()

    assert await coordinator.cancel_batch("pl") == 1
    await settle()

    assert [job.id for job in engine.jobs()] == ["solo"]
    assert supervisor.handles["pl::m1"].terminated
    assert not supervisor.handles["solo"].terminated
    batch = coordinator.get("pl")
    assert batch.cancelled
    assert all(m.removed for m in batch.members)
    assert coordinator.progress("pl").finished
    assert store.batches[0].cancelled


@pytest.mark.asyncio
async def test_cancelling_one_member_shrinks_the_batch(make_coordinator, out_dir):
    coordinator, engine, supervisor, _ = await make_coordinator(max_concurrent=2)
    await coordinator.submit_batch(make_batch(out_dir, count=2))
    await settle()

    await engine.cancel("pl::m1")
    await settle()
    assert coordinator.get("pl").member("m1").removed
    assert coordinator.progress("pl").total == 1

    supervisor.handles["pl::m2"].finish(0)
    progress = await coordinator.wait_finished("pl", timeout=1)
    assert (progress.total, progress.completed) == (1, 1)


@pytest.mark.asyncio
async def test_duplicate_batch_is_rejected(make_coordinator, out_dir):
    coordinator, _, _, _ = await make_coordinator()
    await coordinator.submit_batch(make_batch(out_dir, count=1))
    with pytest.raises(JobConflictError):
        await coordinator.submit_batch(make_batch(out_dir, count=1))


@pytest.mark.asyncio
async def test_wait_finished_times_out(make_coordinator, out_dir):
    coordinator, _, _, _ = await make_coordinator()
    await coordinator.submit_batch(make_batch(out_dir, count=1))
    with pytest.raises(asyncio.TimeoutError):
        await coordinator.wait_finished("pl", timeout=0.05)
    assert await coordinator.wait_finished("missing") is None


@pytest.mark.asyncio
async def test_restore_resumes_waiting_members(make_coordinator, out_dir):
    persisted = make_batch(out_dir, count=2)
    store = MemoryStore(
        jobs=[make_job("pl::m1", out_dir, status=JobStatus.COMPLETED, group_id="pl")],
        batches=[persisted],
    )
    coordinator, engine, supervisor, _ = await make_coordinator(batch_gate=1, store=store)

    [batch] = await coordinator.restore()
    await settle()

    assert batch.id == "pl"
    assert supervisor.started == ["pl::m2"]
    assert coordinator.job_id_for("pl", "m2") == "pl::m2"

    supervisor.handles["pl::m2"].finish(0)
    progress = await coordinator.wait_finished("pl", timeout=1)
    assert progress.completed == 2


@pytest.mark.asyncio
async def test_remove_batch_forgets_history(make_coordinator, out_dir):
    coordinator, engine, supervisor, store = await make_coordinator(max_concurrent=2)
    await coordinator.submit_batch(make_batch(out_dir, count=2))
    await settle()
    supervisor.handles["pl::m1"].finish(0)
    await settle()

    assert await coordinator.remove_batch("pl")
    await settle()

    assert engine.jobs() == []
    assert coordinator.get("pl") is None
    assert store.batches == []
    assert not await coordinator.remove_batch("pl")


@pytest.mark.asyncio
async def test_removed_members_stay_removed_in_later_sessions(
    make_engine, make_coordinator, out_dir
):
    coordinator, engine, supervisor, store = await make_coordinator()
    await coordinator.submit_batch(make_batch(out_dir, count=2))
    await settle()
    for job_id in ("pl::m1", "pl::m2"):
        supervisor.handles[job_id].finish(0)
    await coordinator.wait_finished("pl", timeout=1)
    assert all(member.submitted for member in store.batches[0].members)
    await coordinator.close()
    await engine.shutdown()

    # A session that only edits the queue, with no coordinator watching events
    engine, supervisor, _ = make_engine(store=store)
    await engine.start(admit=False)
    await BatchCoordinator(engine, store).restore(feed=False)
    for job in engine.jobs():
        await engine.remove(job.id)
    await engine.shutdown()
    assert store.jobs == []
    assert supervisor.started == []

    coordinator, engine, supervisor, _ = await make_coordinator(store=store)
    [batch] = await coordinator.restore()
    await settle()

    assert supervisor.started == []
    assert all(member.removed for member in batch.members)
    assert all(member.removed for member in store.batches[0].members)
    assert coordinator.progress("pl").total == 0


@pytest.mark.asyncio
async def test_restore_without_feeding_spawns_nothing(make_engine, out_dir):
    store = MemoryStore(batches=[make_batch(out_dir, count=2)])
    engine, supervisor, _ = make_engine(store=store)
    await engine.start(admit=False)

    await BatchCoordinator(engine, store).restore(feed=False)
    await settle()

    assert supervisor.started == []
    assert engine.jobs() == []
    assert not any(member.submitted for member in store.batches[0].members)
    await engine.shutdown()


@pytest.mark.asyncio
async def test_retried_member_finishes_batch_again(make_coordinator, out_dir):
    coordinator, engine, supervisor, _ = await make_coordinator()
    subscription = coordinator.events.subscribe()
    await coordinator.submit_batch(make_batch(out_dir, count=1))
    await settle()
    supervisor.handles["pl::m1"].finish(1, ["ERROR: HTTP Error 404: Not Found"])
    progress = await coordinator.wait_finished("pl", timeout=1)
    assert progress.failed == 1

    await engine.retry("pl::m1")
    await settle()
    waiter = asyncio.create_task(coordinator.wait_finished("pl", timeout=1))
    await settle()
    supervisor.handles["pl::m1"].finish(0)

    progress = await waiter
    assert (progress.completed, progress.failed) == (1, 0)
    assert len(finished_events(subscription)) == 2


@pytest.mark.asyncio
async def test_retried_member_holds_a_gate_slot(make_coordinator, out_dir):
    coordinator, engine, supervisor, _ = await make_coordinator(max_concurrent=3, batch_gate=1)
    await coordinator.submit_batch(make_batch(out_dir, count=3))
    await settle()
    supervisor.handles["pl::m1"].finish(1, ["ERROR: HTTP Error 404: Not Found"])
    await settle()
    assert supervisor.started == ["pl::m1", "pl::m2"]

    await engine.retry("pl::m1")
    await settle()
    assert supervisor.started == ["pl::m1", "pl::m2", "pl::m1"]

    supervisor.handles["pl::m2"].finish(0)
    await settle()
    assert engine.get("pl::m3") is None

    supervisor.handles["pl::m1"].finish(0)
    await settle()
    assert supervisor.started[-1] == "pl::m3"

    supervisor.handles["pl::m3"].finish(0)
    progress = await coordinator.wait_finished("pl", timeout=1)
    assert (progress.completed, progress.failed) == (3, 0)
