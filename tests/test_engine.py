import asyncio

import pytest

from conftest import MemoryStore, make_job, settle
from dlqueue.core.engine import DownloadEngine
from dlqueue.core.events import EventKind
from dlqueue.exceptions import InvalidJobError, JobConflictError
from dlqueue.media.binaries import BinaryResolver
from dlqueue.media.commands import CommandBuilder
from dlqueue.media.supervisor import ProcessSupervisor
from dlqueue.models.config import EngineConfig
from dlqueue.models.job import JobStatus
from dlqueue.storage.log_sink import LogSink


def drain(subscription):
    events = []
    while not subscription.queue.empty():
        event = subscription.queue.get_nowait()
        if event is not None:
            events.append(event)
    return events


@pytest.mark.asyncio
async def test_active_jobs_never_exceed_limit(make_engine, out_dir):
    engine, supervisor, _ = make_engine(max_concurrent=2)
    for i in range(5):
        await engine.submit(make_job(f"job{i}", out_dir))
    await settle()

    assert engine.active_count == 2
    assert supervisor.started == ["job0", "job1"]

    for _ in range(5):
        running = supervisor.running_ids
        assert len(running) <= 2
        supervisor.handles[running[0]].finish(0)
        await settle()

    await engine.wait_idle(timeout=1)
    assert supervisor.peak == 2
    assert supervisor.started == [f"job{i}" for i in range(5)]
    assert all(job.status is JobStatus.COMPLETED for job in engine.jobs())


@pytest.mark.asyncio
async def test_submit_rejects_duplicate_id(make_engine, out_dir):
    engine, _, _ = make_engine()
    await engine.submit(make_job("a", out_dir))
    with pytest.raises(JobConflictError):
        await engine.submit(make_job("a", out_dir))


@pytest.mark.asyncio
async def test_submit_rejects_invalid_job(make_engine, out_dir):
    engine, _, _ = make_engine()
    with pytest.raises(InvalidJobError):
        await engine.submit({"id": "x", "source_locator": "", "output_directory": str(out_dir)})
    with pytest.raises(InvalidJobError):
        await engine.submit(
            {
                "id": "y",
                "source_locator": "https://example.com/v",
                "output_directory": str(out_dir),
                "output_base_name": "sub/dir",
            }
        )


@pytest.mark.asyncio
async def test_cancel_pending_job_never_spawns(make_engine, out_dir):
    engine, supervisor, store = make_engine(max_concurrent=1)
    subscription = engine.subscribe([EventKind.REMOVED])
    await engine.submit(make_job("a", out_dir))
    await engine.submit(make_job("b", out_dir))
    await settle()

    await engine.cancel("b")
    supervisor.handles["a"].finish(0)
    await engine.wait_idle(timeout=1)

    assert supervisor.started == ["a"]
    assert engine.get("b") is None
    assert [job.id for job in store.jobs] == ["a"]
    assert [e.job_id for e in drain(subscription)] == ["b"]


@pytest.mark.asyncio
async def test_cancel_active_job_terminates_then_deletes_partials(make_engine, out_dir):
    engine, supervisor, _ = make_engine()
    subscription = engine.subscribe()
    await engine.submit(make_job("clip", out_dir))
    await settle()

    for name in ("clip.mp4.part", "clip.f137.mp4", "clip.mp4", "clip.temp.mp4", "clipper.mp4"):
        (out_dir / name).write_text("x")

    await engine.cancel("clip")

    handle = supervisor.handles["clip"]
    assert handle.terminated
    assert handle.terminate_calls == 1
    assert sorted(p.name for p in out_dir.iterdir()) == ["clipper.mp4"]
    assert engine.get("clip") is None

    events = drain(subscription)
    assert events[-1].kind is EventKind.REMOVED
    assert not any(e.kind in (EventKind.COMPLETED, EventKind.ERROR) for e in events)
    await engine.wait_idle(timeout=1)


@pytest.mark.asyncio
async def test_cancel_paused_job_keeps_finished_media(make_engine, out_dir):
    engine, supervisor, _ = make_engine()
    await engine.submit(make_job("song", out_dir))
    await settle()
    await engine.pause("song")
    (out_dir / "song.webm.part").write_text("x")
    (out_dir / "song.mp3").write_text("x")

    await engine.cancel("song")

    assert [p.name for p in out_dir.iterdir()] == ["song.mp3"]


@pytest.mark.asyncio
async def test_cancel_twice_emits_single_removed(make_engine, out_dir):
    engine, supervisor, _ = make_engine()
    subscription = engine.subscribe([EventKind.REMOVED])
    await engine.submit(make_job("a", out_dir))
    await settle()

    await asyncio.gather(engine.cancel("a"), engine.cancel("a"))
    await engine.cancel("a")

    assert len(drain(subscription)) == 1
    assert supervisor.handles["a"].terminate_calls == 1


@pytest.mark.asyncio
async def test_unknown_ids_are_noops(make_engine):
    engine, _, _ = make_engine()
    await engine.start()
    await engine.pause("missing")
    await engine.resume("missing")
    await engine.cancel("missing")
    assert engine.jobs() == []


@pytest.mark.asyncio
async def test_cancel_finished_job_is_noop(make_engine, out_dir):
    engine, supervisor, _ = make_engine()
    await engine.submit(make_job("a", out_dir))
    await settle()
    supervisor.handles["a"].finish(0)
    await engine.wait_idle(timeout=1)

    await engine.cancel("a")
    assert engine.get("a").status is JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_pause_and_resume_keep_fifo_position(make_engine, out_dir):
    engine, supervisor, _ = make_engine(max_concurrent=1)
    for job_id in ("a", "b", "c"):
        await engine.submit(make_job(job_id, out_dir))
    await settle()

    await engine.pause("a")
    await settle()
    assert engine.get("a").status is JobStatus.PAUSED
    assert supervisor.handles["a"].terminated
    assert supervisor.started == ["a", "b"]

    await engine.resume("a")
    assert engine.get("a").status is JobStatus.PENDING
    supervisor.handles["b"].finish(0)
    await settle()

    assert supervisor.started == ["a", "b", "a"]
    assert engine.get("c").status is JobStatus.PENDING


@pytest.mark.asyncio
async def test_pause_pending_job(make_engine, out_dir):
    engine, supervisor, _ = make_engine(max_concurrent=1)
    await engine.submit(make_job("a", out_dir))
    await engine.submit(make_job("b", out_dir))
    await settle()
    await engine.pause("b")
    supervisor.handles["a"].finish(0)
    await engine.wait_idle(timeout=1)

    assert supervisor.started == ["a"]
    assert engine.get("b").status is JobStatus.PAUSED


@pytest.mark.asyncio
async def test_startup_recovers_running_jobs_as_paused(make_engine, out_dir):
    store = MemoryStore(
        jobs=[
            make_job("a", out_dir, status=JobStatus.DOWNLOADING, progress="40", speed="1MiB/s"),
            make_job("b", out_dir, status=JobStatus.CONVERTING, progress="Converting"),
            make_job("c", out_dir, status=JobStatus.COMPLETED, progress="100"),
        ]
    )
    engine, supervisor, _ = make_engine(store=store)

    jobs = await engine.start()
    await settle()

    assert [job.status for job in jobs] == [
        JobStatus.PAUSED,
        JobStatus.PAUSED,
        JobStatus.COMPLETED,
    ]
    assert jobs[0].speed is None
    assert supervisor.started == []
    assert [job.status for job in store.jobs][:2] == [JobStatus.PAUSED, JobStatus.PAUSED]


@pytest.mark.asyncio
async def test_progress_lines_update_job_and_converting_is_sticky(make_engine, out_dir):
    engine, supervisor, _ = make_engine()
    subscription = engine.subscribe([EventKind.PROGRESS])
    await engine.submit(make_job("v", out_dir))
    await settle()
    handle = supervisor.handles["v"]

    handle.emit("[download]  45.2% of 10.00MiB at 1.50MiB/s ETA 00:05")
    job = engine.get("v")
    assert job.progress == "45.2"
    assert job.speed == "1.50MiB/s"
    assert job.eta == "00:05"
    assert job.total_size == "10.00MiB"

    handle.emit('[Merger] Merging formats into "v.mp4"')
    assert engine.get("v").status is JobStatus.CONVERTING
    assert engine.get("v").progress == "Converting"

    handle.emit("[download] 100.0% of 2.00MiB at 3.00MiB/s ETA 00:00")
    assert engine.get("v").status is JobStatus.CONVERTING
    assert engine.get("v").progress == "Converting"

    handle.finish(0)
    await engine.wait_idle(timeout=1)
    job = engine.get("v")
    assert job.status is JobStatus.COMPLETED
    assert job.progress == "100"

    progress = [e.progress for e in drain(subscription) if e.job_id == "v"]
    assert progress == ["0", "0", "45.2", "Converting"]


@pytest.mark.asyncio
async def test_failed_exit_is_classified_and_keeps_log(make_engine, out_dir):
    engine, supervisor, _ = make_engine()
    subscription = engine.subscribe([EventKind.ERROR])
    await engine.submit(make_job("a", out_dir))
    await settle()

    supervisor.handles["a"].finish(
        1, ["ERROR: [youtube] a: Sign in to confirm you're not a bot"]
    )
    await engine.wait_idle(timeout=1)

    job = engine.get("a")
    assert job.status is JobStatus.ERROR
    assert job.error_category == "robot-check"
    assert job.last_error
    [event] = drain(subscription)
    assert event.error_category == "robot-check"
    assert event.log_path and event.log_path.endswith("download_a.log")


@pytest.mark.asyncio
async def test_launch_failure_marks_error_and_queue_continues(make_engine, out_dir):
    engine, supervisor, _ = make_engine(max_concurrent=1)
    supervisor.fail_ids.add("a")
    await engine.submit(make_job("a", out_dir))
    await engine.submit(make_job("b", out_dir))
    await settle()

    job = engine.get("a")
    assert job.status is JobStatus.ERROR
    assert job.error_category == "launch-failure"
    assert supervisor.started == ["b"]
    assert engine.get("b").status is JobStatus.DOWNLOADING


@pytest.mark.asyncio
async def test_exit_and_cancel_race_has_single_outcome(make_engine, out_dir):
    engine, supervisor, _ = make_engine()
    subscription = engine.subscribe()
    await engine.submit(make_job("a", out_dir))
    await settle()

    supervisor.handles["a"].finish(0)
    await engine.cancel("a")
    await settle()

    terminal = [
        e.kind
        for e in drain(subscription)
        if e.kind in (EventKind.COMPLETED, EventKind.ERROR, EventKind.REMOVED)
    ]
    assert len(terminal) == 1


@pytest.mark.asyncio
async def test_cancel_by_association_and_prefix(make_engine, out_dir):
    engine, supervisor, _ = make_engine(max_concurrent=3)
    await engine.submit(make_job("pl::1", out_dir, output_base_name="01", group_id="pl"))
    await engine.submit(make_job("pl::2", out_dir, output_base_name="02", group_id="pl"))
    await engine.submit(make_job("solo", out_dir))
    await engine.submit(make_job("other::1", out_dir, output_base_name="x"))
    await settle()

    assert await engine.cancel_by_association("pl") == 2
    assert await engine.cancel_by_prefix("other::") == 1
    assert [job.id for job in engine.jobs()] == ["solo"]


@pytest.mark.asyncio
async def test_remove_and_retry(make_engine, out_dir):
    engine, supervisor, _ = make_engine()
    await engine.submit(make_job("a", out_dir))
    await engine.submit(make_job("b", out_dir))
    await settle()
    supervisor.handles["a"].finish(2, ["ERROR: HTTP Error 404: Not Found"])
    supervisor.handles["b"].finish(0)
    await engine.wait_idle(timeout=1)
    assert engine.get("a").error_category == "not-found"

    retried = await engine.retry("a")
    assert retried.status in (JobStatus.PENDING, JobStatus.DOWNLOADING)
    await settle()
    assert supervisor.started == ["a", "b", "a"]
    assert engine.get("a").last_error is None

    await engine.remove("b")
    assert engine.get("b") is None
    assert await engine.retry("b") is None
    await engine.shutdown()


@pytest.mark.asyncio
async def test_shutdown_persists_running_jobs_as_paused(make_engine, out_dir):
    engine, supervisor, store = make_engine()
    await engine.submit(make_job("a", out_dir))
    await settle()

    await engine.shutdown()

    assert supervisor.handles["a"].terminated
    assert engine.active_count == 0
    assert [job.status for job in store.jobs] == [JobStatus.PAUSED]


@pytest.mark.asyncio
async def test_launch_failure_leaves_no_log_reference(make_engine, out_dir, tmp_path):
    engine, supervisor, _ = make_engine()
    subscription = engine.subscribe([EventKind.ERROR])
    supervisor.fail_ids.add("a")
    await engine.submit(make_job("a", out_dir))
    await settle()

    [event] = drain(subscription)
    assert event.log_path is None
    assert engine.get("a").log_path is None
    assert not (tmp_path / "logs" / "download_a.log").exists()


@pytest.mark.asyncio
async def test_missing_binary_fails_job_without_log(out_dir, tmp_path):
    resolver = BinaryResolver(overrides={"yt-dlp": str(tmp_path / "missing" / "yt-dlp")})
    engine = DownloadEngine(
        MemoryStore(),
        ProcessSupervisor(resolver),
        CommandBuilder(EngineConfig()),
        log_sink=LogSink(tmp_path / "logs"),
    )
    subscription = engine.subscribe([EventKind.ERROR])
    await engine.submit(make_job("a", out_dir))
    await engine.wait_idle(timeout=1)

    [event] = drain(subscription)
    assert event.error_category == "launch-failure"
    assert event.log_path is None
    assert list((tmp_path / "logs").iterdir()) == []
