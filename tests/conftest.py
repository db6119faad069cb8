import asyncio
from pathlib import Path

import pytest

from dlqueue.core.engine import DownloadEngine
from dlqueue.exceptions import LaunchFailure
from dlqueue.media.commands import CommandBuilder
from dlqueue.media.supervisor import ExitStatus
from dlqueue.models.config import EngineConfig
from dlqueue.models.job import Job
from dlqueue.storage.log_sink import LogSink


class MemoryStore:
    """In-memory stand-in for JobStore."""

    def __init__(self, jobs=None, batches=None):
        self.jobs = [job.model_copy(deep=True) for job in jobs or []]
        self.batches = [batch.model_copy(deep=True) for batch in batches or []]
        self.saves = 0

    async def load(self):
        return [job.model_copy(deep=True) for job in self.jobs]

    async def save(self, jobs):
        self.jobs = [job.model_copy(deep=True) for job in jobs]
        self.saves += 1
        return True

    async def load_batches(self):
        return [batch.model_copy(deep=True) for batch in self.batches]

    async def save_batches(self, batches):
        self.batches = [batch.model_copy(deep=True) for batch in batches]
        return True


class FakeHandle:
    """A controllable ProcessHandle: tests emit lines and decide when it exits."""

    def __init__(self, job_id, on_line):
        self.job_id = job_id
        self.on_line = on_line
        self.terminated = False
        self.terminate_calls = 0
        self._done = asyncio.get_running_loop().create_future()

    @property
    def running(self):
        return not self._done.done()

    def emit(self, line, stream="stdout"):
        self.on_line(stream, line)

    def finish(self, returncode=0, stderr=()):
        if not self._done.done():
            self._done.set_result(ExitStatus(returncode, list(stderr), False))

    async def wait(self):
        return await asyncio.shield(self._done)

    async def terminate(self):
        self.terminate_calls += 1
        if not self._done.done():
            self.terminated = True
            self._done.set_result(ExitStatus(-15, [], True))
        await self.wait()


class FakeSupervisor:
    def __init__(self):
        self.handles: dict[str, FakeHandle] = {}
        self.started: list[str] = []
        self.specs = {}
        self.fail_ids: set[str] = set()
        self.peak = 0

    @property
    def running_ids(self):
        return [job_id for job_id, h in self.handles.items() if h.running]

    async def start(self, spec, job_id, on_line, job_log=None):
        if job_id in self.fail_ids:
            raise LaunchFailure("'yt-dlp' was not found on PATH.")
        handle = FakeHandle(job_id, on_line)
        self.handles[job_id] = handle
        self.started.append(job_id)
        self.specs[job_id] = spec
        self.peak = max(self.peak, len(self.running_ids))
        return handle


async def settle(rounds: int = 20):
    """Lets queued tasks and to_thread calls run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0.005)


def make_job(job_id: str, out_dir: Path, **overrides) -> Job:
    values = {
        "id": job_id,
        "source_locator": f"https://www.youtube.com/watch?v={job_id}",
        "output_directory": str(out_dir),
        "output_base_name": job_id,
    }
    values.update(overrides)
    return Job(**values)


@pytest.fixture
def out_dir(tmp_path):
    path = tmp_path / "out"
    path.mkdir()
    return path


@pytest.fixture
def make_engine(tmp_path):
    def _make(max_concurrent=2, store=None):
        store = store if store is not None else MemoryStore()
        supervisor = FakeSupervisor()
        engine = DownloadEngine(
            store,
            supervisor,
            CommandBuilder(EngineConfig()),
            log_sink=LogSink(tmp_path / "logs"),
            max_concurrent=max_concurrent,
        )
        return engine, supervisor, store

    return _make
