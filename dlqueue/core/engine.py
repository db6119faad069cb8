"""
The single-job engine: a FIFO queue of jobs, a fixed number of process slots,
and the per-job state machine that moves each job from pending to a terminal
state while its external process reports progress.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from dlqueue.exceptions import DlqueueError, InvalidJobError, JobConflictError, LaunchFailure
from dlqueue.media.commands import CommandBuilder, CommandSpec
from dlqueue.media.error_classifier import (
    ClassifiedError,
    ErrorCategory,
    classify_error,
    launch_failure,
)
from dlqueue.media.progress_parser import ParserState, parse_line
from dlqueue.media.supervisor import ExitStatus, ProcessHandle, ProcessSupervisor
from dlqueue.models.job import Job, JobKind, JobStatus
from dlqueue.storage.job_store import JobStore
from dlqueue.storage.log_sink import LogSink
from dlqueue.utils.path import create_dir, delete_partial_artifacts, find_output_file

from .events import EventBus, EventKind, JobEvent, Subscription

log = logging.getLogger(__name__)


@dataclass(eq=False)
class _Run:
    """Bookkeeping for one admitted attempt of a job."""

    job_id: str
    parser_state: ParserState = field(default_factory=ParserState)
    task: asyncio.Task | None = None
    handle: ProcessHandle | None = None
    spec: CommandSpec | None = None
    # Set by whoever performs the job's next transition out of the active state.
    # Exit handling, pause, cancel and shutdown all check it under the lock.
    claimed: bool = False
    stopping: bool = False


class DownloadEngine:
    """
    Runs jobs with at most ``max_concurrent`` external processes at a time.

    All queue and status mutation happens under one asyncio.Lock. Jobs are
    admitted in submission order; a resumed job keeps its original place.
    """

    def __init__(
        self,
        store: JobStore,
        supervisor: ProcessSupervisor,
        command_builder: CommandBuilder,
        log_sink: LogSink | None = None,
        max_concurrent: int = 3,
        events: EventBus | None = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1.")
        self.store = store
        self.supervisor = supervisor
        self.command_builder = command_builder
        self.log_sink = log_sink
        self.max_concurrent = max_concurrent
        self.events = events or EventBus()

        self._jobs: dict[str, Job] = {}
        self._active: dict[str, _Run] = {}
        self._removing: set[str] = set()
        self._lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()
        self._started = False
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, admit: bool = True) -> list[Job]:
        """
        Loads the persisted queue and recovers it after a restart.

        Jobs that were running when the previous process died come back as
        ``paused``; nothing is spawned for them until they are resumed.

        Args:
            admit: Whether to start persisted ``pending`` jobs right away.

        Returns:
            Copies of the recovered jobs, in queue order.
        """
        async with self._lock:
            if self._started:
                return self.jobs()
            recovered = 0
            for job in await self.store.load():
                if job.id in self._jobs:
                    log.warning(f"[yellow]Ignoring duplicate persisted job '{job.id}'.[/yellow]")
                    continue
                if job.status.is_active:
                    job.status = JobStatus.PAUSED
                    job.speed = None
                    job.eta = None
                    recovered += 1
                self._jobs[job.id] = job
            self._started = True
            if recovered:
                log.info(f"Recovered {recovered} interrupted job(s) as paused.")
            await self._persist()
            if admit:
                self._admit()
            self._update_idle()
            return self.jobs()

    async def shutdown(self) -> None:
        """
        Stops every running process and persists those jobs as ``paused`` so
        they can be resumed by the next session.
        """
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            runs = list(self._active.values())
            for run in runs:
                run.claimed = True
                job = self._jobs.get(run.job_id)
                if job is not None and job.status.is_active:
                    job.status = JobStatus.PAUSED
                    job.speed = None
                    job.eta = None

        if runs:
            log.info(f"Stopping {len(runs)} running download(s)...")
        await asyncio.gather(*(self._stop_run(run) for run in runs))

        async with self._lock:
            for run in runs:
                self._active.pop(run.job_id, None)
                if job := self._jobs.get(run.job_id):
                    self._publish(EventKind.PROGRESS, job)
            await self._persist()
            self._update_idle()

    async def _ensure_started(self) -> None:
        if not self._started:
            await self.start()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    def jobs(self) -> list[Job]:
        return [job.model_copy(deep=True) for job in self._jobs.values()]

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, kinds=None) -> Subscription:
        return self.events.subscribe(kinds)

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Waits until no job is running or waiting for a slot."""
        await asyncio.wait_for(self._idle.wait(), timeout)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def submit(self, job: Job | dict[str, Any]) -> Job:
        """
        Adds a job to the end of the queue.

        Raises:
            InvalidJobError: If the job data does not validate.
            JobConflictError: If a job with the same id is already known.
        """
        try:
            new_job = (
                Job.model_validate(job)
                if isinstance(job, dict)
                else Job.model_validate(job.model_dump())
            )
        except ValidationError as e:
            raise InvalidJobError(f"Invalid job: {e}") from e

        await self._ensure_started()
        async with self._lock:
            if self._closed:
                raise DlqueueError("The engine has been shut down.")
            if new_job.id in self._jobs or new_job.id in self._removing:
                raise JobConflictError(f"A job with id '{new_job.id}' already exists.")
            new_job.status = JobStatus.PENDING
            new_job.reset_progress()
            new_job.log_path = None
            self._jobs[new_job.id] = new_job
            log.debug(f"Queued job '{new_job.id}' ({new_job.kind.value}).")
            await self._persist()
            self._publish(EventKind.PROGRESS, new_job)
            self._admit()
            self._update_idle()
            return new_job.model_copy(deep=True)

    async def pause(self, job_id: str) -> None:
        """Stops a running or waiting job, keeping it and its partial files."""
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job_id in self._removing:
                return
            if job.status is JobStatus.PENDING:
                job.status = JobStatus.PAUSED
                await self._persist()
                self._publish(EventKind.PROGRESS, job)
                self._update_idle()
                return
            if not job.status.is_active:
                return
            run = self._active.get(job_id)
            if run is not None:
                run.claimed = True
            job.status = JobStatus.PAUSED
            job.speed = None
            job.eta = None

        if run is not None:
            await self._stop_run(run)

        async with self._lock:
            if run is not None and self._active.get(job_id) is run:
                del self._active[job_id]
            if job_id in self._jobs:
                await self._persist()
                self._publish(EventKind.PROGRESS, job)
            self._admit()
            self._update_idle()

    async def resume(self, job_id: str) -> None:
        """Puts a paused job back into the queue at its original position."""
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PAUSED or job_id in self._removing:
                return
            job.status = JobStatus.PENDING
            await self._persist()
            self._publish(EventKind.PROGRESS, job)
            self._admit()
            self._update_idle()

    async def cancel(self, job_id: str) -> None:
        """
        Removes a job from the queue, killing its process and deleting the
        files it left behind. Completed and failed jobs are left alone.
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal or job_id in self._removing:
                return
            self._removing.add(job_id)
            run = self._active.get(job_id)
            was_active = run is not None
            if run is not None:
                run.claimed = True
            # Only jobs that ever had a process can have left files behind
            had_process = was_active or job.status is JobStatus.PAUSED

        try:
            if run is not None:
                await self._stop_run(run)
            if had_process:
                removed = await asyncio.to_thread(
                    delete_partial_artifacts,
                    Path(job.output_directory).expanduser(),
                    job.output_base_name,
                    was_active,
                )
                if removed:
                    log.debug(f"Removed {len(removed)} partial file(s) for job '{job_id}'.")
        finally:
            async with self._lock:
                self._removing.discard(job_id)
                if run is not None and self._active.get(job_id) is run:
                    del self._active[job_id]
                self._jobs.pop(job_id, None)
                await self._persist()
                self._publish(EventKind.REMOVED, job)
                self._admit()
                self._update_idle()
        log.debug(f"Cancelled job '{job_id}'.")

    async def cancel_by_prefix(self, prefix: str) -> int:
        """Cancels every unfinished job whose id starts with ``prefix``."""
        job_ids = [
            job.id
            for job in self._jobs.values()
            if job.id.startswith(prefix) and not job.status.is_terminal
        ]
        await asyncio.gather(*(self.cancel(job_id) for job_id in job_ids))
        return len(job_ids)

    async def cancel_by_association(self, group_id: str) -> int:
        """Cancels every unfinished job tagged with ``group_id``."""
        job_ids = [
            job.id
            for job in self._jobs.values()
            if job.group_id == group_id and not job.status.is_terminal
        ]
        await asyncio.gather(*(self.cancel(job_id) for job_id in job_ids))
        return len(job_ids)

    async def remove(self, job_id: str) -> None:
        """
        Drops a job from history. Finished jobs are simply forgotten;
        anything still queued or running is cancelled.
        """
        job = self._jobs.get(job_id)
        if job is None:
            return
        if not job.status.is_terminal:
            await self.cancel(job_id)
            return
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.status.is_terminal:
                return
            del self._jobs[job_id]
            await self._persist()
            self._publish(EventKind.REMOVED, job)

    async def retry(self, job_id: str) -> Job | None:
        """Resubmits a failed job as a fresh pending job at the end of the queue."""
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.ERROR or self._closed:
                return None
            del self._jobs[job_id]
            job.status = JobStatus.PENDING
            job.reset_progress()
            job.log_path = None
            self._jobs[job_id] = job
            await self._persist()
            self._publish(EventKind.PROGRESS, job)
            self._admit()
            self._update_idle()
            return job.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Scheduling (callers hold the lock)
    # ------------------------------------------------------------------

    def _admit(self) -> None:
        if self._closed:
            return
        while len(self._active) < self.max_concurrent:
            job = next(
                (
                    j
                    for j in self._jobs.values()
                    if j.status is JobStatus.PENDING
                    and j.id not in self._active
                    and j.id not in self._removing
                ),
                None,
            )
            if job is None:
                break
            job.status = JobStatus.DOWNLOADING
            job.reset_progress()
            run = _Run(job.id)
            self._active[job.id] = run
            run.task = asyncio.create_task(self._run_job(run), name=f"job-{job.id}")
            log.debug(f"Admitted job '{job.id}' ({len(self._active)}/{self.max_concurrent}).")
            self._publish(EventKind.PROGRESS, job)

    def _update_idle(self) -> None:
        busy = bool(self._active) or (
            not self._closed
            and any(
                j.status is JobStatus.PENDING and j.id not in self._removing
                for j in self._jobs.values()
            )
        )
        if busy:
            self._idle.clear()
        else:
            self._idle.set()

    async def _persist(self) -> None:
        await self.store.save(list(self._jobs.values()))

    def _publish(self, kind: EventKind, job: Job) -> None:
        self.events.publish(JobEvent.from_job(kind, job))

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def _run_job(self, run: _Run) -> None:
        job = self._jobs[run.job_id]
        job.log_path = None
        job_log = None
        try:
            await asyncio.to_thread(create_dir, Path(job.output_directory).expanduser())
            run.spec = self.command_builder.build(job)
            job_log = self.log_sink.open(job.id) if self.log_sink else None
            if run.stopping:
                return
            handle = await self.supervisor.start(
                run.spec, job.id, partial(self._on_line, run), job_log
            )
        except LaunchFailure as e:
            # The supervisor writes a log only once the executable was resolved
            if job_log is not None and job_log.path.exists():
                job.log_path = str(job_log.path)
            await self._finish_failed(run, launch_failure(str(e)))
            return
        except OSError as e:
            await self._finish_failed(
                run,
                ClassifiedError(
                    ErrorCategory.FILE_PERMISSION,
                    f"Cannot create the output directory: {e}",
                ),
            )
            return
        except Exception as e:
            log.exception(f"Unexpected error starting job '{run.job_id}'")
            await self._finish_failed(run, ClassifiedError(ErrorCategory.UNKNOWN, str(e)))
            return

        run.handle = handle
        if job_log is not None:
            job.log_path = str(job_log.path)
        if run.stopping:
            await handle.terminate()
            return
        exit_status = await handle.wait()
        await self._finish(run, exit_status)

    def _on_line(self, run: _Run, stream: str, line: str) -> None:
        if run.claimed:
            return
        job = self._jobs.get(run.job_id)
        if job is None or not job.status.is_active:
            return
        event = parse_line(line, run.parser_state, job.kind, stream)
        if event is None:
            return

        if event.status is JobStatus.CONVERTING:
            if job.status is JobStatus.CONVERTING:
                return
            job.status = JobStatus.CONVERTING
            job.speed = None
            job.eta = None
        elif job.status is JobStatus.CONVERTING:
            # Download percentages after the merge has begun are stale
            return

        job.progress = event.display_progress
        if event.speed:
            job.speed = event.speed
        if event.eta:
            job.eta = event.eta
        if event.total_size:
            job.total_size = event.total_size
        self._publish(EventKind.PROGRESS, job)

    async def _finish(self, run: _Run, exit_status: ExitStatus) -> None:
        async with self._lock:
            if run.claimed:
                return
            run.claimed = True
            self._active.pop(run.job_id, None)
            job = self._jobs.get(run.job_id)
            if job is None:
                return

            if exit_status.success:
                job.status = JobStatus.COMPLETED
                job.progress = "100"
                job.speed = None
                job.eta = "00:00"
                job.output_path = await self._locate_output(job, run.spec)
                if self.log_sink:
                    self.log_sink.discard(job.id)
                job.log_path = None
                log.debug(f"Job '{job.id}' completed.")
                kind = EventKind.COMPLETED
            else:
                classified = classify_error(exit_status.error_text(), exit_status.returncode)
                self._mark_error(job, classified)
                kind = EventKind.ERROR

            await self._persist()
            self._publish(kind, job)
            self._admit()
            self._update_idle()

    async def _finish_failed(self, run: _Run, classified: ClassifiedError) -> None:
        async with self._lock:
            if run.claimed:
                return
            run.claimed = True
            self._active.pop(run.job_id, None)
            job = self._jobs.get(run.job_id)
            if job is None:
                return
            self._mark_error(job, classified)
            await self._persist()
            self._publish(EventKind.ERROR, job)
            self._admit()
            self._update_idle()

    @staticmethod
    def _mark_error(job: Job, classified: ClassifiedError) -> None:
        job.status = JobStatus.ERROR
        job.speed = None
        job.eta = None
        job.last_error = classified.message
        job.error_category = classified.category.value
        log.debug(f"Job '{job.id}' failed ({classified.category.value}): {classified.message}")

    @staticmethod
    async def _locate_output(job: Job, spec: CommandSpec | None) -> str | None:
        if job.kind is JobKind.STREAM_REMUX and spec is not None:
            return spec.output_hint
        found = await asyncio.to_thread(
            find_output_file, Path(job.output_directory).expanduser(), job.output_base_name
        )
        return str(found) if found else None

    async def _stop_run(self, run: _Run) -> None:
        """Terminates a run's process and waits for its task to wind down."""
        run.stopping = True
        if run.handle is not None:
            await run.handle.terminate()
        if run.task is not None and run.task is not asyncio.current_task():
            await asyncio.gather(run.task, return_exceptions=True)
