"""
Expands playlist batches into engine jobs and tracks their completion.

The coordinator never touches processes. It submits one job per selected
member, optionally holding members back behind a per-batch gate, and derives
each batch's counters from the engine's job statuses whenever a member job
finishes, disappears or is queued again.
"""

import asyncio
import logging
from collections import deque

from dlqueue.exceptions import JobConflictError
from dlqueue.media.commands import infer_kind
from dlqueue.models.batch import Batch, BatchMember, BatchProgress, split_job_id
from dlqueue.models.job import Job, JobStatus
from dlqueue.storage.job_store import JobStore
from dlqueue.utils.path import member_filename

from .engine import DownloadEngine
from .events import BatchEvent, EventBus, EventKind, JobEvent, Subscription

log = logging.getLogger(__name__)

_WATCHED = (EventKind.PROGRESS, EventKind.COMPLETED, EventKind.ERROR, EventKind.REMOVED)


class BatchCoordinator:
    """
    Feeds batch members into a DownloadEngine and reports batch progress.

    Args:
        engine: The engine that runs every member job.
        store: Persists batch definitions next to the job queue.
        batch_gate: At most this many members of one batch are submitted and
            unfinished at a time. None leaves throttling to the engine alone.
    """

    def __init__(
        self,
        engine: DownloadEngine,
        store: JobStore,
        batch_gate: int | None = None,
        events: EventBus | None = None,
    ):
        if batch_gate is not None and batch_gate < 1:
            raise ValueError("batch_gate must be at least 1 or None.")
        self.engine = engine
        self.store = store
        self.batch_gate = batch_gate
        self.events = events or EventBus()

        self._batches: dict[str, Batch] = {}
        # (batch_id, member_id) -> job_id, and the reverse lookup
        self._associations: dict[tuple[str, str], str] = {}
        self._members_by_job: dict[str, tuple[str, str]] = {}
        self._waiting: dict[str, deque[str]] = {}
        self._in_flight: dict[str, set[str]] = {}
        self._finished_reported: set[str] = set()
        self._lock = asyncio.Lock()
        self._restored = False
        self._subscription: Subscription | None = None
        self._pump_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Begins observing engine events."""
        if self._pump_task is not None:
            return
        self._subscription = self.engine.subscribe(_WATCHED)
        self._pump_task = asyncio.create_task(self._pump(), name="batch-coordinator")

    async def close(self) -> None:
        """Stops observing engine events."""
        if self._subscription is not None:
            self._subscription.close()
        if self._pump_task is not None:
            await asyncio.gather(self._pump_task, return_exceptions=True)
        self._subscription = None
        self._pump_task = None

    async def restore(self, feed: bool = True) -> list[Batch]:
        """
        Reloads persisted batches and resumes feeding any members that were
        still waiting behind the gate. Call after the engine has started.

        Args:
            feed: Whether to queue members that were never submitted.
                Sessions that only edit the queue pass False and leave them
                for the next session that downloads.
        """
        if self._restored:
            return self.batches()
        self._restored = True
        loaded = await self.store.load_batches()
        async with self._lock:
            dropped = 0
            for batch in loaded:
                if batch.id in self._batches:
                    continue
                self._register(batch)
                waiting = self._waiting[batch.id]
                in_flight = self._in_flight[batch.id]
                for member in self._submission_order(batch):
                    job = self.engine.get(batch.job_id_for(member))
                    if job is not None:
                        if not job.status.is_terminal:
                            in_flight.add(member.member_id)
                    elif member.submitted:
                        # Its job was removed while no coordinator was watching
                        member.removed = True
                        dropped += 1
                    elif feed and not batch.cancelled:
                        waiting.append(member.member_id)
                if self.progress(batch.id).finished:
                    self._finished_reported.add(batch.id)
            if dropped:
                log.debug(f"Marked {dropped} removed playlist item(s) while restoring.")
                await self._persist()
            for batch in loaded:
                await self._feed(batch)
        if loaded:
            log.debug(f"Restored {len(loaded)} batch(es).")
        return self.batches()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, batch_id: str) -> Batch | None:
        batch = self._batches.get(batch_id)
        return batch.model_copy(deep=True) if batch is not None else None

    def batches(self) -> list[Batch]:
        return [batch.model_copy(deep=True) for batch in self._batches.values()]

    def job_id_for(self, batch_id: str, member_id: str) -> str | None:
        return self._associations.get((batch_id, member_id))

    def progress(self, batch_id: str) -> BatchProgress | None:
        """
        Derives a batch's counters from the current status of its member jobs.

        Deselected and individually removed members are not counted. A member
        still waiting behind the gate counts as unfinished.
        """
        batch = self._batches.get(batch_id)
        if batch is None:
            return None
        completed = failed = 0
        counted = batch.counted_members
        for member in counted:
            job = self.engine.get(batch.job_id_for(member))
            if job is None:
                continue
            if job.status is JobStatus.COMPLETED:
                completed += 1
            elif job.status is JobStatus.ERROR:
                failed += 1
        return BatchProgress(
            batch_id=batch_id, total=len(counted), completed=completed, failed=failed
        )

    async def wait_finished(
        self, batch_id: str, timeout: float | None = None
    ) -> BatchProgress | None:
        """Waits until every counted member of the batch has completed or failed."""
        progress = self.progress(batch_id)
        if progress is None or progress.finished:
            return progress
        event = await self.events.wait_for(
            lambda e: e.batch_id == batch_id,
            kinds=[EventKind.BATCH_FINISHED],
            timeout=timeout,
        )
        return event.progress

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def submit_batch(self, batch: Batch) -> BatchProgress:
        """
        Registers a batch and submits its selected members in index order.

        Raises:
            JobConflictError: If a batch with the same id already exists.
        """
        if not self._restored:
            await self.restore()
        batch = batch.model_copy(deep=True)
        async with self._lock:
            if batch.id in self._batches:
                raise JobConflictError(f"A batch with id '{batch.id}' already exists.")
            self._register(batch)
            order = self._submission_order(batch)
            self._waiting[batch.id].extend(m.member_id for m in order)
            await self._persist()
            log.info(
                f"Queued playlist [bold]{batch.title}[/bold] "
                f"({len(order)} of {len(batch.members)} item(s) selected)."
            )
            await self._feed(batch)
            progress = self.progress(batch.id)
            if progress.finished:
                self._report_finished(batch.id, progress)
            return progress

    async def cancel_batch(self, batch_id: str) -> int:
        """
        Cancels every unfinished member job of a batch and drops members
        still waiting to be submitted. Returns how many jobs were cancelled.
        """
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                return 0
            batch.cancelled = True
            waiting = self._waiting.get(batch_id)
            while waiting:
                member = batch.member(waiting.popleft())
                if member is not None:
                    member.removed = True
            await self._persist()

        cancelled = await self.engine.cancel_by_association(batch_id)
        log.info(f"Cancelled playlist '{batch_id}' ({cancelled} job(s)).")
        return cancelled

    async def remove_batch(self, batch_id: str) -> bool:
        """Cancels what is still running, then forgets the batch and its job history."""
        if batch_id not in self._batches:
            return False
        await self.cancel_batch(batch_id)
        async with self._lock:
            batch = self._batches.pop(batch_id, None)
            if batch is None:
                return False
            for member in batch.members:
                job_id = self._associations.pop((batch_id, member.member_id), None)
                if job_id:
                    self._members_by_job.pop(job_id, None)
            self._waiting.pop(batch_id, None)
            self._in_flight.pop(batch_id, None)
            self._finished_reported.discard(batch_id)
            await self._persist()
        for member in batch.members:
            await self.engine.remove(batch.job_id_for(member))
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _register(self, batch: Batch) -> None:
        self._batches[batch.id] = batch
        self._waiting[batch.id] = deque()
        self._in_flight[batch.id] = set()
        for member in batch.members:
            job_id = batch.job_id_for(member)
            self._associations[(batch.id, member.member_id)] = job_id
            self._members_by_job[job_id] = (batch.id, member.member_id)

    @staticmethod
    def _submission_order(batch: Batch) -> list[BatchMember]:
        return sorted(
            (m for m in batch.members if m.selected and not m.removed),
            key=lambda m: m.index,
        )

    def _build_job(self, batch: Batch, member: BatchMember) -> Job:
        return Job(
            id=batch.job_id_for(member),
            source_locator=member.source_locator,
            output_directory=batch.output_directory,
            output_base_name=member_filename(member.index, member.title),
            kind=infer_kind(member.source_locator),
            media=member.media or batch.media,
            group_id=batch.id,
        )

    async def _feed(self, batch: Batch) -> None:
        """Submits waiting members while the batch gate has room. Caller holds the lock."""
        if batch.cancelled:
            return
        waiting = self._waiting[batch.id]
        in_flight = self._in_flight[batch.id]
        fed = False
        while waiting and (self.batch_gate is None or len(in_flight) < self.batch_gate):
            member = batch.member(waiting.popleft())
            if member is None or member.removed:
                continue
            member.submitted = True
            fed = True
            try:
                await self.engine.submit(self._build_job(batch, member))
            except JobConflictError:
                log.warning(
                    f"[yellow]Job for '{member.title}' already exists; not resubmitting.[/yellow]"
                )
                continue
            in_flight.add(member.member_id)
        if fed:
            await self._persist()

    def _lookup(self, job_id: str) -> tuple[str, str] | None:
        if key := self._members_by_job.get(job_id):
            return key
        key = split_job_id(job_id)
        if key and key[0] in self._batches:
            return key
        return None

    async def _pump(self) -> None:
        assert self._subscription is not None
        async for event in self._subscription:
            if not isinstance(event, JobEvent):
                continue
            # Only a return to the queue matters among progress updates
            if event.kind is EventKind.PROGRESS and event.status is not JobStatus.PENDING:
                continue
            try:
                await self._on_job_event(event)
            except Exception:
                log.exception(f"Failed to update batch state for job '{event.job_id}'")

    async def _on_job_event(self, event: JobEvent) -> None:
        key = self._lookup(event.job_id)
        if key is None:
            return
        batch_id, member_id = key
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                return
            if event.kind is EventKind.PROGRESS:
                # Queued again (retry or resume); it holds a gate slot until it finishes
                self._in_flight[batch_id].add(member_id)
            else:
                self._in_flight[batch_id].discard(member_id)
            if event.kind is EventKind.REMOVED:
                member = batch.member(member_id)
                if member is not None and not member.removed:
                    member.removed = True
                    await self._persist()
            await self._feed(batch)

            progress = self.progress(batch_id)
            self.events.publish(BatchEvent(EventKind.BATCH_PROGRESS, batch_id, progress))
            if progress.finished:
                self._report_finished(batch_id, progress)
            else:
                self._finished_reported.discard(batch_id)

    def _report_finished(self, batch_id: str, progress: BatchProgress) -> None:
        if batch_id in self._finished_reported:
            return
        self._finished_reported.add(batch_id)
        log.debug(
            f"Batch '{batch_id}' finished: {progress.completed} completed, "
            f"{progress.failed} failed."
        )
        self.events.publish(BatchEvent(EventKind.BATCH_FINISHED, batch_id, progress))

    async def _persist(self) -> None:
        await self.store.save_batches(list(self._batches.values()))
