"""
Typed lifecycle events and a fan-out event bus.

Publishing never blocks: each subscription owns an unbounded queue and
callback listeners are scheduled on the loop instead of being called inline,
so a slow consumer cannot stall job processing.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any

from dlqueue.models.batch import BatchProgress
from dlqueue.models.job import Job, JobStatus

log = logging.getLogger(__name__)


class EventKind(str, Enum):
    PROGRESS = "progress"
    COMPLETED = "completed"
    ERROR = "error"
    REMOVED = "removed"
    BATCH_PROGRESS = "batch-progress"
    BATCH_FINISHED = "batch-finished"


@dataclass(frozen=True)
class JobEvent:
    kind: EventKind
    job_id: str
    status: JobStatus | None = None
    progress: str | None = None
    speed: str | None = None
    eta: str | None = None
    total_size: str | None = None
    error: str | None = None
    error_category: str | None = None
    log_path: str | None = None
    output_path: str | None = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_job(cls, kind: EventKind, job: Job, **overrides: Any) -> "JobEvent":
        values = {
            "status": job.status,
            "progress": job.progress,
            "speed": job.speed,
            "eta": job.eta,
            "total_size": job.total_size,
            "error": job.last_error,
            "error_category": job.error_category,
            "log_path": job.log_path,
            "output_path": job.output_path,
        }
        values.update(overrides)
        return cls(kind=kind, job_id=job.id, **values)


@dataclass(frozen=True)
class BatchEvent:
    kind: EventKind
    batch_id: str
    progress: BatchProgress
    timestamp: float = field(default_factory=time.time)


Event = JobEvent | BatchEvent
Listener = Callable[[Event], Any]


class Subscription:
    """
    A queue-backed stream of events. Iterate it, or ``await get()``.
    Closing it (or leaving its ``with`` block) unsubscribes.
    """

    def __init__(self, bus: "EventBus", kinds: frozenset[EventKind] | None):
        self._bus = bus
        self.kinds = kinds
        self.queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self.closed = False

    def accepts(self, event: Event) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def _push(self, event: Event | None) -> None:
        if not self.closed:
            self.queue.put_nowait(event)

    async def get(self) -> Event | None:
        """Returns the next event, or None once the subscription is closed."""
        if self.closed and self.queue.empty():
            return None
        return await self.queue.get()

    def close(self) -> None:
        if not self.closed:
            self._bus._remove_subscription(self)
            self.queue.put_nowait(None)
            self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class EventBus:
    """Fans every published event out to all matching subscribers."""

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._listeners: list[tuple[Listener, frozenset[EventKind] | None]] = []
        self._listener_tasks: set[asyncio.Task] = set()

    @staticmethod
    def _kinds(kinds: Iterable[EventKind] | None) -> frozenset[EventKind] | None:
        return frozenset(kinds) if kinds is not None else None

    def subscribe(self, kinds: Iterable[EventKind] | None = None) -> Subscription:
        subscription = Subscription(self, self._kinds(kinds))
        self._subscriptions.append(subscription)
        return subscription

    def _remove_subscription(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_listener(
        self, listener: Listener, kinds: Iterable[EventKind] | None = None
    ) -> Callable[[], None]:
        """Registers a callback; returns a function that unregisters it."""
        entry = (listener, self._kinds(kinds))
        self._listeners.append(entry)

        def _remove() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _remove

    def publish(self, event: Event) -> None:
        for subscription in list(self._subscriptions):
            if subscription.accepts(event):
                subscription._push(event)

        if not self._listeners:
            return
        loop = asyncio.get_running_loop()
        for listener, kinds in list(self._listeners):
            if kinds is None or event.kind in kinds:
                loop.call_soon(self._invoke, listener, event)

    def _invoke(self, listener: Listener, event: Event) -> None:
        try:
            result = listener(event)
        except Exception as e:
            log.warning(f"Event listener {listener!r} failed on {event.kind.value}: {e}")
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._listener_tasks.add(task)
            task.add_done_callback(partial(self._listener_done, listener, event))

    def _listener_done(self, listener: Listener, event: Event, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            log.warning(f"Event listener {listener!r} failed on {event.kind.value}: {error}")

    async def wait_for(
        self,
        predicate: Callable[[Event], bool],
        kinds: Iterable[EventKind] | None = None,
        timeout: float | None = None,
    ) -> Event:
        """
        Waits for the first event matching ``predicate``.

        The underlying subscription is removed as soon as the wait ends,
        whether it matched, timed out or was cancelled.
        """

        async def _wait(subscription: Subscription) -> Event:
            async for event in subscription:
                if predicate(event):
                    return event
            raise RuntimeError("Event subscription closed before a match.")

        with self.subscribe(kinds) as subscription:
            return await asyncio.wait_for(_wait(subscription), timeout)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._listeners)
