"""
Core application engine for scheduling and supervising downloads.

The `DownloadEngine` owns the job queue and its process slots; the
`BatchCoordinator` sits in front of it and expands playlists into jobs.
Both report through typed events on an `EventBus`.
"""

from .batch_coordinator import BatchCoordinator
from .engine import DownloadEngine
from .events import BatchEvent, EventBus, EventKind, JobEvent, Subscription

__all__ = [
    "BatchCoordinator",
    "BatchEvent",
    "DownloadEngine",
    "EventBus",
    "EventKind",
    "JobEvent",
    "Subscription",
]
