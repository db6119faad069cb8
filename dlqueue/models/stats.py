"""
Dataclass for tracking statistics of one CLI session.
"""

import time
from dataclasses import dataclass, field

from .job import JobStatus


@dataclass
class SessionStats:
    """Counts job outcomes and the peak number of concurrently running processes."""

    jobs_submitted: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_removed: int = 0
    peak_concurrent: int = 0
    errors_by_category: dict[str, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic, repr=False)
    _active: set[str] = field(default_factory=set, repr=False)

    def record_status(self, job_id: str, status: JobStatus) -> None:
        """Tracks which jobs currently hold a slot."""
        if status.is_active:
            self._active.add(job_id)
            self.peak_concurrent = max(self.peak_concurrent, len(self._active))
        else:
            self._active.discard(job_id)

    def record_completed(self, job_id: str) -> None:
        self._active.discard(job_id)
        self.jobs_completed += 1

    def record_failed(self, job_id: str, category: str | None) -> None:
        self._active.discard(job_id)
        self.jobs_failed += 1
        key = category or "unknown"
        self.errors_by_category[key] = self.errors_by_category.get(key, 0) + 1

    def record_removed(self, job_id: str) -> None:
        self._active.discard(job_id)
        self.jobs_removed += 1

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at
