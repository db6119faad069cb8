"""
Pydantic models for download jobs and their lifecycle states.
"""

import time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobStatus(str, Enum):
    """Lifecycle states of a job."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    CONVERTING = "converting"
    COMPLETED = "completed"
    ERROR = "error"
    PAUSED = "paused"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.DOWNLOADING, JobStatus.CONVERTING)

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


class JobKind(str, Enum):
    """Selects which external tool runs the job."""

    SIMPLE_FETCH = "simple-fetch"
    STREAM_REMUX = "stream-remux"


class MediaType(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class MediaSelector(BaseModel):
    """What to keep from the source, plus an optional quality hint."""

    model_config = ConfigDict(extra="ignore")

    type: MediaType = MediaType.VIDEO
    # A resolution such as "1080p" for video, a yt-dlp audio quality code for audio
    quality: str | None = None

    @field_validator("quality")
    @classmethod
    def validate_quality(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


class Job(BaseModel):
    """
    A single request to fetch or remux one media item, plus its mutable progress.

    The engine owns a job exclusively once it has been submitted.
    """

    model_config = ConfigDict(
        extra="ignore",
        validate_assignment=True,
        str_strip_whitespace=True,
    )

    id: str = Field(..., frozen=True)
    source_locator: str
    output_directory: str
    output_base_name: str
    kind: JobKind = JobKind.SIMPLE_FETCH
    media: MediaSelector = Field(default_factory=MediaSelector)

    status: JobStatus = JobStatus.PENDING
    progress: str = "0"
    speed: str | None = None
    eta: str | None = None
    total_size: str | None = None
    last_error: str | None = None
    error_category: str | None = None
    log_path: str | None = None
    output_path: str | None = None

    group_id: str | None = None
    created_at: float = Field(default_factory=time.time)

    @field_validator("id", "source_locator", "output_directory", "output_base_name")
    @classmethod
    def validate_required(cls, v: str) -> str:
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("output_base_name")
    @classmethod
    def validate_base_name(cls, v: str) -> str:
        if "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("must be a bare file name without directories")
        return v

    def reset_progress(self) -> None:
        """Clears transient progress and error fields before a new attempt."""
        self.progress = "0"
        self.speed = None
        self.eta = None
        self.total_size = None
        self.last_error = None
        self.error_category = None
        self.output_path = None
