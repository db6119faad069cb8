"""
Pydantic models for playlist batches.

A batch holds no process state; its members are plain jobs in the engine,
linked back through the derived job id and the job's ``group_id``.
"""

import time
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .job import MediaSelector

JOB_ID_SEPARATOR = "::"


def derive_job_id(batch_id: str, member_id: str) -> str:
    """Builds the job id for one batch member."""
    return f"{batch_id}{JOB_ID_SEPARATOR}{member_id}"


def split_job_id(job_id: str) -> tuple[str, str] | None:
    """Inverse of ``derive_job_id``; returns None for ids not built by it."""
    batch_id, sep, member_id = job_id.partition(JOB_ID_SEPARATOR)
    if not sep or not batch_id or not member_id or JOB_ID_SEPARATOR in member_id:
        return None
    return batch_id, member_id


def _check_id(v: str) -> str:
    if not v:
        raise ValueError("must not be empty")
    if JOB_ID_SEPARATOR in v:
        raise ValueError(f"must not contain '{JOB_ID_SEPARATOR}'")
    return v


class BatchMember(BaseModel):
    """One entry of a playlist."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    member_id: str
    title: str = "Unknown Video"
    source_locator: str
    index: int = 0
    selected: bool = True
    media: MediaSelector | None = None
    # Set once a job was handed to the engine; a later missing job means it was removed
    submitted: bool = False
    # Set when the member's job was cancelled on its own; excluded from counters
    removed: bool = False

    @field_validator("member_id")
    @classmethod
    def validate_member_id(cls, v: str) -> str:
        return _check_id(v)


class Batch(BaseModel):
    """A playlist submission sharing one output root and one cancel identity."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    id: str = Field(..., frozen=True)
    title: str = "Unknown Playlist"
    source_locator: str = ""
    output_directory: str
    members: list[BatchMember] = Field(default_factory=list)
    media: MediaSelector = Field(default_factory=MediaSelector)
    cancelled: bool = False
    created_at: float = Field(default_factory=time.time)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return _check_id(v)

    @model_validator(mode="after")
    def validate_unique_members(self) -> "Batch":
        seen: set[str] = set()
        for member in self.members:
            if member.member_id in seen:
                raise ValueError(f"Duplicate member id '{member.member_id}'.")
            seen.add(member.member_id)
        return self

    def job_id_for(self, member: BatchMember) -> str:
        return derive_job_id(self.id, member.member_id)

    def member(self, member_id: str) -> BatchMember | None:
        for member in self.members:
            if member.member_id == member_id:
                return member
        return None

    @property
    def counted_members(self) -> list[BatchMember]:
        """Members that take part in completion counting."""
        return [m for m in self.members if m.selected and not m.removed]


@dataclass(frozen=True)
class BatchProgress:
    """Aggregate counters, recomputed from member job statuses on every event."""

    batch_id: str
    total: int
    completed: int
    failed: int

    @property
    def finished(self) -> bool:
        return self.completed + self.failed >= self.total

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0
        return round((self.completed + self.failed) / self.total * 100, 1)
