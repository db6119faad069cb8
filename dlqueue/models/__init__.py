"""
Data Models Layer.

This package contains Pydantic models that define the core data structures
used throughout the application, such as jobs, batches and configuration.
"""

from .batch import Batch, BatchMember, BatchProgress, derive_job_id, split_job_id
from .config import EngineConfig
from .job import Job, JobKind, JobStatus, MediaSelector, MediaType
from .stats import SessionStats

__all__ = [
    "Batch",
    "BatchMember",
    "BatchProgress",
    "EngineConfig",
    "Job",
    "JobKind",
    "JobStatus",
    "MediaSelector",
    "MediaType",
    "SessionStats",
    "derive_job_id",
    "split_job_id",
]
