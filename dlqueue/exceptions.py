"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class DlqueueError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(DlqueueError):
    """Raised for issues related to configuration loading or validation."""


class InvalidJobError(DlqueueError):
    """Raised when a job request is missing required fields or is malformed."""


class JobConflictError(DlqueueError):
    """Raised when a job is submitted with an id that is already known."""


class LaunchFailure(DlqueueError):
    """Raised when the external tool for a job cannot be located or started."""


class BinaryNotFoundError(LaunchFailure):
    """Raised when a required executable cannot be resolved."""


class ProcessFailure(DlqueueError):
    """
    Raised when an external tool exits with a non-zero status.

    Carries the classified category so callers do not need to re-inspect output.
    """

    def __init__(self, message: str, category: str = "unknown", returncode: int | None = None):
        super().__init__(message)
        self.category = category
        self.returncode = returncode


class PlaylistAnalysisError(DlqueueError):
    """Raised when a playlist cannot be expanded into its entries."""

    def __init__(self, message: str, category: str | None = None):
        super().__init__(message)
        self.category = category


class VideoAnalysisError(DlqueueError):
    """Raised when a single URL cannot be looked up for its metadata."""

    def __init__(self, message: str, category: str | None = None):
        super().__init__(message)
        self.category = category
