"""
Storage Layer.

This package handles all data persistence, including the configuration file,
the job queue database, per-job log files and cookie-hint state.
"""

from .log_sink import JobLog, LogSink  # noqa: I001
from .config_manager import ConfigManager
from .cookie_hints import CookieHints
from .job_store import JobStore

__all__ = ["ConfigManager", "CookieHints", "JobLog", "JobStore", "LogSink"]
