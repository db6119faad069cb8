"""
Per-job log files that mirror everything the external tools print.

Logs of successful jobs are discarded; logs of failed jobs are kept so the
short classified message can point at the full output. Old logs are pruned
on a retention schedule.
"""

import asyncio
import logging
import re
import time
from contextlib import suppress
from pathlib import Path

import aiofiles

log = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9_-]")
_ERROR_MARKERS = ("ERROR", "failed")


class JobLog:
    """An open, append-only log for one job. Write errors are never fatal."""

    def __init__(self, job_id: str, path: Path):
        self.job_id = job_id
        self.path = path
        self._file = None
        self._broken = False

    async def _ensure_open(self) -> bool:
        if self._broken:
            return False
        if self._file is None:
            try:
                self._file = await aiofiles.open(self.path, "a", encoding="utf-8")
            except OSError as e:
                self._fail(e)
                return False
        return True

    def _fail(self, error: Exception) -> None:
        self._broken = True
        log.warning(f"[yellow]Log file for job '{self.job_id}' disabled:[/] {error}")

    async def write_header(self, command: str) -> None:
        await self._write(f"Command: {command}\n\n")

    async def append_line(self, stream: str, line: str) -> None:
        await self._write(f"[{stream.upper()}] {line}\n")

    async def _write(self, text: str) -> None:
        if not await self._ensure_open():
            return
        try:
            await self._file.write(text)
            await self._file.flush()
        except (OSError, ValueError) as e:
            self._fail(e)

    async def close(self) -> None:
        if self._file is not None:
            with suppress(OSError, ValueError):
                await self._file.close()
            self._file = None


class LogSink:
    """Creates, discards and prunes job log files in one directory."""

    def __init__(
        self,
        log_dir: Path,
        retention_hours: int = 24,
        error_retention_days: int = 7,
    ):
        self.log_dir = log_dir
        self.max_age_normal = retention_hours * 3600
        self.max_age_error = error_retention_days * 86400
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.warning(f"Could not create log directory '{log_dir}': {e}")

    def path_for(self, job_id: str) -> Path:
        safe_id = _UNSAFE_CHARS_RE.sub("_", job_id)
        return self.log_dir / f"download_{safe_id}.log"

    def open(self, job_id: str) -> JobLog:
        """Returns a fresh log for a new attempt, truncating any previous one."""
        path = self.path_for(job_id)
        with suppress(OSError):
            path.unlink(missing_ok=True)
        return JobLog(job_id, path)

    def discard(self, job_id: str) -> None:
        """Deletes the log of a job that no longer needs it."""
        path = self.path_for(job_id)
        try:
            path.unlink(missing_ok=True)
            log.debug(f"Deleted log for job '{job_id}'.")
        except OSError as e:
            log.warning(f"Failed to delete log '{path}': {e}")

    def _clean_old_logs_sync(self) -> int:
        if not self.log_dir.is_dir():
            return 0
        now = time.time()
        deleted = 0
        for log_file in self.log_dir.glob("*.log"):
            try:
                age = now - log_file.stat().st_mtime
                with open(log_file, "rb") as f:
                    head = f.read(1000)
                    f.seek(max(0, log_file.stat().st_size - 2000))
                    tail = f.read()
                text = (head + tail).decode("utf-8", errors="replace")
                has_error = any(marker in text for marker in _ERROR_MARKERS)
                max_age = self.max_age_error if has_error else self.max_age_normal
                if age > max_age:
                    log_file.unlink()
                    deleted += 1
            except OSError as e:
                log.warning(f"Error checking log file {log_file.name}: {e}")
        if deleted:
            log.debug(f"Log cleanup: removed {deleted} old log files.")
        return deleted

    async def clean_old_logs(self) -> int:
        """Removes logs past their retention age; returns how many were deleted."""
        return await asyncio.to_thread(self._clean_old_logs_sync)
