"""
Spawns and supervises one external process per active job.

Both output streams are split into lines, mirrored to the job's log file and
handed to a callback. The tail of the error stream is kept in a bounded
buffer for error classification.
"""

import asyncio
import codecs
import logging
import os
import re
import signal
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field

from dlqueue.exceptions import LaunchFailure
from dlqueue.storage.log_sink import JobLog

from .binaries import BinaryResolver
from .commands import CommandSpec

log = logging.getLogger(__name__)

# ffmpeg rewrites its status line with bare carriage returns
_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")
_READ_SIZE = 8192
_MAX_PENDING_LINE = 64 * 1024
_DRAIN_TIMEOUT = 2.0

LineCallback = Callable[[str, str], None | Awaitable[None]]


@dataclass
class ExitStatus:
    """How a supervised process ended."""

    returncode: int | None
    stderr_tail: list[str] = field(default_factory=list)
    terminated: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.terminated

    @property
    def signalled(self) -> bool:
        return self.returncode is not None and self.returncode < 0

    def error_text(self) -> str:
        return "\n".join(self.stderr_tail)


async def iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yields decoded lines, treating CR, LF and CRLF as terminators."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    while True:
        chunk = await stream.read(_READ_SIZE)
        if not chunk:
            pending += decoder.decode(b"", final=True)
            break
        pending += decoder.decode(chunk)
        # A trailing CR may be the first half of CRLF; wait for more data
        hold_cr = pending.endswith("\r")
        parts = _LINE_SPLIT_RE.split(pending[:-1] if hold_cr else pending)
        pending = parts.pop() + ("\r" if hold_cr else "")
        for part in parts:
            yield part
        if len(pending) > _MAX_PENDING_LINE:
            yield pending
            pending = ""
    pending = pending.rstrip("\r")
    if pending:
        yield pending


class ProcessHandle:
    """A running external process, its output pumps and its exit status."""

    def __init__(
        self,
        job_id: str,
        process: asyncio.subprocess.Process,
        job_log: JobLog | None,
        on_line: LineCallback,
        tail_lines: int,
        terminate_timeout: float,
    ):
        self.job_id = job_id
        self.process = process
        self.job_log = job_log
        self._on_line = on_line
        self._stderr_tail: deque[str] = deque(maxlen=tail_lines)
        self._terminate_timeout = terminate_timeout
        self._terminated = False
        self._exit: ExitStatus | None = None
        self._pumps = [
            asyncio.create_task(self._pump("stdout", process.stdout)),
            asyncio.create_task(self._pump("stderr", process.stderr)),
        ]
        self._waiter = asyncio.create_task(self._wait())

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    @property
    def terminated(self) -> bool:
        return self._terminated

    async def _pump(self, stream_name: str, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        async for line in iter_lines(stream):
            if stream_name == "stderr":
                self._stderr_tail.append(line)
            if self.job_log:
                await self.job_log.append_line(stream_name, line)
            if not line.strip():
                continue
            try:
                result = self._on_line(stream_name, line)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                log.debug(f"Line handler failed for job '{self.job_id}': {e}")

    async def _wait(self) -> ExitStatus:
        returncode = await self.process.wait()
        # Drain whatever the process wrote before exiting. Orphaned children
        # (yt-dlp's ffmpeg) may hold the pipes open, so the drain is bounded.
        _, still_running = await asyncio.wait(self._pumps, timeout=_DRAIN_TIMEOUT)
        for pump in still_running:
            pump.cancel()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        if self.job_log:
            await self.job_log.close()
        self._exit = ExitStatus(
            returncode=returncode,
            stderr_tail=list(self._stderr_tail),
            terminated=self._terminated,
        )
        log.debug(f"Process for job '{self.job_id}' exited with code {returncode}.")
        return self._exit

    async def wait(self) -> ExitStatus:
        """Waits for the process to exit and its output to be fully consumed."""
        return await asyncio.shield(self._waiter)

    async def terminate(self) -> None:
        """
        Stops the process and waits until it has been reaped.

        Calling this on an exited or already-terminated handle is a no-op
        beyond waiting for the reap to finish.
        """
        if not self._terminated and self.running:
            self._terminated = True
            self._signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(asyncio.shield(self._waiter), self._terminate_timeout)
            except asyncio.TimeoutError:
                log.warning(
                    f"[yellow]Process {self.pid} for job '{self.job_id}' ignored "
                    "SIGTERM, killing it.[/yellow]"
                )
                self._signal(getattr(signal, "SIGKILL", signal.SIGTERM))
        await self.wait()

    def _signal(self, sig: int) -> None:
        """Signals the whole process group on POSIX so merger children die too."""
        with suppress(ProcessLookupError, PermissionError):
            if os.name != "nt":
                os.killpg(self.process.pid, sig)
            elif sig == signal.SIGTERM:
                self.process.terminate()
            else:
                self.process.kill()


class ProcessSupervisor:
    """Starts ProcessHandles for CommandSpecs."""

    def __init__(
        self,
        resolver: BinaryResolver,
        tail_lines: int = 200,
        terminate_timeout: float = 5.0,
    ):
        self.resolver = resolver
        self.tail_lines = tail_lines
        self.terminate_timeout = terminate_timeout

    async def start(
        self,
        spec: CommandSpec,
        job_id: str,
        on_line: LineCallback,
        job_log: JobLog | None = None,
    ) -> ProcessHandle:
        """
        Spawns the process described by ``spec``.

        Raises:
            LaunchFailure: If the executable cannot be resolved or started.
        """
        executable = self.resolver.resolve(spec.tool)
        if job_log:
            await job_log.write_header(spec.display())
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *spec.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=os.name != "nt",
            )
        except OSError as e:
            if job_log:
                await job_log.append_line("stderr", f"ERROR: failed to launch: {e}")
                await job_log.close()
            raise LaunchFailure(f"Failed to launch '{spec.tool}': {e}") from e

        log.debug(f"Started {spec.tool} (pid {process.pid}) for job '{job_id}'.")
        return ProcessHandle(
            job_id,
            process,
            job_log,
            on_line,
            self.tail_lines,
            self.terminate_timeout,
        )
