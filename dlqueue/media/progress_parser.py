"""
Extracts progress signals from the text output of yt-dlp and ffmpeg.

Neither tool offers a structured progress protocol, so this is best-effort
scraping: unrecognized or malformed lines are ignored and parsing never raises.
"""

import logging
import re
from dataclasses import dataclass

from dlqueue.models.job import JobKind, JobStatus

log = logging.getLogger(__name__)

CONVERTING_LABEL = "Converting"
INDETERMINATE_PERCENT = "100"

_DURATION_RE = re.compile(r"Duration:\s*(\d{1,2}):(\d{2}):(\d{2}(?:\.\d+)?)")
_ELAPSED_RE = re.compile(r"time=\s*(\d{1,2}):(\d{2}):(\d{2}(?:\.\d+)?)")
_PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)%")
_SIZE_RE = re.compile(r"of\s+~?\s*(\d+(?:\.\d+)?\s*[KMGTP]?i?B)\b")
_SPEED_RE = re.compile(r"at\s+~?\s*(\d+(?:\.\d+)?\s*[KMGTP]?i?B/s)")
_ETA_RE = re.compile(r"ETA\s+((?:\d+:)?\d{1,2}:\d{2})")

# yt-dlp post-processor prefixes that mark the merge/convert phase
_POSTPROCESS_MARKERS = (
    "[Merger]",
    "[ffmpeg]",
    "[ExtractAudio]",
    "[VideoConvertor]",
    "[VideoRemuxer]",
    "[FixupM3u8]",
    "[FixupM4a]",
    "[FixupStretched]",
    "[FixupDuplicateMoov]",
    "[EmbedThumbnail]",
    "[Metadata]",
)
_DIAGNOSTIC_PREFIXES = ("ERROR:", "WARNING:")


@dataclass
class ParserState:
    """Per-job state threaded through successive calls."""

    duration: float | None = None


@dataclass(frozen=True)
class ProgressEvent:
    """One structured progress update derived from a single output line."""

    percent: str
    status: JobStatus = JobStatus.DOWNLOADING
    speed: str | None = None
    eta: str | None = None
    total_size: str | None = None
    label: str | None = None

    @property
    def display_progress(self) -> str:
        """The value stored on the job: a phase label wins over the number."""
        return self.label or self.percent


def _to_seconds(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def _format_percent(value: float) -> str:
    return f"{min(100.0, value):.1f}"


def _converting_event() -> ProgressEvent:
    return ProgressEvent(
        percent=INDETERMINATE_PERCENT,
        status=JobStatus.CONVERTING,
        label=CONVERTING_LABEL,
    )


def _parse_remux(line: str, state: ParserState) -> ProgressEvent | None:
    if state.duration is None:
        if match := _DURATION_RE.search(line):
            duration = _to_seconds(*match.groups())
            if duration > 0:
                state.duration = duration

    if state.duration and (match := _ELAPSED_RE.search(line)):
        elapsed = _to_seconds(*match.groups())
        return ProgressEvent(percent=_format_percent(elapsed / state.duration * 100))
    return None


def _parse_fetch(line: str, stream: str) -> ProgressEvent | None:
    stripped = line.strip()
    if stripped.startswith(_DIAGNOSTIC_PREFIXES):
        return None

    if match := _PERCENT_RE.search(stripped):
        percent = match.group(1)
        value = float(percent)
        if value <= 100:
            size = _SIZE_RE.search(stripped)
            speed = _SPEED_RE.search(stripped)
            eta = _ETA_RE.search(stripped)
            eta_value = eta.group(1) if eta else None
            if value == 100:
                eta_value = "00:00"
            return ProgressEvent(
                percent=percent,
                speed=speed.group(1).replace(" ", "") if speed else None,
                eta=eta_value,
                total_size=size.group(1).replace(" ", "") if size else None,
            )

    if stripped.startswith(_POSTPROCESS_MARKERS):
        return _converting_event()

    # ffmpeg status lines on yt-dlp's stderr only appear while merging/converting
    if stream == "stderr" and ("frame=" in stripped or "time=" in stripped):
        return _converting_event()
    return None


def parse_line(
    line: str,
    state: ParserState,
    kind: JobKind = JobKind.SIMPLE_FETCH,
    stream: str = "stdout",
) -> ProgressEvent | None:
    """
    Converts one line of tool output into at most one progress event.

    Args:
        line: A single decoded line, without its terminator.
        state: The job's parser state; the first duration announcement is kept.
        kind: Which tool produced the line.
        stream: "stdout" or "stderr".

    Returns:
        A ProgressEvent, or None for blank and unrecognized lines.
    """
    if not line or not line.strip():
        return None
    try:
        if kind is JobKind.STREAM_REMUX:
            return _parse_remux(line, state)
        return _parse_fetch(line, stream)
    except (ValueError, ZeroDivisionError, OverflowError) as e:
        log.debug(f"Ignoring unparseable progress line {line!r}: {e}")
        return None
