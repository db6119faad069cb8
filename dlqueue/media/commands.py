"""
Builds the command line for a job from its kind and media selector.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from dlqueue.models.config import EngineConfig
from dlqueue.models.job import Job, JobKind, MediaType

from .binaries import FFMPEG, YT_DLP

_REMUX_HINTS = (".m3u8", "smartplayer.io")


class ArgumentInjector(Protocol):
    """Anything that can contribute extra fetch arguments for a URL."""

    def extra_args(self, url: str) -> list[str]: ...


@dataclass(frozen=True)
class CommandSpec:
    """A tool name plus its arguments; the executable is resolved at spawn time."""

    tool: str
    args: list[str] = field(default_factory=list)
    output_hint: str | None = None

    def display(self) -> str:
        return " ".join([self.tool, *self.args])


def infer_kind(url: str) -> JobKind:
    """HLS playlists are remuxed with ffmpeg; everything else goes through yt-dlp."""
    lowered = url.lower()
    if any(hint in lowered for hint in _REMUX_HINTS):
        return JobKind.STREAM_REMUX
    return JobKind.SIMPLE_FETCH


class CommandBuilder:
    """Translates jobs into CommandSpecs for yt-dlp or ffmpeg."""

    def __init__(
        self, config: EngineConfig, cookie_hints: ArgumentInjector | None = None
    ):
        self.config = config
        self.cookie_hints = cookie_hints

    def build(self, job: Job) -> CommandSpec:
        if job.kind is JobKind.STREAM_REMUX:
            return self._remux_command(job)
        return self._fetch_command(job)

    def _remux_command(self, job: Job) -> CommandSpec:
        output_path = Path(job.output_directory) / f"{job.output_base_name}.mp4"
        args = [
            "-hide_banner",
            "-nostdin",
            "-i",
            job.source_locator,
            "-c",
            "copy",
            "-bsf:a",
            "aac_adtstoasc",
            "-y",
            str(output_path),
        ]
        return CommandSpec(FFMPEG, args, output_hint=str(output_path))

    def _fetch_command(self, job: Job) -> CommandSpec:
        template = Path(job.output_directory) / f"{job.output_base_name}.%(ext)s"
        args = [
            job.source_locator,
            "-o",
            str(template),
            "--newline",
            "--no-playlist",
            "--no-colors",
        ]

        if self.cookie_hints:
            args.extend(self.cookie_hints.extra_args(job.source_locator))

        if self.config.ffmpeg_path:
            args.extend(["--ffmpeg-location", self.config.ffmpeg_path])

        if job.media.type is MediaType.AUDIO:
            args.extend(["-x", "--audio-format", self.config.audio_format])
            # 0 = best, 9 = worst
            if quality := job.media.quality or self.config.audio_quality:
                args.extend(["--audio-quality", quality])
        else:
            # Prefer H.264 + AAC for compatibility and predictable size
            if resolution := job.media.quality or self.config.resolution:
                height = resolution.rstrip("p")
                args.extend(["-S", f"res:{height},vcodec:h264,res,acodec:m4a"])
            else:
                args.extend(["-S", "vcodec:h264,res,acodec:m4a"])
            args.extend(["--merge-output-format", "mp4"])

        return CommandSpec(YT_DLP, args, output_hint=job.output_directory)
