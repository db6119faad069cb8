"""
Looks up a single URL with yt-dlp for its title, duration and formats before
anything is downloaded.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Protocol

from dlqueue.exceptions import LaunchFailure, VideoAnalysisError

from .binaries import YT_DLP, BinaryResolver
from .commands import ArgumentInjector
from .error_classifier import ErrorCategory, classify_error, sanitize_error_text

log = logging.getLogger(__name__)


class CookieFallback(ArgumentInjector, Protocol):
    """Cookie hints that can also record a verification block."""

    def record_block(self) -> None: ...

    def get_browser(self) -> str: ...


@dataclass(frozen=True)
class MediaFormat:
    resolution: str
    ext: str
    filesize: int = 0
    vcodec: str = "none"


@dataclass(frozen=True)
class VideoInfo:
    title: str
    duration: float = 0.0
    thumbnail: str = ""
    formats: list[MediaFormat] = field(default_factory=list)

    @property
    def resolutions(self) -> list[str]:
        """Distinct video heights on offer, best first."""
        heights = {
            int(f.resolution[:-1]) for f in self.formats if f.resolution.endswith("p")
        }
        return [f"{height}p" for height in sorted(heights, reverse=True)]


def parse_video_info(output: str) -> VideoInfo:
    """
    Builds a VideoInfo from ``--dump-single-json`` output.

    Raises:
        VideoAnalysisError: If the output is not a JSON object.
    """
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise VideoAnalysisError(f"Failed to parse metadata JSON: {e}") from e
    if not isinstance(data, dict):
        raise VideoAnalysisError("Failed to parse metadata JSON: expected an object.")

    formats = [
        MediaFormat(
            resolution=f"{f['height']}p" if f.get("height") else "audio",
            ext=f.get("ext") or "",
            filesize=f.get("filesize") or 0,
            vcodec=f.get("vcodec") or "none",
        )
        for f in data.get("formats") or []
        if f.get("url")
    ]
    return VideoInfo(
        title=data.get("title") or "Unknown Video",
        duration=data.get("duration") or 0.0,
        thumbnail=data.get("thumbnail") or "",
        formats=formats,
    )


class VideoAnalyzer:
    """
    Runs yt-dlp once to describe a single video.

    When the site asks for verification and no cookies were sent, the block is
    recorded and the lookup is repeated once with the browser's cookies.
    """

    def __init__(
        self,
        resolver: BinaryResolver,
        cookie_hints: CookieFallback | None = None,
        timeout: float = 60.0,
    ):
        self.resolver = resolver
        self.cookie_hints = cookie_hints
        self.timeout = timeout

    async def analyze(self, url: str) -> VideoInfo:
        """
        Raises:
            VideoAnalysisError: If yt-dlp fails or returns nothing usable.
        """
        cookie_args = self.cookie_hints.extra_args(url) if self.cookie_hints else []
        try:
            return await self._lookup(url, cookie_args)
        except VideoAnalysisError as e:
            if (
                self.cookie_hints is None
                or cookie_args
                or e.category != ErrorCategory.ROBOT_CHECK.value
            ):
                raise
        self.cookie_hints.record_block()
        log.info("[yellow]Verification requested; retrying with browser cookies...[/yellow]")
        return await self._lookup(
            url, ["--cookies-from-browser", self.cookie_hints.get_browser()]
        )

    async def _lookup(self, url: str, cookie_args: list[str]) -> VideoInfo:
        try:
            executable = self.resolver.resolve(YT_DLP)
        except LaunchFailure as e:
            raise VideoAnalysisError(str(e), category=ErrorCategory.LAUNCH_FAILURE.value) from e

        args = ["--dump-single-json", "--no-playlist", *cookie_args, url]
        log.debug(f"Probing {url}{' (with cookies)' if cookie_args else ''}")
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise VideoAnalysisError(
                f"Failed to launch '{YT_DLP}': {e}",
                category=ErrorCategory.LAUNCH_FAILURE.value,
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise VideoAnalysisError(f"Analysis timed out after {self.timeout:.0f}s.") from e

        if process.returncode != 0:
            error_text = stderr.decode("utf-8", errors="replace")
            classified = classify_error(error_text, process.returncode)
            raise VideoAnalysisError(
                f"Analysis failed: {classified.message}\n"
                f"{sanitize_error_text(error_text)[-500:]}",
                category=classified.category.value,
            )
        return parse_video_info(stdout.decode("utf-8", errors="replace"))
