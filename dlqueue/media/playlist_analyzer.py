"""
Expands a playlist URL into its entries using yt-dlp's flat listing.
"""

import asyncio
import hashlib
import json
import logging
from pathlib import Path
from urllib.parse import parse_qs, urlparse

from dlqueue.exceptions import LaunchFailure, PlaylistAnalysisError
from dlqueue.models.batch import JOB_ID_SEPARATOR, Batch, BatchMember
from dlqueue.models.job import MediaSelector
from dlqueue.utils.path import safe_name

from .binaries import YT_DLP, BinaryResolver
from .commands import ArgumentInjector
from .error_classifier import classify_error, sanitize_error_text

log = logging.getLogger(__name__)

_PLAYLIST_HINTS = ("list=", "/playlist", "/sets/")


def is_playlist_url(url: str) -> bool:
    return any(hint in url for hint in _PLAYLIST_HINTS)


def extract_playlist_id(url: str) -> str:
    """Derives a stable batch id from a playlist URL."""
    parsed = urlparse(url)
    if playlist_ids := parse_qs(parsed.query).get("list"):
        return _safe_id(playlist_ids[0])
    parts = [p for p in parsed.path.split("/") if p]
    if parsed.netloc and parts:
        return _safe_id(parts[-1])
    return f"playlist_{hashlib.sha1(url.encode('utf-8')).hexdigest()[:10]}"


def _safe_id(value: str) -> str:
    return value.replace(JOB_ID_SEPARATOR, "_")


def _entry_url(entry: dict) -> str:
    url = entry.get("url") or entry.get("webpage_url")
    if url and url.startswith(("http://", "https://")):
        return url
    video_id = entry.get("id") or url
    return f"https://www.youtube.com/watch?v={video_id}"


def parse_flat_listing(
    output: str, url: str, output_directory: str, media: MediaSelector | None = None
) -> Batch:
    """
    Builds a Batch from ``--dump-json`` output, one JSON object per line.

    Raises:
        PlaylistAnalysisError: If the output is not JSON or lists no entries.
    """
    try:
        entries = [json.loads(line) for line in output.splitlines() if line.strip()]
    except json.JSONDecodeError as e:
        raise PlaylistAnalysisError(f"Failed to parse playlist data: {e}") from e

    if not entries:
        raise PlaylistAnalysisError("No videos found in playlist.")

    members = []
    seen: set[str] = set()
    for index, entry in enumerate(entries, start=1):
        member_id = _safe_id(str(entry.get("id") or entry.get("url") or index))
        if member_id in seen:
            member_id = f"{member_id}_{index}"
        seen.add(member_id)
        members.append(
            BatchMember(
                member_id=member_id,
                title=entry.get("title") or "Unknown Video",
                source_locator=_entry_url(entry),
                index=index,
            )
        )

    first = entries[0]
    return Batch(
        id=extract_playlist_id(url),
        title=first.get("playlist_title") or first.get("playlist") or "Unknown Playlist",
        source_locator=url,
        output_directory=output_directory,
        members=members,
        media=media or MediaSelector(),
    )


class PlaylistAnalyzer:
    """Runs yt-dlp once to list a playlist without downloading anything."""

    def __init__(
        self,
        resolver: BinaryResolver,
        cookie_hints: ArgumentInjector | None = None,
        timeout: float = 120.0,
    ):
        self.resolver = resolver
        self.cookie_hints = cookie_hints
        self.timeout = timeout

    async def analyze(
        self,
        url: str,
        output_root: Path,
        media: MediaSelector | None = None,
    ) -> Batch:
        """
        Lists the playlist at ``url`` and returns it as a Batch whose output
        directory is a subfolder of ``output_root`` named after the playlist.

        Raises:
            PlaylistAnalysisError: If yt-dlp fails or returns nothing usable.
        """
        try:
            executable = self.resolver.resolve(YT_DLP)
        except LaunchFailure as e:
            raise PlaylistAnalysisError(str(e)) from e

        args = [url, "--flat-playlist", "--dump-json", "--yes-playlist"]
        if self.cookie_hints:
            args.extend(self.cookie_hints.extra_args(url))

        log.debug(f"Analyzing playlist: {url}")
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise PlaylistAnalysisError(f"Failed to launch '{YT_DLP}': {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise PlaylistAnalysisError(
                f"Playlist analysis timed out after {self.timeout:.0f}s."
            ) from e

        if process.returncode != 0:
            error_text = stderr.decode("utf-8", errors="replace")
            classified = classify_error(error_text, process.returncode)
            raise PlaylistAnalysisError(
                f"Playlist analysis failed: {classified.message}\n"
                f"{sanitize_error_text(error_text)[-500:]}",
                category=classified.category.value,
            )

        # The folder is named after the playlist, so list first, then place it
        batch = parse_flat_listing(
            stdout.decode("utf-8", errors="replace"), url, str(output_root), media
        )
        batch.output_directory = str(output_root / safe_name(batch.title, fallback=batch.id))
        log.info(f"Found {len(batch.members)} item(s) in playlist: [bold]{batch.title}[/bold]")
        return batch

