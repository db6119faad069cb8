"""
Utilities for handling output paths, file names and partial artifacts.
"""

import logging
import re
from pathlib import Path

from pathvalidate import sanitize_filename

log = logging.getLogger(__name__)

# Leftovers yt-dlp and ffmpeg write while a download is in flight
PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp", ".tmp")
_FRAGMENT_RE = re.compile(r"\.f\d+(?:\.[^.]+)?$|\.part-Frag\d+")
# Final containers; only removed when the job was still writing them
MEDIA_SUFFIXES = (".mp4", ".webm", ".mkv", ".m4a", ".mp3", ".opus", ".ogg", ".wav", ".flac")


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)


def safe_name(name: str, fallback: str = "download") -> str:
    """Sanitizes a title into a file name that is valid on every platform."""
    cleaned = sanitize_filename(re.sub(r'[<>:"/\\|?*]', "-", name).strip(), platform="universal")
    return cleaned or fallback


def member_filename(index: int, title: str) -> str:
    """File name for a playlist entry, e.g. ``'03 - Title'``."""
    return f"{index:02d} - {safe_name(title)}"


def is_partial_artifact(file_name: str, base_name: str, include_media: bool) -> bool:
    """
    Whether ``file_name`` is something the tools left behind for ``base_name``.

    Only names of the form ``<base_name>.<...>`` are considered, so a job called
    ``01 - Foo`` never matches ``01 - Foobar.mp4``.
    """
    if not file_name.startswith(f"{base_name}."):
        return False
    rest = file_name[len(base_name):]
    if rest.endswith(PARTIAL_SUFFIXES) or ".part" in rest or _FRAGMENT_RE.search(rest):
        return True
    return include_media and rest.lower().endswith(MEDIA_SUFFIXES)


def delete_partial_artifacts(
    directory: Path, base_name: str, include_media: bool = False
) -> list[Path]:
    """Deletes leftover files for ``base_name`` in ``directory``; returns what was removed."""
    removed: list[Path] = []
    if not directory.is_dir():
        return removed
    for path in directory.iterdir():
        if not path.is_file() or not is_partial_artifact(path.name, base_name, include_media):
            continue
        try:
            path.unlink()
            removed.append(path)
            log.debug(f"Deleted partial file: {path.name}")
        except OSError as e:
            log.warning(f"Failed to delete partial file '{path}': {e}")
    return removed


def find_output_file(directory: Path, base_name: str) -> Path | None:
    """Finds the finished media file for ``base_name``, if there is exactly one candidate."""
    if not directory.is_dir():
        return None
    candidates = [
        p
        for p in directory.iterdir()
        if p.is_file()
        and p.name.startswith(f"{base_name}.")
        and p.suffix.lower() in MEDIA_SUFFIXES
        and not is_partial_artifact(p.name, base_name, include_media=False)
    ]
    return candidates[0] if len(candidates) == 1 else None
