"""
Utility for generating M3U playlist files.
"""

import logging
import re
from pathlib import Path

from mutagen import File as MutagenFile
from mutagen import MutagenError

log = logging.getLogger(__name__)

PLAYLIST_SUFFIXES = (".mp3", ".m4a", ".mp4", ".webm", ".mkv", ".opus", ".ogg", ".flac")
_INDEX_RE = re.compile(r"(\d+)")


def _sort_key(path: Path) -> tuple[int, str]:
    match = _INDEX_RE.match(path.name)
    return (int(match.group(1)) if match else 999, path.name)


def generate_m3u(playlist_directory: Path, playlist_title: str | None = None) -> Path | None:
    """
    Generates an M3U playlist for the media files of a finished batch.

    Entries are ordered by the ``NN - `` index prefix of their file names.
    Durations come from the files' own headers where mutagen can read them.

    Returns:
        The written playlist path, or None if nothing was written.
    """
    name = playlist_title or playlist_directory.name
    playlist_path = playlist_directory / f"{name}.m3u"

    media_files = sorted(
        (
            p
            for p in playlist_directory.iterdir()
            if p.is_file() and p.suffix.lower() in PLAYLIST_SUFFIXES
        ),
        key=_sort_key,
    )

    if not media_files:
        log.debug(f"No media files found in '{playlist_directory}' to create playlist.")
        return None

    content = ["#EXTM3U"]
    for media_path in media_files:
        try:
            media = MutagenFile(media_path)
            length = int(media.info.length) if media and media.info else -1
        except MutagenError:
            length = -1
        content.append(f"#EXTINF:{length},{media_path.stem}")
        content.append(media_path.name)

    try:
        with open(playlist_path, "w", encoding="utf-8") as f:
            f.write("\n".join(content) + "\n")
        log.info(f"Generated playlist: '{playlist_path}'")
        return playlist_path
    except OSError as e:
        log.error(f"Failed to write playlist file: {e}")
        return None
