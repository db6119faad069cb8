"""
Locates the external executables (yt-dlp, ffmpeg) used to run jobs.
"""

import logging
import os
import shutil
from pathlib import Path

from dlqueue.exceptions import BinaryNotFoundError

log = logging.getLogger(__name__)

YT_DLP = "yt-dlp"
FFMPEG = "ffmpeg"


class BinaryResolver:
    """
    Resolves a tool name to an executable path.

    Lookup order: explicit override, bundled ``bin_dir``, then ``PATH``.
    Resolution happens at spawn time so a missing tool fails only the job
    that needs it.
    """

    def __init__(
        self,
        overrides: dict[str, str] | None = None,
        bin_dir: Path | None = None,
    ):
        self.overrides = {k: v for k, v in (overrides or {}).items() if v}
        self.bin_dir = bin_dir
        self._cache: dict[str, str] = {}

    @staticmethod
    def _executable_name(name: str) -> str:
        return f"{name}.exe" if os.name == "nt" else name

    def _bundled_path(self, name: str) -> Path | None:
        if not self.bin_dir:
            return None
        candidate = self.bin_dir.expanduser() / self._executable_name(name)
        if candidate.is_file():
            if os.name != "nt" and not os.access(candidate, os.X_OK):
                try:
                    candidate.chmod(0o755)
                except OSError as e:
                    log.warning(f"Failed to set execute permission on {candidate}: {e}")
            return candidate
        return None

    def resolve(self, name: str) -> str:
        """
        Returns the path of the executable for ``name``.

        Raises:
            BinaryNotFoundError: If the tool cannot be found anywhere.
        """
        if name in self._cache:
            return self._cache[name]

        if override := self.overrides.get(name):
            path = Path(override).expanduser()
            if not path.is_file():
                raise BinaryNotFoundError(
                    f"Configured path for '{name}' does not exist: {path}"
                )
            resolved = str(path)
        elif bundled := self._bundled_path(name):
            resolved = str(bundled)
        elif found := shutil.which(name):
            resolved = found
        else:
            raise BinaryNotFoundError(
                f"'{name}' was not found in the bundled directory or on PATH."
            )

        log.debug(f"Resolved '{name}' to {resolved}")
        self._cache[name] = resolved
        return resolved

    def available(self, name: str) -> bool:
        try:
            self.resolve(name)
            return True
        except BinaryNotFoundError:
            return False
