"""
Remembers when a site challenged us as a bot and, for a while afterwards,
asks yt-dlp to borrow the user's browser cookies.
"""

import json
import logging
import sys
import time
from pathlib import Path

log = logging.getLogger(__name__)

BLOCK_MEMORY_SECONDS = 60 * 60
_COOKIE_HOSTS = ("youtube.com", "youtu.be")


class CookieHints:
    """
    Supplies ``--cookies-from-browser`` for YouTube URLs while a recent
    verification block is remembered for the current session.
    """

    def __init__(self, state_file: Path, browser: str = "chrome"):
        self.state_file = state_file
        self.browser = browser
        self._state = self._load()

    def _load(self) -> dict:
        defaults = {"last_blocked": None, "session_enabled": False}
        if not self.state_file.is_file():
            return defaults
        try:
            with open(self.state_file, encoding="utf-8") as f:
                data = json.load(f)
            defaults.update({k: data[k] for k in defaults if k in data})
        except (OSError, json.JSONDecodeError) as e:
            log.debug(f"Ignoring unreadable cookie state '{self.state_file}': {e}")
        return defaults

    def _save(self) -> None:
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.state_file, "w", encoding="utf-8") as f:
                json.dump(self._state, f)
        except OSError as e:
            log.warning(f"Could not save cookie state: {e}")

    def record_block(self) -> None:
        """Enables cookie use for this session after a verification challenge."""
        self._state["last_blocked"] = time.time()
        self._state["session_enabled"] = True
        self._save()
        log.info(
            f"[yellow]Verification challenge recorded; {self.get_browser()} "
            "cookies will be used for the next hour.[/yellow]"
        )

    def reset(self) -> None:
        """Forgets any recorded block."""
        self._state = {"last_blocked": None, "session_enabled": False}
        self._save()

    def status(self) -> tuple[bool, int | None]:
        """Returns (blocked, minutes since the block)."""
        last_blocked = self._state.get("last_blocked")
        if not last_blocked:
            return False, None
        elapsed = time.time() - last_blocked
        if elapsed < BLOCK_MEMORY_SECONDS:
            return True, int(elapsed // 60)
        return False, None

    def get_browser(self) -> str:
        # Safari cookies are only readable on macOS
        if self.browser == "safari" and sys.platform != "darwin":
            return "chrome"
        return self.browser

    @staticmethod
    def applies_to(url: str) -> bool:
        return any(host in url for host in _COOKIE_HOSTS)

    def should_use_cookies(self, url: str) -> bool:
        if not self.applies_to(url) or not self._state.get("session_enabled"):
            return False
        blocked, _ = self.status()
        return blocked

    def extra_args(self, url: str) -> list[str]:
        if self.should_use_cookies(url):
            return ["--cookies-from-browser", self.get_browser()]
        return []
