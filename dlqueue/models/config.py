"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

import re

from pydantic import BaseModel, Field, field_validator, model_validator

from .job import MediaType

COOKIE_BROWSERS = ("chrome", "firefox", "safari")

_RESOLUTION_RE = re.compile(r"^\d{3,4}p?$")


class EngineConfig(BaseModel):
    """A validated configuration model for the application."""

    # Concurrency
    max_concurrent: int = 3
    batch_concurrency: int = 2

    # Output
    output_dir: str = "~/Downloads"
    media_format: MediaType = MediaType.VIDEO
    resolution: str = ""
    audio_format: str = "mp3"
    audio_quality: str = ""
    no_m3u: bool = False

    # External tools
    yt_dlp_path: str = ""
    ffmpeg_path: str = ""
    bin_dir: str = ""
    cookie_browser: str = "chrome"

    # Process supervision and logs
    stderr_tail_lines: int = 200
    terminate_timeout: float = 5.0
    log_retention_hours: int = 24
    error_log_retention_days: int = 7

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("max_concurrent")
    @classmethod
    def validate_max_concurrent(cls, v: int) -> int:
        """Ensures a reasonable number of simultaneous processes."""
        if v < 1 or v > 9:
            raise ValueError("Concurrent downloads must be between 1 and 9.")
        return v

    @field_validator("batch_concurrency")
    @classmethod
    def validate_batch_concurrency(cls, v: int) -> int:
        """0 disables the per-batch gate; otherwise the same range as the engine."""
        if v < 0 or v > 9:
            raise ValueError("Batch concurrency must be between 0 (off) and 9.")
        return v

    @field_validator("resolution")
    @classmethod
    def validate_resolution(cls, v: str) -> str:
        if v and not _RESOLUTION_RE.match(v):
            raise ValueError(f"Resolution must look like '1080p', got '{v}'.")
        return v

    @field_validator("audio_quality")
    @classmethod
    def validate_audio_quality(cls, v: str) -> str:
        """yt-dlp accepts 0 (best) through 9 (worst) for VBR audio."""
        if v and not (v.isdigit() and 0 <= int(v) <= 9):
            raise ValueError("Audio quality must be a digit from 0 (best) to 9.")
        return v

    @field_validator("cookie_browser")
    @classmethod
    def validate_cookie_browser(cls, v: str) -> str:
        v = v.lower()
        if v not in COOKIE_BROWSERS:
            raise ValueError(f"Cookie browser must be one of {', '.join(COOKIE_BROWSERS)}.")
        return v

    @field_validator("stderr_tail_lines")
    @classmethod
    def validate_tail(cls, v: int) -> int:
        if v < 10 or v > 5000:
            raise ValueError("stderr_tail_lines must be between 10 and 5000.")
        return v

    @field_validator("terminate_timeout")
    @classmethod
    def validate_terminate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("terminate_timeout must be positive.")
        return v

    @model_validator(mode="after")
    def validate_retention(self) -> "EngineConfig":
        """Error logs are kept at least as long as normal logs."""
        if self.log_retention_hours < 1:
            raise ValueError("log_retention_hours must be at least 1.")
        if self.error_log_retention_days * 24 < self.log_retention_hours:
            raise ValueError(
                "error_log_retention_days cannot be shorter than log_retention_hours."
            )
        return self

    @property
    def batch_gate(self) -> int | None:
        """The per-batch submission bound, or None when disabled."""
        return self.batch_concurrency or None

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
