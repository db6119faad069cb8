"""
Classifies the captured error output of a failed tool run into a short,
user-facing message. The raw output stays in the job's log file.
"""

import re
from dataclasses import dataclass
from enum import Enum

_ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


class ErrorCategory(str, Enum):
    ACCESS_DENIED = "access-denied"
    RESTRICTED_FORMAT = "restricted-format"
    ROBOT_CHECK = "robot-check"
    PLATFORM_ERROR = "platform-error"
    FILE_PERMISSION = "file-permission"
    NOT_FOUND = "not-found"
    LAUNCH_FAILURE = "launch-failure"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedError:
    category: ErrorCategory
    message: str


# Checked in order; the first category with a matching token wins.
_RULES: tuple[tuple[ErrorCategory, tuple[str, ...], str], ...] = (
    (
        ErrorCategory.ROBOT_CHECK,
        (
            "confirm you're not a bot",
            "confirm you are not a bot",
            "not a robot",
            "captcha",
            "verify you are human",
            "unusual traffic",
        ),
        "The site asked for a verification challenge. Retry later or with browser cookies.",
    ),
    (
        ErrorCategory.ACCESS_DENIED,
        (
            "sign in",
            "login required",
            "log in",
            "private video",
            "members-only",
            "http error 401",
            "http error 403",
            "403: forbidden",
            "authentication",
            "use --cookies",
            "age-restricted",
        ),
        "Access denied: this item requires authentication or is private.",
    ),
    (
        ErrorCategory.RESTRICTED_FORMAT,
        (
            "requested format is not available",
            "requested format not available",
            "format not available",
            "no such format",
            "drm",
        ),
        "The selected format is not available for this item. Try another quality.",
    ),
    (
        ErrorCategory.FILE_PERMISSION,
        (
            "permission denied",
            "access is denied",
            "read-only file system",
            "no space left on device",
            "unable to open for writing",
        ),
        "Cannot write to the output directory. Check its permissions and free space.",
    ),
    (
        ErrorCategory.NOT_FOUND,
        (
            "http error 404",
            "404: not found",
            "video unavailable",
            "does not exist",
            "no such file or directory",
            "unsupported url",
            "unable to download webpage",
        ),
        "The item could not be found. It may have been removed or the URL is wrong.",
    ),
    (
        ErrorCategory.PLATFORM_ERROR,
        (
            "http error 5",
            "http error 429",
            "too many requests",
            "service unavailable",
            "extractor error",
            "unable to extract",
            "connection reset",
            "timed out",
        ),
        "The platform returned an error. Try again in a few minutes.",
    ),
)


def sanitize_error_text(text: str) -> str:
    """Strips terminal escapes and carriage returns from captured output."""
    no_ansi = _ANSI_ESCAPE_RE.sub("", text or "")
    return no_ansi.replace("\r", "\n").strip()


def classify_error(error_text: str, returncode: int | None = None) -> ClassifiedError:
    """
    Maps captured error-stream text to a category and a short message.

    Args:
        error_text: The tail of the tool's error output.
        returncode: The exit code, used only for the fallback message.
    """
    lowered = sanitize_error_text(error_text).lower()
    for category, tokens, message in _RULES:
        if any(token in lowered for token in tokens):
            return ClassifiedError(category, message)

    if returncode is None:
        fallback = "The download failed for an unknown reason. See the log file."
    elif returncode < 0:
        fallback = f"The tool was stopped by signal {-returncode}. See the log file."
    else:
        fallback = f"The tool exited with code {returncode}. See the log file."
    return ClassifiedError(ErrorCategory.UNKNOWN, fallback)


def launch_failure(reason: str) -> ClassifiedError:
    return ClassifiedError(
        ErrorCategory.LAUNCH_FAILURE, f"Could not start the download tool: {reason}"
    )
