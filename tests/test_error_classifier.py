import pytest

from dlqueue.media.error_classifier import (
    ErrorCategory,
    classify_error,
    launch_failure,
    sanitize_error_text,
)


@pytest.mark.parametrize(
    "stderr, category",
    [
        ("ERROR: [youtube] x: Sign in to confirm you're not a bot.", ErrorCategory.ROBOT_CHECK),
        ("ERROR: [youtube] x: Private video. Sign in if you've been granted access", ErrorCategory.ACCESS_DENIED),
        ("ERROR: unable to download video data: HTTP Error 403: Forbidden", ErrorCategory.ACCESS_DENIED),
        ("ERROR: [youtube] x: Requested format is not available.", ErrorCategory.RESTRICTED_FORMAT),
        ("ERROR: unable to open for writing: [Errno 13] Permission denied", ErrorCategory.FILE_PERMISSION),
        ("ERROR: [youtube] x: Video unavailable", ErrorCategory.NOT_FOUND),
        ("ERROR: Unsupported URL: https://example.com", ErrorCategory.NOT_FOUND),
        ("ERROR: HTTP Error 429: Too Many Requests", ErrorCategory.PLATFORM_ERROR),
    ],
)
def test_classify_known_errors(stderr, category):
    result = classify_error(stderr, 1)
    assert result.category is category
    assert result.message


def test_robot_check_wins_over_access_denied():
    text = "Sign in to confirm you are not a bot. Use --cookies-from-browser"
    assert classify_error(text).category is ErrorCategory.ROBOT_CHECK


def test_unknown_error_mentions_exit_code():
    result = classify_error("something odd happened", 7)
    assert result.category is ErrorCategory.UNKNOWN
    assert "7" in result.message

    assert "signal 9" in classify_error("", -9).message


def test_sanitize_strips_ansi_and_carriage_returns():
    assert sanitize_error_text("\x1b[0;31mERROR:\x1b[0m bad\rthing") == "ERROR: bad\nthing"


def test_launch_failure_category():
    result = launch_failure("ffmpeg missing")
    assert result.category is ErrorCategory.LAUNCH_FAILURE
    assert "ffmpeg missing" in result.message
