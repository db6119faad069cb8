import json
import sys

import pytest

from dlqueue.exceptions import VideoAnalysisError
from dlqueue.media.binaries import BinaryResolver
from dlqueue.media.video_analyzer import VideoAnalyzer, parse_video_info
from dlqueue.storage.cookie_hints import CookieHints

URL = "https://www.youtube.com/watch?v=abc"
BOT_ERROR = "ERROR: [youtube] abc: Sign in to confirm you're not a bot\n"

METADATA = json.dumps(
    {
        "title": "Live at the Park",
        "duration": 212.5,
        "thumbnail": "https://i.ytimg.com/vi/abc/hq.jpg",
        "formats": [
            {"format_id": "140", "ext": "m4a", "vcodec": "none", "url": "https://a"},
            {"format_id": "137", "ext": "mp4", "height": 1080, "vcodec": "avc1", "url": "https://b"},
            {"format_id": "22", "ext": "mp4", "height": 720, "filesize": 1000, "url": "https://c"},
            {"format_id": "sb0", "ext": "mhtml", "height": 90},
        ],
    }
)


def fake_yt_dlp(tmp_path, stdout=METADATA, stderr="", returncode=0, needs_cookies=False):
    """A yt-dlp stand-in that records its arguments, one call per line."""
    calls = tmp_path / "calls.txt"
    script = tmp_path / "yt-dlp"
    script.write_text(
        f"#!{sys.executable}\n"
        "import sys\n"
        f"with open({str(calls)!r}, 'a') as f:\n"
        "    f.write(' '.join(sys.argv[1:]) + '\\n')\n"
        f"if {needs_cookies!r} and '--cookies-from-browser' not in sys.argv:\n"
        f"    sys.stderr.write({BOT_ERROR!r})\n"
        "    sys.exit(1)\n"
        f"sys.stdout.write({stdout!r})\n"
        f"sys.stderr.write({stderr!r})\n"
        f"sys.exit({returncode})\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return BinaryResolver(overrides={"yt-dlp": str(script)}), calls


def test_parse_video_info():
    info = parse_video_info(METADATA)
    assert info.title == "Live at the Park"
    assert info.duration == 212.5
    assert [f.resolution for f in info.formats] == ["audio", "1080p", "720p"]
    assert info.formats[2].filesize == 1000
    assert info.resolutions == ["1080p", "720p"]


def test_parse_video_info_defaults():
    info = parse_video_info("{}")
    assert info.title == "Unknown Video"
    assert info.formats == []


@pytest.mark.parametrize("output", ["", "{broken", "[1, 2]"])
def test_parse_video_info_rejects_bad_output(output):
    with pytest.raises(VideoAnalysisError):
        parse_video_info(output)


@pytest.mark.asyncio
async def test_analyze_reads_single_video(tmp_path):
    resolver, calls = fake_yt_dlp(tmp_path)
    info = await VideoAnalyzer(resolver).analyze(URL)

    assert info.title == "Live at the Park"
    assert calls.read_text().splitlines() == [f"--dump-single-json --no-playlist {URL}"]


@pytest.mark.asyncio
async def test_bot_check_retries_once_with_cookies(tmp_path):
    resolver, calls = fake_yt_dlp(tmp_path, needs_cookies=True)
    hints = CookieHints(tmp_path / "cookies.json", browser="firefox")

    info = await VideoAnalyzer(resolver, hints).analyze(URL)

    assert info.title == "Live at the Park"
    first, second = calls.read_text().splitlines()
    assert "--cookies-from-browser" not in first
    assert "--cookies-from-browser firefox" in second
    assert hints.status()[0]
    assert hints.extra_args(URL) == ["--cookies-from-browser", "firefox"]


@pytest.mark.asyncio
async def test_no_second_attempt_when_cookies_were_already_used(tmp_path):
    resolver, calls = fake_yt_dlp(tmp_path, stdout="", stderr=BOT_ERROR, returncode=1)
    hints = CookieHints(tmp_path / "cookies.json")
    hints.record_block()

    with pytest.raises(VideoAnalysisError) as excinfo:
        await VideoAnalyzer(resolver, hints).analyze(URL)

    assert excinfo.value.category == "robot-check"
    assert len(calls.read_text().splitlines()) == 1


@pytest.mark.asyncio
async def test_other_failures_are_not_retried(tmp_path):
    resolver, calls = fake_yt_dlp(
        tmp_path, stdout="", stderr="ERROR: HTTP Error 404: Not Found\n", returncode=1
    )
    hints = CookieHints(tmp_path / "cookies.json")

    with pytest.raises(VideoAnalysisError) as excinfo:
        await VideoAnalyzer(resolver, hints).analyze(URL)

    assert excinfo.value.category == "not-found"
    assert len(calls.read_text().splitlines()) == 1
    assert not hints.status()[0]


@pytest.mark.asyncio
async def test_analyze_without_yt_dlp(tmp_path):
    analyzer = VideoAnalyzer(BinaryResolver(overrides={"yt-dlp": str(tmp_path / "none")}))
    with pytest.raises(VideoAnalysisError) as excinfo:
        await analyzer.analyze(URL)
    assert excinfo.value.category == "launch-failure"
