"""
Media Processing Layer.

This package is responsible for running the external tools: building their
command lines, supervising their processes and interpreting their output.
"""

from .binaries import FFMPEG, YT_DLP, BinaryResolver
from .commands import CommandBuilder, CommandSpec, infer_kind
from .error_classifier import ClassifiedError, ErrorCategory, classify_error
from .playlist_analyzer import PlaylistAnalyzer, is_playlist_url
from .progress_parser import ParserState, ProgressEvent, parse_line
from .supervisor import ExitStatus, ProcessHandle, ProcessSupervisor
from .video_analyzer import VideoAnalyzer, VideoInfo

__all__ = [
    "FFMPEG",
    "YT_DLP",
    "BinaryResolver",
    "ClassifiedError",
    "CommandBuilder",
    "CommandSpec",
    "ErrorCategory",
    "ExitStatus",
    "ParserState",
    "PlaylistAnalyzer",
    "ProcessHandle",
    "ProcessSupervisor",
    "ProgressEvent",
    "VideoAnalyzer",
    "VideoInfo",
    "classify_error",
    "infer_kind",
    "is_playlist_url",
    "parse_line",
]
