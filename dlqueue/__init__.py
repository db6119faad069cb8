"""
dlqueue: a concurrent, resumable download queue driven by yt-dlp and ffmpeg.
"""

__version__ = "0.4.0"
