"""
Helper functions for formatting data into human-readable strings.
"""

import time


def format_duration(seconds: float) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 34m 12s').
    """
    s = int(seconds)
    hours, remainder = divmod(s, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_age(timestamp: float) -> str:
    """Formats an epoch timestamp as a relative age, e.g. '5m ago'."""
    return f"{format_duration(max(0.0, time.time() - timestamp))} ago"


def parse_percent(progress: str | None) -> float | None:
    """Returns the numeric value of a job's progress string, or None for phase labels."""
    if not progress:
        return None
    try:
        return max(0.0, min(100.0, float(progress)))
    except ValueError:
        return None


def parse_selection(spec: str, upper: int) -> set[int]:
    """
    Parses a 1-based selection like ``'1,3-5'`` into a set of indices.

    Raises:
        ValueError: On malformed ranges or indices outside 1..upper.
    """
    selected: set[int] = set()
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start_str, end_str = part.split("-", 1)
            start, end = int(start_str), int(end_str)
            if start > end:
                raise ValueError(f"Invalid range '{part}'.")
            selected.update(range(start, end + 1))
        else:
            selected.add(int(part))
    if bad := [i for i in selected if i < 1 or i > upper]:
        raise ValueError(f"Selection out of range 1-{upper}: {sorted(bad)}")
    return selected
