"""Clock utilities for the game. Day boundaries are UTC."""

import datetime
import time


def now() -> datetime.datetime:
    """Get current timezone-aware UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def timestamp() -> float:
    """Get the current epoch timestamp."""
    return time.time()


def today_key(at: float = None) -> str:
    """Get the UTC date of a timestamp (default now) as a string key."""
    if at is None:
        return now().strftime("%Y-%m-%d")
    return datetime.datetime.fromtimestamp(at, datetime.timezone.utc).strftime("%Y-%m-%d")


def seconds_since(started_at: float, at: float = None) -> float:
    """Seconds elapsed since a timestamp."""
    if at is None:
        at = timestamp()
    return max(0.0, at - started_at)


def format_remaining(seconds: float) -> str:
    """Format a countdown as M:SS."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"
