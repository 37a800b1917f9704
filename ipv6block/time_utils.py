"""
Time utilities - UTC only.

Every timestamp the tool reports and every pause it takes goes through here,
so tests can patch a single place.
"""

import time
from datetime import datetime, timezone


def now() -> float:
    """Unix timestamp."""
    return time.time()

def now_iso() -> str:
    """UTC ISO-8601 timestamp."""
    return datetime.now(timezone.utc).isoformat()

def elapsed(start: float) -> float:
    """Seconds since ``start``."""
    return now() - start

def sleep(duration: float):
    """Sleep function."""
    if duration > 0:
        time.sleep(duration)
