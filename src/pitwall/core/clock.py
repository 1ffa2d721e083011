"""Time source.

Every scheduling decision takes an explicit ``now``; this is the single place
the process reads the wall clock.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def monotonic() -> float:
    return time.monotonic()
