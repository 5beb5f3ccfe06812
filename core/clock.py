"""
core/clock.py -- Time source for the auth core.

Session expiry is pure arithmetic on "now", so SessionManager takes a Clock
rather than calling datetime.now() itself. Tests pass a manually advanced
clock; production uses SystemClock.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)
