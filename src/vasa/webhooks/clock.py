"""Injectable time source.

Every component that reads the time or waits takes a ``Clock`` so that
retry timing, rate-limit windows and sweeps can be driven deterministically.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Protocol

__all__ = [
    "Clock",
    "SystemClock",
]


class Clock(Protocol):
    """Time source used by the delivery engine."""

    def now(self) -> datetime:
        """Current timezone-aware UTC time."""
        ...

    def monotonic(self) -> float:
        """Monotonic seconds, for measuring durations."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""
        ...


class SystemClock:
    """Wall-clock implementation backed by ``time`` and ``asyncio``."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))
