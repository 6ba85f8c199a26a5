"""Time source used by every polling loop.

Loops never call ``asyncio.sleep`` directly; they go through a :class:`Clock`
so shutdown can interrupt the wait and tests can run on virtual time.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Current wall-clock time (timezone-aware, UTC)."""
        ...

    def monotonic(self) -> float:
        """Seconds from an arbitrary origin, for measuring elapsed time."""
        ...

    async def sleep(self, seconds: float, cancel: asyncio.Event | None = None) -> bool:
        """Wait *seconds*; return ``True`` if *cancel* was set before then."""
        ...


class SystemClock:
    """Real time."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float, cancel: asyncio.Event | None = None) -> bool:
        seconds = max(seconds, 0.0)
        if cancel is None:
            await asyncio.sleep(seconds)
            return False
        if cancel.is_set():
            return True
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True
