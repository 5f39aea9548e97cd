"""wabridge – Inbound event deduplication.

The transport may redeliver the same message event (reconnects, history
sync). Each event id is accepted at most once within the window; entries
expire individually so an id seen just before a sweep is still rejected
for the full window.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

import structlog

logger = structlog.get_logger()

DEFAULT_WINDOW_SECONDS = 300


class DedupGuard:
    """Check-and-mark set of recently seen event ids with per-entry expiry."""

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window_seconds = window_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}

    def should_process(self, event_id: str) -> bool:
        """Return True exactly once per id within the window.

        Check and mark happen without an await in between, so two tasks
        racing on the same id cannot both get True.
        """
        now = self._clock()
        seen_at = self._seen.get(event_id)
        if seen_at is not None and now - seen_at < self._window_seconds:
            return False
        self._seen[event_id] = now
        return True

    def sweep(self) -> int:
        """Drop expired entries. Returns the number removed."""
        cutoff = self._clock() - self._window_seconds
        expired = [k for k, t in self._seen.items() if t <= cutoff]
        for k in expired:
            del self._seen[k]
        return len(expired)

    async def run_sweeper(self) -> None:
        logger.info("dedup.sweeper_started", window=self._window_seconds)
        while True:
            await asyncio.sleep(self._window_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("dedup.swept", removed=removed, remaining=len(self._seen))

    def __len__(self) -> int:
        return len(self._seen)
