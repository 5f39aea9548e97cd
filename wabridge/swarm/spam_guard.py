"""wabridge – Per-user message flood protection.

Counts inbound messages per (tenant, user) in a fixed window. Crossing the
warn threshold produces a one-time warning; exceeding the maximum
blacklists the user for a while, during which no automated replies go out.
Automated replies to the same user are throttled as well.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

import structlog

logger = structlog.get_logger()


@dataclass
class SpamVerdict:
    count: int = 0
    blocked: bool = False
    newly_blocked: bool = False
    should_warn: bool = False
    can_auto_reply: bool = True


@dataclass
class _Window:
    count: int = 0
    first_at: float | None = None
    last_auto_reply: float | None = None
    warned: bool = False


class SpamGuard:
    def __init__(
        self,
        window_seconds: float = 60,
        max_messages: int = 20,
        warn_threshold: int = 15,
        auto_reply_throttle_seconds: float = 5.0,
        blacklist_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window_seconds = window_seconds
        self._max_messages = max_messages
        self._warn_threshold = warn_threshold
        self._throttle = auto_reply_throttle_seconds
        self._blacklist_seconds = blacklist_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._blacklist: dict[str, float] = {}

    @staticmethod
    def _key(tenant_id: str, user_id: str) -> str:
        return f"{tenant_id}:{user_id}"

    def is_blacklisted(self, tenant_id: str, user_id: str) -> bool:
        key = self._key(tenant_id, user_id)
        until = self._blacklist.get(key)
        if until is None:
            return False
        if self._clock() >= until:
            del self._blacklist[key]
            return False
        return True

    def blacklist(self, tenant_id: str, user_id: str, seconds: float | None = None) -> None:
        key = self._key(tenant_id, user_id)
        self._blacklist[key] = self._clock() + (seconds or self._blacklist_seconds)
        logger.warning("spam.user_blacklisted", tenant_id=tenant_id, user_id=user_id)

    def unblacklist(self, tenant_id: str, user_id: str) -> None:
        self._blacklist.pop(self._key(tenant_id, user_id), None)

    def check(self, tenant_id: str, user_id: str) -> SpamVerdict:
        """Count one inbound message and classify the sender."""
        if self.is_blacklisted(tenant_id, user_id):
            return SpamVerdict(blocked=True, can_auto_reply=False)

        now = self._clock()
        key = self._key(tenant_id, user_id)
        window = self._windows.setdefault(key, _Window())
        if window.first_at is not None and now - window.first_at > self._window_seconds:
            window.count = 0
            window.first_at = None
            window.warned = False
        if window.first_at is None:
            window.first_at = now
        window.count += 1

        verdict = SpamVerdict(
            count=window.count,
            can_auto_reply=window.last_auto_reply is None or now - window.last_auto_reply > self._throttle,
        )
        if window.count > self._max_messages:
            self.blacklist(tenant_id, user_id)
            self._windows.pop(key, None)
            verdict.blocked = True
            verdict.newly_blocked = True
            verdict.can_auto_reply = False
        elif window.count >= self._warn_threshold and not window.warned:
            window.warned = True
            verdict.should_warn = True
        return verdict

    def mark_auto_reply_sent(self, tenant_id: str, user_id: str) -> None:
        window = self._windows.get(self._key(tenant_id, user_id))
        if window is not None:
            window.last_auto_reply = self._clock()

    def sweep(self) -> int:
        """Drop expired windows and blacklist entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, w in self._windows.items() if w.first_at is not None and now - w.first_at > self._window_seconds]
        for key in expired:
            del self._windows[key]
        released = [k for k, until in self._blacklist.items() if now >= until]
        for key in released:
            del self._blacklist[key]
        return len(expired) + len(released)

    async def run_sweeper(self, interval: float = 300) -> None:
        logger.info("spam.sweeper_started", interval=interval)
        while True:
            await asyncio.sleep(interval)
            removed = self.sweep()
            if removed:
                logger.debug("spam.swept", removed=removed, windows=len(self._windows), blacklisted=len(self._blacklist))
