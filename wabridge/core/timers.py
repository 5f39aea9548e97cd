"""wabridge – Delayed reply timers.

Fire-and-forget "typing delay" sends are scheduled as tasks keyed by
(tenant, chat). Deactivating a session cancels every pending task of the
tenant.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger()


class ReplyScheduler:
    """Cancellable delayed tasks grouped by tenant and chat."""

    def __init__(self) -> None:
        self._tasks: dict[tuple[str, str], set[asyncio.Task]] = {}

    def schedule(
        self,
        tenant_id: str,
        chat_id: str,
        delay: float,
        action: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task:
        """Run ``action`` after ``delay`` seconds unless cancelled first."""
        key = (tenant_id, chat_id)

        async def _run() -> None:
            try:
                if delay > 0:
                    await asyncio.sleep(delay)
                await action()
            except asyncio.CancelledError:
                logger.debug("timers.cancelled", tenant_id=tenant_id, chat_id=chat_id)
                raise
            except Exception as e:
                logger.error("timers.action_failed", tenant_id=tenant_id, chat_id=chat_id, error=str(e))

        task = asyncio.create_task(_run())
        self._tasks.setdefault(key, set()).add(task)
        task.add_done_callback(lambda t: self._discard(key, t))
        return task

    def _discard(self, key: tuple[str, str], task: asyncio.Task) -> None:
        tasks = self._tasks.get(key)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            self._tasks.pop(key, None)

    def pending(self, tenant_id: str, chat_id: str | None = None) -> int:
        if chat_id is not None:
            return len(self._tasks.get((tenant_id, chat_id), ()))
        return sum(len(t) for (tid, _), t in self._tasks.items() if tid == tenant_id)

    def cancel_tenant(self, tenant_id: str) -> int:
        """Cancel every pending timer of a tenant. Returns the number cancelled."""
        cancelled = 0
        for key in [k for k in self._tasks if k[0] == tenant_id]:
            for task in list(self._tasks.get(key, ())):
                if not task.done():
                    task.cancel()
                    cancelled += 1
        if cancelled:
            logger.info("timers.tenant_cancelled", tenant_id=tenant_id, count=cancelled)
        return cancelled

    async def drain(self) -> None:
        """Wait for all currently scheduled timers to finish."""
        tasks = [t for group in self._tasks.values() for t in group]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
