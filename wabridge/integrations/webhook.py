"""wabridge – Outbound webhook forwarder.

Received messages are POSTed to the tenant session's webhook URL. Delivery
is fire-and-forget: failures are logged and never reach the pipeline.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

logger = structlog.get_logger()


class WebhookForwarder:
    def __init__(self, timeout: float = 10.0) -> None:
        self._timeout = timeout
        self._tasks: set[asyncio.Task] = set()

    async def post(self, url: str, payload: dict[str, Any]) -> bool:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.post(url, json=payload)
                response.raise_for_status()
                return True
            except httpx.HTTPError as e:
                logger.warning("webhook.delivery_failed", url=url, error=str(e))
                return False

    def forward(self, url: str | None, payload: dict[str, Any]) -> asyncio.Task | None:
        """Schedule delivery without waiting for it."""
        if not url:
            return None
        task = asyncio.create_task(self.post(url, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
