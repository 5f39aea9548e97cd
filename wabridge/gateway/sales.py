"""wabridge – Sales recording.

Sales are attributed to the customer's addressable identity: a linked id
seen in the chat is resolved first, so revenue lands on the phone number
the rest of the system knows.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from wabridge.core.stats import StatsAggregator
from wabridge.integrations.jid import normalize_jid
from wabridge.memory.identity import IdentityResolver

logger = structlog.get_logger()


class SalesRecorder:
    def __init__(self, persistence: Any, identity: IdentityResolver, stats: StatsAggregator, bus: Any = None) -> None:
        self._persistence = persistence
        self._identity = identity
        self._stats = stats
        self._bus = bus

    async def record(
        self,
        tenant_id: str,
        customer_jid: str,
        customer_name: str | None,
        items: list[dict[str, Any]],
        *,
        paid: bool = False,
    ) -> str:
        """Persist one row per item. Returns the identity the sale was stored under."""
        resolved = self._identity.resolve_addressable(tenant_id, normalize_jid(customer_jid))
        if resolved != normalize_jid(customer_jid):
            logger.info("sales.identity_resolved", tenant_id=tenant_id, linked=customer_jid, identity=resolved)
        await asyncio.to_thread(self._persistence.create_sales, tenant_id, resolved, customer_name, items)

        self._stats.record_invoice_issued(tenant_id)
        if paid:
            self._stats.record_invoice_paid(tenant_id)
        if self._bus is not None:
            await self._bus.publish_event(tenant_id, "stats_update", self._stats.snapshot(tenant_id))
        return resolved
