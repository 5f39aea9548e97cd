"""wabridge – Broadcast fan-out.

``BroadcastDispatcher`` accepts a campaign, resolves its recipients and
returns at once; a background job then sends sequentially with a fixed
pause before each send. One failing recipient never aborts the job.

``ScheduledBroadcastRunner`` picks up persisted broadcasts whose time has
come and delivers them the same way.
"""

from __future__ import annotations

import asyncio
import random
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from wabridge.core.errors import DispatchError, NotFoundError, PersistenceError, TransportError
from wabridge.core.instrumentation import BROADCAST_SENDS
from wabridge.core.stats import StatsAggregator
from wabridge.integrations.jid import format_phone, is_addressable
from wabridge.memory.identity import IdentityResolver

logger = structlog.get_logger()

_MANUAL_SPLIT = re.compile(r"[\n,]+")

STATUS_SENT = "SENT"
STATUS_FAILED = "FAILED"


@dataclass
class BroadcastCriterion:
    """Manual numbers, when given, override the label selection."""
    label: str = "all"
    manual_numbers: str | None = None


@dataclass
class BroadcastResult:
    accepted: int


def parse_manual_numbers(raw: str | None, country_code: str = "62") -> list[str]:
    if not raw:
        return []
    targets = []
    for part in _MANUAL_SPLIT.split(raw):
        jid = format_phone(part.strip(), country_code)
        if jid and jid not in targets:
            targets.append(jid)
    return targets


class BroadcastDispatcher:
    def __init__(
        self,
        sessions: Any,
        persistence: Any,
        identity: IdentityResolver,
        stats: StatsAggregator,
        bus: Any,
        *,
        send_delay: float = 3.0,
        country_code: str = "62",
    ) -> None:
        self._sessions = sessions
        self._persistence = persistence
        self._identity = identity
        self._stats = stats
        self._bus = bus
        self._send_delay = send_delay
        self._country_code = country_code
        self._jobs: set[asyncio.Task] = set()

    async def resolve_targets(self, tenant_id: str, criterion: BroadcastCriterion) -> list[str]:
        if criterion.manual_numbers:
            manual = parse_manual_numbers(criterion.manual_numbers, self._country_code)
            return [self._identity.resolve_addressable(tenant_id, jid) for jid in manual]
        return await asyncio.to_thread(self._persistence.list_broadcast_targets, tenant_id, criterion.label)

    async def dispatch(self, tenant_id: str, criterion: BroadcastCriterion, body: str) -> BroadcastResult:
        """Start a broadcast. Raises NotFoundError without a connected session."""
        if self._sessions.handle_for(tenant_id) is None:
            raise NotFoundError(f"No connected session for tenant {tenant_id}")
        targets = await self.resolve_targets(tenant_id, criterion)
        logger.info("broadcast.accepted", tenant_id=tenant_id, recipients=len(targets))
        if targets:
            job = asyncio.create_task(self._run(tenant_id, targets, body))
            self._jobs.add(job)
            job.add_done_callback(self._jobs.discard)
        return BroadcastResult(accepted=len(targets))

    async def _send_one(self, tenant_id: str, jid: str, body: str) -> None:
        handle = self._sessions.handle_for(tenant_id)
        if handle is None:
            raise DispatchError("session inactive")
        try:
            await handle.send_message(jid, {"text": body})
        except TransportError as e:
            raise DispatchError(str(e)) from e

    async def _run(self, tenant_id: str, targets: list[str], body: str) -> None:
        sent = 0
        for jid in targets:
            await asyncio.sleep(self._send_delay)
            try:
                await self._send_one(tenant_id, jid, body)
            except DispatchError as e:
                BROADCAST_SENDS.labels(tenant_id=tenant_id, outcome="failed").inc()
                logger.warning("broadcast.send_failed", tenant_id=tenant_id, to=jid, error=str(e))
                continue
            sent += 1
            BROADCAST_SENDS.labels(tenant_id=tenant_id, outcome="sent").inc()
            try:
                await asyncio.to_thread(self._persistence.record_outbound_message, tenant_id, jid, body)
            except PersistenceError as e:
                logger.error("broadcast.persist_failed", tenant_id=tenant_id, error=str(e))

        self._stats.record_broadcast(tenant_id, sent, len(targets))
        logger.info("broadcast.completed", tenant_id=tenant_id, sent=sent, total=len(targets))
        await self._bus.publish_event(tenant_id, "stats_update", self._stats.snapshot(tenant_id))

    def pending_jobs(self) -> int:
        return len(self._jobs)

    async def drain(self) -> None:
        if self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)


class ScheduledBroadcastRunner:
    def __init__(
        self,
        sessions: Any,
        persistence: Any,
        *,
        country_code: str = "62",
        delay_range: tuple[float, float] = (1.0, 2.0),
    ) -> None:
        self._sessions = sessions
        self._persistence = persistence
        self._country_code = country_code
        self._delay_range = delay_range

    async def process_pending(self, now: datetime | None = None) -> int:
        """Deliver every PENDING broadcast due at ``now``. Returns how many were processed."""
        now = now or datetime.now(timezone.utc)
        try:
            due = await asyncio.to_thread(self._persistence.list_due_broadcasts, now)
        except PersistenceError as e:
            logger.error("broadcast.scheduled_fetch_failed", error=str(e))
            return 0

        for row in due:
            try:
                status, sent, error = await self._deliver(row)
            except (PersistenceError, TransportError) as e:
                status, sent, error = STATUS_FAILED, 0, str(e)
            try:
                await asyncio.to_thread(self._persistence.mark_broadcast_result, row.id, status, sent, error)
            except PersistenceError as e:
                logger.error("broadcast.scheduled_mark_failed", broadcast_id=row.id, error=str(e))
            logger.info("broadcast.scheduled_done", broadcast_id=row.id, tenant_id=row.tenant_id, status=status, sent=sent)
        return len(due)

    async def _deliver(self, row: Any) -> tuple[str, int, str | None]:
        if self._sessions.handle_for(row.tenant_id) is None:
            return STATUS_FAILED, 0, "session inactive"

        if row.manual_numbers:
            targets = parse_manual_numbers(row.manual_numbers, self._country_code)
        else:
            targets = await asyncio.to_thread(self._persistence.list_broadcast_targets, row.tenant_id, row.target_label)
        targets = [jid for jid in targets if is_addressable(jid)]

        sent = 0
        errors = []
        for jid in targets:
            handle = self._sessions.handle_for(row.tenant_id)
            if handle is None:
                errors.append(f"{jid}: session inactive")
                continue
            try:
                await handle.send_message(jid, {"text": row.message})
                sent += 1
                await asyncio.sleep(random.uniform(*self._delay_range))
            except TransportError as e:
                errors.append(f"{jid}: {e}")

        status = STATUS_SENT if sent > 0 else STATUS_FAILED
        return status, sent, "; ".join(errors) if errors else None

    async def run(self, interval: float = 30) -> None:
        logger.info("broadcast.scheduler_started", interval=interval)
        while True:
            await self.process_pending()
            await asyncio.sleep(interval)
