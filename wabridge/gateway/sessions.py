"""wabridge – Session registry and connection lifecycle.

Owns exactly one live transport connection per tenant:

    DISCONNECTED → CONNECTING → AWAITING_PAIRING → CONNECTED
    CONNECTED → CONNECTING          (recoverable closure, reconnect)
    any → DISCONNECTED, removed     (logout signal or explicit deactivate)

Each session runs an event pump task that consumes the connection's events
and hands message events to the ingestion pipeline, one task per event.
Activation and teardown for a tenant are serialized by a per-tenant lock.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from wabridge.core.errors import NotFoundError, PersistenceError, TransportError
from wabridge.core.instrumentation import ACTIVE_SESSIONS
from wabridge.core.keyed_lock import KeyedLock
from wabridge.core.registry import Registry
from wabridge.core.timers import ReplyScheduler
from wabridge.gateway.pipeline import MessageIngestionPipeline
from wabridge.gateway.schemas import SessionState, SessionStatus
from wabridge.integrations.jid import format_phone
from wabridge.integrations.transport import (
    ClosedEvent,
    ContactsUpserted,
    CredentialsUpdated,
    MessageUpserted,
    QrEvent,
    ReadyEvent,
    TransportClient,
    TransportHandle,
)
from wabridge.memory.identity import IdentityResolver
from wabridge.swarm.arbitrator import ReplyArbitrator

logger = structlog.get_logger()


@dataclass
class Session:
    tenant_id: str
    status: SessionStatus = SessionStatus.DISCONNECTED
    handle: TransportHandle | None = None
    qr: str | None = None
    webhook_url: str | None = None
    pump: asyncio.Task | None = None
    tasks: set[asyncio.Task] = field(default_factory=set)
    first_signal: asyncio.Event = field(default_factory=asyncio.Event)

    def state(self) -> SessionState:
        return SessionState(
            tenant_id=self.tenant_id,
            status=self.status,
            qr=self.qr,
            webhook_url=self.webhook_url,
        )


class SessionRegistry:
    def __init__(
        self,
        transport: TransportClient,
        pipeline: MessageIngestionPipeline,
        persistence: Any,
        bus: Any,
        scheduler: ReplyScheduler,
        arbitrator: ReplyArbitrator,
        identity: IdentityResolver,
        *,
        country_code: str = "62",
        activation_wait_seconds: float = 10.0,
        reconnect_delay_seconds: float = 1.0,
        reconnect_max_delay_seconds: float = 30.0,
    ) -> None:
        self._transport = transport
        self._pipeline = pipeline
        self._persistence = persistence
        self._bus = bus
        self._scheduler = scheduler
        self._arbitrator = arbitrator
        self._identity = identity
        self._country_code = country_code
        self._activation_wait = activation_wait_seconds
        self._reconnect_delay = reconnect_delay_seconds
        self._reconnect_max_delay = reconnect_max_delay_seconds
        self._sessions: Registry[Session] = Registry()
        self._locks = KeyedLock()

    # ── Queries ───────────────────────────────────────────────────

    def status_of(self, tenant_id: str) -> SessionState:
        session = self._sessions.get(tenant_id)
        if session is None:
            return SessionState(tenant_id=tenant_id, status=SessionStatus.DISCONNECTED)
        return session.state()

    def handle_for(self, tenant_id: str) -> TransportHandle | None:
        """The live handle of a CONNECTED session, else None."""
        session = self._sessions.get(tenant_id)
        if session is None or session.status != SessionStatus.CONNECTED:
            return None
        return session.handle

    def tenants(self) -> list[str]:
        return self._sessions.keys()

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._sessions

    # ── Activation ────────────────────────────────────────────────

    async def activate(self, tenant_id: str, webhook_url: str | None = None, *, wait: bool = True) -> SessionState:
        """Create (or return) the tenant's session.

        A session that is already connected or still connecting is returned
        as is, with no transport call; a given webhook URL is recorded.
        Connect failures raise TransportError.
        """
        async with self._locks.hold(tenant_id):
            session = self._sessions.get(tenant_id)
            if session is not None:
                if webhook_url:
                    session.webhook_url = webhook_url
                if session.status != SessionStatus.DISCONNECTED:
                    logger.debug("sessions.already_active", tenant_id=tenant_id, status=session.status.value)
                    return session.state()
            else:
                session = Session(tenant_id=tenant_id, webhook_url=webhook_url)
                self._sessions.set(tenant_id, session)
                ACTIVE_SESSIONS.set(len(self._sessions))

            try:
                await self._connect(session)
            except TransportError:
                self._sessions.pop(tenant_id)
                ACTIVE_SESSIONS.set(len(self._sessions))
                session.status = SessionStatus.DISCONNECTED
                await self._publish_status(session)
                raise

        if wait and self._activation_wait > 0:
            try:
                await asyncio.wait_for(session.first_signal.wait(), timeout=self._activation_wait)
            except asyncio.TimeoutError:
                logger.info("sessions.activation_pending", tenant_id=tenant_id)
        return session.state()

    async def _connect(self, session: Session) -> None:
        session.status = SessionStatus.CONNECTING
        session.first_signal = asyncio.Event()
        await self._publish_status(session)

        try:
            credentials = await asyncio.to_thread(self._persistence.load_credentials, session.tenant_id)
        except PersistenceError as e:
            logger.error("sessions.credentials_load_failed", tenant_id=session.tenant_id, error=str(e))
            credentials = None

        handle = await self._transport.connect(session.tenant_id, credentials)
        session.handle = handle
        session.pump = asyncio.create_task(self._pump(session, handle))
        logger.info("sessions.connecting", tenant_id=session.tenant_id, restored=credentials is not None)

    # ── Event pump ────────────────────────────────────────────────

    async def _pump(self, session: Session, handle: TransportHandle) -> None:
        tenant_id = session.tenant_id
        async for event in handle.events():
            if isinstance(event, MessageUpserted):
                task = asyncio.create_task(
                    self._pipeline.ingest(tenant_id, event.raw, handle, session.webhook_url)
                )
                session.tasks.add(task)
                task.add_done_callback(lambda t: self._ingest_done(session, t))
            elif isinstance(event, QrEvent):
                session.qr = event.qr
                session.status = SessionStatus.AWAITING_PAIRING
                session.first_signal.set()
                await self._bus.publish_event(tenant_id, "qr", event.qr)
                await self._publish_status(session)
            elif isinstance(event, ReadyEvent):
                session.qr = None
                session.status = SessionStatus.CONNECTED
                session.first_signal.set()
                logger.info("sessions.connected", tenant_id=tenant_id)
                await self._bus.publish_event(tenant_id, "ready", {"status": session.status.value})
                await self._publish_status(session)
                await self._arbitrator.reload_rules(tenant_id)
            elif isinstance(event, ContactsUpserted):
                await self._pipeline.ingest_contacts(tenant_id, event.contacts)
            elif isinstance(event, CredentialsUpdated):
                try:
                    await asyncio.to_thread(self._persistence.save_credentials, tenant_id, event.blob)
                except PersistenceError as e:
                    logger.error("sessions.credentials_save_failed", tenant_id=tenant_id, error=str(e))
            elif isinstance(event, ClosedEvent):
                await self._on_closed(session, handle, event)
                return
        await self._on_closed(session, handle, ClosedEvent(reason="event stream ended"))

    def _ingest_done(self, session: Session, task: asyncio.Task) -> None:
        session.tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("sessions.ingest_failed", tenant_id=session.tenant_id, error=repr(error))

    async def _on_closed(self, session: Session, handle: TransportHandle, event: ClosedEvent) -> None:
        tenant_id = session.tenant_id
        if self._sessions.get(tenant_id) is not session or session.handle is not handle:
            return
        session.first_signal.set()

        if event.logged_out:
            logger.warning("sessions.logged_out", tenant_id=tenant_id, reason=event.reason)
            async with self._locks.hold(tenant_id):
                if self._sessions.get(tenant_id) is session:
                    await self._teardown(session, logout=False)
            return

        logger.warning("sessions.connection_closed", tenant_id=tenant_id, reason=event.reason)
        session.handle = None
        session.status = SessionStatus.CONNECTING
        await self._publish_status(session)
        await self._close_handle(tenant_id, handle)
        await self._reconnect(session)

    async def _reconnect(self, session: Session) -> None:
        tenant_id = session.tenant_id
        delay = self._reconnect_delay
        while True:
            await asyncio.sleep(delay)
            async with self._locks.hold(tenant_id):
                if self._sessions.get(tenant_id) is not session or session.handle is not None:
                    return
                try:
                    await self._connect(session)
                    return
                except TransportError as e:
                    session.status = SessionStatus.CONNECTING
                    logger.warning("sessions.reconnect_failed", tenant_id=tenant_id, retry_in=delay, error=str(e))
            delay = min(delay * 2, self._reconnect_max_delay)

    # ── Teardown ──────────────────────────────────────────────────

    async def deactivate(self, tenant_id: str) -> SessionState:
        """Log out and remove a tenant's session. Raises NotFoundError."""
        async with self._locks.hold(tenant_id):
            session = self._sessions.get(tenant_id)
            if session is None:
                raise NotFoundError(f"No session for tenant {tenant_id}")
            await self._teardown(session, logout=True)
        return SessionState(tenant_id=tenant_id, status=SessionStatus.DISCONNECTED)

    async def _teardown(self, session: Session, *, logout: bool) -> None:
        tenant_id = session.tenant_id
        self._sessions.pop(tenant_id)
        ACTIVE_SESSIONS.set(len(self._sessions))
        handle, session.handle = session.handle, None

        if logout and handle is not None:
            try:
                await handle.logout()
            except TransportError as e:
                logger.warning("sessions.logout_failed", tenant_id=tenant_id, error=str(e))

        await self._stop_pump(session)
        cancelled = self._scheduler.cancel_tenant(tenant_id)
        if handle is not None:
            await self._close_handle(tenant_id, handle)

        try:
            await asyncio.to_thread(self._persistence.delete_credentials, tenant_id)
        except PersistenceError as e:
            logger.error("sessions.credentials_delete_failed", tenant_id=tenant_id, error=str(e))

        self._pipeline.forget_tenant(tenant_id)
        self._arbitrator.forget_tenant(tenant_id)
        session.status = SessionStatus.DISCONNECTED
        session.qr = None
        session.first_signal.set()
        logger.info("sessions.removed", tenant_id=tenant_id, timers_cancelled=cancelled)
        await self._publish_status(session)

    async def _stop_pump(self, session: Session) -> None:
        pump, session.pump = session.pump, None
        if pump is None or pump is asyncio.current_task() or pump.done():
            return
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)

    async def _close_handle(self, tenant_id: str, handle: TransportHandle) -> None:
        try:
            await handle.close()
        except TransportError as e:
            logger.debug("sessions.close_failed", tenant_id=tenant_id, error=str(e))

    # ── Startup / shutdown ────────────────────────────────────────

    async def recover_all(self) -> int:
        """Re-activate every tenant with stored credentials, independently."""
        try:
            tenants = await asyncio.to_thread(self._persistence.list_tenants_with_credentials)
        except PersistenceError as e:
            logger.error("sessions.recovery_failed", error=str(e))
            return 0
        results = await asyncio.gather(
            *(self.activate(tenant_id, wait=False) for tenant_id in tenants),
            return_exceptions=True,
        )
        recovered = 0
        for tenant_id, result in zip(tenants, results):
            if isinstance(result, BaseException):
                logger.error("sessions.recovery_tenant_failed", tenant_id=tenant_id, error=str(result))
            else:
                recovered += 1
        logger.info("sessions.recovered", recovered=recovered, total=len(tenants))
        return recovered

    async def shutdown(self) -> None:
        """Close every connection without logging out."""
        for tenant_id in self._sessions.keys():
            session = self._sessions.pop(tenant_id)
            if session is None:
                continue
            await self._stop_pump(session)
            self._scheduler.cancel_tenant(tenant_id)
            handle, session.handle = session.handle, None
            if handle is not None:
                await self._close_handle(tenant_id, handle)
        ACTIVE_SESSIONS.set(0)
        logger.info("sessions.shutdown")

    # ── Manual send ───────────────────────────────────────────────

    async def send_text(self, tenant_id: str, identity: str, text: str) -> dict[str, Any]:
        """Foreground send. Raises NotFoundError without a connected session."""
        handle = self.handle_for(tenant_id)
        if handle is None:
            raise NotFoundError(f"No connected session for tenant {tenant_id}")
        jid = identity if "@" in identity else format_phone(identity, self._country_code)
        jid = self._identity.resolve_addressable(tenant_id, jid)
        result = await handle.send_message(jid, {"text": text})
        try:
            await asyncio.to_thread(self._persistence.record_outbound_message, tenant_id, jid, text)
        except PersistenceError as e:
            logger.error("sessions.outbound_persist_failed", tenant_id=tenant_id, error=str(e))
        return {"to": jid, "id": (result or {}).get("id")}

    async def _publish_status(self, session: Session) -> None:
        await self._bus.publish_event(
            session.tenant_id,
            "connection_status",
            {"status": session.status.value, "qr": session.qr},
        )
