"""wabridge – Message ingestion pipeline.

Every message event a tenant's connection delivers goes through ``ingest``:

  normalize → dedup → count → (per-chat lock: name, conversation, media,
  message, reply decision) → publish → webhook

Counting happens before anything that can fail, so statistics reflect what
was observed even when the store is down. Events of one chat are processed
in arrival order; different chats and tenants run concurrently.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any

import structlog

from wabridge.core.errors import PersistenceError, TransportError
from wabridge.core.instrumentation import DUPLICATES_DROPPED, EVENTS_INGESTED
from wabridge.core.keyed_lock import KeyedLock
from wabridge.core.registry import Registry
from wabridge.core.stats import StatsAggregator
from wabridge.gateway.dedup import DedupGuard
from wabridge.gateway.schemas import InboundEvent
from wabridge.integrations.jid import is_addressable, normalize_jid
from wabridge.integrations.normalizer import MessageNormalizer
from wabridge.integrations.transport import TransportHandle
from wabridge.integrations.webhook import WebhookForwarder
from wabridge.memory.identity import IdentityResolver
from wabridge.swarm.arbitrator import ReplyArbitrator
from wabridge.swarm.spam_guard import SpamGuard

logger = structlog.get_logger()

DEFAULT_GROUP_NAME = "WhatsApp Group"


class MessageIngestionPipeline:
    def __init__(
        self,
        *,
        dedup: DedupGuard,
        stats: StatsAggregator,
        identity: IdentityResolver,
        persistence: Any,
        arbitrator: ReplyArbitrator,
        bus: Any,
        spam_guard: SpamGuard | None = None,
        webhooks: WebhookForwarder | None = None,
        normalizer: MessageNormalizer | None = None,
        locks: KeyedLock | None = None,
        media_dir: str = "data/media",
        spam_warning_text: str = "",
        spam_block_text: str = "",
    ) -> None:
        self._dedup = dedup
        self._stats = stats
        self._identity = identity
        self._persistence = persistence
        self._arbitrator = arbitrator
        self._bus = bus
        self._spam_guard = spam_guard
        self._webhooks = webhooks or WebhookForwarder()
        self._normalizer = normalizer or MessageNormalizer()
        self._locks = locks or KeyedLock()
        self._media_dir = media_dir
        self._spam_warning_text = spam_warning_text
        self._spam_block_text = spam_block_text
        self._group_subjects: Registry[dict[str, str]] = Registry(dict)

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    async def ingest(
        self,
        tenant_id: str,
        raw_event: dict[str, Any],
        handle: TransportHandle | None = None,
        webhook_url: str | None = None,
    ) -> dict[str, Any] | None:
        """Process one raw message event. Returns the published payload.

        Events without content, status broadcasts and duplicates return None.
        """
        event = self._normalizer.normalize(raw_event)
        if event is None:
            return None
        if not self._dedup.should_process(f"{tenant_id}:{event.key_id}"):
            DUPLICATES_DROPPED.labels(tenant_id=tenant_id).inc()
            logger.debug("pipeline.duplicate_dropped", tenant_id=tenant_id, key_id=event.key_id)
            return None

        if event.from_me:
            self._stats.record_outbound(tenant_id)
        else:
            self._stats.record_inbound(tenant_id, event.push_name or "User")
        if event.is_media:
            self._stats.record_media(tenant_id)
        EVENTS_INGESTED.labels(tenant_id=tenant_id, direction="out" if event.from_me else "in").inc()

        async with self._locks.hold(f"{tenant_id}:{event.chat_id}"):
            payload = await self._process(tenant_id, event, handle)

        await self._bus.publish_event(tenant_id, "message", payload)
        await self._bus.publish_event(tenant_id, "stats_update", self._stats.snapshot(tenant_id))
        if webhook_url and not event.from_me:
            self._webhooks.forward(webhook_url, {**payload, "tenant_id": tenant_id, "event": "message"})
        return payload

    async def _process(
        self,
        tenant_id: str,
        event: InboundEvent,
        handle: TransportHandle | None,
    ) -> dict[str, Any]:
        chat_name = await self._chat_name(tenant_id, event, handle)
        sender_name = self._identity.resolve_display(tenant_id, event.sender_id, event.push_name)
        conversation_jid = self._identity.resolve_addressable(tenant_id, event.chat_id)

        profile_pic_url = None
        if handle is not None:
            try:
                profile_pic_url = await handle.profile_picture_url(event.chat_id)
            except TransportError:
                profile_pic_url = None

        conversation_id = None
        try:
            conversation_id, created = await asyncio.to_thread(
                self._persistence.upsert_conversation,
                tenant_id,
                conversation_jid,
                None if event.from_me and not event.is_group else chat_name,
                profile_pic_url,
            )
            if created:
                self._stats.record_new_customer(tenant_id)
        except PersistenceError as e:
            logger.error("pipeline.conversation_failed", tenant_id=tenant_id, error=str(e))

        media_url = None
        if event.is_media and handle is not None:
            media_url = await self._save_media(tenant_id, event, handle)

        message_id = None
        if conversation_id is not None:
            try:
                message_id = await asyncio.to_thread(
                    self._persistence.create_message,
                    tenant_id,
                    conversation_id,
                    key_id=event.key_id,
                    from_me=event.from_me,
                    sender_jid=event.sender_id,
                    sender_name=sender_name,
                    kind=event.kind.value,
                    body=event.text,
                    media_url=media_url,
                )
            except PersistenceError as e:
                logger.error("pipeline.message_failed", tenant_id=tenant_id, error=str(e))

        if not event.from_me and event.text:
            await self._decide_reply(tenant_id, event, sender_name, handle)

        return {
            "id": message_id or event.key_id,
            "key_id": event.key_id,
            "from": event.chat_id,
            "participant": event.sender_id,
            "chat_name": chat_name,
            "sender_name": sender_name,
            "chat_profile_pic_url": profile_pic_url,
            "text": event.text,
            "media_url": media_url,
            "media_type": event.kind.value if event.is_media else None,
            "from_me": event.from_me,
            "is_group": event.is_group,
            "timestamp": event.timestamp.isoformat(),
        }

    async def _chat_name(self, tenant_id: str, event: InboundEvent, handle: TransportHandle | None) -> str:
        if not event.is_group:
            # In a direct chat the push name of an own message is the tenant's, not the contact's.
            push_name = None if event.from_me else event.push_name
            return self._identity.resolve_display(tenant_id, event.chat_id, push_name)
        subjects = self._group_subjects.get_or_create(tenant_id)
        cached = subjects.get(event.chat_id)
        if cached:
            return cached
        if handle is None:
            return DEFAULT_GROUP_NAME
        try:
            metadata = await handle.group_metadata(event.chat_id)
        except TransportError:
            return DEFAULT_GROUP_NAME
        subject = (metadata or {}).get("subject") or DEFAULT_GROUP_NAME
        if subject != DEFAULT_GROUP_NAME:
            subjects[event.chat_id] = subject
        return subject

    async def _save_media(self, tenant_id: str, event: InboundEvent, handle: TransportHandle) -> str | None:
        try:
            data = await handle.download_media(event.raw)
        except TransportError as e:
            logger.warning("pipeline.media_download_failed", tenant_id=tenant_id, key_id=event.key_id, error=str(e))
            return None
        file_name = f"{event.key_id}.{event.media_ext}"
        try:
            await asyncio.to_thread(self._write_file, os.path.join(self._media_dir, file_name), data)
        except OSError as e:
            logger.error("pipeline.media_write_failed", tenant_id=tenant_id, error=str(e))
            return None
        return f"/media/{file_name}"

    @staticmethod
    def _write_file(path: str, data: bytes) -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)

    async def _decide_reply(
        self,
        tenant_id: str,
        event: InboundEvent,
        sender_name: str,
        handle: TransportHandle | None,
    ) -> None:
        eligible = (
            handle is not None
            and not event.is_group
            and not event.is_media
            and not event.text.startswith("[")
        )
        if not eligible:
            self._arbitrator.scan_complaints(tenant_id, event.text)
            return

        allow_ai = True
        if self._spam_guard is not None:
            verdict = self._spam_guard.check(tenant_id, event.sender_id)
            if verdict.blocked:
                if verdict.newly_blocked and self._spam_block_text:
                    await self._send_notice(tenant_id, event.chat_id, self._spam_block_text, handle)
                self._arbitrator.scan_complaints(tenant_id, event.text)
                return
            if verdict.should_warn:
                if self._spam_warning_text:
                    await self._send_notice(tenant_id, event.chat_id, self._spam_warning_text, handle)
                allow_ai = False
            if not verdict.can_auto_reply:
                logger.info("pipeline.reply_throttled", tenant_id=tenant_id)
                self._arbitrator.scan_complaints(tenant_id, event.text)
                return

        await self._arbitrator.respond(
            tenant_id,
            event.chat_id,
            event.sender_id,
            event.text,
            sender_name,
            handle,
            allow_ai=allow_ai,
        )

    async def _send_notice(self, tenant_id: str, chat_id: str, text: str, handle: TransportHandle) -> None:
        try:
            await handle.send_message(chat_id, {"text": text})
        except TransportError as e:
            logger.warning("pipeline.notice_failed", tenant_id=tenant_id, error=str(e))

    async def ingest_contacts(self, tenant_id: str, contacts: list[dict[str, Any]]) -> int:
        """Record contact names and linked ids. Returns the number recorded."""
        recorded = 0
        for contact in contacts:
            identity = normalize_jid(contact.get("id"))
            if not identity:
                continue
            name = contact.get("name") or contact.get("notify") or contact.get("verifiedName")
            self._identity.record_contact(tenant_id, identity, name=name, linked_identity=contact.get("lid"))
            recorded += 1
            if name and is_addressable(identity):
                try:
                    await asyncio.to_thread(self._persistence.upsert_conversation, tenant_id, identity, name)
                except PersistenceError as e:
                    logger.warning("pipeline.contact_upsert_failed", tenant_id=tenant_id, error=str(e))
        return recorded

    def forget_tenant(self, tenant_id: str) -> None:
        self._group_subjects.pop(tenant_id)
