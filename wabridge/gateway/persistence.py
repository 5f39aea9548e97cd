"""wabridge – Persistence collaborator.

Tenant-scoped store operations on top of the SQLAlchemy session factory.
Methods are synchronous; async callers run them via ``asyncio.to_thread``.
Every SQLAlchemy failure surfaces as ``PersistenceError``.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from wabridge.core.crypto import decrypt_value, encrypt_value
from wabridge.core.errors import PersistenceError
from wabridge.core.models import (
    AutoReplyRule,
    Conversation,
    Credential,
    Message,
    Sale,
    ScheduledBroadcast,
    TenantSetting,
)
from wabridge.integrations.jid import ADDRESSABLE_SUFFIX, LINKED_SUFFIX

logger = structlog.get_logger()

CREDENTIALS_SLOT = "creds"


def _naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


@dataclass
class ScheduledBroadcastRow:
    id: int
    tenant_id: str
    title: str | None
    message: str
    target_label: str
    manual_numbers: str | None
    scheduled_at: datetime
    status: str


class PersistenceService:
    """Core persistence layer, one short-lived SQLAlchemy session per call."""

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        if session_factory is None:
            from wabridge.core.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    @contextmanager
    def _session(self, op: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("db.operation_failed", op=op, error=str(e))
            raise PersistenceError(f"{op} failed: {e}") from e
        finally:
            db.close()

    # ── Conversations ─────────────────────────────────────────────

    def upsert_conversation(
        self,
        tenant_id: str,
        remote_jid: str,
        name: str | None = None,
        profile_pic_url: str | None = None,
    ) -> tuple[int, bool]:
        """Get or create a conversation. Returns ``(id, created)``.

        Only the fields that are provided overwrite stored values.
        """
        try:
            return self._upsert_conversation(tenant_id, remote_jid, name, profile_pic_url)
        except PersistenceError as e:
            # A concurrent insert for the same (tenant, jid) won the race.
            if isinstance(e.__cause__, IntegrityError):
                return self._upsert_conversation(tenant_id, remote_jid, name, profile_pic_url)
            raise

    def _upsert_conversation(
        self,
        tenant_id: str,
        remote_jid: str,
        name: str | None,
        profile_pic_url: str | None,
    ) -> tuple[int, bool]:
        with self._session("upsert_conversation") as db:
            conv = (
                db.query(Conversation)
                .filter(Conversation.tenant_id == tenant_id, Conversation.remote_jid == remote_jid)
                .first()
            )
            if conv is None:
                conv = Conversation(
                    tenant_id=tenant_id,
                    remote_jid=remote_jid,
                    name=name,
                    profile_pic_url=profile_pic_url,
                )
                db.add(conv)
                db.flush()
                logger.info("db.conversation_created", tenant_id=tenant_id, remote_jid=remote_jid)
                return conv.id, True
            if name and conv.name != name:
                conv.name = name
            if profile_pic_url and conv.profile_pic_url != profile_pic_url:
                conv.profile_pic_url = profile_pic_url
            return conv.id, False

    def set_conversation_label(self, tenant_id: str, remote_jid: str, label: str | None) -> bool:
        with self._session("set_conversation_label") as db:
            conv = (
                db.query(Conversation)
                .filter(Conversation.tenant_id == tenant_id, Conversation.remote_jid == remote_jid)
                .first()
            )
            if conv is None:
                return False
            conv.label = label
            return True

    def list_broadcast_targets(self, tenant_id: str, label: str | None = None) -> list[str]:
        """Conversation ids that a broadcast may reach (addressable or linked)."""
        with self._session("list_broadcast_targets") as db:
            q = db.query(Conversation.remote_jid).filter(
                Conversation.tenant_id == tenant_id,
                or_(
                    Conversation.remote_jid.endswith(ADDRESSABLE_SUFFIX),
                    Conversation.remote_jid.endswith(LINKED_SUFFIX),
                ),
            )
            if label and label != "all":
                q = q.filter(Conversation.label == label)
            return [row[0] for row in q.order_by(Conversation.id).all()]

    # ── Messages ──────────────────────────────────────────────────

    def create_message(
        self,
        tenant_id: str,
        conversation_id: int,
        *,
        key_id: str | None,
        from_me: bool,
        sender_jid: str | None,
        sender_name: str | None,
        kind: str,
        body: str | None,
        media_url: str | None = None,
    ) -> int:
        with self._session("create_message") as db:
            msg = Message(
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                key_id=key_id,
                from_me=1 if from_me else 0,
                sender_jid=sender_jid,
                sender_name=sender_name,
                kind=kind,
                body=body,
                media_url=media_url,
            )
            db.add(msg)
            db.flush()
            return msg.id

    def record_outbound_message(self, tenant_id: str, remote_jid: str, body: str) -> int:
        """Persist a message the gateway itself sent (broadcast, manual send)."""
        conversation_id, _ = self.upsert_conversation(tenant_id, remote_jid)
        return self.create_message(
            tenant_id,
            conversation_id,
            key_id=None,
            from_me=True,
            sender_jid=None,
            sender_name=None,
            kind="text",
            body=body,
        )

    def purge_messages_older_than(self, days: int) -> int:
        cutoff = _naive_utc(datetime.now(timezone.utc) - timedelta(days=days))
        with self._session("purge_messages") as db:
            deleted = db.query(Message).filter(Message.created_at < cutoff).delete(synchronize_session=False)
        logger.info("db.messages_purged", deleted=deleted, days=days)
        return deleted

    # ── Sales ─────────────────────────────────────────────────────

    def create_sales(self, tenant_id: str, customer_jid: str, customer_name: str | None, items: list[dict]) -> int:
        """Store one sale row per cart item. Returns the number of rows."""
        with self._session("create_sales") as db:
            for item in items:
                try:
                    qty = int(item.get("qty") or 1)
                except (TypeError, ValueError):
                    qty = 1
                try:
                    price = float(item.get("price") or item.get("subtotal") or 0)
                except (TypeError, ValueError):
                    price = 0.0
                db.add(
                    Sale(
                        tenant_id=tenant_id,
                        item_name=str(item.get("name") or "item"),
                        qty=qty,
                        price=price,
                        customer_jid=customer_jid,
                        customer_name=customer_name,
                    )
                )
        logger.info("db.sales_saved", tenant_id=tenant_id, items=len(items))
        return len(items)

    def list_sales(self, tenant_id: str) -> list[dict]:
        with self._session("list_sales") as db:
            rows = db.query(Sale).filter(Sale.tenant_id == tenant_id).order_by(Sale.id).all()
            return [
                {
                    "item_name": r.item_name,
                    "qty": r.qty,
                    "price": r.price,
                    "customer_jid": r.customer_jid,
                    "customer_name": r.customer_name,
                }
                for r in rows
            ]

    # ── Auto-reply rules ──────────────────────────────────────────

    def list_auto_reply_rules(self, tenant_id: str) -> list[tuple[str, str]]:
        with self._session("list_auto_reply_rules") as db:
            rows = db.query(AutoReplyRule).filter(AutoReplyRule.tenant_id == tenant_id).all()
            return [(r.keyword, r.response) for r in rows]

    def upsert_auto_reply_rule(self, tenant_id: str, keyword: str, response: str) -> None:
        with self._session("upsert_auto_reply_rule") as db:
            rule = (
                db.query(AutoReplyRule)
                .filter(AutoReplyRule.tenant_id == tenant_id, AutoReplyRule.keyword == keyword)
                .first()
            )
            if rule is None:
                db.add(AutoReplyRule(tenant_id=tenant_id, keyword=keyword, response=response))
            else:
                rule.response = response

    def delete_auto_reply_rule(self, tenant_id: str, keyword: str) -> bool:
        with self._session("delete_auto_reply_rule") as db:
            deleted = (
                db.query(AutoReplyRule)
                .filter(AutoReplyRule.tenant_id == tenant_id, AutoReplyRule.keyword == keyword)
                .delete(synchronize_session=False)
            )
            return deleted > 0

    # ── Credentials ───────────────────────────────────────────────

    def save_credentials(self, tenant_id: str, data: str, slot: str = CREDENTIALS_SLOT) -> None:
        encrypted = encrypt_value(data)
        with self._session("save_credentials") as db:
            row = db.get(Credential, (tenant_id, slot))
            if row is None:
                db.add(Credential(tenant_id=tenant_id, slot=slot, data=encrypted))
            else:
                row.data = encrypted

    def load_credentials(self, tenant_id: str, slot: str = CREDENTIALS_SLOT) -> str | None:
        with self._session("load_credentials") as db:
            row = db.get(Credential, (tenant_id, slot))
            stored = row.data if row is not None else None
        if stored is None:
            return None
        try:
            return decrypt_value(stored)
        except ValueError as e:
            raise PersistenceError(str(e)) from e

    def delete_credentials(self, tenant_id: str) -> int:
        with self._session("delete_credentials") as db:
            return db.query(Credential).filter(Credential.tenant_id == tenant_id).delete(synchronize_session=False)

    def list_tenants_with_credentials(self) -> list[str]:
        with self._session("list_tenants_with_credentials") as db:
            rows = db.query(Credential.tenant_id).filter(Credential.slot == CREDENTIALS_SLOT).distinct().all()
            return sorted(r[0] for r in rows)

    # ── Tenant settings ───────────────────────────────────────────

    def get_setting(self, tenant_id: str, key: str, default: str | None = None) -> str | None:
        with self._session("get_setting") as db:
            row = db.get(TenantSetting, (tenant_id, key))
            return row.value if row is not None and row.value is not None else default

    def get_settings_map(self, tenant_id: str) -> dict[str, str]:
        with self._session("get_settings_map") as db:
            rows = db.query(TenantSetting).filter(TenantSetting.tenant_id == tenant_id).all()
            return {r.key: r.value for r in rows if r.value is not None}

    def upsert_setting(self, tenant_id: str, key: str, value: str) -> None:
        with self._session("upsert_setting") as db:
            row = db.get(TenantSetting, (tenant_id, key))
            if row is None:
                db.add(TenantSetting(tenant_id=tenant_id, key=key, value=value))
            else:
                row.value = value

    # ── Scheduled broadcasts ──────────────────────────────────────

    def create_scheduled_broadcast(
        self,
        tenant_id: str,
        message: str,
        scheduled_at: datetime,
        *,
        title: str | None = None,
        target_label: str = "all",
        manual_numbers: str | None = None,
    ) -> int:
        with self._session("create_scheduled_broadcast") as db:
            row = ScheduledBroadcast(
                tenant_id=tenant_id,
                title=title,
                message=message,
                target_label=target_label or "all",
                manual_numbers=manual_numbers,
                scheduled_at=_naive_utc(scheduled_at),
                status="PENDING",
            )
            db.add(row)
            db.flush()
            return row.id

    def list_due_broadcasts(self, now: datetime) -> list[ScheduledBroadcastRow]:
        with self._session("list_due_broadcasts") as db:
            rows = (
                db.query(ScheduledBroadcast)
                .filter(
                    ScheduledBroadcast.status == "PENDING",
                    ScheduledBroadcast.scheduled_at <= _naive_utc(now),
                )
                .order_by(ScheduledBroadcast.scheduled_at)
                .all()
            )
            return [
                ScheduledBroadcastRow(
                    id=r.id,
                    tenant_id=r.tenant_id,
                    title=r.title,
                    message=r.message,
                    target_label=r.target_label or "all",
                    manual_numbers=r.manual_numbers,
                    scheduled_at=r.scheduled_at,
                    status=r.status,
                )
                for r in rows
            ]

    def mark_broadcast_result(
        self,
        broadcast_id: int,
        status: str,
        sent_count: int = 0,
        error_message: str | None = None,
    ) -> None:
        with self._session("mark_broadcast_result") as db:
            row = db.get(ScheduledBroadcast, broadcast_id)
            if row is None:
                return
            row.status = status
            row.sent_count = sent_count
            row.error_message = error_message
            if status == "SENT":
                row.sent_at = _naive_utc(datetime.now(timezone.utc))

    def get_broadcast_status(self, broadcast_id: int) -> dict | None:
        with self._session("get_broadcast_status") as db:
            row = db.get(ScheduledBroadcast, broadcast_id)
            if row is None:
                return None
            return {
                "tenant_id": row.tenant_id,
                "status": row.status,
                "sent_count": row.sent_count,
                "error_message": row.error_message,
            }
