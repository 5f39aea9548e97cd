from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint

from wabridge.core.db import Base


def _utcnow() -> datetime:
    # Naive UTC, matching how persistence compares timestamps.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("tenant_id", "remote_jid", name="uq_conversation_tenant_jid"),)

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    remote_jid = Column(String, index=True, nullable=False)
    name = Column(String, nullable=True)
    profile_pic_url = Column(String, nullable=True)
    label = Column(String, nullable=True, index=True)  # CRM label, e.g. "lead", "customer"
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), index=True)
    key_id = Column(String, index=True, nullable=True)  # transport message id
    from_me = Column(Integer, default=0)
    sender_jid = Column(String, nullable=True)
    sender_name = Column(String, nullable=True)
    kind = Column(String, default="text")  # text | image | video | document
    body = Column(Text, nullable=True)
    media_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow, index=True)


class Sale(Base):
    __tablename__ = "sales"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    item_name = Column(String, nullable=False)
    qty = Column(Integer, default=1)
    price = Column(Float, default=0.0)
    customer_jid = Column(String, index=True, nullable=False)
    customer_name = Column(String, nullable=True)
    sold_at = Column(DateTime, default=_utcnow, index=True)


class ScheduledBroadcast(Base):
    __tablename__ = "scheduled_broadcasts"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=True)
    message = Column(Text, nullable=False)
    target_label = Column(String, default="all")  # "all" or a conversation label
    manual_numbers = Column(Text, nullable=True)  # newline/comma separated, overrides target_label
    scheduled_at = Column(DateTime, nullable=False, index=True)
    status = Column(String, default="PENDING", index=True)  # PENDING | SENT | FAILED | CANCELLED
    sent_count = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow)


class AutoReplyRule(Base):
    __tablename__ = "auto_reply_rules"
    __table_args__ = (UniqueConstraint("tenant_id", "keyword", name="uq_auto_reply_tenant_keyword"),)

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    keyword = Column(String, nullable=False)
    response = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class Credential(Base):
    __tablename__ = "credentials"

    tenant_id = Column(String, primary_key=True)
    slot = Column(String, primary_key=True)  # "creds" for the session credential blob
    data = Column(Text, nullable=False)  # Fernet encrypted, ENC: prefix
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class TenantSetting(Base):
    __tablename__ = "tenant_settings"

    tenant_id = Column(String, primary_key=True, index=True)
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
