"""wabridge – Gateway schemas.

Pydantic models for normalized inbound events, session state and the HTTP
request bodies.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    """Connection lifecycle of a tenant session."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    AWAITING_PAIRING = "AWAITING_PAIRING"
    CONNECTED = "CONNECTED"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"


class SessionState(BaseModel):
    tenant_id: str
    status: SessionStatus = SessionStatus.DISCONNECTED
    qr: str | None = Field(default=None, description="Pending pairing code, if any")
    webhook_url: str | None = None


class InboundEvent(BaseModel):
    """A transport message event after normalization."""

    key_id: str = Field(..., description="Transport message id")
    chat_id: str = Field(..., description="Normalized conversation identity")
    sender_id: str = Field(..., description="Normalized sender identity (participant in groups)")
    from_me: bool = False
    is_group: bool = False
    push_name: str | None = None
    kind: MessageKind = MessageKind.TEXT
    text: str = ""
    media_ext: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    raw: dict[str, Any] = Field(default_factory=dict, description="Original transport payload")

    @property
    def is_media(self) -> bool:
        return self.kind != MessageKind.TEXT


class StartSessionRequest(BaseModel):
    webhook_url: str | None = None


class SendMessageRequest(BaseModel):
    to: str = Field(..., description="Phone number or identity")
    text: str = Field(..., min_length=1)


class BroadcastRequest(BaseModel):
    message: str = Field(..., min_length=1)
    target_label: str = Field(default="all", description="'all' or a conversation label")
    manual_numbers: str | None = Field(default=None, description="Newline/comma separated numbers")


class BroadcastResponse(BaseModel):
    status: str = "accepted"
    accepted: int


class SaleItem(BaseModel):
    name: str
    qty: int = 1
    price: float = 0.0


class SaleRequest(BaseModel):
    customer_jid: str
    customer_name: str | None = None
    items: list[SaleItem] = Field(..., min_length=1)
    paid: bool = False


class AutoReplyRuleRequest(BaseModel):
    keyword: str = Field(..., min_length=1)
    response: str = Field(..., min_length=1)


class TenantSettingRequest(BaseModel):
    value: str


class LabelRequest(BaseModel):
    label: str | None = Field(default=None, description="None clears the label")


class ScheduleBroadcastRequest(BaseModel):
    message: str = Field(..., min_length=1)
    scheduled_at: datetime
    title: str | None = None
    target_label: str = "all"
    manual_numbers: str | None = None
