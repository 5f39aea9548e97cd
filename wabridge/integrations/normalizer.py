"""wabridge – Message Normalizer.

Turns a raw WhatsApp Web message event into an ``InboundEvent``. Events
without message content and status broadcasts normalize to ``None``.
"""

from datetime import datetime, timezone
from typing import Any

import structlog

from wabridge.gateway.schemas import InboundEvent, MessageKind
from wabridge.integrations.jid import is_group, is_status_broadcast, normalize_jid

logger = structlog.get_logger()

_MEDIA_TYPES = {
    "imageMessage": (MessageKind.IMAGE, "jpg"),
    "videoMessage": (MessageKind.VIDEO, "mp4"),
    "documentMessage": (MessageKind.DOCUMENT, "doc"),
}

# Wrapper keys the transport uses for disappearing / view-once content.
_WRAPPERS = ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2")


def _unwrap(message: dict[str, Any]) -> dict[str, Any]:
    for wrapper in _WRAPPERS:
        inner = (message.get(wrapper) or {}).get("message")
        if inner:
            return _unwrap(inner)
    return message


def _timestamp(raw: dict[str, Any]) -> datetime:
    ts = raw.get("messageTimestamp")
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


class MessageNormalizer:
    def normalize(self, raw: dict[str, Any]) -> InboundEvent | None:
        message = raw.get("message")
        key = raw.get("key") or {}
        remote_jid = key.get("remoteJid") or ""
        if not message or not remote_jid or is_status_broadcast(remote_jid):
            return None
        key_id = key.get("id")
        if not key_id:
            logger.warning("normalizer.missing_id", remote_jid=remote_jid)
            return None

        message = _unwrap(message)
        chat_id = normalize_jid(remote_jid)
        group = is_group(chat_id)
        sender_id = normalize_jid(key.get("participant") or remote_jid) if group else chat_id

        kind = MessageKind.TEXT
        media_ext = None
        text = ""
        for content_type, (media_kind, ext) in _MEDIA_TYPES.items():
            if content_type in message:
                kind, media_ext = media_kind, ext
                text = (message.get(content_type) or {}).get("caption") or ""
                break
        else:
            if message.get("conversation"):
                text = message["conversation"]
            elif (message.get("extendedTextMessage") or {}).get("text"):
                text = message["extendedTextMessage"]["text"]

        return InboundEvent(
            key_id=str(key_id),
            chat_id=chat_id,
            sender_id=sender_id,
            from_me=bool(key.get("fromMe")),
            is_group=group,
            push_name=raw.get("pushName") or None,
            kind=kind,
            text=text,
            media_ext=media_ext,
            timestamp=_timestamp(raw),
            raw=raw,
        )
