"""wabridge – Reply arbitration.

Decides which automated response, if any, answers an inbound text:

1. complaint keywords are counted for analytics (never blocks a reply)
2. keyword auto-reply rules, longest keyword first
3. an AI reply when the tenant has AI enabled
4. otherwise nothing

``respond`` arbitrates and schedules the delivery with a typing delay.
The ingestion call never waits for the delivery to happen.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any

import structlog

from wabridge.core.errors import GenerationError, PersistenceError, TransportError
from wabridge.core.instrumentation import REPLIES_SENT
from wabridge.core.registry import Registry
from wabridge.core.stats import StatsAggregator
from wabridge.core.timers import ReplyScheduler
from wabridge.integrations.transport import TransportHandle
from wabridge.memory.context import ConversationContext
from wabridge.swarm.llm import LLMClient
from wabridge.swarm.prompts import build_system_prompt
from wabridge.swarm.reply_parser import (
    NoReply,
    ReplyAction,
    ReplyOrigin,
    SendImage,
    SendText,
    image_failure_fallback,
    parse_reply,
)
from wabridge.swarm.spam_guard import SpamGuard

logger = structlog.get_logger()

COMPLAINT_KEYWORDS: list[re.Pattern[str]] = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"rusak",
        r"tidak bisa",
        r"gagal",
        r"kecewa",
        r"bohong",
        r"penipu",
        r"salah kirim",
        r"barang kurang",
        r"lama banget",
        r"lambat",
        r"pecah",
        r"pesanan belum",
    )
]

# tenant_settings keys holding the AI profile
SETTING_AI_ACTIVE = "ai_active"
SETTING_SYSTEM_PROMPT = "ai_system_prompt"
SETTING_PRODUCT_CONTEXT = "ai_product_context"
SETTING_KNOWLEDGE_CONTEXT = "ai_knowledge_context"


@dataclass
class AIProfile:
    active: bool = False
    system_prompt: str = ""
    product_context: str = ""
    knowledge_context: str = ""

    @classmethod
    def from_settings(cls, values: dict[str, str]) -> "AIProfile":
        return cls(
            active=str(values.get(SETTING_AI_ACTIVE, "")).lower() in ("1", "true", "yes", "on"),
            system_prompt=values.get(SETTING_SYSTEM_PROMPT, ""),
            product_context=values.get(SETTING_PRODUCT_CONTEXT, ""),
            knowledge_context=values.get(SETTING_KNOWLEDGE_CONTEXT, ""),
        )


def order_rules(rules: list[tuple[str, str]]) -> list[tuple[str, str]]:
    """Longest keyword first; equal lengths fall back to keyword text."""
    return sorted(
        ((k, r) for k, r in rules if k),
        key=lambda rule: (-len(rule[0]), rule[0].lower()),
    )


class ReplyArbitrator:
    def __init__(
        self,
        persistence: Any,
        stats: StatsAggregator,
        llm: LLMClient,
        context: ConversationContext,
        scheduler: ReplyScheduler,
        bus: Any = None,
        spam_guard: SpamGuard | None = None,
        *,
        auto_reply_delay: float = 1.0,
        ai_reply_delay: float = 2.0,
        max_context_chars: int = 5000,
    ) -> None:
        self._persistence = persistence
        self._stats = stats
        self._llm = llm
        self._context = context
        self._scheduler = scheduler
        self._bus = bus
        self._spam_guard = spam_guard
        self._auto_reply_delay = auto_reply_delay
        self._ai_reply_delay = ai_reply_delay
        self._max_context_chars = max_context_chars
        self._rules: Registry[list[tuple[str, str]]] = Registry(list)
        self._profiles: Registry[AIProfile] = Registry(AIProfile)

    # ── Tenant configuration ──────────────────────────────────────

    def set_rules(self, tenant_id: str, rules: list[tuple[str, str]]) -> None:
        self._rules.set(tenant_id, order_rules(rules))

    def set_profile(self, tenant_id: str, profile: AIProfile) -> None:
        self._profiles.set(tenant_id, profile)

    def profile_for(self, tenant_id: str) -> AIProfile:
        return self._profiles.get_or_create(tenant_id)

    async def reload_rules(self, tenant_id: str) -> None:
        """Refresh rules and AI profile from the store. Keeps the cache on failure."""
        try:
            rules = await asyncio.to_thread(self._persistence.list_auto_reply_rules, tenant_id)
            values = await asyncio.to_thread(self._persistence.get_settings_map, tenant_id)
        except PersistenceError as e:
            logger.error("arbitrator.reload_failed", tenant_id=tenant_id, error=str(e))
            return
        self.set_rules(tenant_id, rules)
        self.set_profile(tenant_id, AIProfile.from_settings(values))
        logger.info("arbitrator.rules_loaded", tenant_id=tenant_id, rules=len(rules))

    def forget_tenant(self, tenant_id: str) -> None:
        self._rules.pop(tenant_id)
        self._profiles.pop(tenant_id)
        self._context.clear_tenant(tenant_id)

    # ── Decision ──────────────────────────────────────────────────

    def scan_complaints(self, tenant_id: str, text: str) -> list[str]:
        found = []
        for pattern in COMPLAINT_KEYWORDS:
            match = pattern.search(text or "")
            if match:
                keyword = match.group(0).lower()
                self._stats.record_complaint(tenant_id, keyword)
                found.append(keyword)
        if found:
            logger.info("arbitrator.complaint_detected", tenant_id=tenant_id, keywords=found)
        return found

    def match_rule(self, tenant_id: str, text: str) -> tuple[str, str] | None:
        lowered = (text or "").lower()
        for keyword, response in self._rules.get_or_create(tenant_id):
            if keyword.lower() in lowered:
                return keyword, response
        return None

    async def arbitrate(
        self,
        tenant_id: str,
        chat_id: str,
        sender_identity: str,
        text: str,
        sender_display_name: str | None = None,
        *,
        allow_ai: bool = True,
    ) -> ReplyAction:
        self.scan_complaints(tenant_id, text)

        rule = self.match_rule(tenant_id, text)
        if rule is not None:
            keyword, response = rule
            return SendText(body=response, origin=ReplyOrigin.AUTO, keyword=keyword)

        profile = self.profile_for(tenant_id)
        if not (allow_ai and profile.active):
            return NoReply()

        system_prompt = build_system_prompt(
            sender_display_name,
            system_prompt=profile.system_prompt,
            product_context=profile.product_context,
            knowledge_context=profile.knowledge_context,
            max_context_chars=self._max_context_chars,
        )
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(self._context.get_context(tenant_id, sender_identity))
        messages.append({"role": "user", "content": text})
        try:
            response = await self._llm.chat(messages)
        except GenerationError as e:
            logger.warning("arbitrator.generation_failed", tenant_id=tenant_id, error=str(e))
            return NoReply()
        # History only keeps exchanges that were answered.
        self._context.add_turn(tenant_id, sender_identity, "user", text)
        self._context.add_turn(tenant_id, sender_identity, "assistant", response.content)
        return parse_reply(response.content)

    # ── Delivery ──────────────────────────────────────────────────

    async def respond(
        self,
        tenant_id: str,
        chat_id: str,
        sender_identity: str,
        text: str,
        sender_display_name: str | None,
        handle: TransportHandle,
        *,
        allow_ai: bool = True,
    ) -> ReplyAction:
        """Arbitrate and schedule the delivery. Returns the chosen action."""
        action = await self.arbitrate(
            tenant_id, chat_id, sender_identity, text, sender_display_name, allow_ai=allow_ai
        )
        if isinstance(action, NoReply):
            return action

        try:
            await handle.send_presence("composing", chat_id)
        except TransportError as e:
            logger.debug("arbitrator.presence_failed", tenant_id=tenant_id, error=str(e))

        delay = self._auto_reply_delay if action.origin == ReplyOrigin.AUTO else self._ai_reply_delay
        self._scheduler.schedule(
            tenant_id,
            chat_id,
            delay,
            lambda: self._deliver(tenant_id, chat_id, sender_identity, action, handle),
        )
        return action

    async def _deliver(
        self,
        tenant_id: str,
        chat_id: str,
        sender_identity: str,
        action: SendText | SendImage,
        handle: TransportHandle,
    ) -> None:
        try:
            if isinstance(action, SendImage):
                try:
                    await handle.send_message(chat_id, {"image": {"url": action.url}, "caption": action.caption})
                except TransportError as e:
                    logger.warning("arbitrator.image_failed", tenant_id=tenant_id, url=action.url, error=str(e))
                    await handle.send_message(chat_id, {"text": image_failure_fallback(action).body})
            else:
                await handle.send_message(chat_id, {"text": action.body})
        except TransportError as e:
            logger.error("arbitrator.delivery_failed", tenant_id=tenant_id, origin=action.origin.value, error=str(e))
            return

        if self._spam_guard is not None:
            self._spam_guard.mark_auto_reply_sent(tenant_id, sender_identity)
        if action.origin == ReplyOrigin.AUTO:
            self._stats.record_auto_reply(tenant_id, getattr(action, "keyword", None) or "")
        else:
            self._stats.record_ai_reply(tenant_id)
        REPLIES_SENT.labels(tenant_id=tenant_id, origin=action.origin.value).inc()
        logger.info("arbitrator.reply_sent", tenant_id=tenant_id, origin=action.origin.value)

        if self._bus is not None:
            await self._bus.publish_event(tenant_id, "stats_update", self._stats.snapshot(tenant_id))
