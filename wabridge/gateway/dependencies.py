"""Shared dependencies for the Gateway.

One composition root builds every registry and component once and injects
them into each other; routes receive the container through ``get_gateway``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from config.settings import Settings, get_settings
from wabridge.core.stats import StatsAggregator
from wabridge.core.timers import ReplyScheduler
from wabridge.gateway.dedup import DedupGuard
from wabridge.gateway.persistence import PersistenceService
from wabridge.gateway.pipeline import MessageIngestionPipeline
from wabridge.gateway.redis_bus import RedisBus
from wabridge.gateway.sales import SalesRecorder
from wabridge.gateway.sessions import SessionRegistry
from wabridge.integrations.bridge import BridgeTransport
from wabridge.integrations.broadcast import BroadcastDispatcher, ScheduledBroadcastRunner
from wabridge.integrations.transport import TransportClient
from wabridge.integrations.webhook import WebhookForwarder
from wabridge.memory.context import ConversationContext
from wabridge.memory.identity import IdentityResolver
from wabridge.swarm.arbitrator import ReplyArbitrator
from wabridge.swarm.llm import LLMClient, default_providers
from wabridge.swarm.spam_guard import SpamGuard

logger = structlog.get_logger()


@dataclass
class Gateway:
    settings: Settings
    bus: Any
    persistence: Any
    stats: StatsAggregator
    dedup: DedupGuard
    identity: IdentityResolver
    scheduler: ReplyScheduler
    spam_guard: SpamGuard
    arbitrator: ReplyArbitrator
    pipeline: MessageIngestionPipeline
    sessions: SessionRegistry
    broadcasts: BroadcastDispatcher
    scheduled_broadcasts: ScheduledBroadcastRunner
    sales: SalesRecorder


def build_gateway(
    settings: Settings | None = None,
    *,
    transport: TransportClient | None = None,
    persistence: Any = None,
    bus: Any = None,
    llm: LLMClient | None = None,
) -> Gateway:
    settings = settings or get_settings()
    bus = bus or RedisBus(redis_url=settings.redis_url)
    persistence = persistence or PersistenceService()
    transport = transport or BridgeTransport(settings.bridge_url, settings.bridge_api_key)
    llm = llm or LLMClient(
        default_providers(settings),
        preferred_provider=settings.llm_preferred_provider,
        rate_limit_cooldown=settings.llm_rate_limit_cooldown,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
    )

    stats = StatsAggregator(log_limit=settings.stats_log_limit, file_path=settings.stats_file)
    dedup = DedupGuard(window_seconds=settings.dedup_window_seconds)
    identity = IdentityResolver(country_code=settings.default_country_code)
    scheduler = ReplyScheduler()
    spam_guard = SpamGuard(
        window_seconds=settings.spam_window_seconds,
        max_messages=settings.spam_max_messages,
        warn_threshold=settings.spam_warn_threshold,
        auto_reply_throttle_seconds=settings.spam_auto_reply_throttle_seconds,
        blacklist_seconds=settings.spam_blacklist_seconds,
    )
    arbitrator = ReplyArbitrator(
        persistence,
        stats,
        llm,
        ConversationContext(max_turns=settings.ai_history_turns),
        scheduler,
        bus,
        spam_guard,
        auto_reply_delay=settings.auto_reply_delay,
        ai_reply_delay=settings.ai_reply_delay,
        max_context_chars=settings.ai_context_max_chars,
    )
    pipeline = MessageIngestionPipeline(
        dedup=dedup,
        stats=stats,
        identity=identity,
        persistence=persistence,
        arbitrator=arbitrator,
        bus=bus,
        spam_guard=spam_guard,
        webhooks=WebhookForwarder(),
        media_dir=settings.media_dir,
        spam_warning_text=settings.spam_warning_text,
        spam_block_text=settings.spam_block_text,
    )
    sessions = SessionRegistry(
        transport,
        pipeline,
        persistence,
        bus,
        scheduler,
        arbitrator,
        identity,
        country_code=settings.default_country_code,
        activation_wait_seconds=settings.activation_wait_seconds,
        reconnect_delay_seconds=settings.reconnect_delay_seconds,
        reconnect_max_delay_seconds=settings.reconnect_max_delay_seconds,
    )
    broadcasts = BroadcastDispatcher(
        sessions,
        persistence,
        identity,
        stats,
        bus,
        send_delay=settings.broadcast_send_delay,
        country_code=settings.default_country_code,
    )
    return Gateway(
        settings=settings,
        bus=bus,
        persistence=persistence,
        stats=stats,
        dedup=dedup,
        identity=identity,
        scheduler=scheduler,
        spam_guard=spam_guard,
        arbitrator=arbitrator,
        pipeline=pipeline,
        sessions=sessions,
        broadcasts=broadcasts,
        scheduled_broadcasts=ScheduledBroadcastRunner(
            sessions, persistence, country_code=settings.default_country_code
        ),
        sales=SalesRecorder(persistence, identity, stats, bus),
    )


_gateway: Gateway | None = None


def get_gateway() -> Gateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway
