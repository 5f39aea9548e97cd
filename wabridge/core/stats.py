"""wabridge – Conversation statistics.

Per-tenant counters plus a bounded activity log (newest first). Counters
only grow; ``reset`` is the single explicit exception. Snapshots are flushed
to a JSON file keyed by tenant as a crash-tolerant cache; the relational
store remains the authority for analytics queries.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from wabridge.core.registry import Registry

logger = structlog.get_logger()

DEFAULT_LOG_LIMIT = 20

LOG_IN = "IN"
LOG_AUTO = "AUTO"
LOG_AI = "AI"
LOG_BROADCAST = "BROADCAST"


@dataclass
class ConversationStats:
    incoming: int = 0
    outgoing: int = 0
    new_customers: int = 0
    ai_count: int = 0
    media_count: int = 0
    invoice_issued: int = 0
    invoice_paid: int = 0
    complaint_count: int = 0
    top_complaints: dict[str, int] = field(default_factory=dict)
    logs: deque = field(default_factory=lambda: deque(maxlen=DEFAULT_LOG_LIMIT))

    def to_dict(self) -> dict[str, Any]:
        return {
            "incoming": self.incoming,
            "outgoing": self.outgoing,
            "new_customers": self.new_customers,
            "ai_count": self.ai_count,
            "media_count": self.media_count,
            "invoice_issued": self.invoice_issued,
            "invoice_paid": self.invoice_paid,
            "complaint_count": self.complaint_count,
            "top_complaints": dict(self.top_complaints),
            "logs": list(self.logs),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], log_limit: int = DEFAULT_LOG_LIMIT) -> "ConversationStats":
        stats = cls(logs=deque(maxlen=log_limit))
        for name in (
            "incoming",
            "outgoing",
            "new_customers",
            "ai_count",
            "media_count",
            "invoice_issued",
            "invoice_paid",
            "complaint_count",
        ):
            setattr(stats, name, int(data.get(name, 0) or 0))
        stats.top_complaints = {str(k): int(v) for k, v in (data.get("top_complaints") or {}).items()}
        # Stored newest first; extend keeps that order and the maxlen cap.
        stats.logs.extend((data.get("logs") or [])[:log_limit])
        return stats


class StatsAggregator:
    """Owns the per-tenant ConversationStats registry."""

    def __init__(self, log_limit: int = DEFAULT_LOG_LIMIT, file_path: str | None = None) -> None:
        self._log_limit = log_limit
        self._file_path = file_path
        self._stats: Registry[ConversationStats] = Registry(
            lambda: ConversationStats(logs=deque(maxlen=self._log_limit))
        )

    def stats_for(self, tenant_id: str) -> ConversationStats:
        return self._stats.get_or_create(tenant_id)

    def snapshot(self, tenant_id: str) -> dict[str, Any]:
        return self.stats_for(tenant_id).to_dict()

    def _log(self, tenant_id: str, entry_type: str, msg: str, user: str) -> None:
        self.stats_for(tenant_id).logs.appendleft(
            {
                "time": datetime.now(timezone.utc).isoformat(),
                "type": entry_type,
                "msg": msg,
                "user": user,
            }
        )

    # ── Counters ──────────────────────────────────────────────────

    def record_inbound(self, tenant_id: str, user: str) -> None:
        self.stats_for(tenant_id).incoming += 1
        self._log(tenant_id, LOG_IN, "Incoming message", user or "User")

    def record_outbound(self, tenant_id: str) -> None:
        self.stats_for(tenant_id).outgoing += 1

    def record_media(self, tenant_id: str) -> None:
        self.stats_for(tenant_id).media_count += 1

    def record_new_customer(self, tenant_id: str) -> None:
        self.stats_for(tenant_id).new_customers += 1

    def record_auto_reply(self, tenant_id: str, keyword: str) -> None:
        self._log(tenant_id, LOG_AUTO, f"Auto Reply: {keyword}", "Bot")

    def record_ai_reply(self, tenant_id: str) -> None:
        self.stats_for(tenant_id).ai_count += 1
        self._log(tenant_id, LOG_AI, "Auto Reply", "Bot AI")

    def record_broadcast(self, tenant_id: str, sent: int, total: int) -> None:
        self._log(tenant_id, LOG_BROADCAST, f"Broadcast sent to {sent}/{total}", "Bot")

    def record_complaint(self, tenant_id: str, keyword: str) -> None:
        stats = self.stats_for(tenant_id)
        stats.complaint_count += 1
        key = keyword.lower()
        stats.top_complaints[key] = stats.top_complaints.get(key, 0) + 1

    def record_invoice_issued(self, tenant_id: str) -> None:
        self.stats_for(tenant_id).invoice_issued += 1

    def record_invoice_paid(self, tenant_id: str) -> None:
        self.stats_for(tenant_id).invoice_paid += 1

    def reset(self, tenant_id: str) -> None:
        self._stats.pop(tenant_id)
        logger.info("stats.reset", tenant_id=tenant_id)

    # ── File cache ────────────────────────────────────────────────

    def load(self) -> int:
        """Load the JSON cache. Returns the number of tenants restored."""
        if not self._file_path or not os.path.exists(self._file_path):
            return 0
        try:
            with open(self._file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("stats.load_failed", path=self._file_path, error=str(e))
            return 0
        for tenant_id, raw in (data or {}).items():
            self._stats.set(str(tenant_id), ConversationStats.from_dict(raw, self._log_limit))
        logger.info("stats.loaded", tenants=len(data or {}))
        return len(data or {})

    def flush(self) -> bool:
        """Write every tenant's snapshot to the JSON cache."""
        if not self._file_path:
            return False
        payload = {tenant_id: stats.to_dict() for tenant_id, stats in self._stats.items()}
        tmp_path = f"{self._file_path}.tmp"
        try:
            directory = os.path.dirname(self._file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self._file_path)
            return True
        except OSError as e:
            logger.error("stats.flush_failed", path=self._file_path, error=str(e))
            return False

    async def flush_loop(self, interval: int = 60) -> None:
        logger.info("stats.flush_loop_started", interval=interval)
        while True:
            await asyncio.sleep(interval)
            await asyncio.to_thread(self.flush)
