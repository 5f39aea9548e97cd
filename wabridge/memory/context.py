"""wabridge – Short-term AI conversation history.

Per-identity turns kept in RAM for prompt building. History is bounded to
the last N turns (default 10) and expires after a TTL of inactivity.
"""

import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger()

DEFAULT_MAX_TURNS = 10
DEFAULT_TTL_SECONDS = 1800  # 30 minutes


@dataclass
class Turn:
    """A single conversation turn."""

    role: str  # 'user' or 'assistant'
    content: str
    timestamp: float = field(default_factory=time.time)


class ConversationContext:
    """Per-identity RAM conversation history.

    Keys are ``tenant:identity`` so tenants never see each other's turns.
    """

    def __init__(
        self,
        max_turns: int = DEFAULT_MAX_TURNS,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._max_turns = max_turns
        self._ttl_seconds = ttl_seconds
        self._contexts: dict[str, list[Turn]] = {}
        self._last_access: dict[str, float] = {}

    @staticmethod
    def key(tenant_id: str, identity: str) -> str:
        return f"{tenant_id}:{identity}"

    def add_turn(self, tenant_id: str, identity: str, role: str, content: str) -> None:
        self._cleanup_expired()
        key = self.key(tenant_id, identity)
        turns = self._contexts.setdefault(key, [])
        turns.append(Turn(role=role, content=content))
        self._last_access[key] = time.time()

        if len(turns) > self._max_turns:
            removed = len(turns) - self._max_turns
            self._contexts[key] = turns[-self._max_turns:]
            logger.debug("context.trimmed", key=key, removed=removed)

    def get_context(self, tenant_id: str, identity: str) -> list[dict[str, str]]:
        """Get conversation history as ``{role, content}`` dicts for the LLM."""
        self._cleanup_expired()
        key = self.key(tenant_id, identity)
        turns = self._contexts.get(key, [])
        if turns:
            self._last_access[key] = time.time()
        return [{"role": t.role, "content": t.content} for t in turns]

    def clear(self, tenant_id: str, identity: str) -> None:
        key = self.key(tenant_id, identity)
        self._contexts.pop(key, None)
        self._last_access.pop(key, None)

    def clear_tenant(self, tenant_id: str) -> None:
        prefix = f"{tenant_id}:"
        for key in [k for k in self._contexts if k.startswith(prefix)]:
            self._contexts.pop(key, None)
            self._last_access.pop(key, None)

    def get_user_count(self) -> int:
        self._cleanup_expired()
        return len(self._contexts)

    def _cleanup_expired(self) -> None:
        """Remove expired histories (TTL exceeded)."""
        now = time.time()
        expired = [k for k, last in self._last_access.items() if now - last > self._ttl_seconds]
        for k in expired:
            self._contexts.pop(k, None)
            self._last_access.pop(k, None)
            logger.debug("context.expired", key=k)
