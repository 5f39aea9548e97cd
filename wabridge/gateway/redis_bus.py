"""wabridge – Redis Bus Connector.

Subscribers (dashboards, CRM workers) follow a tenant's activity through
Redis Pub/Sub. Each tenant has one channel, ``wabridge:t{tenant}:events``,
carrying JSON envelopes ``{event, tenant_id, data, timestamp}`` for the
events ``message``, ``stats_update``, ``connection_status``, ``qr`` and
``ready``.
"""

import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()

CHANNEL_PREFIX = "wabridge:t"


def tenant_channel(tenant_id: str) -> str:
    return f"{CHANNEL_PREFIX}{tenant_id}:events"


def build_envelope(tenant_id: str, event: str, data: Any) -> str:
    return json.dumps(
        {
            "event": event,
            "tenant_id": tenant_id,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        default=str,
    )


class RedisBus:
    """Per-tenant event publisher on Redis Pub/Sub.

    Publishing never raises: the gateway keeps running without Redis and
    events published while disconnected are dropped with a warning.
    """

    def __init__(self, redis_url: str = "redis://127.0.0.1:6379/0") -> None:
        self._redis_url = redis_url
        self._client: redis.Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._client = redis.from_url(
            self._redis_url,
            decode_responses=True,
            retry_on_timeout=True,
        )
        await self._client.ping()
        logger.info("redis.connected", url=self._redis_url)

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("redis.disconnected")

    async def health_check(self) -> bool:
        if not self._client:
            return False
        try:
            return await self._client.ping()
        except (redis.ConnectionError, redis.TimeoutError):
            logger.error("redis.health_check_failed")
            return False

    async def publish_event(self, tenant_id: str, event: str, data: Any) -> int:
        """Publish a tenant event.

        Returns:
            Number of subscribers that received it; 0 when Redis is
            unavailable.
        """
        if not self._client:
            logger.debug("redis.publish_skipped", tenant_id=tenant_id, event_name=event)
            return 0
        try:
            count = await self._client.publish(tenant_channel(tenant_id), build_envelope(tenant_id, event, data))
        except redis.RedisError as e:
            logger.warning("redis.publish_failed", tenant_id=tenant_id, event_name=event, error=str(e))
            return 0
        logger.debug("redis.published", tenant_id=tenant_id, event_name=event, subscribers=count)
        return count

    async def listen(self, *tenant_ids: str) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded envelopes for the given tenants (all tenants if none).

        Frames that are not valid JSON are skipped.
        """
        pubsub = self.client.pubsub()
        if tenant_ids:
            await pubsub.subscribe(*(tenant_channel(t) for t in tenant_ids))
        else:
            await pubsub.psubscribe(tenant_channel("*"))
        logger.info("redis.listening", tenants=list(tenant_ids) or "*")
        try:
            async for message in pubsub.listen():
                if message["type"] not in ("message", "pmessage"):
                    continue
                try:
                    yield json.loads(message["data"])
                except ValueError:
                    logger.warning("redis.bad_envelope", channel=message.get("channel"))
        finally:
            await pubsub.aclose()

    @property
    def client(self) -> redis.Redis:
        """Direct access to Redis client for advanced operations."""
        if not self._client:
            raise RuntimeError("Redis not connected. Call connect() first.")
        return self._client
