"""wabridge – Data retention.

Purges stored messages older than the retention window once a day.
"""

import asyncio

import structlog

from wabridge.core.errors import PersistenceError

logger = structlog.get_logger()


async def run_data_retention_cleanup(persistence, retention_days: int) -> int:
    """Delete messages older than ``retention_days``. Returns the count."""
    try:
        deleted = await asyncio.to_thread(persistence.purge_messages_older_than, retention_days)
    except PersistenceError as e:
        logger.error("maintenance.retention_cleanup_failed", error=str(e))
        return 0
    if deleted:
        logger.info("maintenance.retention_cleanup_completed", messages_deleted=deleted, days=retention_days)
    return deleted


async def maintenance_loop(persistence, retention_days: int = 7) -> None:
    """Background loop that runs maintenance tasks once every 24 hours."""
    logger.info("maintenance.loop_started")
    while True:
        await run_data_retention_cleanup(persistence, retention_days)
        await asyncio.sleep(86400)
