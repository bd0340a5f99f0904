"""Helpers to remove old chat history from the SQLite database."""

import asyncio
import logging
import time

from utils.database_init import AsyncDatabaseInitializer

LOGGER = logging.getLogger(__name__)


class DatabaseCleaner:
    """Delete MESSAGE rows older than the retention window, then empty conversations."""

    def __init__(self, db_initializer: AsyncDatabaseInitializer, retention_seconds: int = 30 * 86_400) -> None:
        """
        Args:
            db_initializer: Shared database initializer/connection provider.
            retention_seconds: Age threshold in seconds; messages older than this are removed.
        """
        self._db = db_initializer
        self.retention_seconds = retention_seconds

    async def prune_expired_messages(self) -> int:
        """Delete expired messages and conversations left without any; return messages removed."""
        cutoff = int(time.time()) - self.retention_seconds
        async with self._db.connection() as conn:
            await conn.execute("DELETE FROM MESSAGE WHERE created_at < ?", (cutoff,))
            cur = await conn.execute("SELECT changes()")
            deleted = await cur.fetchone()
            await conn.execute(
                "DELETE FROM CONVERSATION WHERE updated_at < ? "
                "AND id NOT IN (SELECT DISTINCT conversation_id FROM MESSAGE)",
                (cutoff,),
            )
            await conn.commit()
            return int(deleted[0]) if deleted and deleted[0] is not None else 0

    async def run_periodic_cleanup(self, interval_seconds: int = 3_600) -> None:
        """
        Repeatedly prune expired rows at the given interval until cancelled.

        Args:
            interval_seconds: Seconds to sleep between cleanup runs.
        """
        while True:
            try:
                removed = await self.prune_expired_messages()
                if removed:
                    LOGGER.info("Pruned %d expired message(s)", removed)
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception:
                LOGGER.exception("Message cleanup failed; retrying next tick")
                await asyncio.sleep(interval_seconds)
