"""Delivered-message cache.

Successfully delivered tasks are recorded here so recent pushes can be
looked up later. The delivery queue only calls ``record`` and treats any
failure as non-fatal.
"""

from typing import Any, Dict, List, Optional

from feed_notifier.config import CacheConfig
from feed_notifier.log_system.unified_logger import UnifiedLogger
from feed_notifier.models.schemas import DeliveryTask
from feed_notifier.storage import database


class MessageCache:
    """SQLite-backed cache with a size cap, deduplicated by link."""

    def __init__(self, config: CacheConfig):
        self.max_size = config.max_size
        self.logger = UnifiedLogger.get_logger(__name__)

    async def init(self) -> None:
        """Make sure the backing tables exist."""
        await database.init_database()

    async def get(
        self,
        rss_id: Optional[str] = None,
        guild_id: Optional[str] = None,
        platform: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """List cached messages, newest first."""
        return await database.list_cached_messages(
            rss_id=rss_id, guild_id=guild_id, platform=platform, limit=limit, offset=offset
        )

    async def set(self, entry: Dict[str, Any]) -> bool:
        """Store one entry and trim the cache to its maximum size.

        Returns:
            True if stored, False if its link was already cached
        """
        added = await database.add_cached_message(entry)
        if not added:
            self.logger.debug(f"Message already cached, skipped: {entry.get('title', '')}")
            return False

        trimmed = await database.trim_message_cache(self.max_size)
        if trimmed:
            self.logger.debug(f"Trimmed {trimmed} old cached messages")
        return True

    async def clear(self, rss_id: Optional[str] = None) -> int:
        """Remove all cached messages, or one subscription's."""
        return await database.clear_message_cache(rss_id)

    async def record(self, task: DeliveryTask) -> bool:
        """Cache the content of a delivered task."""
        content = task.content
        return await self.set({
            "rss_id": task.rss_id,
            "guild_id": task.guild_id,
            "platform": task.platform,
            "title": content.title,
            "content": content.description,
            "link": content.link,
            "pub_date": content.pub_date,
            "image_url": content.image_url,
            "final_message": content.message,
        })


class NullMessageCache:
    """Stand-in used when caching is disabled."""

    async def init(self) -> None:
        return None

    async def get(self, **filters: Any) -> List[Dict[str, Any]]:
        return []

    async def set(self, entry: Dict[str, Any]) -> bool:
        return False

    async def clear(self, rss_id: Optional[str] = None) -> int:
        return 0

    async def record(self, task: DeliveryTask) -> bool:
        return False


def create_message_cache(config: CacheConfig):
    """Build the cache collaborator for the given settings."""
    return MessageCache(config) if config.enabled else NullMessageCache()
