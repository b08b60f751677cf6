"""Service package initialization"""

from feed_notifier.server.app import FeedNotifierService, create_service, main

__all__ = ["FeedNotifierService", "create_service", "main"]
