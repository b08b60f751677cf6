"""feed_notifier - service wiring

This module assembles the feeder, the notification queue and their
collaborators, and runs them on independent timers:

- poll timer (default 600s) runs a feeder cycle, first run immediately
- drain timer (default 30s) processes the queue, first drain immediately
- an hourly sweep removes old SUCCESS tasks
"""

import asyncio
import os
import sys
from typing import Awaitable, Callable, Dict, List, Optional

import click

from feed_notifier.config import ServerConfig, get_config, load_config
from feed_notifier.core.feeder import Feeder
from feed_notifier.core.notification_queue import NotificationQueueManager
from feed_notifier.log_system.unified_logger import UnifiedLogger
from feed_notifier.services.feed_parser import FeedFetcher
from feed_notifier.services.http_client import HttpFetcher
from feed_notifier.services.message_cache import create_message_cache
from feed_notifier.services.renderer import ContentRenderer
from feed_notifier.services.sender import BroadcastSender, WebhookSender
from feed_notifier.storage import database


CLEANUP_INTERVAL = 3600


class FeedNotifierService:
    """Owns the producer, the delivery queue and their timers."""

    def __init__(
        self,
        config: ServerConfig,
        sender: BroadcastSender,
        fetcher=None,
        renderer=None,
        cache=None,
    ):
        self.config = config
        self.cache = cache if cache is not None else create_message_cache(config.cache)
        self.queue = NotificationQueueManager(config, sender, cache=self.cache)
        http = HttpFetcher(config.net)
        self.feeder = Feeder(
            config,
            fetcher or FeedFetcher(http),
            renderer or ContentRenderer(config, http=http),
            self.queue,
        )
        self.logger = UnifiedLogger.get_logger(__name__)
        self._stopping: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    async def enqueue_producer_cycle(self) -> int:
        """Run one feeder cycle; returns the number of tasks enqueued."""
        return await self.feeder.run_cycle()

    async def drain_queue_once(self) -> int:
        """Process one batch of the queue; returns the number of tasks attempted."""
        return await self.queue.process_queue()

    async def get_queue_stats(self) -> Dict[str, int]:
        return await self.queue.get_stats()

    async def retry_failed_tasks(self, task_id: Optional[int] = None) -> int:
        return await self.queue.retry_failed_tasks(task_id)

    async def cleanup_success_tasks(self, hours: Optional[float] = None) -> int:
        return await self.queue.cleanup_success_tasks(
            hours if hours is not None else self.config.cache.cleanup_hours
        )

    async def _run_every(self, interval: float, job: Callable[[], Awaitable[int]], name: str) -> None:
        """Run ``job`` now and then every ``interval`` seconds until stopped."""
        while not self._stopping.is_set():
            try:
                await job()
            except Exception:
                self.logger.exception(f"{name} run failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def start(self) -> None:
        """Initialize storage and schedule the timers."""
        await database.get_database()
        await self.cache.init()

        self._stopping = asyncio.Event()
        basic = self.config.basic
        self._tasks = [
            asyncio.create_task(self._run_every(basic.refresh, self.enqueue_producer_cycle, "Feeder")),
            asyncio.create_task(self._run_every(basic.queue_interval, self.drain_queue_once, "Queue")),
            asyncio.create_task(self._run_every(CLEANUP_INTERVAL, self.cleanup_success_tasks, "Cleanup")),
        ]
        self.logger.info(
            f"Service started: refresh every {basic.refresh}s, queue drain every {basic.queue_interval}s"
        )

    async def stop(self) -> None:
        """Stop scheduling; in-flight cycles are allowed to finish."""
        if self._stopping is None:
            return
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.info("Service stopped")

    async def wait(self) -> None:
        """Block until the service is stopped."""
        if self._tasks:
            await asyncio.gather(*self._tasks)


def create_service(config: Optional[ServerConfig] = None) -> FeedNotifierService:
    """Create the service with the default collaborators.

    Args:
        config: Optional server configuration

    Returns:
        Configured FeedNotifierService instance
    """
    if config is None:
        config = get_config()
    return FeedNotifierService(config, WebhookSender(config.sender))


@click.command()
@click.option("--config", "config_path", default=None, help="Path to a JSON config file")
@click.option("--refresh", type=int, default=None, help="Feed poll interval in seconds")
@click.option("--queue-interval", type=int, default=None, help="Queue drain interval in seconds")
def main(config_path: Optional[str], refresh: Optional[int], queue_interval: Optional[int]) -> int:
    """Run the feed_notifier service until interrupted."""
    config = load_config(config_path)
    if refresh:
        config.basic.refresh = refresh
    if queue_interval:
        config.basic.queue_interval = queue_interval

    if config.db_path:
        os.environ["FEED_NOTIFIER_DB_PATH"] = config.db_path

    UnifiedLogger.initialize_default(config)
    logger = UnifiedLogger.get_logger(__name__)

    async def run_service():
        """Inner async function to run the service and manage the event loop."""
        UnifiedLogger.set_event_loop(asyncio.get_running_loop())

        service = create_service(config)
        await service.start()
        try:
            await service.wait()
        finally:
            await service.stop()
            await database.close_database()
            await UnifiedLogger.close()

    try:
        asyncio.run(run_service())
        return 0
    except KeyboardInterrupt:
        logger.info("Service stopped by user")
        return 0
    except Exception as e:
        logger.error(f"Failed to start service: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
