"""Notification queue manager.

Durable delivery of composed messages: tasks are stored in SQLite, drained
in small batches, and either finalized, degraded and retried immediately,
or retried later with backoff.

State machine per task::

    PENDING -> SUCCESS
    PENDING -> RETRY -> RETRY* -> SUCCESS | FAILED
"""

import re
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from feed_notifier.config import ServerConfig
from feed_notifier.errors import DeliveryError, DeliveryErrorKind
from feed_notifier.log_system.correlation import correlation_scope
from feed_notifier.log_system.unified_logger import UnifiedLogger
from feed_notifier.models.schemas import DeliveryTask, TaskContent, TaskStatus, utcnow
from feed_notifier.services.sender import BroadcastSender, Target
from feed_notifier.storage import database


# Backoff in seconds indexed by retry count; the last entry repeats forever
BACKOFF_DELAYS = (10, 30, 60, 300, 600)

_VIDEO_ELEMENT = re.compile(r"<video\b[^>]*?(?:/>|>.*?</video>)", re.IGNORECASE | re.DOTALL)
_VIDEO_SRC = re.compile(r"src=[\"']([^\"']+)[\"']", re.IGNORECASE)


def backoff_delay(retry_count: int) -> int:
    """Seconds to wait before the next attempt after ``retry_count`` retries."""
    index = min(max(retry_count, 0), len(BACKOFF_DELAYS) - 1)
    return BACKOFF_DELAYS[index]


def downgrade_message(message: str) -> str:
    """Replace every embedded video element with a plain-text link line."""

    def replace_video(match: "re.Match[str]") -> str:
        src = _VIDEO_SRC.search(match.group(0))
        if src:
            return f"\n🎬 Video: {src.group(1)}\n"
        return "\n[video unsupported]\n"

    return _VIDEO_ELEMENT.sub(replace_video, message)


class NotificationQueueManager:
    """Consumer side of the pipeline."""

    def __init__(
        self,
        config: ServerConfig,
        sender: BroadcastSender,
        cache=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.sender = sender
        self.cache = cache
        self.batch_size = config.basic.batch_size
        self.max_retries = config.basic.max_retries
        self._clock = clock
        self._processing = False
        self.logger = UnifiedLogger.get_logger(__name__)

    @property
    def processing(self) -> bool:
        return self._processing

    async def add_task(
        self,
        subscribe_id: int,
        rss_id: str,
        guild_id: str,
        platform: str,
        content: TaskContent,
        uid: Optional[str] = None,
    ) -> DeliveryTask:
        """Add a PENDING task to the queue.

        Returns:
            The stored task with its id set
        """
        now = self._clock()
        task = DeliveryTask(
            id=None,
            subscribe_id=subscribe_id,
            rss_id=rss_id,
            uid=uid or uuid.uuid4().hex,
            guild_id=guild_id,
            platform=platform,
            content=content,
            status=TaskStatus.PENDING,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        task = await database.create_task(task)
        self.logger.info(f"Task queued: [{rss_id}] {content.title}")
        return task

    async def process_queue(self) -> int:
        """Drain one batch of ready tasks.

        Concurrent calls while a drain is in flight return immediately.

        Returns:
            Number of tasks attempted
        """
        if self._processing:
            self.logger.debug("Queue is already being processed, skipping")
            return 0

        self._processing = True
        attempted = 0
        try:
            with correlation_scope("queue"):
                tasks = await self._get_ready_tasks()
                if not tasks:
                    return 0

                self.logger.info(f"Processing {len(tasks)} queued tasks")
                for task in tasks:
                    attempted += 1
                    try:
                        await self.process_task(task)
                    except Exception:
                        self.logger.exception(f"Failed to process task {task.id}")
        except Exception:
            self.logger.exception("Queue processing error")
        finally:
            self._processing = False

        return attempted

    async def _get_ready_tasks(self) -> List[DeliveryTask]:
        """PENDING tasks plus due RETRY tasks, oldest first, one batch."""
        pending = await database.get_pending_tasks(self.batch_size)
        retry = await database.get_ready_retry_tasks(self._clock(), self.batch_size)

        tasks = sorted(pending + retry, key=lambda t: (t.created_at, t.id))
        return tasks[: self.batch_size]

    async def process_task(self, task: DeliveryTask) -> None:
        """Attempt delivery of one task and record the outcome."""
        self.logger.debug(
            f"Processing task [{task.rss_id}] {task.content.title} (retried {task.retry_count} times)"
        )
        target = Target(platform=task.platform, guild_id=task.guild_id)

        try:
            await self.sender.send(target, task.content.message)
        except DeliveryError as e:
            await self._handle_send_error(task, e)
            return
        except Exception as e:
            await self._handle_send_error(task, DeliveryError(str(e) or type(e).__name__))
            return

        await database.update_task(task.id, status=TaskStatus.SUCCESS, updated_at=self._clock())
        self.logger.info(f"Task delivered: [{task.rss_id}] {task.content.title}")
        await self._cache_message(task)

    async def _handle_send_error(self, task: DeliveryTask, error: DeliveryError) -> None:
        reason = str(error) or "Unknown error"

        if error.kind.is_fatal:
            await database.update_task(
                task.id,
                status=TaskStatus.FAILED,
                fail_reason=f"{error.kind.value}: {reason}",
                updated_at=self._clock(),
            )
            self.logger.error(f"Permanent failure, not retrying: [{task.rss_id}] {task.content.title} - {reason}")
            return

        if error.kind == DeliveryErrorKind.UNSUPPORTED_CONTENT and not task.content.is_downgraded:
            content = replace(
                task.content,
                message=downgrade_message(task.content.message),
                is_downgraded=True,
            )
            now = self._clock()
            await database.update_task(
                task.id,
                content=content,
                status=TaskStatus.RETRY,
                next_retry_time=now,
                retry_count=task.retry_count + 1,
                fail_reason=reason,
                updated_at=now,
            )
            self.logger.info(f"Message downgraded, retrying immediately: [{task.rss_id}] {task.content.title}")
            return

        retry_count = task.retry_count + 1
        if self.max_retries is not None and retry_count > self.max_retries:
            await database.update_task(
                task.id,
                status=TaskStatus.FAILED,
                fail_reason=f"Retry limit reached: {reason}",
                updated_at=self._clock(),
            )
            self.logger.error(f"Giving up after {task.retry_count} retries: [{task.rss_id}] {task.content.title}")
            return

        delay = backoff_delay(task.retry_count)
        now = self._clock()
        await database.update_task(
            task.id,
            status=TaskStatus.RETRY,
            next_retry_time=now + timedelta(seconds=delay),
            retry_count=retry_count,
            fail_reason=reason,
            updated_at=now,
        )
        self.logger.info(f"Task will be retried in {delay}s: [{task.rss_id}] {task.content.title} - {reason}")

    async def _cache_message(self, task: DeliveryTask) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.record(task)
        except Exception as e:
            self.logger.info(f"Failed to cache message: {e}")

    async def get_stats(self) -> Dict[str, int]:
        """Count tasks per status."""
        counts = await database.count_tasks_by_status()
        return {status.lower(): count for status, count in counts.items()}

    async def retry_failed_tasks(self, task_id: Optional[int] = None) -> int:
        """Reset one or all FAILED tasks back to PENDING.

        Returns:
            Number of tasks reset
        """
        tasks = await database.get_failed_tasks(task_id)
        for task in tasks:
            await database.update_task(
                task.id,
                status=TaskStatus.PENDING,
                retry_count=0,
                fail_reason=None,
                next_retry_time=None,
                updated_at=self._clock(),
            )

        self.logger.info(f"Reset {len(tasks)} failed tasks to PENDING")
        return len(tasks)

    async def cleanup_success_tasks(self, older_than_hours: float = 24) -> int:
        """Delete SUCCESS tasks older than the threshold.

        Returns:
            Number of tasks deleted
        """
        cutoff = self._clock() - timedelta(hours=older_than_hours)
        removed = await database.delete_success_tasks_before(cutoff)

        self.logger.info(f"Removed {removed} old delivered tasks")
        return removed
