"""Feeder: the producer side of the pipeline.

Once per refresh interval every subscription is fetched, sorted, filtered
and compared against its last-seen state. Items that are new (or edited in
place) are rendered and composed into one message, which is enqueued as a
single delivery task. Last-seen state is committed whether or not anything
gets delivered.
"""

import asyncio
import re
import time
from dataclasses import replace
from typing import Callable, List, Optional

from feed_notifier.config import ServerConfig
from feed_notifier.core.notification_queue import NotificationQueueManager
from feed_notifier.core.options import advance_next_update, mix_options
from feed_notifier.log_system.correlation import correlation_scope
from feed_notifier.log_system.unified_logger import UnifiedLogger
from feed_notifier.models.schemas import (
    EPOCH,
    ContentSnapshot,
    DeliveryTask,
    FeedItem,
    FeedOptions,
    Subscription,
    TaskContent,
)
from feed_notifier.services.feed_parser import parse_pub_date, resolve_quick_url
from feed_notifier.storage import database


def matches_keyword(keyword: str, text: str) -> bool:
    """Case-insensitive regex search; invalid patterns match literally."""
    try:
        return re.search(keyword, text or "", re.IGNORECASE | re.MULTILINE) is not None
    except re.error:
        return keyword.lower() in (text or "").lower()


def find_filter_keyword(item: FeedItem, keywords: List[str]) -> Optional[str]:
    """Return the first keyword matching the item's title or description."""
    for keyword in keywords:
        if matches_keyword(keyword, item.title) or matches_keyword(keyword, item.description):
            return keyword
    return None


def select_new_items(
    items: List[FeedItem],
    subscription: Subscription,
    options: FeedOptions,
    resend_updated_content: str,
) -> List[FeedItem]:
    """Pick the items that should be sent this cycle.

    In forced mode the first ``force_length`` items are taken as-is. In
    standard mode an item is kept when its publish date is strictly newer
    than the stored one, or when it matches a stored snapshot but its
    description changed. The result is capped to ``max_rss_item``.

    Args:
        items: Sorted and filtered items (already reversed if configured)
        subscription: Subscription holding the last-seen state
        options: Effective options
        resend_updated_content: "disable", "latest" or "all"

    Returns:
        The selected items, in input order
    """
    if subscription.arg.force_length:
        return items[: subscription.arg.force_length]

    last_time = subscription.last_pub_date or EPOCH
    selected = []

    for item in items:
        if parse_pub_date(item.pub_date) > last_time:
            selected.append(item)
            continue

        if resend_updated_content == "disable":
            continue

        snapshot = ContentSnapshot.from_item(item)
        previous = next((old for old in subscription.last_content if snapshot.same_item(old)), None)
        if previous is not None and previous.description != snapshot.description:
            selected.append(item)

    if options.max_rss_item:
        selected = selected[: options.max_rss_item]
    return selected


def compose_message(
    messages: List[str],
    subscription: Subscription,
    options: FeedOptions,
    config: ServerConfig,
) -> str:
    """Join rendered bodies per the merge policy and append follower mentions."""
    policy = config.basic.merge
    should_merge = (
        options.merge is True
        or policy == "always"
        or (policy == "multiple" and len(messages) > 1)
    )
    has_video = config.basic.merge_video and any("<video" in m for m in messages)

    if should_merge or has_video:
        body = "".join(f"<message>{m}</message>" for m in messages)
        message = f'<message forward><author id="{subscription.author}"/>{body}</message>'
    else:
        message = "".join(messages)

    if subscription.followers:
        mentions = " ".join(
            '<at type="all"/>' if follower == "all" else f'<at id="{follower}"/>'
            for follower in subscription.followers
        )
        message += f"<message>{mentions}</message>"

    return message


class Feeder:
    """Polls every subscription and enqueues what changed."""

    def __init__(
        self,
        config: ServerConfig,
        fetcher,
        renderer,
        queue: NotificationQueueManager,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.fetcher = fetcher
        self.renderer = renderer
        self.queue = queue
        self._clock = clock
        self.logger = UnifiedLogger.get_logger(__name__)

    async def run_cycle(self) -> int:
        """Process every subscription once, sequentially.

        Returns:
            Number of delivery tasks enqueued
        """
        with correlation_scope("feed"):
            try:
                subscriptions = await database.list_subscriptions()
            except Exception:
                self.logger.exception("Failed to load subscriptions")
                return 0

            enqueued = 0
            for subscription in subscriptions:
                try:
                    if await self.process_subscription(subscription) is not None:
                        enqueued += 1
                except Exception:
                    self.logger.exception(f"Feeder error for {subscription.url}")

            return enqueued

    async def _fetch_all(self, subscription: Subscription, options: FeedOptions) -> List[FeedItem]:
        urls = [
            resolve_quick_url(url, self.config.msg.rsshub_url)
            for url in subscription.url.split("|")
            if url.strip()
        ]
        results = await asyncio.gather(
            *(self.fetcher.fetch(url, options) for url in urls),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return [item for result in results for item in result]

    async def _commit(
        self,
        subscription: Subscription,
        last_pub_date,
        stored_arg: FeedOptions,
        snapshots: List[ContentSnapshot],
    ) -> None:
        await database.update_subscription_state(subscription.id, last_pub_date, stored_arg, snapshots)

    async def process_subscription(self, subscription: Subscription) -> Optional[DeliveryTask]:
        """Run one poll cycle for one subscription.

        Returns:
            The enqueued task, or None if nothing was enqueued
        """
        options = mix_options(subscription.arg, self.config)
        stored_arg = replace(subscription.arg)

        if subscription.arg.interval:
            now = self._clock()
            if options.next_update_time and options.next_update_time > now:
                return None
            stored_arg.next_update_time = advance_next_update(
                options.next_update_time, subscription.arg.interval, now
            )

        try:
            items = await self._fetch_all(subscription, options)
        except Exception as e:
            self.logger.warning(f"Fetch failed for {subscription.title or subscription.url}: {e}")
            return None

        if not items:
            return None

        items.sort(key=lambda i: parse_pub_date(i.pub_date), reverse=True)
        kept = []
        for item in items:
            keyword = find_filter_keyword(item, options.filter)
            if keyword:
                self.logger.info(f"Filtered by '{keyword}': {item.title}")
            else:
                kept.append(item)
        items = kept

        if not items:
            return None

        latest = items[0]
        last_pub_date = parse_pub_date(latest.pub_date)
        resend = self.config.basic.resend_updated_content
        if resend == "all":
            snapshots = [ContentSnapshot.from_item(i) for i in items]
        else:
            snapshots = [ContentSnapshot.from_item(latest)]

        if options.reverse:
            items = list(reversed(items))

        selected = select_new_items(items, subscription, options, resend)
        if not selected:
            await self._commit(subscription, last_pub_date, stored_arg, snapshots)
            return None

        self.logger.info(f"{subscription.title}: found {len(selected)} new items")

        to_send = list(reversed(selected))
        rendered = await asyncio.gather(*(self.renderer.render(i, options) for i in to_send))
        pairs = [(item, body) for item, body in zip(to_send, rendered) if body]

        if not pairs:
            await self._commit(subscription, last_pub_date, stored_arg, snapshots)
            return None

        message = compose_message([body for _, body in pairs], subscription, options, self.config)
        newest = pairs[-1][0]
        content = TaskContent(
            message=message,
            title=newest.title,
            description=newest.description,
            link=newest.link,
            pub_date=parse_pub_date(newest.pub_date),
            image_url=newest.image_url,
        )

        try:
            task = await self.queue.add_task(
                subscribe_id=subscription.id,
                rss_id=str(subscription.rss_id),
                guild_id=subscription.guild_id,
                platform=subscription.platform,
                content=content,
            )
        finally:
            await self._commit(subscription, last_pub_date, stored_arg, snapshots)

        return task
