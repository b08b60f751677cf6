"""Unit tests for database operations.

Tests for the storage layer using in-memory SQLite.
"""

import pytest
from datetime import datetime, timedelta, timezone

from feed_notifier.storage.database import (
    init_database,
    add_subscription,
    get_subscription,
    list_subscriptions,
    remove_subscription,
    update_subscription_state,
    create_task,
    get_task,
    get_pending_tasks,
    get_ready_retry_tasks,
    update_task,
    count_tasks_by_status,
    get_failed_tasks,
    delete_success_tasks_before,
    add_cached_message,
    list_cached_messages,
    trim_message_cache,
    clear_message_cache,
)
from feed_notifier.models.schemas import (
    ContentSnapshot,
    DeliveryTask,
    FeedOptions,
    TaskContent,
    TaskStatus,
)


# Mark all tests as async
pytestmark = pytest.mark.anyio


T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_task(created_at=T0, status=TaskStatus.PENDING, **kwargs) -> DeliveryTask:
    return DeliveryTask(
        id=None,
        subscribe_id=kwargs.pop("subscribe_id", 1),
        rss_id=kwargs.pop("rss_id", "1"),
        uid=kwargs.pop("uid", "uid-1"),
        guild_id=kwargs.pop("guild_id", "123"),
        platform=kwargs.pop("platform", "onebot"),
        content=kwargs.pop("content", TaskContent(message="hello", title="Post")),
        status=status,
        created_at=created_at,
        updated_at=created_at,
        **kwargs,
    )


class TestDatabaseInitialization:
    """Tests for database schema initialization."""

    async def test_init_creates_tables(self, in_memory_db):
        """Test that initialization creates the required tables."""
        cursor = await in_memory_db.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        )
        tables = [row[0] for row in await cursor.fetchall()]

        assert "subscriptions" in tables
        assert "notification_queue" in tables
        assert "message_cache" in tables

    async def test_init_creates_indexes(self, in_memory_db):
        """Test that initialization creates indexes."""
        cursor = await in_memory_db.execute(
            "SELECT name FROM sqlite_master WHERE type='index'"
        )
        indexes = [row[0] for row in await cursor.fetchall()]

        assert "idx_queue_status" in indexes
        assert "idx_queue_next_retry" in indexes

    async def test_init_is_idempotent(self, in_memory_db):
        """Test that calling init multiple times doesn't cause errors."""
        await init_database(in_memory_db)
        await init_database(in_memory_db)


class TestSubscriptionOperations:
    """Tests for subscription CRUD and state updates."""

    async def test_add_subscription_minimal(self, in_memory_db):
        sub = await add_subscription("https://example.com/feed.xml", "onebot", "123")

        assert sub.id is not None
        assert sub.rss_id == 1
        assert sub.last_pub_date is None
        assert sub.last_content == []
        assert sub.arg == FeedOptions()

    async def test_rss_id_auto_increments(self, in_memory_db):
        await add_subscription("https://a.example/feed", "onebot", "1")
        await add_subscription("https://b.example/feed", "onebot", "1", rss_id=7)
        third = await add_subscription("https://c.example/feed", "onebot", "1")

        assert third.rss_id == 8

    async def test_subscription_round_trips_options(self, in_memory_db):
        arg = FeedOptions(template="only text", interval=300, filter=["ad"], reverse=True)
        sub = await add_subscription(
            "https://example.com/feed.xml", "onebot", "123",
            title="Example", arg=arg, followers=["42", "all"],
        )

        loaded = await get_subscription(sub.id)

        assert loaded.title == "Example"
        assert loaded.arg.template == "only text"
        assert loaded.arg.interval == 300
        assert loaded.arg.filter == ["ad"]
        assert loaded.arg.reverse is True
        assert loaded.followers == ["42", "all"]

    async def test_get_subscription_not_found(self, in_memory_db):
        assert await get_subscription(999) is None

    async def test_list_subscriptions_ordered(self, in_memory_db):
        await add_subscription("https://a.example/feed", "onebot", "1")
        await add_subscription("https://b.example/feed", "onebot", "2")

        subs = await list_subscriptions()

        assert [s.url for s in subs] == ["https://a.example/feed", "https://b.example/feed"]

    async def test_remove_subscription(self, in_memory_db):
        sub = await add_subscription("https://a.example/feed", "onebot", "1")

        assert await remove_subscription(sub.id) is True
        assert await remove_subscription(sub.id) is False
        assert await get_subscription(sub.id) is None

    async def test_update_state_writes_all_fields(self, in_memory_db):
        sub = await add_subscription("https://a.example/feed", "onebot", "1")
        snapshot = ContentSnapshot(title="Post", description="body", link="https://a.example/1", guid="g1")

        await update_subscription_state(sub.id, T0, FeedOptions(next_update_time=1000.0), [snapshot])

        loaded = await get_subscription(sub.id)
        assert loaded.last_pub_date == T0
        assert loaded.arg.next_update_time == 1000.0
        assert loaded.last_content == [snapshot]

    async def test_last_pub_date_never_moves_backwards(self, in_memory_db):
        sub = await add_subscription("https://a.example/feed", "onebot", "1")
        snapshot = ContentSnapshot(title="Older")

        await update_subscription_state(sub.id, T0, FeedOptions(), [])
        await update_subscription_state(sub.id, T0 - timedelta(days=1), FeedOptions(), [snapshot])

        loaded = await get_subscription(sub.id)
        assert loaded.last_pub_date == T0
        # Snapshots are still replaced
        assert loaded.last_content == [snapshot]


class TestTaskOperations:
    """Tests for the notification queue table."""

    async def test_create_and_get_task(self, in_memory_db):
        content = TaskContent(message="<b>hi</b>", title="Post", link="https://a/1", pub_date=T0)
        task = await create_task(make_task(content=content))

        loaded = await get_task(task.id)

        assert loaded.status == TaskStatus.PENDING
        assert loaded.content == content
        assert loaded.created_at == T0
        assert loaded.next_retry_time is None

    async def test_get_task_not_found(self, in_memory_db):
        assert await get_task(123) is None

    async def test_pending_tasks_oldest_first(self, in_memory_db):
        newer = await create_task(make_task(created_at=T0 + timedelta(minutes=5), uid="b"))
        older = await create_task(make_task(created_at=T0, uid="a"))
        await create_task(make_task(status=TaskStatus.SUCCESS, uid="c"))

        pending = await get_pending_tasks(10)

        assert [t.id for t in pending] == [older.id, newer.id]

    async def test_pending_tasks_respects_limit(self, in_memory_db):
        for i in range(5):
            await create_task(make_task(created_at=T0 + timedelta(seconds=i), uid=str(i)))

        assert len(await get_pending_tasks(3)) == 3

    async def test_ready_retry_tasks_filters_by_time(self, in_memory_db):
        due = await create_task(make_task(
            status=TaskStatus.RETRY, next_retry_time=T0 - timedelta(seconds=1), uid="due",
        ))
        await create_task(make_task(
            status=TaskStatus.RETRY, next_retry_time=T0 + timedelta(seconds=1), uid="later",
        ))

        ready = await get_ready_retry_tasks(T0, 10)

        assert [t.id for t in ready] == [due.id]

    async def test_ready_retry_boundary_is_inclusive(self, in_memory_db):
        task = await create_task(make_task(status=TaskStatus.RETRY, next_retry_time=T0))

        ready = await get_ready_retry_tasks(T0, 10)

        assert [t.id for t in ready] == [task.id]

    async def test_update_task(self, in_memory_db):
        task = await create_task(make_task())
        retry_at = T0 + timedelta(seconds=10)

        await update_task(
            task.id,
            status=TaskStatus.RETRY,
            retry_count=1,
            next_retry_time=retry_at,
            fail_reason="timeout",
            content=TaskContent(message="downgraded", is_downgraded=True),
        )

        loaded = await get_task(task.id)
        assert loaded.status == TaskStatus.RETRY
        assert loaded.retry_count == 1
        assert loaded.next_retry_time == retry_at
        assert loaded.fail_reason == "timeout"
        assert loaded.content.is_downgraded is True
        assert loaded.updated_at > T0

    async def test_update_task_rejects_unknown_columns(self, in_memory_db):
        task = await create_task(make_task())

        with pytest.raises(ValueError, match="Unknown task columns"):
            await update_task(task.id, guild_id="other")

    async def test_count_tasks_by_status(self, in_memory_db):
        await create_task(make_task(uid="a"))
        await create_task(make_task(uid="b"))
        await create_task(make_task(status=TaskStatus.FAILED, uid="c"))

        counts = await count_tasks_by_status()

        assert counts == {"PENDING": 2, "RETRY": 0, "FAILED": 1, "SUCCESS": 0}

    async def test_get_failed_tasks(self, in_memory_db):
        first = await create_task(make_task(status=TaskStatus.FAILED, uid="a"))
        await create_task(make_task(status=TaskStatus.FAILED, uid="b"))
        await create_task(make_task(uid="c"))

        assert len(await get_failed_tasks()) == 2
        assert [t.id for t in await get_failed_tasks(first.id)] == [first.id]

    async def test_delete_success_tasks_before(self, in_memory_db):
        old = await create_task(make_task(status=TaskStatus.SUCCESS, uid="old"))
        recent = await create_task(make_task(
            status=TaskStatus.SUCCESS, created_at=T0 + timedelta(days=2), uid="recent",
        ))
        failed = await create_task(make_task(status=TaskStatus.FAILED, uid="failed"))

        removed = await delete_success_tasks_before(T0 + timedelta(days=1))

        assert removed == 1
        assert await get_task(old.id) is None
        assert await get_task(recent.id) is not None
        assert await get_task(failed.id) is not None


class TestMessageCacheOperations:
    """Tests for the delivered-message cache table."""

    def _message(self, link, rss_id="1", title="Post"):
        return {
            "rss_id": rss_id,
            "guild_id": "123",
            "platform": "onebot",
            "title": title,
            "content": "body",
            "link": link,
            "pub_date": T0,
            "image_url": "",
            "final_message": "Post\nbody",
        }

    async def test_add_and_list(self, in_memory_db):
        assert await add_cached_message(self._message("https://a/1")) is True

        cached = await list_cached_messages()

        assert len(cached) == 1
        assert cached[0]["link"] == "https://a/1"
        assert cached[0]["pub_date"] == T0

    async def test_duplicate_link_skipped(self, in_memory_db):
        await add_cached_message(self._message("https://a/1"))

        assert await add_cached_message(self._message("https://a/1", title="Again")) is False
        assert len(await list_cached_messages()) == 1

    async def test_list_filters_by_rss_id(self, in_memory_db):
        await add_cached_message(self._message("https://a/1", rss_id="1"))
        await add_cached_message(self._message("https://a/2", rss_id="2"))

        cached = await list_cached_messages(rss_id="2")

        assert [m["link"] for m in cached] == ["https://a/2"]

    async def test_trim_keeps_newest(self, in_memory_db):
        for i in range(5):
            await add_cached_message(self._message(f"https://a/{i}"))

        removed = await trim_message_cache(2)

        assert removed == 3
        assert [m["link"] for m in await list_cached_messages()] == ["https://a/4", "https://a/3"]

    async def test_clear_by_rss_id(self, in_memory_db):
        await add_cached_message(self._message("https://a/1", rss_id="1"))
        await add_cached_message(self._message("https://a/2", rss_id="2"))

        assert await clear_message_cache("1") == 1
        assert await clear_message_cache() == 1
        assert await list_cached_messages() == []
