"""Database storage for feed_notifier.

This module provides async SQLite database operations for subscriptions,
the notification queue and the delivered-message cache.
Database location: ~/.feed_notifier/feed_notifier.db (or FEED_NOTIFIER_DB_PATH env var)
"""

import json
import os
import aiosqlite
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from feed_notifier.models.schemas import (
    ContentSnapshot,
    DeliveryTask,
    FeedOptions,
    Subscription,
    TaskContent,
    TaskStatus,
    utcnow,
)


def _get_db_path() -> Path:
    """Get the database path, respecting FEED_NOTIFIER_DB_PATH env var for testing."""
    env_path = os.environ.get("FEED_NOTIFIER_DB_PATH")
    if env_path:
        return Path(env_path)
    return Path.home() / ".feed_notifier" / "feed_notifier.db"


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string so stored timestamps compare lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# Singleton connection
_db_connection: Optional[aiosqlite.Connection] = None


async def get_database() -> aiosqlite.Connection:
    """Get or create a singleton database connection.

    Returns:
        Active database connection
    """
    global _db_connection

    if _db_connection is None:
        db_path = _get_db_path()
        # Ensure directory exists
        db_path.parent.mkdir(parents=True, exist_ok=True)

        _db_connection = await aiosqlite.connect(db_path)
        _db_connection.row_factory = aiosqlite.Row
        await init_database(_db_connection)

    return _db_connection


async def init_database(db: Optional[aiosqlite.Connection] = None) -> None:
    """Initialize database tables if they don't exist.

    Args:
        db: Optional database connection (uses singleton if not provided)
    """
    if db is None:
        db = await get_database()

    await db.execute("""
        CREATE TABLE IF NOT EXISTS subscriptions (
            id INTEGER PRIMARY KEY,
            rss_id INTEGER NOT NULL,
            url TEXT NOT NULL,
            platform TEXT NOT NULL,
            guild_id TEXT NOT NULL,
            author TEXT NOT NULL DEFAULT '',
            title TEXT NOT NULL DEFAULT '',
            arg TEXT NOT NULL DEFAULT '{}',
            followers TEXT NOT NULL DEFAULT '[]',
            last_pub_date TIMESTAMP,
            last_content TEXT NOT NULL DEFAULT '[]'
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS notification_queue (
            id INTEGER PRIMARY KEY,
            subscribe_id INTEGER NOT NULL,
            rss_id TEXT NOT NULL,
            uid TEXT NOT NULL,
            guild_id TEXT NOT NULL,
            platform TEXT NOT NULL,
            content TEXT NOT NULL,
            status TEXT NOT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            next_retry_time TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            fail_reason TEXT
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS message_cache (
            id INTEGER PRIMARY KEY,
            rss_id TEXT NOT NULL,
            guild_id TEXT NOT NULL,
            platform TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            content TEXT NOT NULL DEFAULT '',
            link TEXT NOT NULL DEFAULT '',
            pub_date TIMESTAMP,
            image_url TEXT NOT NULL DEFAULT '',
            final_message TEXT NOT NULL DEFAULT '',
            created_at TIMESTAMP NOT NULL
        )
    """)

    # Indexes for the queue's status/time lookups
    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_queue_status ON notification_queue(status, created_at)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_queue_next_retry ON notification_queue(status, next_retry_time)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_cache_link ON message_cache(link)
    """)

    await db.commit()


# --- Subscriptions ---------------------------------------------------------


def _row_to_subscription(row: aiosqlite.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        rss_id=row["rss_id"],
        url=row["url"],
        platform=row["platform"],
        guild_id=row["guild_id"],
        author=row["author"],
        title=row["title"],
        arg=FeedOptions.from_dict(json.loads(row["arg"] or "{}")),
        followers=json.loads(row["followers"] or "[]"),
        last_pub_date=_parse_ts(row["last_pub_date"]),
        last_content=[
            ContentSnapshot.from_dict(c) for c in json.loads(row["last_content"] or "[]")
        ],
    )


async def add_subscription(
    url: str,
    platform: str,
    guild_id: str,
    author: str = "",
    title: str = "",
    arg: Optional[FeedOptions] = None,
    followers: Optional[List[str]] = None,
    rss_id: Optional[int] = None,
) -> Subscription:
    """Add a new subscription.

    Args:
        url: One or more feed URLs joined with '|'
        platform: Target platform name
        guild_id: Target group/channel id
        author: Id of the user who subscribed
        title: Display title
        arg: Per-subscription option overrides
        followers: User ids to mention (or "all")
        rss_id: Display key (defaults to the next free number)

    Returns:
        The created Subscription object
    """
    db = await get_database()
    arg = arg or FeedOptions()
    followers = followers or []

    if rss_id is None:
        cursor = await db.execute("SELECT COALESCE(MAX(rss_id), 0) + 1 AS next_id FROM subscriptions")
        row = await cursor.fetchone()
        rss_id = row["next_id"]

    cursor = await db.execute(
        """
        INSERT INTO subscriptions (rss_id, url, platform, guild_id, author, title, arg, followers)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (rss_id, url, platform, guild_id, author, title, json.dumps(arg.to_dict()), json.dumps(followers)),
    )
    await db.commit()

    return Subscription(
        id=cursor.lastrowid,
        rss_id=rss_id,
        url=url,
        platform=platform,
        guild_id=guild_id,
        author=author,
        title=title,
        arg=arg,
        followers=followers,
        last_pub_date=None,
        last_content=[],
    )


async def get_subscription(subscription_id: int) -> Optional[Subscription]:
    """Get a subscription by id, or None if it does not exist."""
    db = await get_database()

    cursor = await db.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
    row = await cursor.fetchone()

    if row is None:
        return None

    return _row_to_subscription(row)


async def list_subscriptions() -> List[Subscription]:
    """List all subscriptions ordered by id."""
    db = await get_database()

    cursor = await db.execute("SELECT * FROM subscriptions ORDER BY id")

    subscriptions = []
    async for row in cursor:
        subscriptions.append(_row_to_subscription(row))

    return subscriptions


async def remove_subscription(subscription_id: int) -> bool:
    """Remove a subscription.

    Returns:
        True if a row was deleted
    """
    db = await get_database()

    cursor = await db.execute("DELETE FROM subscriptions WHERE id = ?", (subscription_id,))
    await db.commit()

    return cursor.rowcount > 0


async def update_subscription_state(
    subscription_id: int,
    last_pub_date: datetime,
    arg: FeedOptions,
    last_content: List[ContentSnapshot],
) -> None:
    """Persist the producer's last-seen state in a single statement.

    ``last_pub_date`` only ever moves forward; an older value leaves the
    stored one untouched while ``arg`` and ``last_content`` are still written.

    Args:
        subscription_id: ID of the subscription
        last_pub_date: Publish time of the newest accepted item
        arg: Option overrides to store (e.g. advanced next_update_time)
        last_content: Snapshot set used for change detection
    """
    db = await get_database()
    pub_date = _format_ts(last_pub_date)

    await db.execute(
        """
        UPDATE subscriptions
        SET last_pub_date = CASE
                WHEN last_pub_date IS NULL OR last_pub_date < ? THEN ?
                ELSE last_pub_date
            END,
            arg = ?,
            last_content = ?
        WHERE id = ?
        """,
        (
            pub_date,
            pub_date,
            json.dumps(arg.to_dict()),
            json.dumps([c.to_dict() for c in last_content]),
            subscription_id,
        ),
    )
    await db.commit()


# --- Notification queue ----------------------------------------------------

_TASK_COLUMNS = {
    "content",
    "status",
    "retry_count",
    "next_retry_time",
    "updated_at",
    "fail_reason",
}


def _row_to_task(row: aiosqlite.Row) -> DeliveryTask:
    return DeliveryTask(
        id=row["id"],
        subscribe_id=row["subscribe_id"],
        rss_id=row["rss_id"],
        uid=row["uid"],
        guild_id=row["guild_id"],
        platform=row["platform"],
        content=TaskContent.from_dict(json.loads(row["content"])),
        status=TaskStatus(row["status"]),
        retry_count=row["retry_count"],
        next_retry_time=_parse_ts(row["next_retry_time"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
        fail_reason=row["fail_reason"],
    )


async def create_task(task: DeliveryTask) -> DeliveryTask:
    """Insert a delivery task and return it with its id set."""
    db = await get_database()

    cursor = await db.execute(
        """
        INSERT INTO notification_queue (
            subscribe_id, rss_id, uid, guild_id, platform, content, status,
            retry_count, next_retry_time, created_at, updated_at, fail_reason
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            task.subscribe_id,
            task.rss_id,
            task.uid,
            task.guild_id,
            task.platform,
            json.dumps(task.content.to_dict()),
            task.status.value,
            task.retry_count,
            _format_ts(task.next_retry_time),
            _format_ts(task.created_at),
            _format_ts(task.updated_at),
            task.fail_reason,
        ),
    )
    await db.commit()

    task.id = cursor.lastrowid
    return task


async def get_task(task_id: int) -> Optional[DeliveryTask]:
    """Get a delivery task by id, or None if it does not exist."""
    db = await get_database()

    cursor = await db.execute("SELECT * FROM notification_queue WHERE id = ?", (task_id,))
    row = await cursor.fetchone()

    if row is None:
        return None

    return _row_to_task(row)


async def get_pending_tasks(limit: int) -> List[DeliveryTask]:
    """Get the oldest PENDING tasks."""
    db = await get_database()

    cursor = await db.execute(
        """
        SELECT * FROM notification_queue
        WHERE status = ?
        ORDER BY created_at, id
        LIMIT ?
        """,
        (TaskStatus.PENDING.value, limit),
    )

    return [_row_to_task(row) async for row in cursor]


async def get_ready_retry_tasks(now: datetime, limit: int) -> List[DeliveryTask]:
    """Get the oldest RETRY tasks whose next_retry_time has been reached."""
    db = await get_database()

    cursor = await db.execute(
        """
        SELECT * FROM notification_queue
        WHERE status = ? AND next_retry_time IS NOT NULL AND next_retry_time <= ?
        ORDER BY created_at, id
        LIMIT ?
        """,
        (TaskStatus.RETRY.value, _format_ts(now), limit),
    )

    return [_row_to_task(row) async for row in cursor]


async def update_task(task_id: int, **changes: Any) -> None:
    """Update selected columns of a delivery task.

    ``updated_at`` is refreshed automatically unless given.

    Args:
        task_id: ID of the task
        **changes: Column values (content, status, retry_count,
            next_retry_time, updated_at, fail_reason)

    Raises:
        ValueError: If an unknown column is given
    """
    unknown = set(changes) - _TASK_COLUMNS
    if unknown:
        raise ValueError(f"Unknown task columns: {sorted(unknown)}")

    changes.setdefault("updated_at", utcnow())
    values: Dict[str, Any] = {}
    for column, value in changes.items():
        if column == "content":
            value = json.dumps(value.to_dict())
        elif column == "status":
            value = TaskStatus(value).value
        elif column in ("next_retry_time", "updated_at"):
            value = _format_ts(value)
        values[column] = value

    db = await get_database()
    assignments = ", ".join(f"{column} = ?" for column in values)
    await db.execute(
        f"UPDATE notification_queue SET {assignments} WHERE id = ?",
        [*values.values(), task_id],
    )
    await db.commit()


async def count_tasks_by_status() -> Dict[str, int]:
    """Count tasks per status; every status is present in the result."""
    db = await get_database()

    counts = {status.value: 0 for status in TaskStatus}
    cursor = await db.execute(
        "SELECT status, COUNT(*) AS count FROM notification_queue GROUP BY status"
    )
    async for row in cursor:
        counts[row["status"]] = row["count"]

    return counts


async def get_failed_tasks(task_id: Optional[int] = None) -> List[DeliveryTask]:
    """Get FAILED tasks, optionally only the one with the given id."""
    db = await get_database()

    query = "SELECT * FROM notification_queue WHERE status = ?"
    params: List[Any] = [TaskStatus.FAILED.value]
    if task_id is not None:
        query += " AND id = ?"
        params.append(task_id)

    cursor = await db.execute(query, params)
    return [_row_to_task(row) async for row in cursor]


async def delete_success_tasks_before(cutoff: datetime) -> int:
    """Delete SUCCESS tasks last updated before the cutoff.

    Returns:
        Number of tasks deleted
    """
    db = await get_database()

    cursor = await db.execute(
        "DELETE FROM notification_queue WHERE status = ? AND updated_at < ?",
        (TaskStatus.SUCCESS.value, _format_ts(cutoff)),
    )
    await db.commit()

    return cursor.rowcount


# --- Message cache ---------------------------------------------------------


def _row_to_cached_message(row: aiosqlite.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "rss_id": row["rss_id"],
        "guild_id": row["guild_id"],
        "platform": row["platform"],
        "title": row["title"],
        "content": row["content"],
        "link": row["link"],
        "pub_date": _parse_ts(row["pub_date"]),
        "image_url": row["image_url"],
        "final_message": row["final_message"],
        "created_at": _parse_ts(row["created_at"]),
    }


async def add_cached_message(message: Dict[str, Any]) -> bool:
    """Cache a delivered message, skipping links that are already cached.

    Args:
        message: Dict with rss_id, guild_id, platform, title, content, link,
            pub_date, image_url and final_message

    Returns:
        True if the message was inserted, False if it was a duplicate
    """
    db = await get_database()

    link = message.get("link", "")
    if link:
        cursor = await db.execute("SELECT id FROM message_cache WHERE link = ?", (link,))
        if await cursor.fetchone() is not None:
            return False

    await db.execute(
        """
        INSERT INTO message_cache (
            rss_id, guild_id, platform, title, content, link, pub_date,
            image_url, final_message, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            message["rss_id"],
            message["guild_id"],
            message["platform"],
            message.get("title", ""),
            message.get("content", ""),
            link,
            _format_ts(message.get("pub_date")),
            message.get("image_url", ""),
            message.get("final_message", ""),
            _format_ts(utcnow()),
        ),
    )
    await db.commit()
    return True


async def list_cached_messages(
    rss_id: Optional[str] = None,
    guild_id: Optional[str] = None,
    platform: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    """List cached messages, newest first, with optional filters."""
    db = await get_database()

    query = "SELECT * FROM message_cache WHERE 1=1"
    params: List[Any] = []

    if rss_id:
        query += " AND rss_id = ?"
        params.append(rss_id)

    if guild_id:
        query += " AND guild_id = ?"
        params.append(guild_id)

    if platform:
        query += " AND platform = ?"
        params.append(platform)

    query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    cursor = await db.execute(query, params)
    return [_row_to_cached_message(row) async for row in cursor]


async def trim_message_cache(max_size: int) -> int:
    """Delete the oldest cached messages beyond max_size.

    Returns:
        Number of messages deleted
    """
    db = await get_database()

    cursor = await db.execute(
        """
        DELETE FROM message_cache WHERE id NOT IN (
            SELECT id FROM message_cache ORDER BY created_at DESC, id DESC LIMIT ?
        )
        """,
        (max_size,),
    )
    await db.commit()

    return cursor.rowcount


async def clear_message_cache(rss_id: Optional[str] = None) -> int:
    """Delete cached messages, all of them or one subscription's.

    Returns:
        Number of messages deleted
    """
    db = await get_database()

    if rss_id:
        cursor = await db.execute("DELETE FROM message_cache WHERE rss_id = ?", (rss_id,))
    else:
        cursor = await db.execute("DELETE FROM message_cache")

    await db.commit()
    return cursor.rowcount


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    if _db_connection is not None:
        await _db_connection.close()
        _db_connection = None
