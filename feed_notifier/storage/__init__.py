"""Storage layer for feed_notifier."""

from .database import (
    get_database,
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
    close_database,
)

__all__ = [
    "get_database",
    "init_database",
    "add_subscription",
    "get_subscription",
    "list_subscriptions",
    "remove_subscription",
    "update_subscription_state",
    "create_task",
    "get_task",
    "get_pending_tasks",
    "get_ready_retry_tasks",
    "update_task",
    "count_tasks_by_status",
    "get_failed_tasks",
    "delete_success_tasks_before",
    "add_cached_message",
    "list_cached_messages",
    "trim_message_cache",
    "clear_message_cache",
    "close_database",
]
