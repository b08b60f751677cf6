"""Data models for feed_notifier."""
