"""feed_notifier - polls feeds and reliably delivers update notifications."""

__version__ = "0.1.0"
