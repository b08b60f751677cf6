"""Producer and delivery queue for feed_notifier."""
