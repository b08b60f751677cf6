"""Services for feed_notifier."""

from .feed_parser import FeedFetcher, parse_pub_date, resolve_quick_url
from .http_client import HttpFetcher, RequestManager
from .message_cache import MessageCache, NullMessageCache, create_message_cache
from .renderer import ContentRenderer
from .scraper import scrape_items
from .sender import BroadcastSender, Target, WebhookSender

__all__ = [
    "BroadcastSender",
    "ContentRenderer",
    "FeedFetcher",
    "HttpFetcher",
    "MessageCache",
    "NullMessageCache",
    "RequestManager",
    "Target",
    "WebhookSender",
    "create_message_cache",
    "parse_pub_date",
    "resolve_quick_url",
    "scrape_items",
]
