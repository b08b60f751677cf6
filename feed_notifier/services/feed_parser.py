"""Feed parser service.

This module fetches RSS/Atom/JSON feeds and normalizes their entries into
FeedItem objects.
"""

import json
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from time import struct_time
from typing import Any, Dict, List, Optional

import feedparser

from feed_notifier.log_system.unified_logger import UnifiedLogger
from feed_notifier.models.schemas import EPOCH, FeedItem, FeedOptions
from feed_notifier.services.http_client import HttpFetcher
from feed_notifier.services.scraper import scrape_items


# Shorthand prefixes accepted in subscription URLs, e.g. "tg:channel"
QUICK_URLS: Dict[str, str] = {
    "rss": "{rsshub}/{route}",
    "tg": "{rsshub}/telegram/channel/{route}",
    "mp-tag": "{rsshub}/wechat/mp/msgalbum/{route}",
    "gh": "{rsshub}/github/{route}",
    "github": "https://github.com/{route}.atom",
    "koishi": "https://forum.koishi.xyz/{route}.rss",
}


def resolve_quick_url(url: str, rsshub_url: str) -> str:
    """Expand a shorthand URL like ``tg:channel`` to a full feed URL.

    Args:
        url: URL as stored on the subscription
        rsshub_url: Base URL of the RSSHub instance

    Returns:
        The expanded URL, or the input unchanged if it has no known prefix
    """
    url = url.strip()
    prefix, sep, route = url.partition(":")
    if not sep or prefix not in QUICK_URLS or route.startswith("//"):
        return url
    return QUICK_URLS[prefix].format(rsshub=rsshub_url.rstrip("/"), route=route)


def parse_pub_date(value: Any) -> datetime:
    """Parse a publication date, never raising.

    Accepts datetimes, feedparser time structs, RFC 2822 and ISO 8601
    strings. Missing or invalid values parse to the epoch so undated items
    sort last and never look newer than anything already seen.

    Args:
        value: Raw date value from a feed item

    Returns:
        An aware UTC datetime
    """
    if not value:
        return EPOCH

    parsed: Optional[datetime] = None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (struct_time, tuple)):
        try:
            parsed = datetime(*value[:6], tzinfo=timezone.utc)
        except (ValueError, TypeError):
            return EPOCH
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return EPOCH
    elif isinstance(value, str):
        text = value.strip()
        # Try RFC 2822 format (common in RSS)
        try:
            parsed = parsedate_to_datetime(text)
        except (ValueError, TypeError, IndexError):
            parsed = None
        if parsed is None:
            # Try ISO format
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return EPOCH

    if parsed is None:
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _first_image(html: str) -> str:
    match = re.search(r"<img[^>]+src=[\"']([^\"']+)[\"']", html or "", re.IGNORECASE)
    return match.group(1) if match else ""


def parse_json_feed(data: Dict[str, Any], url: str) -> List[FeedItem]:
    """Normalize a JSON Feed (``items``) or RSSHub-style ``objects`` document."""
    items: List[FeedItem] = []

    if isinstance(data.get("items"), list):
        feed_author = (data.get("author") or {}).get("name", "")
        for entry in data["items"]:
            description = entry.get("content_html") or entry.get("content_text") or entry.get("summary") or ""
            items.append(FeedItem(
                title=entry.get("title") or "",
                description=description,
                link=entry.get("url") or entry.get("id") or "",
                guid=str(entry.get("id") or entry.get("url") or ""),
                pub_date=entry.get("date_published") or entry.get("date_modified"),
                author=(entry.get("author") or {}).get("name", "") or feed_author,
                image_url=entry.get("image") or _first_image(description),
            ))
    elif isinstance(data.get("objects"), list):
        for entry in data["objects"]:
            items.append(FeedItem(
                title=entry.get("title") or entry.get("type") or "No Title",
                description=entry.get("content") or entry.get("summary") or json.dumps(entry),
                link=entry.get("link") or entry.get("url") or url,
                guid=str(entry.get("id") or entry.get("hash") or ""),
                pub_date=entry.get("date_published") or entry.get("created_at") or entry.get("timestamp"),
            ))

    return items


def parse_xml_feed(text: str) -> List[FeedItem]:
    """Normalize an RSS or Atom document using feedparser."""
    feed = feedparser.parse(text)

    if feed.bozo and not feed.entries:
        UnifiedLogger.get_logger(__name__).warning(f"Feed parsing error: {feed.bozo_exception}")
        return []

    items = []
    for entry in feed.entries:
        description = ""
        if entry.get("content"):
            description = entry["content"][0].get("value", "")
        description = description or entry.get("summary", "") or entry.get("description", "")

        link = entry.get("link", "").strip()
        if not link:
            # Try alternate link
            for candidate in entry.get("links", []):
                if candidate.get("rel") == "alternate" or candidate.get("href"):
                    link = candidate.get("href", "")
                    break

        pub_date = None
        for field in ["published", "updated", "created"]:
            pub_date = entry.get(field) or entry.get(f"{field}_parsed")
            if pub_date:
                break

        items.append(FeedItem(
            title=entry.get("title", "").strip(),
            description=description,
            link=link,
            guid=entry.get("id", "") or link,
            pub_date=pub_date,
            author=entry.get("author", ""),
            image_url=_first_image(description),
        ))

    return items


class FeedFetcher:
    """Turns a feed URL plus effective options into normalized items."""

    def __init__(self, http: HttpFetcher):
        self.http = http

    async def fetch(self, url: str, options: FeedOptions) -> List[FeedItem]:
        """Fetch and parse one feed.

        Args:
            url: Fully resolved feed URL
            options: Effective subscription options

        Returns:
            List of FeedItem objects

        Raises:
            FetchError: If the feed could not be downloaded
        """
        logger = UnifiedLogger.get_logger(__name__)
        logger.debug(f"Parsing feed: {url}")

        response = await self.http.get(url, options)
        text = response.text
        content_type = response.headers.get("content-type", "")

        if text.lstrip().startswith("{") or "json" in content_type:
            try:
                data = json.loads(text)
            except ValueError:
                data = None
            if isinstance(data, dict):
                items = parse_json_feed(data, url)
                logger.debug(f"Parsed {len(items)} items from JSON feed")
                return items

        if options.type == "html" and options.selector:
            return scrape_items(text, url, options.selector, text_only=bool(options.text_only))

        items = parse_xml_feed(text)
        logger.debug(f"Parsed {len(items)} items from feed")
        return items
