"""HTML scraper service.

This module turns the elements of a web page matching a CSS selector into
pseudo feed items, so plain pages can be monitored like feeds.
"""

from bs4 import BeautifulSoup
from typing import List
from urllib.parse import urljoin

from feed_notifier.log_system.unified_logger import UnifiedLogger
from feed_notifier.models.schemas import EPOCH, FeedItem


MAX_TITLE_LENGTH = 50


def scrape_items(html: str, url: str, css_selector: str, text_only: bool = False) -> List[FeedItem]:
    """Scrape a page for elements matching a CSS selector.

    Scraped items carry the epoch as their publish date, so updates are
    detected by content comparison rather than by time.

    Args:
        html: Page source
        url: URL the page was fetched from (for resolving relative links)
        css_selector: CSS selector of the elements to monitor
        text_only: Use element text instead of inner HTML as description

    Returns:
        List of FeedItem objects
    """
    logger = UnifiedLogger.get_logger(__name__)
    logger.info(f"Scraping page: {url} with selector: {css_selector}")

    soup = BeautifulSoup(html, "lxml")
    page_title = soup.title.get_text(strip=True) if soup.title else "Web Monitor"

    # Find all elements matching the selector
    elements = soup.select(css_selector)

    if not elements:
        logger.warning(f"No elements found matching selector: {css_selector}")
        return []

    items = []
    for element in elements:
        title = element.get("title") or " ".join(element.get_text().split())
        if len(title) > MAX_TITLE_LENGTH:
            title = title[:MAX_TITLE_LENGTH] + "..."

        # Find the link - either the element itself or a child <a> tag
        link_tag = element if element.name == "a" else element.find("a")
        href = link_tag.get("href", "").strip() if link_tag else ""
        link = urljoin(url, href) if href and not href.startswith(("#", "javascript:")) else url

        if text_only:
            description = element.get_text().strip()
        else:
            description = element.decode_contents().strip()

        items.append(FeedItem(
            title=title or "No Title",
            description=description,
            link=link,
            guid=link if link != url else description,
            pub_date=EPOCH,
            author=page_title,
        ))

    logger.info(f"Scraped {len(items)} items from page")
    return items
