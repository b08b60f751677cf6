"""Content renderer.

Turns one FeedItem plus the subscription's template choice into a message
body using chat message markup (``<img src=".."/>``, ``<video src=".."></video>``).
An empty body tells the producer to suppress the item.
"""

import base64
import re
from typing import Any, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from feed_notifier.config import ServerConfig
from feed_notifier.errors import FetchError
from feed_notifier.log_system.unified_logger import UnifiedLogger
from feed_notifier.models.schemas import EPOCH, FeedItem, FeedOptions
from feed_notifier.services.feed_parser import parse_pub_date
from feed_notifier.services.http_client import HttpFetcher


TEMPLATES = (
    "auto",
    "content",
    "only text",
    "only media",
    "only image",
    "only video",
    "proto",
    "link",
    "custom",
)

DEFAULT_CONTENT_TEMPLATE = "{{title}}\n{{description}}"
DEFAULT_CUSTOM_TEMPLATE = "{{title}}\n{{description}}\n{{link}}"

# "auto" picks the short template below this many characters of text
AUTO_TEXT_LIMIT = 300

_PLACEHOLDER = re.compile(r"{{(.+?)}}")


def render_template(template: str, values: Dict[str, Any]) -> str:
    """Fill ``{{name}}`` placeholders.

    A placeholder may list alternatives separated by '|'; the first
    non-empty one wins, and ``'quoted'`` alternatives are literals, e.g.
    ``{{author|'anonymous'}}``. Dotted names look into nested dicts.
    """

    def lookup(name: str) -> str:
        value: Any = values
        for part in name.strip().split("."):
            value = value.get(part) if isinstance(value, dict) else None
            if value is None:
                return ""
        return str(value)

    def substitute(match: "re.Match[str]") -> str:
        for alternative in match.group(1).split("|"):
            alternative = alternative.strip()
            literal = re.fullmatch(r"'(.*)'", alternative)
            text = literal.group(1) if literal else lookup(alternative)
            if text:
                return text
        return ""

    return _PLACEHOLDER.sub(substitute, template)


def mask_keywords(text: str, keywords: List[str], mask: str) -> str:
    """Replace every case-insensitive match of each keyword with mask characters.

    Keywords that are not valid regular expressions are masked literally.
    """
    for keyword in keywords:
        try:
            pattern = re.compile(keyword, re.IGNORECASE | re.MULTILINE)
        except re.error:
            pattern = re.compile(re.escape(keyword), re.IGNORECASE)
        text = pattern.sub(lambda m: mask * len(m.group(0)), text)
    return text


class ContentRenderer:
    """Default text-oriented renderer."""

    def __init__(self, config: ServerConfig, http: Optional[HttpFetcher] = None):
        self.config = config
        self.http = http
        self.logger = UnifiedLogger.get_logger(__name__)

    def _media(self, soup: BeautifulSoup) -> Tuple[List[str], List[Tuple[Optional[str], str]]]:
        images = [img["src"] for img in soup.find_all("img") if img.get("src")]
        videos = []
        for video in soup.find_all("video"):
            src = video.get("src")
            if not src:
                source = video.find("source")
                src = source.get("src") if source else None
            videos.append((src, video.get("poster", "")))
        return images, videos

    async def _embed_video(self, src: str, options: FeedOptions) -> str:
        """Download a video and return it as a data URI, or the original URL on failure."""
        if self.http is None:
            return src
        try:
            response = await self.http.get(src, options, heavy=True)
        except FetchError as e:
            self.logger.warning(f"Video download failed, sending link instead: {e}")
            return src
        content_type = response.headers.get("content-type", "video/mp4").split(";")[0]
        return f"data:{content_type};base64,{base64.b64encode(response.content).decode()}"

    async def render(self, item: FeedItem, options: FeedOptions) -> str:
        """Render one item.

        Args:
            item: Normalized feed item
            options: Effective (merged) subscription options

        Returns:
            The message body, or "" to suppress the item
        """
        mask = self.config.msg.block_string or "*"
        title = mask_keywords(item.title or "", options.block, mask)
        description = mask_keywords(item.description or "", options.block, mask)

        soup = BeautifulSoup(description, "lxml")
        if self.config.basic.video_mode == "filter" and soup.find("video"):
            self.logger.debug(f"Suppressed item with video: {title}")
            return ""

        text = soup.get_text("\n", strip=True)
        images, videos = self._media(soup)
        if self.config.basic.video_mode == "base64":
            videos = [
                (await self._embed_video(src, options) if src else src, poster)
                for src, poster in videos
            ]

        template = options.template or self.config.basic.default_template
        if template == "auto":
            template = "content" if len(text) < AUTO_TEXT_LIMIT else "custom"
        self.logger.debug(f"Using template: {template}")

        pub_date = parse_pub_date(item.pub_date)
        values = {
            "title": title,
            "description": text,
            "link": item.link,
            "guid": item.guid,
            "author": item.author,
            "imageUrl": item.image_url,
            "pubDate": pub_date.strftime("%Y-%m-%d %H:%M:%S") if pub_date != EPOCH else "",
        }
        image_tags = "".join(f'<img src="{src}"/>' for src in images)
        video_tags = "".join(
            f'<video src="{src}" poster="{poster}"></video>' if src else f'<video poster="{poster}"></video>'
            for src, poster in videos
        )

        if template == "content":
            message = render_template(options.content or DEFAULT_CONTENT_TEMPLATE, values)
            message += image_tags + video_tags
        elif template == "only text":
            message = text
        elif template == "only media":
            message = image_tags + video_tags
        elif template == "only image":
            message = image_tags
        elif template == "only video":
            message = video_tags
        elif template == "link":
            message = item.link
        elif template == "custom":
            message = render_template(
                options.content or DEFAULT_CUSTOM_TEMPLATE,
                {**values, "description": description},
            )
        else:
            message = description

        return message.strip()
