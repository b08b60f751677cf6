"""Data models for feed_notifier.

This module defines the core data structures for subscriptions, feed items,
content snapshots and queued delivery tasks.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Delivery task states."""

    PENDING = "PENDING"
    RETRY = "RETRY"
    FAILED = "FAILED"
    SUCCESS = "SUCCESS"


@dataclass
class ProxyAuth:
    """Credentials for an authenticating proxy."""

    username: str
    password: str
    enabled: bool = True


@dataclass
class ProxySettings:
    """Proxy configuration, either global or per subscription.

    ``enabled`` is tri-state: ``None`` means "not configured here", which
    lets the merge rules fall back to the global proxy.
    """

    enabled: Optional[bool] = None
    protocol: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    auth: Optional[ProxyAuth] = None

    @property
    def url(self) -> Optional[str]:
        """Proxy URL usable by httpx, or None when disabled/incomplete."""
        if not self.enabled or not self.host:
            return None
        credentials = ""
        if self.auth and self.auth.enabled:
            credentials = f"{self.auth.username}:{self.auth.password}@"
        return f"{self.protocol or 'http'}://{credentials}{self.host}:{self.port or 7890}"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ProxySettings"]:
        if data is None:
            return None
        auth = data.get("auth")
        return cls(
            enabled=data.get("enabled"),
            protocol=data.get("protocol"),
            host=data.get("host"),
            port=data.get("port"),
            auth=ProxyAuth(**auth) if isinstance(auth, dict) else None,
        )


@dataclass
class FeedOptions:
    """Per-subscription option overrides (and, once merged, effective options).

    ``None`` means "inherit from the process-wide defaults".
    """

    template: Optional[str] = None
    content: Optional[str] = None
    force_length: Optional[int] = None
    timeout: Optional[int] = None
    interval: Optional[int] = None
    reverse: Optional[bool] = None
    merge: Optional[bool] = None
    max_rss_item: Optional[int] = None
    proxy: Optional[ProxySettings] = None
    filter: List[str] = field(default_factory=list)
    block: List[str] = field(default_factory=list)
    next_update_time: Optional[float] = None
    type: Optional[str] = None
    selector: Optional[str] = None
    text_only: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for storage, leaving out unset values."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None and v != []}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FeedOptions":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if "proxy" in values:
            values["proxy"] = ProxySettings.from_dict(values["proxy"])
        return cls(**values)


@dataclass
class FeedItem:
    """A feed entry reduced to the fields the pipeline cares about.

    ``pub_date`` holds whatever the source provided (string, datetime or
    None); use ``parse_pub_date`` before comparing it.
    """

    title: str = ""
    description: str = ""
    link: str = ""
    guid: str = ""
    pub_date: Any = None
    author: str = ""
    image_url: str = ""


@dataclass
class ContentSnapshot:
    """Minimal projection of an item used for change detection."""

    title: str = ""
    description: str = ""
    link: str = ""
    guid: str = ""

    @classmethod
    def from_item(cls, item: FeedItem) -> "ContentSnapshot":
        return cls(
            title=item.title or "",
            description="".join((item.description or "").split()),
            link=item.link or "",
            guid=item.guid or "",
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentSnapshot":
        return cls(
            title=data.get("title") or "",
            description=data.get("description") or "",
            link=data.get("link") or "",
            guid=data.get("guid") or "",
        )

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    def same_item(self, other: "ContentSnapshot") -> bool:
        """True if both snapshots describe the same feed entry."""
        if self.guid and self.guid == other.guid:
            return True
        return self.link == other.link and self.title == other.title


@dataclass
class Subscription:
    """Represents one subscription: feed URL(s), target and last-seen state."""

    id: int
    rss_id: int
    url: str
    platform: str
    guild_id: str
    author: str
    title: str
    arg: FeedOptions
    followers: List[str]
    last_pub_date: Optional[datetime]
    last_content: List[ContentSnapshot]


@dataclass
class TaskContent:
    """Rendered message plus the original item metadata kept for the cache."""

    message: str
    title: str = ""
    description: str = ""
    link: str = ""
    pub_date: Optional[datetime] = None
    image_url: str = ""
    is_downgraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["pub_date"] = self.pub_date.isoformat() if self.pub_date else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskContent":
        pub_date = data.get("pub_date")
        return cls(
            message=data.get("message", ""),
            title=data.get("title", ""),
            description=data.get("description", ""),
            link=data.get("link", ""),
            pub_date=datetime.fromisoformat(pub_date) if pub_date else None,
            image_url=data.get("image_url", ""),
            is_downgraded=bool(data.get("is_downgraded", False)),
        )


@dataclass
class DeliveryTask:
    """Represents one queued, retryable delivery of a composed message."""

    id: Optional[int]
    subscribe_id: int
    rss_id: str
    uid: str
    guild_id: str
    platform: str
    content: TaskContent
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    next_retry_time: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    fail_reason: Optional[str] = None
