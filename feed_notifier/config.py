"""Configuration for feed_notifier.

Settings come from an optional JSON file (``--config`` or the
FEED_NOTIFIER_CONFIG env var) with a handful of env var overrides on top.
Every section is a plain dataclass so the rest of the code works with typed
fields instead of option bags.
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from feed_notifier.errors import ConfigError
from feed_notifier.models.schemas import ProxySettings


MERGE_POLICIES = ("never", "multiple", "always")
RESEND_MODES = ("disable", "latest", "all")
VIDEO_MODES = ("href", "filter", "base64")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass
class BasicConfig:
    """Polling, selection and delivery defaults."""

    refresh: int = 600
    queue_interval: int = 30
    timeout: int = 60
    merge: str = "multiple"
    merge_video: bool = False
    max_rss_item: int = 10
    resend_updated_content: str = "latest"
    default_template: str = "content"
    video_mode: str = "href"
    batch_size: int = 10
    # None keeps retrying at the longest backoff until a fatal error
    max_retries: Optional[int] = None


@dataclass
class NetConfig:
    """Outbound HTTP settings for feed polling."""

    user_agent: str = DEFAULT_USER_AGENT
    proxy: ProxySettings = field(default_factory=lambda: ProxySettings(enabled=False))
    max_concurrent: int = 3
    refill_rate: float = 2.0
    bucket_size: int = 10
    retries: int = 3
    retry_delay: float = 1.5


@dataclass
class MsgConfig:
    """Keyword filtering and feed URL shorthand settings."""

    keyword_filter: List[str] = field(default_factory=list)
    keyword_block: List[str] = field(default_factory=list)
    block_string: str = "*"
    rsshub_url: str = "https://hub.slarker.me"


@dataclass
class CacheConfig:
    """Delivered-message cache and queue retention."""

    enabled: bool = True
    max_size: int = 100
    cleanup_hours: int = 24


@dataclass
class SenderConfig:
    """Webhook endpoint used to broadcast messages."""

    url: str = ""
    token: str = ""
    timeout: float = 30.0


@dataclass
class ServerConfig:
    """Root configuration object."""

    name: str = "feed_notifier"
    log_level: str = "INFO"
    db_path: Optional[str] = None
    basic: BasicConfig = field(default_factory=BasicConfig)
    net: NetConfig = field(default_factory=NetConfig)
    msg: MsgConfig = field(default_factory=MsgConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    sender: SenderConfig = field(default_factory=SenderConfig)


T = TypeVar("T")


def _build_section(cls: Type[T], data: Any, section: str) -> T:
    """Build a config dataclass from a dict, ignoring unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Config section '{section}' must be an object")

    values: Dict[str, Any] = {}
    defaults = cls()
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        default = getattr(defaults, f.name)
        if isinstance(default, ProxySettings):
            value = ProxySettings.from_dict(value) or ProxySettings(enabled=False)
        elif isinstance(default, bool):
            if not isinstance(value, bool):
                raise ConfigError(f"{section}.{f.name} must be a boolean")
        elif isinstance(default, (int, float)) and not isinstance(default, bool):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{section}.{f.name} must be a number")
        elif isinstance(default, list):
            if not isinstance(value, list):
                raise ConfigError(f"{section}.{f.name} must be a list")
        values[f.name] = value
    return cls(**values)


def _validate(config: ServerConfig) -> None:
    if config.basic.merge not in MERGE_POLICIES:
        raise ConfigError(f"basic.merge must be one of {MERGE_POLICIES}")
    if config.basic.resend_updated_content not in RESEND_MODES:
        raise ConfigError(f"basic.resend_updated_content must be one of {RESEND_MODES}")
    if config.basic.video_mode not in VIDEO_MODES:
        raise ConfigError(f"basic.video_mode must be one of {VIDEO_MODES}")


def config_from_dict(data: Dict[str, Any]) -> ServerConfig:
    """Build a ServerConfig from a parsed JSON document."""
    config = ServerConfig(
        name=data.get("name", "feed_notifier"),
        log_level=data.get("log_level", "INFO"),
        db_path=data.get("db_path"),
        basic=_build_section(BasicConfig, data.get("basic"), "basic"),
        net=_build_section(NetConfig, data.get("net"), "net"),
        msg=_build_section(MsgConfig, data.get("msg"), "msg"),
        cache=_build_section(CacheConfig, data.get("cache"), "cache"),
        sender=_build_section(SenderConfig, data.get("sender"), "sender"),
    )
    _validate(config)
    return config


def load_config(path: Optional[str] = None) -> ServerConfig:
    """Load configuration from file and environment.

    Args:
        path: Optional JSON config path (falls back to FEED_NOTIFIER_CONFIG)

    Returns:
        Populated ServerConfig
    """
    path = path or os.environ.get("FEED_NOTIFIER_CONFIG")
    data: Dict[str, Any] = {}
    if path:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e

    config = config_from_dict(data)

    if os.environ.get("FEED_NOTIFIER_DB_PATH"):
        config.db_path = os.environ["FEED_NOTIFIER_DB_PATH"]
    if os.environ.get("FEED_NOTIFIER_LOG_LEVEL"):
        config.log_level = os.environ["FEED_NOTIFIER_LOG_LEVEL"].upper()
    if os.environ.get("FEED_NOTIFIER_REFRESH"):
        config.basic.refresh = int(os.environ["FEED_NOTIFIER_REFRESH"])
    if os.environ.get("FEED_NOTIFIER_QUEUE_INTERVAL"):
        config.basic.queue_interval = int(os.environ["FEED_NOTIFIER_QUEUE_INTERVAL"])
    if os.environ.get("FEED_NOTIFIER_SENDER_URL"):
        config.sender.url = os.environ["FEED_NOTIFIER_SENDER_URL"]
    if os.environ.get("FEED_NOTIFIER_SENDER_TOKEN"):
        config.sender.token = os.environ["FEED_NOTIFIER_SENDER_TOKEN"]

    return config


_config: Optional[ServerConfig] = None


def get_config() -> ServerConfig:
    """Get or lazily load the process-wide configuration."""
    global _config

    if _config is None:
        _config = load_config()
    return _config
