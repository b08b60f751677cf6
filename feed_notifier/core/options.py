"""Subscription option parsing and merging.

Subscriptions store their overrides as a ``FeedOptions`` struct. The
producer merges those overrides onto the process-wide defaults with
``mix_options`` before every poll.
"""

import re
from dataclasses import replace
from typing import Dict, Optional

from feed_notifier.config import ServerConfig
from feed_notifier.models.schemas import FeedOptions, ProxyAuth, ProxySettings


# Keys accepted in "key:value,key2:value2" argument strings
_ARG_KEYS: Dict[str, str] = {
    "template": "template",
    "content": "content",
    "forceLength": "force_length",
    "timeout": "timeout",
    "interval": "interval",
    "reverse": "reverse",
    "merge": "merge",
    "maxRssItem": "max_rss_item",
    "filter": "filter",
    "block": "block",
    "type": "type",
    "selector": "selector",
    "textOnly": "text_only",
}
_BOOLEAN_KEYS = {"reverse", "merge", "text_only"}
_NUMBER_KEYS = {"force_length", "timeout", "interval", "max_rss_item"}
_FALSE_VALUES = {"false", "null", ""}
_PROXY_OFF_VALUES = {"false", "none", ""}


def parse_proxy_string(value: str, auth: Optional[str] = None) -> ProxySettings:
    """Parse a proxy argument such as ``socks5://127.0.0.1:7890``.

    Args:
        value: Proxy URL, or false/none/empty to disable the proxy
        auth: Optional ``user/password`` credentials

    Returns:
        ProxySettings with protocol defaulting to http and port to 7890
    """
    if value.strip().lower() in _PROXY_OFF_VALUES:
        return ProxySettings(enabled=False)

    protocol_match = re.match(r"^(http|https|socks5)", value)
    host_match = re.search(r"://([^:/]+)", value)
    port_match = re.search(r":(\d+)", value)

    proxy = ProxySettings(
        enabled=True,
        protocol=protocol_match.group(1) if protocol_match else "http",
        host=host_match.group(1) if host_match else "",
        port=int(port_match.group(1)) if port_match else 7890,
    )
    if auth:
        username, _, password = auth.partition("/")
        proxy.auth = ProxyAuth(username=username, password=password)
    return proxy


def parse_arg_string(arg: str) -> FeedOptions:
    """Parse a ``key:value,key2:value2`` string into FeedOptions.

    Unknown keys are dropped. Boolean keys are true unless the value is
    false/null/empty; ``filter`` and ``block`` are '/'-separated lists.

    Args:
        arg: Raw argument string as typed by a user

    Returns:
        Parsed option overrides

    Raises:
        ValueError: If a numeric option is not a number
    """
    raw: Dict[str, str] = {}
    for part in (arg or "").split(","):
        if not part.strip():
            continue
        key, _, value = part.partition(":")
        raw[key.strip()] = value.strip()

    options = FeedOptions()
    for key, value in raw.items():
        name = _ARG_KEYS.get(key)
        if name is None:
            continue
        if name in _BOOLEAN_KEYS:
            setattr(options, name, value.lower() not in _FALSE_VALUES)
        elif name in _NUMBER_KEYS:
            try:
                setattr(options, name, int(value))
            except ValueError as e:
                raise ValueError(f"Option '{key}' must be a number, got '{value}'") from e
        elif name in ("filter", "block"):
            setattr(options, name, [v for v in value.split("/") if v])
        else:
            setattr(options, name, value)

    if "proxyAgent" in raw:
        options.proxy = parse_proxy_string(raw["proxyAgent"], raw.get("auth"))

    return options


def _global_proxy_copy(global_proxy: ProxySettings) -> ProxySettings:
    return ProxySettings(
        enabled=True,
        protocol=global_proxy.protocol,
        host=global_proxy.host,
        port=global_proxy.port,
        auth=global_proxy.auth if global_proxy.auth and global_proxy.auth.enabled else None,
    )


def merge_proxy(
    subscription_proxy: Optional[ProxySettings],
    global_proxy: Optional[ProxySettings],
) -> ProxySettings:
    """Merge a subscription's proxy onto the global proxy.

    Precedence, first match wins:

    1. subscription ``enabled=False``: disabled
    2. subscription ``enabled=True`` with a host: the subscription proxy
    3. subscription proxy unset (None or ``enabled=None``) and the global
       proxy enabled: a copy of the global proxy
    4. subscription ``enabled=True`` without a host: global fields completed
       by the subscription's own protocol/port
    5. otherwise disabled

    Args:
        subscription_proxy: Proxy override stored on the subscription
        global_proxy: Process-wide proxy settings

    Returns:
        The effective proxy settings
    """
    sub_enabled = subscription_proxy.enabled if subscription_proxy else None
    global_enabled = bool(global_proxy and global_proxy.enabled)

    if sub_enabled is False:
        return ProxySettings(enabled=False)

    if sub_enabled is True and subscription_proxy.host:
        return replace(subscription_proxy)

    if sub_enabled is None:
        if global_enabled:
            return _global_proxy_copy(global_proxy)
        return ProxySettings(enabled=False)

    # enabled=True but no host: complete from the global proxy
    base = global_proxy or ProxySettings()
    return ProxySettings(
        enabled=True,
        protocol=subscription_proxy.protocol or base.protocol,
        host=base.host,
        port=subscription_proxy.port or base.port,
        auth=base.auth if base.auth and base.auth.enabled else None,
    )


def mix_options(options: FeedOptions, config: ServerConfig) -> FeedOptions:
    """Merge subscription overrides onto the process-wide defaults.

    Keyword filter and block lists are concatenated, global entries first.

    Args:
        options: The subscription's stored overrides
        config: Server configuration supplying defaults

    Returns:
        A new FeedOptions with every default filled in
    """
    basic = config.basic
    return replace(
        options,
        template=options.template or basic.default_template,
        timeout=options.timeout or basic.timeout,
        max_rss_item=options.max_rss_item if options.max_rss_item is not None else basic.max_rss_item,
        reverse=bool(options.reverse),
        filter=[*config.msg.keyword_filter, *options.filter],
        block=[*config.msg.keyword_block, *options.block],
        proxy=merge_proxy(options.proxy, config.net.proxy),
    )


def advance_next_update(next_update_time: Optional[float], interval: int, now: float) -> float:
    """Compute the next poll time for a subscription with a fixed interval.

    Catches up by whole intervals so a missed cycle does not cause
    back-to-back polls. The result is always strictly later than ``now``.

    Args:
        next_update_time: Previously scheduled time (epoch seconds), if any
        interval: Interval in seconds
        now: Current time (epoch seconds)

    Returns:
        The new scheduled time (epoch seconds)
    """
    if not next_update_time:
        return now + interval
    steps = (now - next_update_time) // interval + 1
    return next_update_time + interval * max(int(steps), 1)
