"""Unit tests for subscription option parsing and merging."""

import pytest

from feed_notifier.config import ServerConfig
from feed_notifier.core.options import (
    advance_next_update,
    merge_proxy,
    mix_options,
    parse_arg_string,
    parse_proxy_string,
)
from feed_notifier.models.schemas import FeedOptions, ProxyAuth, ProxySettings


class TestParseArgString:
    """Tests for the key:value argument syntax."""

    def test_parses_known_keys(self):
        options = parse_arg_string("template:only text,interval:300,maxRssItem:5,forceLength:2")

        assert options.template == "only text"
        assert options.interval == 300
        assert options.max_rss_item == 5
        assert options.force_length == 2

    def test_boolean_keys(self):
        options = parse_arg_string("reverse:true,merge:false,textOnly:1")

        assert options.reverse is True
        assert options.merge is False
        assert options.text_only is True

    def test_keyword_lists_split_on_slash(self):
        options = parse_arg_string("filter:ad/sponsor,block:spoiler")

        assert options.filter == ["ad", "sponsor"]
        assert options.block == ["spoiler"]

    def test_unknown_keys_ignored(self):
        assert parse_arg_string("nonsense:1") == FeedOptions()

    def test_invalid_number_raises(self):
        with pytest.raises(ValueError, match="interval"):
            parse_arg_string("interval:soon")

    def test_proxy_agent(self):
        options = parse_arg_string("proxyAgent:socks5://127.0.0.1:1080,auth:user/secret")

        assert options.proxy.enabled is True
        assert options.proxy.protocol == "socks5"
        assert options.proxy.host == "127.0.0.1"
        assert options.proxy.port == 1080
        assert options.proxy.auth == ProxyAuth(username="user", password="secret")

    def test_proxy_agent_disabled(self):
        assert parse_proxy_string("false") == ProxySettings(enabled=False)


class TestMergeProxy:
    """Tests for proxy precedence."""

    GLOBAL = ProxySettings(
        enabled=True, protocol="http", host="10.0.0.1", port=3128,
        auth=ProxyAuth(username="g", password="pw"),
    )

    def test_subscription_disabled_wins(self):
        result = merge_proxy(ProxySettings(enabled=False), self.GLOBAL)

        assert result.enabled is False
        assert result.url is None

    def test_subscription_proxy_with_host_used_as_is(self):
        sub = ProxySettings(enabled=True, protocol="socks5", host="127.0.0.1", port=1080)

        result = merge_proxy(sub, self.GLOBAL)

        assert result == sub
        assert result is not sub

    def test_unset_subscription_inherits_global(self):
        for sub in (None, ProxySettings(enabled=None)):
            result = merge_proxy(sub, self.GLOBAL)
            assert result.url == "http://g:pw@10.0.0.1:3128"

    def test_unset_subscription_with_global_disabled(self):
        result = merge_proxy(None, ProxySettings(enabled=False, host="10.0.0.1"))

        assert result.enabled is False

    def test_disabled_global_auth_is_dropped(self):
        global_proxy = ProxySettings(
            enabled=True, host="10.0.0.1", port=3128,
            auth=ProxyAuth(username="g", password="pw", enabled=False),
        )

        assert merge_proxy(None, global_proxy).auth is None

    def test_enabled_without_host_completes_from_global(self):
        result = merge_proxy(ProxySettings(enabled=True, protocol="socks5"), self.GLOBAL)

        assert result.enabled is True
        assert result.host == "10.0.0.1"
        assert result.protocol == "socks5"
        assert result.port == 3128


class TestMixOptions:
    """Tests for merging overrides onto defaults."""

    def test_fills_defaults(self):
        config = ServerConfig()

        options = mix_options(FeedOptions(), config)

        assert options.template == config.basic.default_template
        assert options.timeout == config.basic.timeout
        assert options.max_rss_item == config.basic.max_rss_item
        assert options.reverse is False

    def test_overrides_win(self):
        options = mix_options(FeedOptions(template="link", timeout=5, max_rss_item=0), ServerConfig())

        assert options.template == "link"
        assert options.timeout == 5
        assert options.max_rss_item == 0

    def test_keyword_lists_global_first(self):
        config = ServerConfig()
        config.msg.keyword_filter = ["global"]
        config.msg.keyword_block = ["word"]

        options = mix_options(FeedOptions(filter=["local"], block=["other"]), config)

        assert options.filter == ["global", "local"]
        assert options.block == ["word", "other"]

    def test_does_not_mutate_input(self):
        stored = FeedOptions(filter=["local"])
        config = ServerConfig()
        config.msg.keyword_filter = ["global"]

        mix_options(stored, config)

        assert stored.filter == ["local"]
        assert stored.template is None


class TestAdvanceNextUpdate:
    """Tests for interval scheduling."""

    def test_first_schedule(self):
        assert advance_next_update(None, 60, 1000.0) == 1060.0

    def test_advances_at_least_one_interval(self):
        assert advance_next_update(1000.0, 60, 1000.0) == 1060.0

    def test_catches_up_missed_intervals(self):
        # Three and a half intervals late: skip to the next slot in the future
        assert advance_next_update(1000.0, 60, 1210.0) == 1240.0

    def test_exact_multiple_lands_after_now(self):
        assert advance_next_update(1000.0, 60, 1240.0) == 1300.0
