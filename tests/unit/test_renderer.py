"""Unit tests for the content renderer."""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from feed_notifier.config import ServerConfig
from feed_notifier.errors import FetchError
from feed_notifier.models.schemas import FeedItem, FeedOptions
from feed_notifier.services.renderer import ContentRenderer, mask_keywords, render_template


pytestmark = pytest.mark.anyio


def make_item(**kwargs) -> FeedItem:
    values = {
        "title": "Hello",
        "description": '<p>World</p><img src="https://e/a.png">',
        "link": "https://e/post",
        "guid": "post",
        "pub_date": "2024-01-01T12:00:00Z",
    }
    values.update(kwargs)
    return FeedItem(**values)


class TestRenderTemplate:
    async def test_placeholders(self):
        assert render_template("{{title}} - {{link}}", {"title": "T", "link": "L"}) == "T - L"

    async def test_alternatives_and_literals(self):
        template = "{{author|'anonymous'}}"

        assert render_template(template, {"author": ""}) == "anonymous"
        assert render_template(template, {"author": "bob"}) == "bob"

    async def test_dotted_names(self):
        assert render_template("{{feed.title}}", {"feed": {"title": "Blog"}}) == "Blog"

    async def test_missing_values_render_empty(self):
        assert render_template("[{{nothing}}]", {}) == "[]"


class TestMaskKeywords:
    async def test_masks_case_insensitively(self):
        assert mask_keywords("Top SECRET plan", ["secret"], "*") == "Top ****** plan"

    async def test_no_keywords(self):
        assert mask_keywords("text", [], "*") == "text"

    async def test_invalid_pattern_masked_literally(self):
        assert mask_keywords("I write C++ daily", ["c++"], "*") == "I write *** daily"


class TestContentRenderer:
    """Tests for each template."""

    async def test_content_template(self):
        renderer = ContentRenderer(ServerConfig())

        message = await renderer.render(make_item(), FeedOptions(template="content"))

        assert message == 'Hello\nWorld<img src="https://e/a.png"/>'

    async def test_content_template_with_custom_text(self):
        renderer = ContentRenderer(ServerConfig())
        options = FeedOptions(template="content", content="[{{title}}] {{pubDate}}")

        message = await renderer.render(make_item(), options)

        assert message.startswith("[Hello] 2024-01-01 12:00:00")

    async def test_only_text(self):
        renderer = ContentRenderer(ServerConfig())

        assert await renderer.render(make_item(), FeedOptions(template="only text")) == "World"

    async def test_only_image(self):
        renderer = ContentRenderer(ServerConfig())

        message = await renderer.render(make_item(), FeedOptions(template="only image"))

        assert message == '<img src="https://e/a.png"/>'

    async def test_only_video(self):
        renderer = ContentRenderer(ServerConfig())
        item = make_item(description='<video src="https://e/v.mp4" poster="https://e/p.jpg"></video>')

        message = await renderer.render(item, FeedOptions(template="only video"))

        assert message == '<video src="https://e/v.mp4" poster="https://e/p.jpg"></video>'

    async def test_link(self):
        renderer = ContentRenderer(ServerConfig())

        assert await renderer.render(make_item(), FeedOptions(template="link")) == "https://e/post"

    async def test_custom_keeps_raw_description(self):
        renderer = ContentRenderer(ServerConfig())
        options = FeedOptions(template="custom", content="{{title}}|{{description}}")

        message = await renderer.render(make_item(), options)

        assert message == 'Hello|<p>World</p><img src="https://e/a.png">'

    async def test_auto_short_text_uses_content(self):
        renderer = ContentRenderer(ServerConfig())

        message = await renderer.render(make_item(), FeedOptions(template="auto"))

        assert message.startswith("Hello\nWorld")

    async def test_video_filtered(self):
        config = ServerConfig()
        config.basic.video_mode = "filter"
        renderer = ContentRenderer(config)
        item = make_item(description='<p>clip</p><video src="https://e/v.mp4"></video>')

        assert await renderer.render(item, FeedOptions(template="content")) == ""

    async def test_block_words_masked(self):
        config = ServerConfig()
        config.msg.block_string = "#"
        renderer = ContentRenderer(config)
        item = make_item(title="Big spoiler", description="no spoiler here")

        message = await renderer.render(item, FeedOptions(template="content", block=["spoiler"]))

        assert message == "Big #######\nno ####### here"

    async def test_invalid_block_pattern_still_renders(self):
        renderer = ContentRenderer(ServerConfig())
        item = make_item(title="C++ tips", description="more c++")

        message = await renderer.render(item, FeedOptions(template="content", block=["c++"]))

        assert message == "*** tips\nmore ***"


class TestVideoEmbedding:
    """Tests for the base64 video mode."""

    def make_renderer(self, get):
        config = ServerConfig()
        config.basic.video_mode = "base64"
        http = MagicMock()
        http.get = get
        return ContentRenderer(config, http=http)

    async def test_video_downloaded_as_heavy_request(self):
        get = AsyncMock(return_value=httpx.Response(200, content=b"abc", headers={"content-type": "video/webm"}))
        renderer = self.make_renderer(get)
        item = make_item(description='<video src="https://e/v.webm"></video>')

        message = await renderer.render(item, FeedOptions(template="only video"))

        assert message == '<video src="data:video/webm;base64,YWJj" poster=""></video>'
        assert get.await_args.kwargs["heavy"] is True

    async def test_download_failure_keeps_link(self):
        get = AsyncMock(side_effect=FetchError("https://e/v.mp4", "timed out"))
        renderer = self.make_renderer(get)
        item = make_item(description='<video src="https://e/v.mp4"></video>')

        message = await renderer.render(item, FeedOptions(template="only video"))

        assert message == '<video src="https://e/v.mp4" poster=""></video>'
