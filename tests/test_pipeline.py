import pytest

from conftest import BodyExtractor, FakeFetcher, FakeParser, make_item
from errors import FeedParseError, FetchFailure, ReaderError
from feed_parser import FeedParser
from main import ReaderPipeline, ViewToken, build_parser, run_command
from models import DatabaseQueue, FeedSource


def make_pipeline(tmp_path, feeds=None, pages=None, fetcher=None):
    return ReaderPipeline(
        db=DatabaseQueue(str(tmp_path / "reader.db")),
        fetcher=fetcher or FakeFetcher(pages or {}),
        parser=FakeParser(feeds or {}),
        extractor=BodyExtractor(),
    )


@pytest.mark.asyncio
async def test_load_source_merges_sorts_and_groups(tmp_path):
    first = [
        make_item("January", "https://e.com/jan", "2024-01-01T00:00:00+00:00", categories=["Tech"]),
        make_item("Undated", "https://e.com/undated", categories=["Big News"]),
    ]
    second = [
        make_item("January copy", "https://e.com/jan", "2024-01-01T00:00:00+00:00"),
        make_item("March", "https://e.com/mar", "2024-03-01T00:00:00+00:00", categories=["Tech"]),
    ]
    pipeline = make_pipeline(tmp_path, {"https://a/rss": first, "https://b/rss": second})
    source = FeedSource(id="f1", title="Example", urls=["https://a/rss", "https://b/rss"])
    try:
        parsed = await pipeline.load_source(source)

        assert [c.id for c in parsed.categories] == ["all", "tech", "big-news"]
        assert [i.title for i in parsed.items["all"]] == ["March", "January", "Undated"]
        assert [i.title for i in parsed.items["Tech"]] == ["March", "January"]
    finally:
        await pipeline.close()


@pytest.mark.asyncio
async def test_load_source_flags_paywalls_and_applies_filters(tmp_path):
    items = [
        make_item("Locked", "https://e.com/locked", content='<div class="paywall">Subscribe now</div><p>Teaser</p>'),
        make_item("Open", "https://e.com/open", content='<p class="byline">By Staff</p><p>Story</p>'),
    ]
    items[1].content_snippet = '<p class="byline">By Staff</p> Story & more'
    pipeline = make_pipeline(tmp_path, {"https://a/rss": items})
    source = FeedSource(id="f1", title="Example", urls=["https://a/rss"])
    try:
        await pipeline.filters.add_hidden("f1", ".byline")
        await pipeline.filters.add_hidden("f1", ".paywall")

        parsed = await pipeline.load_source(source)
        by_title = {i.title: i for i in parsed.items["all"]}

        # Paywall detection runs on the unfiltered content
        assert by_title["Locked"].has_paywall
        assert not by_title["Open"].has_paywall
        assert "By Staff" not in by_title["Open"].content
        assert "paywall" not in by_title["Locked"].content
        assert by_title["Open"].content_snippet.strip() == "Story & more"
    finally:
        await pipeline.close()


@pytest.mark.asyncio
async def test_load_source_with_partial_feed_failure(tmp_path):
    items = [make_item("Only", "https://e.com/only")]
    feeds = {"https://bad/rss": FeedParseError("Invalid feed format"), "https://good/rss": items}
    pipeline = make_pipeline(tmp_path, feeds)
    source = FeedSource(id="f1", title="Example", urls=["https://bad/rss", "https://good/rss"])
    try:
        parsed = await pipeline.load_source(source)

        assert [i.title for i in parsed.items["all"]] == ["Only"]
    finally:
        await pipeline.close()


@pytest.mark.asyncio
async def test_load_source_all_feeds_failing_reports_every_error(tmp_path):
    feeds = {
        "https://a/rss": FeedParseError("Empty response from feed URL"),
        "https://b/rss": FeedParseError("No items found in the feed"),
    }
    pipeline = make_pipeline(tmp_path, feeds)
    source = FeedSource(id="f1", title="Example", urls=["https://a/rss", "https://b/rss"])
    try:
        with pytest.raises(ReaderError) as excinfo:
            await pipeline.load_source(source)

        lines = str(excinfo.value).splitlines()
        assert len(lines) == 2
        assert "Empty response" in lines[0]
        assert "No items found" in lines[1]
    finally:
        await pipeline.close()


@pytest.mark.asyncio
async def test_open_article_applies_filters_and_lead_image(tmp_path):
    item = make_item("Story", "https://example.com/posts/1", content='<img src="/media/lead.jpg"><p>Teaser</p>')
    page = '<html><body><article><p class="byline">By Staff</p><p>Full story</p></article></body></html>'
    pipeline = make_pipeline(tmp_path, pages={item.link: page})
    try:
        article = await pipeline.open_article(item, [".byline"])

        assert "Full story" in article.content
        assert "By Staff" not in article.content
        assert article.content.startswith("<img")
        assert "https://example.com/media/lead.jpg" in article.content
    finally:
        await pipeline.close()


class StalingFetcher(FakeFetcher):
    """Marks the view stale while the fetch is in flight."""

    def __init__(self, pages, token):
        super().__init__(pages)
        self.token = token

    async def fetch(self, target_url):
        body = await super().fetch(target_url)
        self.token.mark_stale()
        return body


@pytest.mark.asyncio
async def test_open_article_discards_stale_results(tmp_path):
    item = make_item("Story", "https://example.com/posts/1")
    token = ViewToken()
    fetcher = StalingFetcher({item.link: "<p>Full story</p>"}, token)
    pipeline = make_pipeline(tmp_path, fetcher=fetcher)
    try:
        assert await pipeline.open_article(item, [], token) is None
        assert token.is_stale
    finally:
        await pipeline.close()


@pytest.mark.asyncio
async def test_open_article_propagates_fetch_failure(tmp_path):
    item = make_item("Story", "https://example.com/posts/1")
    pipeline = make_pipeline(tmp_path, pages={item.link: FetchFailure(item.link, None)})
    try:
        with pytest.raises(FetchFailure):
            await pipeline.open_article(item)
    finally:
        await pipeline.close()


@pytest.mark.asyncio
async def test_unknown_feed_is_a_readable_error(tmp_path):
    pipeline = make_pipeline(tmp_path)
    try:
        with pytest.raises(ReaderError, match="Unknown feed"):
            await pipeline.analyze("missing")
    finally:
        await pipeline.close()


@pytest.mark.asyncio
async def test_cli_feed_and_filter_commands(tmp_path, capsys):
    db_path = str(tmp_path / "cli.db")
    parser = build_parser()

    assert await run_command(parser.parse_args(["--database", db_path, "add-feed", "Example", "https://a/rss"]))
    output = capsys.readouterr().out
    feed_id = output.strip().rsplit("(", 1)[1].rstrip(")")

    assert await run_command(parser.parse_args(["--database", db_path, "list-feeds"]))
    assert "https://a/rss" in capsys.readouterr().out

    assert await run_command(parser.parse_args(["--database", db_path, "hide", feed_id, "byline", "--kind", "class"]))
    assert "Hiding .byline" in capsys.readouterr().out

    assert await run_command(parser.parse_args(["--database", db_path, "patterns"]))
    assert "default-subscribe" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_cli_rejects_invalid_pattern(tmp_path):
    args = build_parser().parse_args(
        ["--database", str(tmp_path / "cli.db"), "add-pattern", "Bad", "div[", "--kind", "selector"]
    )

    with pytest.raises(ReaderError):
        await run_command(args)


DATA_PAYWALL_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example</title>
    <item>
      <title>Locked</title>
      <link>https://example.com/locked</link>
      <description>&lt;div data-paywall="true" class="x"&gt;Read the story&lt;/div&gt;&lt;script&gt;track()&lt;/script&gt;</description>
    </item>
  </channel>
</rss>
"""


@pytest.mark.asyncio
async def test_load_source_detects_attribute_paywalls_and_sanitizes_for_display(tmp_path):
    parser = FeedParser(fetcher=FakeFetcher({"https://a/rss": DATA_PAYWALL_RSS}))
    pipeline = ReaderPipeline(
        db=DatabaseQueue(str(tmp_path / "reader.db")),
        fetcher=FakeFetcher(),
        parser=parser,
        extractor=BodyExtractor(),
    )
    source = FeedSource(id="f1", title="Example", urls=["https://a/rss"])
    try:
        parsed = await pipeline.load_source(source)
        item = parsed.items["all"][0]

        assert item.has_paywall
        assert "Read the story" in item.content
        assert "data-paywall" not in item.content
        assert "<script" not in item.content
    finally:
        await pipeline.close()


@pytest.mark.asyncio
async def test_open_article_falls_back_to_feed_content(tmp_path):
    item = make_item(
        "Story",
        "https://example.com/posts/1",
        content='<img src="/media/lead.jpg"><p class="byline">By Staff</p><p onclick="x()">Teaser</p>',
    )
    pipeline = make_pipeline(tmp_path, pages={item.link: FetchFailure(item.link, None)})
    try:
        article = await pipeline.open_article(item, [".byline"])

        assert article.from_feed
        assert article.title == "Story"
        assert "Teaser" in article.content
        assert "By Staff" not in article.content
        assert "onclick" not in article.content
        assert article.content.startswith('<img')
        assert "https://example.com/media/lead.jpg" in article.content
    finally:
        await pipeline.close()


@pytest.mark.asyncio
async def test_open_article_fetch_failure_on_stale_view_is_discarded(tmp_path):
    item = make_item("Story", "https://example.com/posts/1", content="<p>Teaser</p>")
    token = ViewToken()
    token.mark_stale()
    pipeline = make_pipeline(tmp_path, pages={item.link: FetchFailure(item.link, None)})
    try:
        assert await pipeline.open_article(item, [], token) is None
    finally:
        await pipeline.close()
