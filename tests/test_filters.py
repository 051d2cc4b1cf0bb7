import pytest

from conftest import BodyExtractor, FakeFetcher, FakeParser, make_item
from errors import FeedParseError, FetchFailure, ReaderError
from filters import AnalysisSession, ElementFilterEngine, apply_filters, extract_selectors
from models import DatabaseQueue, FeedSource, FilterStore
from utils import parse_html

FRAGMENT = """
<div class="post">
  <p class="byline">By Staff</p>
  <p>Body text</p>
  <div id="related">Related links</div>
  <aside class="promo-box"><p class="byline">Nested</p></aside>
</div>
"""


def test_apply_with_no_selectors_is_identity():
    assert apply_filters(FRAGMENT, []) is FRAGMENT
    assert apply_filters(FRAGMENT, None) is FRAGMENT
    assert apply_filters(FRAGMENT, ["", "  "]) is FRAGMENT


def test_apply_removes_matching_elements():
    result = apply_filters(FRAGMENT, [".byline", "#related"])
    soup = parse_html(result)

    assert soup.select(".byline") == []
    assert soup.find(id="related") is None
    assert "Body text" in result
    assert soup.find(class_="promo-box") is not None


@pytest.mark.parametrize(
    "selectors",
    [
        [".byline"],
        [".promo-box", ".byline"],
        ["#related", "p"],
        ["div[", ".byline"],
        [".does-not-exist"],
    ],
)
def test_apply_is_idempotent(selectors):
    once = apply_filters(FRAGMENT, selectors)

    assert apply_filters(once, selectors) == once


def test_apply_skips_invalid_selectors():
    result = apply_filters(FRAGMENT, ["div[", ":::", "#related"])

    assert "Related links" not in result
    assert "By Staff" in result


def test_extract_selectors_collects_ids_and_class_tokens():
    soup = parse_html('<div id="main" class="a b"><span class="b"></span><p id=" "></p></div>')

    assert extract_selectors(soup) == {"#main", ".a", ".b"}


def test_session_status_log_keeps_latest_messages():
    session = AnalysisSession(feed_id="f1")
    for index in range(12):
        session.add_status(f"message {index}")

    assert list(session.status) == [f"message {i}" for i in range(7, 12)]


def sample_pages(count=10, byline_in=8, promo_in=2):
    items = []
    pages = {}
    for index in range(count):
        link = f"https://example.com/articles/{index}"
        items.append(make_item(f"Article {index}", link))
        parts = ["<html><body><article>"]
        if index < byline_in:
            parts.append('<p class="byline">By Staff</p>')
        if index >= count - promo_in:
            parts.append('<div class="promo-box">Buy things</div>')
        parts.append(f"<p>Body of article {index}</p></article></body></html>")
        pages[link] = "".join(parts)
    return items, pages


def make_engine(feeds, pages, filter_store=None):
    return ElementFilterEngine(
        parser=FakeParser(feeds),
        fetcher=FakeFetcher(pages),
        extractor=BodyExtractor(),
        filter_store=filter_store,
    )


@pytest.mark.asyncio
async def test_analysis_ranks_frequent_elements_first():
    items, pages = sample_pages()
    source = FeedSource(id="f1", title="Example", urls=["https://example.com/rss"])
    engine = make_engine({"https://example.com/rss": items}, pages)

    candidates = await engine.analyze(source, sample_size=10)
    ranking = [c.selector for c in candidates]
    counts = {c.selector: c.count for c in candidates}

    assert counts[".byline"] == 8
    assert counts[".promo-box"] == 2
    assert ranking.index(".byline") < ranking.index(".promo-box")


@pytest.mark.asyncio
async def test_analysis_marks_hidden_candidates(tmp_path):
    items, pages = sample_pages()
    source = FeedSource(id="f1", title="Example", urls=["https://example.com/rss"])
    db = DatabaseQueue(str(tmp_path / "reader.db"))
    store = FilterStore(db)
    try:
        await store.add_hidden("f1", ".promo-box")
        engine = make_engine({"https://example.com/rss": items}, pages, store)

        candidates = {c.selector: c for c in await engine.analyze(source)}

        assert candidates[".promo-box"].hidden
        assert not candidates[".byline"].hidden
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_analysis_samples_first_items_only():
    items, pages = sample_pages(count=15)
    source = FeedSource(id="f1", title="Example", urls=["https://example.com/rss"])
    engine = make_engine({"https://example.com/rss": items}, pages)
    session = AnalysisSession(feed_id="f1")

    await engine.analyze(source, sample_size=4, session=session)

    assert engine.fetcher.requested == [item.link for item in items[:4]]
    assert session.analyzed == 4


@pytest.mark.asyncio
async def test_article_failures_degrade_the_sample():
    items, pages = sample_pages()
    pages[items[0].link] = FetchFailure(items[0].link, None)
    source = FeedSource(id="f1", title="Example", urls=["https://example.com/rss"])
    engine = make_engine({"https://example.com/rss": items}, pages)
    session = AnalysisSession(feed_id="f1")

    candidates = await engine.analyze(source, session=session)

    assert session.failed == 1
    assert session.analyzed == 9
    assert {c.selector: c.count for c in candidates}[".byline"] == 7
    assert len(session.status) <= 5
    assert session.candidates == candidates


@pytest.mark.asyncio
async def test_analysis_survives_some_feed_failures():
    items, pages = sample_pages(count=3, byline_in=3, promo_in=0)
    source = FeedSource(id="f1", title="Example", urls=["https://bad/rss", "https://good/rss"])
    feeds = {"https://bad/rss": FeedParseError("No items found in the feed"), "https://good/rss": items}
    engine = make_engine(feeds, pages)

    candidates = await engine.analyze(source)

    assert candidates[0].selector == ".byline"


@pytest.mark.asyncio
async def test_analysis_fails_when_every_feed_fails():
    source = FeedSource(id="f1", title="Example", urls=["https://a/rss", "https://b/rss"])
    feeds = {
        "https://a/rss": FeedParseError("Empty response from feed URL"),
        "https://b/rss": FeedParseError("Invalid feed format"),
    }

    with pytest.raises(ReaderError) as excinfo:
        await make_engine(feeds, {}).analyze(source)

    assert "https://a/rss" in str(excinfo.value)
    assert "https://b/rss" in str(excinfo.value)


@pytest.mark.asyncio
async def test_analysis_fails_when_no_elements_found():
    items = [make_item("Plain", "https://example.com/plain")]
    pages = {"https://example.com/plain": "<html><body><p>No classes here</p></body></html>"}
    source = FeedSource(id="f1", title="Example", urls=["https://example.com/rss"])

    with pytest.raises(ReaderError, match="No elements found"):
        await make_engine({"https://example.com/rss": items}, pages).analyze(source)


@pytest.mark.asyncio
async def test_analysis_records_paywalled_samples():
    items, pages = sample_pages(count=3)
    pages[items[1].link] = pages[items[1].link].replace("<article>", '<article><div class="paywall">Subscribe now</div>')
    source = FeedSource(id="f1", title="Example", urls=["https://example.com/rss"])
    session = AnalysisSession(feed_id="f1")

    await make_engine({"https://example.com/rss": items}, pages).analyze(source, session=session)

    assert [item.link for item in session.paywall_items] == [items[1].link]
    assert session.paywall_items[0].has_paywall
