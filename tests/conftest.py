import os

# Keep tracing off for the whole test run; main.py initializes telemetry on import
os.environ.setdefault("DISABLE_TELEMETRY", "true")

from errors import FetchFailure
from feed_parser import group_items
from models import ExtractedArticle, FeedItem


class FakeSession:
    """Stands in for an aiohttp ClientSession; relays under test never touch it."""

    closed = False


class FakeFetcher:
    """Serves canned bodies by URL; a URL mapped to an exception raises it."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.requested = []
        self.closed = False

    async def fetch(self, target_url):
        self.requested.append(target_url)
        page = self.pages.get(target_url)
        if isinstance(page, BaseException):
            raise page
        if page is None:
            raise FetchFailure(target_url, None)
        return page

    async def close(self):
        self.closed = True


class FakeParser:
    """Returns pre-built items per feed URL; a URL mapped to an exception raises it."""

    def __init__(self, feeds):
        self.feeds = dict(feeds)
        self.parsed = []

    async def parse(self, feed_url):
        self.parsed.append(feed_url)
        result = self.feeds[feed_url]
        if isinstance(result, BaseException):
            raise result
        return group_items(result, include_all=False)

    async def close(self):
        pass


class BodyExtractor:
    """Returns the cleaned document body as the article content."""

    def extract(self, document, source_url):
        body = document.body or document
        return ExtractedArticle(title=source_url, content=body.decode_contents())


def make_item(title, link, iso_date=None, content="", categories=None):
    return FeedItem(
        title=title,
        link=link,
        content=content,
        content_snippet=title,
        iso_date=iso_date,
        categories=categories or ["Uncategorized"],
    )
