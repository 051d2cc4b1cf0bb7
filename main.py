#!/usr/bin/env python3
"""
Feed Reader Pipeline

This script wires the pipeline together and exposes it on the command line:
1. Load a feed source: parse each of its feed URLs, merge and de-duplicate items,
   flag paywalled items and apply the source's hidden-element filters
2. Open an article: fetch the page through the relays, clean it, extract the
   main content, apply filters and merge the feed's lead image
3. Discover filter candidates for a source and manage its hide-list
4. Manage the paywall pattern library

Failures are reported as readable messages with a non-zero exit code.
"""

import asyncio
import sys
from asyncio import get_event_loop
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from functools import partial
from typing import Any, List, Optional
import argparse

from cleaner import DocumentCleaner
from config import config, get_logger
from errors import FeedParseError, FetchFailure, ReaderError
from extractor import ContentExtractor, lead_image_from_content, merge_lead_image, sanitize_html
from feed_parser import ALL_CATEGORY, FeedParser, ParsedFeed, group_items, merge_items, sort_items
from fetcher import ResilientFetcher
from filters import AnalysisSession, ElementCandidate, ElementFilterEngine, apply_filters
from models import (
    DatabaseQueue,
    ExtractedArticle,
    FeedItem,
    FeedSource,
    FeedStore,
    FilterStore,
    Notifier,
    PaywallStore,
)
from paywall import PaywallDetector, matches
from telemetry import init_telemetry, trace_span
from utils import build_selector, parse_html

# Module-specific logger
logger = get_logger("pipeline")
init_telemetry("feed-reader")


class ViewToken:
    """Marks one display invocation; results arriving after it went stale are discarded."""

    def __init__(self) -> None:
        self._stale = False

    def mark_stale(self) -> None:
        self._stale = True

    @property
    def is_stale(self) -> bool:
        return self._stale


def _filter_text(text: str, hidden: List[str]) -> str:
    if not hidden or not text:
        return text
    return parse_html(apply_filters(text, hidden)).get_text()


class ReaderPipeline:
    """Orchestrates feed loading, article display and filter management."""

    def __init__(
        self,
        db: Optional[DatabaseQueue] = None,
        fetcher: Optional[ResilientFetcher] = None,
        parser: Optional[FeedParser] = None,
        cleaner: Optional[DocumentCleaner] = None,
        extractor: Optional[ContentExtractor] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.db = db or DatabaseQueue()
        self.notifier = notifier or Notifier()
        self.feeds = FeedStore(self.db, self.notifier)
        self.filters = FilterStore(self.db, self.notifier)
        self.paywall = PaywallStore(self.db, self.notifier)

        self.fetcher = fetcher or ResilientFetcher()
        self.parser = parser or FeedParser()
        self.cleaner = cleaner or DocumentCleaner()
        self.extractor = extractor or ContentExtractor()
        self.detector = PaywallDetector(self.paywall)
        self.engine = ElementFilterEngine(
            parser=self.parser,
            fetcher=self.fetcher,
            cleaner=self.cleaner,
            extractor=self.extractor,
            detector=self.detector,
            filter_store=self.filters,
        )
        self.executor = ThreadPoolExecutor()

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def close(self) -> None:
        await self.fetcher.close()
        await self.parser.close()
        await self.db.stop()
        self.executor.shutdown(wait=False)

    async def get_source(self, feed_id: str) -> FeedSource:
        source = await self.feeds.get_feed(feed_id)
        if source is None:
            raise ReaderError(f"Unknown feed: {feed_id}")
        return source

    @trace_span(
        "load_source",
        tracer_name="pipeline",
        attr_from_args=lambda self, source: {"feed.id": source.id, "feed.url_count": len(source.urls)},
    )
    async def load_source(self, source: FeedSource) -> ParsedFeed:
        """Parse every feed URL of ``source`` and build the grouped item view.

        Raises:
            ReaderError: when every feed URL failed, with one message per URL
        """
        results = []
        errors = []
        for url in source.urls:
            try:
                parsed = await self.parser.parse(url)
                results.append(parsed.all_items())
            except FeedParseError as e:
                logger.warning(f"Error loading feed {url}: {e}")
                errors.append(f"Error loading feed {url}: {e}")

        if not results:
            raise ReaderError("\n".join(errors) or f"No feed URLs configured for {source.title}")

        items = merge_items(results)
        patterns = await self.paywall.load()
        hidden = await self.filters.get_hidden(source.id)
        for item in items:
            item.has_paywall = matches(patterns, item.content)
            item.content = sanitize_html(apply_filters(item.content, hidden))
            item.content_snippet = _filter_text(item.content_snippet, hidden)

        logger.info(f"Loaded {len(items)} items for {source.title or source.id} ({len(errors)} feed errors)")
        return group_items(sort_items(items), include_all=True)

    @trace_span(
        "open_article",
        tracer_name="pipeline",
        attr_from_args=lambda self, item, hidden=None, token=None: {"article.url": item.link},
    )
    async def open_article(
        self,
        item: FeedItem,
        hidden: Optional[List[str]] = None,
        token: Optional[ViewToken] = None,
    ) -> Optional[ExtractedArticle]:
        """Fetch, clean and extract an article for display.

        Returns None when ``token`` went stale while the article was loading.
        When no relay can deliver the page, the item's own feed content is
        returned instead (see ``feed_preview``).

        Raises:
            FetchFailure: when the page could not be fetched and the item has no content
        """
        token = token or ViewToken()
        try:
            html = await self.fetcher.fetch(item.link)
        except FetchFailure as e:
            if token.is_stale:
                return None
            if not item.content:
                raise
            logger.warning(f"Showing feed content for {item.link}: {e}")
            return self.feed_preview(item, hidden)
        if token.is_stale:
            logger.debug(f"Discarding stale fetch result for {item.link}")
            return None

        cleaned = await self.run_in_executor(self.cleaner.clean, html, item.link)
        article = await self.run_in_executor(self.extractor.extract, cleaned, item.link)
        if token.is_stale:
            logger.debug(f"Discarding stale extraction result for {item.link}")
            return None

        content = apply_filters(article.content, hidden or [])
        content = merge_lead_image(content, lead_image_from_content(item.content, item.link))
        return replace(article, title=article.title or item.title, content=content)

    def feed_preview(self, item: FeedItem, hidden: Optional[List[str]] = None) -> ExtractedArticle:
        """Display version of the content the feed itself carried for ``item``."""
        content = sanitize_html(apply_filters(item.content, hidden or []))
        content = merge_lead_image(content, lead_image_from_content(item.content, item.link))
        return ExtractedArticle(
            title=item.title,
            content=content,
            excerpt=item.content_snippet,
            byline=item.creator,
            from_feed=True,
        )

    async def analyze(self, feed_id: str, sample_size: Optional[int] = None) -> AnalysisSession:
        source = await self.get_source(feed_id)
        session = AnalysisSession(feed_id=feed_id)
        await self.engine.analyze(source, sample_size, session)
        return session


# ----------------------------------------------------------------------
# Command line
# ----------------------------------------------------------------------

async def _find_item(pipeline: ReaderPipeline, feed_id: str, link: str) -> Optional[FeedItem]:
    parsed = await pipeline.load_source(await pipeline.get_source(feed_id))
    for item in parsed.items.get(ALL_CATEGORY, []):
        if item.link == link:
            return item
    return None


async def cmd_add_feed(pipeline: ReaderPipeline, args) -> bool:
    try:
        feed = await pipeline.feeds.add_feed(args.title, args.urls, args.category)
    except ValueError as e:
        raise ReaderError(str(e)) from e
    print(f"Added {feed.title} ({feed.id})")
    return True


async def cmd_list_feeds(pipeline: ReaderPipeline, args) -> bool:
    feeds = await pipeline.feeds.list_feeds()
    if not feeds:
        print("No feeds configured")
    for feed in feeds:
        category = f" [{feed.category}]" if feed.category else ""
        print(f"{feed.id}  {feed.title}{category}")
        for url in feed.urls:
            print(f"    {url}")
    return True


async def cmd_items(pipeline: ReaderPipeline, args) -> bool:
    parsed = await pipeline.load_source(await pipeline.get_source(args.feed_id))
    for category in parsed.categories:
        print(f"{category.id}: {category.name} ({category.count})")
    print()
    for item in parsed.items.get(args.category, [])[:args.limit]:
        flag = " [paywall]" if item.has_paywall else ""
        print(f"{item.iso_date or '-':25}  {item.title}{flag}")
        print(f"    {item.link}")
    return True


async def cmd_read(pipeline: ReaderPipeline, args) -> bool:
    item = None
    hidden: List[str] = []
    if args.feed_id:
        hidden = await pipeline.filters.get_hidden(args.feed_id)
        item = await _find_item(pipeline, args.feed_id, args.url)
    item = item or FeedItem(title=args.url, link=args.url)

    attempts = max(args.retry, 0) + 1
    for attempt in range(1, attempts + 1):
        try:
            article = await pipeline.open_article(item, hidden)
            if article is not None and article.from_feed and attempt < attempts:
                logger.warning(f"Full article unavailable for {item.link} - retrying ({attempt}/{args.retry})")
                continue
            break
        except FetchFailure as e:
            if attempt >= attempts:
                raise
            logger.warning(f"{e} - retrying ({attempt}/{args.retry})")
    if article is None:
        return False

    print(article.title)
    if article.from_feed:
        print("(full article unavailable, showing feed content)")
    if article.byline:
        print(article.byline)
    print()
    print(article.content)
    return True


async def cmd_analyze(pipeline: ReaderPipeline, args) -> bool:
    session = await pipeline.analyze(args.feed_id, args.sample_size)
    candidates: List[ElementCandidate] = session.candidates
    for candidate in candidates[:args.limit]:
        mark = "x" if candidate.hidden else " "
        print(f"[{mark}] {candidate.count:3d}  {candidate.selector}")
    if session.paywall_items:
        print(f"\n{len(session.paywall_items)} sampled article(s) look paywalled:")
        for item in session.paywall_items:
            print(f"    {item.title}")
    return True


async def cmd_hide(pipeline: ReaderPipeline, args) -> bool:
    await pipeline.get_source(args.feed_id)
    try:
        selector = build_selector(args.value, args.kind) if args.kind else args.value
    except ValueError as e:
        raise ReaderError(str(e)) from e
    await pipeline.filters.add_hidden(args.feed_id, selector)
    print(f"Hiding {selector}")
    return True


async def cmd_unhide(pipeline: ReaderPipeline, args) -> bool:
    await pipeline.filters.remove_hidden(args.feed_id, args.selector)
    print(f"No longer hiding {args.selector}")
    return True


async def cmd_patterns(pipeline: ReaderPipeline, args) -> bool:
    for pattern in await pipeline.detector.patterns():
        print(f"{pattern.id}  {pattern.kind:8}  {pattern.name}: {pattern.pattern}")
    return True


async def cmd_add_pattern(pipeline: ReaderPipeline, args) -> bool:
    pattern = await pipeline.detector.add_pattern(args.name, args.pattern, args.kind)
    print(f"Added pattern {pattern.id}")
    return True


async def cmd_remove_pattern(pipeline: ReaderPipeline, args) -> bool:
    removed = await pipeline.detector.remove_pattern(args.pattern_id)
    print("Removed" if removed else f"No pattern with id {args.pattern_id}")
    return removed


COMMANDS = {
    'add-feed': cmd_add_feed,
    'list-feeds': cmd_list_feeds,
    'items': cmd_items,
    'read': cmd_read,
    'analyze': cmd_analyze,
    'hide': cmd_hide,
    'unhide': cmd_unhide,
    'patterns': cmd_patterns,
    'add-pattern': cmd_add_pattern,
    'remove-pattern': cmd_remove_pattern,
}


async def run_command(args) -> bool:
    pipeline = ReaderPipeline(db=DatabaseQueue(args.database))
    try:
        return await COMMANDS[args.command](pipeline, args)
    finally:
        await pipeline.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Reader Pipeline')
    parser.add_argument('--database', type=str, default=config.DATABASE_PATH,
                        help='Path to the sqlite database')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('add-feed', help='Add a feed source with one or more feed URLs')
    p.add_argument('title')
    p.add_argument('urls', nargs='+')
    p.add_argument('--category', help='Category id')

    sub.add_parser('list-feeds', help='List feed sources')

    p = sub.add_parser('items', help='Show the merged items of a feed source')
    p.add_argument('feed_id')
    p.add_argument('--category', default=ALL_CATEGORY, help='Category label to show')
    p.add_argument('--limit', type=int, default=20)

    p = sub.add_parser('read', help='Extract and print an article')
    p.add_argument('url')
    p.add_argument('--feed', dest='feed_id', help='Feed source whose filters apply')
    p.add_argument('--retry', type=int, default=0,
                   help='Extra attempts when the article cannot be fetched')

    p = sub.add_parser('analyze', help='Rank recurring elements across recent articles')
    p.add_argument('feed_id')
    p.add_argument('--sample-size', type=int, default=None)
    p.add_argument('--limit', type=int, default=30)

    p = sub.add_parser('hide', help='Hide an element selector for a feed source')
    p.add_argument('feed_id')
    p.add_argument('value', help='Selector, or a raw value with --kind')
    p.add_argument('--kind', choices=['tag', 'class', 'id', 'attr'],
                   help='Build the selector from a raw tag, class, id or attribute name')

    p = sub.add_parser('unhide', help='Stop hiding an element selector')
    p.add_argument('feed_id')
    p.add_argument('selector')

    sub.add_parser('patterns', help='List paywall patterns')

    p = sub.add_parser('add-pattern', help='Add a paywall pattern')
    p.add_argument('name')
    p.add_argument('pattern')
    p.add_argument('--kind', choices=['selector', 'text'], default='selector')

    p = sub.add_parser('remove-pattern', help='Remove a paywall pattern')
    p.add_argument('pattern_id')

    return parser


def main():
    """Main entry point."""
    args = build_parser().parse_args()

    try:
        success = asyncio.run(run_command(args))
        sys.exit(0 if success else 1)
    except ReaderError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
