#!/usr/bin/env python3
"""
Feed parser for RSS 2.0 and Atom documents.

Fetches raw feed XML through the feed relays, normalizes every item into a
FeedItem and groups the items by category label. Per-item problems are logged
and the item skipped; feed-level problems raise FeedParseError.

Also holds the helpers used when a source federates several feed URLs:
link-based de-duplication, newest-first sorting and category grouping.
"""

from asyncio import get_event_loop
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import partial
from typing import Dict, Iterable, List, Optional
from xml.sax import SAXException
import re

import feedparser

from config import config, get_logger
from errors import FeedParseError, FetchFailure
from fetcher import ResilientFetcher
from models import FeedItem, UNCATEGORIZED
from relays import feed_relays
from telemetry import trace_span
from utils import parse_html, slugify_category, truncate_string

# Module-specific logger
logger = get_logger("feed_parser")

ALL_CATEGORY = "all"
DATE_FIELDS = ("published", "updated", "created")

_XML_ENCODING_DECL = re.compile(r'^(\s*<\?xml[^>]*?)\s+encoding\s*=\s*["\'][^"\']*["\']', re.IGNORECASE)


@dataclass
class FeedCategory:
    id: str
    name: str
    count: int


@dataclass
class ParsedFeed:
    """Items of one feed (or a merged source) grouped by category label."""

    categories: List[FeedCategory] = field(default_factory=list)
    items: Dict[str, List[FeedItem]] = field(default_factory=dict)
    entries: List[FeedItem] = field(default_factory=list)

    def all_items(self) -> List[FeedItem]:
        """Items in document order, each once."""
        return list(self.entries)


class FeedParser:
    """Fetch and parse feeds into normalized items."""

    def __init__(self, fetcher: Optional[ResilientFetcher] = None, snippet_length: Optional[int] = None) -> None:
        self.fetcher = fetcher or ResilientFetcher(relays=feed_relays())
        self.snippet_length = snippet_length or config.SNIPPET_LENGTH

    async def close(self) -> None:
        await self.fetcher.close()

    @trace_span(
        "parse_feed",
        tracer_name="feed_parser",
        attr_from_args=lambda self, feed_url: {"feed.url": feed_url},
    )
    async def parse(self, feed_url: str) -> ParsedFeed:
        """Fetch ``feed_url`` and parse it.

        Raises:
            FeedParseError: on fetch failure, empty body, malformed XML or no items
        """
        logger.info(f"Parsing feed: {feed_url}")
        try:
            text = await self.fetcher.fetch(feed_url)
        except FetchFailure as e:
            raise FeedParseError(f"Failed to fetch feed: {e}", e) from e
        loop = get_event_loop()
        return await loop.run_in_executor(None, partial(self.parse_document, text, feed_url))

    def parse_document(self, text: str, feed_url: str = "") -> ParsedFeed:
        """Parse raw feed XML that has already been fetched."""
        if not text or not text.strip():
            raise FeedParseError("Empty response from feed URL")

        feed = feedparser.parse(
            self._to_bytes(text),
            # Item markup is kept as published; display code sanitizes it
            sanitize_html=False,
            resolve_relative_uris=True,
        )

        if feed.bozo:
            exc = feed.get('bozo_exception')
            if isinstance(exc, SAXException):
                raise FeedParseError(f"Invalid feed format: {exc}", exc)
            logger.debug(f"Feed parsing warning for {feed_url}: {exc}")

        is_atom = (feed.get('version') or '').startswith('atom')
        entries = feed.get('entries') or []
        if not entries:
            raise FeedParseError("No items found in the feed")

        logger.debug(f"Feed {feed_url} parsed as {feed.get('version') or 'unknown'} with {len(entries)} entries")

        items: List[FeedItem] = []
        for entry in entries:
            try:
                items.append(self._parse_entry(entry, is_atom))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Error parsing feed item in {feed_url}: {e}")

        return group_items(items, include_all=False)

    def _to_bytes(self, text: str) -> bytes:
        # The body was already decoded by the relay; drop a stale encoding declaration
        return _XML_ENCODING_DECL.sub(r'\1', text, count=1).encode('utf-8')

    def _parse_entry(self, entry, is_atom: bool) -> FeedItem:
        title = (entry.get('title') or '').strip() or 'Untitled'
        link = self._entry_link(entry, is_atom)
        content = self._entry_content(entry)
        summary = entry.get('summary') or entry.get('description') or ''
        snippet = truncate_string(parse_html(summary).get_text(" ", strip=True), self.snippet_length)

        return FeedItem(
            title=title,
            link=link,
            content=content,
            content_snippet=snippet,
            iso_date=self._entry_date(entry),
            creator=self._entry_creator(entry),
            categories=self._entry_categories(entry),
        )

    def _entry_link(self, entry, is_atom: bool) -> str:
        if is_atom:
            links = [l for l in entry.get('links') or [] if l.get('href')]
            for link in links:
                if link.get('rel', 'alternate') == 'alternate':
                    return link['href'].strip()
            if links:
                return links[0]['href'].strip()
        return (entry.get('link') or '').strip()

    def _entry_content(self, entry) -> str:
        for content_item in entry.get('content') or []:
            value = content_item.get('value')
            if value:
                return value
        return entry.get('summary') or entry.get('description') or ''

    def _entry_date(self, entry) -> Optional[str]:
        for name in DATE_FIELDS:
            parsed = entry.get(f"{name}_parsed")
            if parsed:
                try:
                    return datetime(*parsed[:6], tzinfo=timezone.utc).isoformat()
                except (TypeError, ValueError, OverflowError):
                    pass
            raw = entry.get(name)
            if raw:
                dt = parse_date_string(raw)
                if dt:
                    return dt.isoformat()
        return None

    def _entry_creator(self, entry) -> Optional[str]:
        author = entry.get('author')
        if not author:
            detail = entry.get('author_detail') or {}
            author = detail.get('name')
        author = (author or '').strip()
        return author or None

    def _entry_categories(self, entry) -> List[str]:
        labels = []
        for tag in entry.get('tags') or []:
            label = (tag.get('term') or tag.get('label') or '').strip()
            if label and label not in labels:
                labels.append(label)
        return labels or [UNCATEGORIZED]


def parse_date_string(value: str) -> Optional[datetime]:
    """Parse an RFC 2822 or ISO 8601 date string; None when it is not a date."""
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        dt = None
    if dt is None:
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def merge_items(feeds: Iterable[Iterable[FeedItem]]) -> List[FeedItem]:
    """Merge item lists from several feeds, keeping the first item seen per link."""
    seen = set()
    merged = []
    for items in feeds:
        for item in items:
            if item.link in seen:
                continue
            seen.add(item.link)
            merged.append(item)
    return merged


def _sort_key(item: FeedItem) -> float:
    if item.iso_date:
        dt = parse_date_string(item.iso_date)
        if dt:
            return dt.timestamp()
    return float('-inf')


def sort_items(items: Iterable[FeedItem]) -> List[FeedItem]:
    """Newest first; items without a parseable date last, in their original order."""
    return sorted(items, key=_sort_key, reverse=True)


def group_items(items: List[FeedItem], include_all: bool = True) -> ParsedFeed:
    """Group items by category label, optionally with a leading ``all`` group."""
    grouped: Dict[str, List[FeedItem]] = {}
    if include_all:
        grouped[ALL_CATEGORY] = list(items)
    for item in items:
        for label in item.categories or [UNCATEGORIZED]:
            grouped.setdefault(label, []).append(item)

    categories = [
        FeedCategory(id=slugify_category(name), name=name, count=len(group))
        for name, group in grouped.items()
    ]
    return ParsedFeed(categories=categories, items=grouped, entries=list(items))
