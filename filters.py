#!/usr/bin/env python3
"""
Element filter engine.

Application removes user-hidden elements from an HTML fragment before display.
Discovery samples recent articles of one source, extracts them and ranks the
``#id`` and ``.class`` selectors that recur across the sample, so recurring
template fragments can be offered as filter suggestions.
"""

from asyncio import get_event_loop
from collections import Counter, deque
from dataclasses import dataclass, field
from functools import partial
from typing import Deque, Iterable, List, Optional, Set

from bs4 import BeautifulSoup

from cleaner import DocumentCleaner
from config import config, get_logger
from errors import FeedParseError, FetchFailure, ReaderError
from extractor import ContentExtractor
from feed_parser import FeedParser, merge_items
from fetcher import ResilientFetcher
from models import FeedItem, FeedSource, FilterStore
from paywall import PaywallDetector
from telemetry import trace_span
from utils import parse_html, select_safely

# Module-specific logger
logger = get_logger("filters")


def apply_filters(html_content: str, hidden_selectors: Optional[Iterable[str]]) -> str:
    """Remove every element matching any of ``hidden_selectors``.

    Invalid selectors are skipped. An empty selector list returns the input
    unchanged.
    """
    selectors = [s for s in (hidden_selectors or []) if s and s.strip()]
    if not selectors or not html_content:
        return html_content

    soup = parse_html(html_content)
    for selector in selectors:
        for element in select_safely(soup, selector):
            if element.decomposed:
                continue
            element.decompose()
    return str(soup)


def extract_selectors(soup: BeautifulSoup) -> Set[str]:
    """The distinct ``#id`` and ``.class`` selectors present in one document."""
    selectors = set()
    for element in soup.find_all(True):
        element_id = element.get('id')
        if isinstance(element_id, str) and element_id.strip():
            selectors.add(f"#{element_id.strip()}")
        for class_name in element.get('class') or []:
            if class_name.strip():
                selectors.add(f".{class_name.strip()}")
    return selectors


@dataclass
class ElementCandidate:
    selector: str
    count: int
    hidden: bool = False


@dataclass
class AnalysisSession:
    """Working state of one discovery run. Never persisted."""

    feed_id: str
    counts: Counter = field(default_factory=Counter)
    paywall_items: List[FeedItem] = field(default_factory=list)
    analyzed: int = 0
    failed: int = 0
    status: Deque[str] = field(default_factory=lambda: deque(maxlen=config.STATUS_LOG_SIZE))
    candidates: List[ElementCandidate] = field(default_factory=list)

    def add_status(self, message: str) -> None:
        """Append a progress message, keeping only the most recent ones."""
        self.status.append(message)
        logger.info(message)

    def ranked(self, hidden: Iterable[str] = ()) -> List[ElementCandidate]:
        """Candidates by descending frequency, ties in first-seen order."""
        hidden_set = set(hidden)
        return [
            ElementCandidate(selector=selector, count=count, hidden=selector in hidden_set)
            for selector, count in self.counts.most_common()
        ]


class ElementFilterEngine:
    """Apply hide-lists and discover filter candidates for a feed source."""

    def __init__(
        self,
        parser: Optional[FeedParser] = None,
        fetcher: Optional[ResilientFetcher] = None,
        cleaner: Optional[DocumentCleaner] = None,
        extractor: Optional[ContentExtractor] = None,
        detector: Optional[PaywallDetector] = None,
        filter_store: Optional[FilterStore] = None,
    ) -> None:
        self.parser = parser or FeedParser()
        self.fetcher = fetcher or ResilientFetcher()
        self.cleaner = cleaner or DocumentCleaner()
        self.extractor = extractor or ContentExtractor()
        self.detector = detector or PaywallDetector()
        self.filter_store = filter_store

    def apply(self, html_content: str, hidden_selectors: Optional[Iterable[str]]) -> str:
        return apply_filters(html_content, hidden_selectors)

    async def sample_items(self, source: FeedSource, sample_size: int, session: AnalysisSession) -> List[FeedItem]:
        """Parse every feed URL of ``source`` one at a time and return the first items.

        Raises:
            ReaderError: when every feed URL failed to parse
        """
        parsed = []
        errors = []
        for url in source.urls:
            try:
                feed = await self.parser.parse(url)
                parsed.append(feed.all_items())
            except FeedParseError as e:
                logger.warning(f"Error parsing feed {url}: {e}")
                errors.append(f"{url}: {e}")

        if not parsed:
            raise ReaderError("Failed to load any feeds:\n" + "\n".join(errors))

        items = merge_items(parsed)
        if not items:
            raise ReaderError("No items found to analyze")
        session.add_status(f"Found {len(items)} items, analyzing {min(sample_size, len(items))}")
        return items[:sample_size]

    async def _extract(self, item: FeedItem):
        html = await self.fetcher.fetch(item.link)
        loop = get_event_loop()
        cleaned = await loop.run_in_executor(None, partial(self.cleaner.clean, html, item.link))
        return await loop.run_in_executor(None, partial(self.extractor.extract, cleaned, item.link))

    @trace_span(
        "analyze_source",
        tracer_name="filters",
        attr_from_args=lambda self, source, sample_size=None, session=None: {"feed.id": source.id},
    )
    async def analyze(
        self,
        source: FeedSource,
        sample_size: Optional[int] = None,
        session: Optional[AnalysisSession] = None,
    ) -> List[ElementCandidate]:
        """Rank recurring ``#id``/``.class`` selectors across a sample of articles.

        Individual article failures are logged in the session and skipped.

        Raises:
            ReaderError: when no feed could be parsed or no elements were found
        """
        sample_size = sample_size or config.ANALYSIS_SAMPLE_SIZE
        session = session or AnalysisSession(feed_id=source.id)
        session.add_status(f"Analyzing {source.title or source.id}")

        items = await self.sample_items(source, sample_size, session)

        for index, item in enumerate(items, start=1):
            session.add_status(f"Analyzing article {index}/{len(items)}: {item.title}")
            try:
                article = await self._extract(item)
            except (FetchFailure, ReaderError, ValueError) as e:
                session.failed += 1
                logger.warning(f"Error analyzing article {item.link}: {e}")
                session.add_status(f"Skipped {item.title}: {e}")
                continue

            if await self.detector.detect(article.content):
                item.has_paywall = True
                session.paywall_items.append(item)

            session.counts.update(extract_selectors(parse_html(article.content)))
            session.analyzed += 1

        if not session.counts:
            raise ReaderError("No elements found to analyze")

        hidden = await self.filter_store.get_hidden(source.id) if self.filter_store else []
        candidates = session.ranked(hidden)
        session.candidates = candidates
        session.add_status(
            f"Analysis complete: {len(candidates)} elements across {session.analyzed} articles"
        )
        return candidates
