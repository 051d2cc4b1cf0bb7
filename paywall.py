#!/usr/bin/env python3
"""
Paywall detection against the user-extensible pattern library.

A fragment is paywalled when any pattern matches it: selector patterns match
when they find at least one element, text patterns when their case-insensitive
regular expression occurs in the fragment's visible text.
"""

import re
from typing import Iterable, List, Optional

from bs4 import BeautifulSoup
from bs4.element import CData, PreformattedString

from config import get_logger
from models import PaywallPattern, PaywallStore, default_paywall_patterns, validate_pattern
from utils import parse_html, select_safely

# Module-specific logger
logger = get_logger("paywall")

# Elements whose text never reaches the reader
INVISIBLE_TAGS = ["script", "style", "noscript", "template"]


def visible_text(soup: BeautifulSoup) -> str:
    """Text a reader would see, without script/style bodies or comments."""
    parts = []
    for string in soup.find_all(string=True):
        if isinstance(string, PreformattedString) and not isinstance(string, CData):
            continue
        if string.find_parent(INVISIBLE_TAGS) is not None:
            continue
        parts.append(str(string))
    return " ".join(parts)


def pattern_matches(pattern: PaywallPattern, soup: BeautifulSoup, text: Optional[str] = None) -> bool:
    """Evaluate a single pattern against a parsed fragment.

    Invalid selectors and regular expressions never match.
    """
    if pattern.kind == "selector":
        return bool(select_safely(soup, pattern.pattern))
    if pattern.kind == "text":
        try:
            regex = re.compile(pattern.pattern, re.IGNORECASE)
        except re.error as e:
            logger.debug(f"Skipping invalid text pattern {pattern.pattern!r}: {e}")
            return False
        if text is None:
            text = visible_text(soup)
        return regex.search(text) is not None
    logger.debug(f"Ignoring pattern {pattern.id} with unknown kind {pattern.kind!r}")
    return False


def matches(patterns: Iterable[PaywallPattern], html_content: str) -> bool:
    """True when any of ``patterns`` matches ``html_content``."""
    if not html_content:
        return False
    soup = parse_html(html_content)
    text = None
    for pattern in patterns:
        if pattern.kind == "text" and text is None:
            text = visible_text(soup)
        if pattern_matches(pattern, soup, text):
            logger.debug(f"Paywall pattern matched: {pattern.name}")
            return True
    return False


class PaywallDetector:
    """Decide whether content is paywalled using the stored pattern library.

    Without a store the built-in default patterns are used.
    """

    def __init__(self, store: Optional[PaywallStore] = None):
        self.store = store

    async def patterns(self) -> List[PaywallPattern]:
        if self.store is None:
            return default_paywall_patterns()
        return await self.store.load()

    async def detect(self, html_content: str) -> bool:
        """Load the current pattern library and test ``html_content`` against it."""
        return matches(await self.patterns(), html_content)

    async def add_pattern(self, name: str, pattern: str, kind: str) -> PaywallPattern:
        """Validate and store a new pattern.

        Raises:
            PatternValidationError: when the pattern does not compile for its kind
        """
        validate_pattern(pattern, kind)
        if self.store is None:
            raise RuntimeError("No pattern store configured")
        return await self.store.add_pattern(name or pattern, pattern, kind)

    async def remove_pattern(self, pattern_id: str) -> bool:
        if self.store is None:
            raise RuntimeError("No pattern store configured")
        return await self.store.remove_pattern(pattern_id)
