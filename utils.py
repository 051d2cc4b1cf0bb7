#!/usr/bin/env python3
"""
Utility classes and functions for the reader pipeline.

This module contains shared helpers used by the fetcher, cleaner, extractor and
filter engine: retry backoff, URL resolution, safe selector matching and a few
small text helpers.
"""

from asyncio import sleep
from typing import List, Optional
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError
import soupsieve

# Import config to use unified logging
from config import get_logger

# Module-specific logger
logger = get_logger("utils")

HTML_PARSER = "html.parser"


class RetryHelper:
    """Helper class for implementing retry logic with linear backoff.

    The n-th failed attempt is followed by a pause of ``n * base_delay`` seconds.
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_attempts: Total number of attempts (first try included)
            base_delay: Delay unit in seconds for linear backoff
            max_delay: Maximum delay in seconds between attempts
        """
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the pause after a failed attempt.

        Args:
            attempt: The attempt that just failed (1-based)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * max(attempt, 0)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def resolve_url(value: str, base_url: Optional[str]) -> Optional[str]:
    """Resolve a possibly relative reference against ``base_url``.

    Protocol-relative references (``//host/path``) become https. ``data:`` URIs
    and absolute http(s) URLs are returned unchanged. Returns None when the
    reference cannot be turned into an absolute URL.
    """
    if not value:
        return None
    value = value.strip()
    if not value:
        return None
    if value.startswith('//'):
        return f"https:{value}"
    if value.startswith(('http://', 'https://', 'data:')):
        return value
    if not base_url:
        return None
    resolved = urljoin(base_url, value)
    if resolved.startswith(('http://', 'https://')):
        return resolved
    return None


def parse_html(html_content: str) -> BeautifulSoup:
    """Parse an HTML document or fragment into a BeautifulSoup tree."""
    return BeautifulSoup(html_content or "", HTML_PARSER)


def is_valid_selector(selector: str) -> bool:
    """Return True when ``selector`` compiles as a CSS selector."""
    if not selector or not selector.strip():
        return False
    try:
        soupsieve.compile(selector)
        return True
    except (SelectorSyntaxError, ValueError, NotImplementedError):
        return False


def select_safely(soup: BeautifulSoup, selector: str) -> List:
    """Return the elements matching ``selector``; invalid selectors match nothing."""
    try:
        return soup.select(selector)
    except (SelectorSyntaxError, ValueError, NotImplementedError) as e:
        logger.debug(f"Skipping invalid selector {selector!r}: {e}")
        return []


def build_selector(value: str, kind: str) -> str:
    """Build a selector from a raw user value.

    Args:
        value: The raw value typed by the user
        kind: One of ``tag``, ``class``, ``id`` or ``attr``

    Returns:
        The selector string (``.x``, ``#x``, ``[x]`` or a lowercase tag name)
    """
    value = (value or "").strip()
    if not value:
        raise ValueError("Selector value must not be empty")
    if kind == 'class':
        return f".{value.lstrip('.')}"
    if kind == 'id':
        return f"#{value.lstrip('#')}"
    if kind == 'attr':
        return f"[{value}]"
    if kind == 'tag':
        return value.lower()
    raise ValueError(f"Unknown selector kind: {kind}")


def slugify_category(name: str) -> str:
    """Derive a category id: lowercase, whitespace runs collapsed to '-'."""
    return re.sub(r'\s+', '-', (name or "").strip().lower())


def truncate_string(text: str, max_length: int, suffix: str = "") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


def parse_pixel_width(value) -> int:
    """Parse an HTML width attribute ("640", "640px") into an int; 0 when unknown."""
    if value is None:
        return 0
    match = re.match(r'\s*(\d+)', str(value))
    if not match:
        return 0
    return int(match.group(1))
