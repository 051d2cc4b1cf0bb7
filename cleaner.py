#!/usr/bin/env python3
"""
Document cleaner for fetched article pages.

Strips markup that carries no article content (scripts, ads, navigation,
cookie and newsletter prompts, templating-framework attributes) and rewrites
image and link URLs to absolute form. The input tree is never modified; a
cleaned copy is returned.
"""

import copy
from typing import Optional, Union

from bs4 import BeautifulSoup, Tag

from config import get_logger
from utils import parse_html, resolve_url, select_safely

# Module-specific logger
logger = get_logger("cleaner")

# Attribute-name prefixes left behind by client-side frameworks (Vue, Alpine, Angular)
FRAMEWORK_ATTR_PREFIXES = (
    '@click', '@change', '@input', '@submit',
    'v-', 'ng-',
    ':class', ':style', ':src', ':href', ':alt', ':id',
    'x-', 'data-v-',
    '[(ngmodel)]', '[ngclass]', '[ngstyle]',
    '(click)', '(change)', '(input)', '(submit)',
)

REMOVE_SELECTORS = (
    'script', 'style', 'iframe', 'noscript',
    '[class*="cookie"]', '[class*="popup"]', '[class*="newsletter"]',
    '[class*="ad-"]', '[class*="advertisement"]', '[id*="cookie"]',
    '[id*="popup"]', '[id*="newsletter"]', '[id*="ad-"]',
    'header', 'footer', 'nav', '.nav', '.header', '.footer',
    '.social', '.share', '.comments', '.related', '.sidebar',
)

IMAGE_SOURCE_ATTRS = ('src', 'data-src', 'data-lazy-src', 'data-original', 'data-srcset')

IMAGE_STYLE = "max-width: 100%; height: auto; display: block; margin: 1rem auto"

ANCHOR_KEEP_ATTRS = ('href', 'class')


class DocumentCleaner:
    """Reduce a page to content-bearing markup with absolute URLs."""

    def __init__(self, remove_selectors=REMOVE_SELECTORS, framework_prefixes=FRAMEWORK_ATTR_PREFIXES):
        self.remove_selectors = tuple(remove_selectors)
        self.framework_prefixes = tuple(p.lower() for p in framework_prefixes)

    def clean(self, document: Union[str, BeautifulSoup], base_url: Optional[str]) -> BeautifulSoup:
        """Return a cleaned copy of ``document``.

        Never raises for malformed markup: elements that cannot be processed
        are skipped or dropped.
        """
        if isinstance(document, BeautifulSoup):
            soup = copy.copy(document)
        else:
            soup = parse_html(document)

        self._strip_framework_attributes(soup)
        removed = self._remove_blocked_elements(soup)
        self._normalize_images(soup, base_url)
        self._normalize_links(soup, base_url)
        logger.debug(f"Cleaned document for {base_url}: removed {removed} elements")
        return soup

    def _strip_framework_attributes(self, soup: BeautifulSoup) -> None:
        for element in soup.find_all(True):
            for attr in list(element.attrs):
                if attr.lower().startswith(self.framework_prefixes):
                    del element[attr]

    def _remove_blocked_elements(self, soup: BeautifulSoup) -> int:
        removed = 0
        for selector in self.remove_selectors:
            for element in select_safely(soup, selector):
                # Already gone with a removed ancestor
                if element.decomposed:
                    continue
                element.decompose()
                removed += 1
        return removed

    def _image_source(self, img: Tag) -> str:
        for attr in IMAGE_SOURCE_ATTRS:
            value = img.get(attr)
            if isinstance(value, list):
                value = " ".join(value)
            value = (value or "").strip()
            if not value:
                continue
            if attr.endswith('srcset'):
                # "url 1x, url 2x" -> first candidate URL
                value = value.split(',')[0].strip().split(' ')[0]
            return value
        return ""

    def _normalize_images(self, soup: BeautifulSoup, base_url: Optional[str]) -> None:
        for img in soup.find_all('img'):
            try:
                src = resolve_url(self._image_source(img), base_url)
                if not src:
                    img.decompose()
                    continue
                img.attrs = {
                    'src': src,
                    'loading': 'lazy',
                    'decoding': 'async',
                    'style': IMAGE_STYLE,
                }
            except (ValueError, TypeError, AttributeError) as e:
                logger.debug(f"Dropping image that could not be normalized: {e}")
                img.decompose()

    def _normalize_links(self, soup: BeautifulSoup, base_url: Optional[str]) -> None:
        for link in soup.find_all('a'):
            href = link.get('href')
            try:
                if href and not href.startswith(('http', '#')):
                    resolved = resolve_url(href, base_url)
                    if resolved:
                        href = resolved
            except (ValueError, TypeError) as e:
                logger.debug(f"Keeping original href {href!r}: {e}")
            kept = {name: link.attrs[name] for name in ANCHOR_KEEP_ATTRS if name in link.attrs}
            if href is not None:
                kept['href'] = href
            link.attrs = kept
