#!/usr/bin/env python3
"""
Main-content extraction for cleaned article pages.

Runs the readability heuristic over a cleaned document to isolate the article
body, falling back to the whole document body when the heuristic yields
nothing. Whatever is returned has been through sanitize_html first.
"""

from typing import Optional
import re

from bs4 import BeautifulSoup
from bs4.element import PreformattedString
from lxml.etree import ParserError
from readability import Document
from readability.readability import Unparseable

from config import config, get_logger
from errors import ExtractionFailure
from models import ExtractedArticle
from utils import parse_html, parse_pixel_width, resolve_url, truncate_string

# Module-specific logger
logger = get_logger("extractor")

# Class keywords readability should favour so media blocks are not scored away
MEDIA_KEYWORDS = ['image', 'img', 'figure', 'video']

FORBIDDEN_TAGS = {
    'script', 'style', 'iframe', 'object', 'embed', 'applet', 'frame', 'frameset',
    'form', 'base', 'link', 'meta', 'noscript', 'template',
}

ALLOWED_ATTRS = {
    'src', 'alt', 'loading', 'decoding', 'style', 'controls', 'href', 'target',
    'class', 'id', 'title',
}

URL_ATTRS = ('href', 'src')

VALID_TAG_NAME = re.compile(r'^[a-z][a-z0-9-]*(:[a-z][a-z0-9-]*)?$')

EXCERPT_LENGTH = 200

BYLINE_SELECTORS = (
    'meta[name="author"]',
    'meta[property="article:author"]',
    '[rel="author"]',
    '[itemprop="author"]',
    '.byline',
    '.author',
)

LEAD_IMAGE_CLASS = "lead-image"
LEAD_IMAGE_STYLE = "max-width: 100%; height: auto; display: block; margin: 0 auto 1.5rem"


def _unsafe_value(value: str) -> bool:
    lowered = "".join(value.split()).lower()
    return lowered.startswith(('javascript:', 'vbscript:')) or 'expression(' in lowered


def sanitize_html(html_content: str) -> str:
    """Sanitize an HTML fragment against the display allow-list.

    - Removes script/style/iframe and other active or page-level elements
    - Unwraps elements with malformed tag names
    - Removes comments and other verbatim nodes
    - Drops every attribute outside ALLOWED_ATTRS (data-* and on* included)
    - Drops javascript:/vbscript: URLs and CSS expressions
    """
    if not html_content:
        return ""

    soup = parse_html(html_content)

    for element in soup.find_all(True):
        if element.decomposed:
            continue
        name = element.name.lower()
        if name.split(':')[-1] in FORBIDDEN_TAGS:
            element.decompose()
        elif not VALID_TAG_NAME.match(name):
            # Mangled markup such as "<scr<script>" parses as a bogus tag name
            element.unwrap()

    # Comments, CDATA, doctypes and processing instructions are written out verbatim
    for special in soup.find_all(string=lambda text: isinstance(text, PreformattedString)):
        special.extract()

    for element in soup.find_all(True):
        for attr in list(element.attrs):
            name = attr.lower()
            if name not in ALLOWED_ATTRS:
                del element[attr]
                continue
            value = element[attr]
            if isinstance(value, list):
                value = " ".join(value)
            if (name in URL_ATTRS or name == 'style') and _unsafe_value(str(value)):
                del element[attr]

    return str(soup)


def _meta_content(soup: BeautifulSoup, *names: str) -> str:
    for name in names:
        meta = soup.find('meta', attrs={'name': name}) or soup.find('meta', attrs={'property': name})
        if meta and meta.get('content'):
            return meta['content'].strip()
    return ""


class ContentExtractor:
    """Isolate an article's main content, title, excerpt and byline."""

    def __init__(self, media_keywords=None):
        self.media_keywords = list(media_keywords or MEDIA_KEYWORDS)

    def extract(self, document: BeautifulSoup, source_url: str) -> ExtractedArticle:
        """Extract the article from a cleaned document.

        Never raises: when readability produces nothing usable the whole
        document body is returned instead.
        """
        try:
            return self._extract_with_readability(document, source_url)
        except ExtractionFailure as e:
            logger.warning(f"Readability parsing failed for {source_url}, falling back to original HTML: {e}")
            return self._fallback(document)

    def _extract_with_readability(self, document: BeautifulSoup, source_url: str) -> ExtractedArticle:
        html = str(document)
        if not html.strip():
            raise ExtractionFailure("Empty document")
        try:
            doc = Document(html, url=source_url, positive_keywords=self.media_keywords)
            summary = doc.summary(html_partial=True)
            title = doc.short_title() or doc.title()
        except (Unparseable, ParserError, ValueError, TypeError) as e:
            raise ExtractionFailure(str(e)) from e

        content = parse_html(summary)
        if not content.get_text(strip=True) and not content.find(['img', 'video', 'figure']):
            raise ExtractionFailure("No main content found")

        return ExtractedArticle(
            title=(title or "").strip() or self._document_title(document),
            content=sanitize_html(summary),
            excerpt=self._excerpt(document, content),
            byline=self._byline(document),
        )

    def _fallback(self, document: BeautifulSoup) -> ExtractedArticle:
        body = document.body or document
        inner = body.decode_contents() if body is not document else str(document)
        return ExtractedArticle(
            title=self._document_title(document),
            content=sanitize_html(inner),
            excerpt=_meta_content(document, 'description'),
            byline=None,
        )

    def _document_title(self, document: BeautifulSoup) -> str:
        if document.title and document.title.string:
            return document.title.string.strip()
        return ""

    def _excerpt(self, document: BeautifulSoup, content: BeautifulSoup) -> str:
        excerpt = _meta_content(document, 'description', 'og:description', 'twitter:description')
        if excerpt:
            return excerpt
        paragraph = content.find('p')
        if paragraph:
            return truncate_string(paragraph.get_text(" ", strip=True), EXCERPT_LENGTH, "...")
        return ""

    def _byline(self, document: BeautifulSoup) -> Optional[str]:
        for selector in BYLINE_SELECTORS:
            element = document.select_one(selector)
            if element is None:
                continue
            text = element.get('content') if element.name == 'meta' else element.get_text(" ", strip=True)
            text = (text or "").strip()
            if text:
                return truncate_string(text, 100)
        return None


def lead_image_from_content(item_content: str, base_url: Optional[str] = None) -> Optional[str]:
    """Return the first image URL of a feed item's content, if any."""
    if not item_content:
        return None
    img = parse_html(item_content).find('img')
    if img is None:
        return None
    return resolve_url(img.get('src') or "", base_url)


def has_prominent_image(content_html: str, min_width: Optional[int] = None) -> bool:
    """True when the first image of ``content_html`` is wider than ``min_width`` pixels."""
    threshold = config.PROMINENT_IMAGE_WIDTH if min_width is None else min_width
    img = parse_html(content_html).find('img')
    if img is None:
        return False
    width = parse_pixel_width(img.get('width'))
    if not width:
        for declaration in (img.get('style') or "").split(';'):
            prop, _, value = declaration.partition(':')
            if prop.strip().lower() == 'width':
                width = parse_pixel_width(value) if value.strip().endswith('px') else 0
    return width > threshold


def merge_lead_image(content_html: str, lead_image: Optional[str], min_width: Optional[int] = None) -> str:
    """Prepend the feed-supplied lead image when the content has no prominent image."""
    if not lead_image or has_prominent_image(content_html, min_width):
        return content_html
    soup = BeautifulSoup("", "html.parser")
    img = soup.new_tag(
        'img',
        attrs={
            'src': lead_image,
            'class': LEAD_IMAGE_CLASS,
            'loading': 'lazy',
            'decoding': 'async',
            'style': LEAD_IMAGE_STYLE,
        },
    )
    return f"{img}{content_html}"
