#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class ReaderError(Exception):
    """Base class for errors surfaced to the user as a readable message."""


class FetchFailure(ReaderError):
    """Raised when every relay exhausted its attempts for a URL.

    Attributes:
        url: The target URL that could not be fetched.
        last_error: The last underlying exception, if any.
    """

    def __init__(self, url: str, last_error: Optional[BaseException] = None):
        detail = str(last_error) if last_error else "All relays failed"
        super().__init__(f"Failed to fetch {url}: {detail}")
        self.url = url
        self.last_error = last_error


class FeedParseError(ReaderError):
    """Raised when a feed cannot be fetched, is empty, is not XML, or has no items."""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error


class ExtractionFailure(ReaderError):
    """Raised internally when the readability pass yields nothing usable.

    The extractor catches it and degrades to the whole-body fallback.
    """


class PatternValidationError(ReaderError, ValueError):
    """Raised when a paywall pattern is not a valid selector or regular expression."""

    def __init__(self, pattern: str, kind: str, reason: str = ""):
        message = f"Invalid {kind} pattern {pattern!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.pattern = pattern
        self.kind = kind

__all__ = [
    "ReaderError",
    "FetchFailure",
    "FeedParseError",
    "ExtractionFailure",
    "PatternValidationError",
]
