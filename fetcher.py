#!/usr/bin/env python3
"""
Resilient fetcher for feeds and article pages.

Every request goes through an ordered list of relay endpoints. Each relay gets
a bounded number of attempts with a per-attempt timeout and linear backoff;
the first non-empty body wins. When every relay is exhausted a FetchFailure
carrying the last underlying error is raised.
"""

from asyncio import TimeoutError
from typing import List, Optional, Sequence

from aiohttp import ClientSession, ClientError

from config import config, get_logger
from errors import FetchFailure
from relays import Relay, article_relays
from telemetry import trace_span
from utils import RetryHelper

# Module-specific logger
logger = get_logger("fetcher")


class ResilientFetcher:
    """Fetch arbitrary URLs through a chain of relays.

    The fetcher never contacts the target directly and keeps no cache: every
    call re-fetches.
    """

    def __init__(
        self,
        relays: Optional[Sequence[Relay]] = None,
        session: Optional[ClientSession] = None,
        timeout: Optional[float] = None,
        retry_helper: Optional[RetryHelper] = None,
    ) -> None:
        self.relays: List[Relay] = list(relays) if relays is not None else article_relays()
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self.retry_helper = retry_helper or RetryHelper(
            max_attempts=config.MAX_ATTEMPTS,
            base_delay=config.RETRY_DELAY_BASE,
        )
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "ResilientFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this fetcher created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    @trace_span(
        "fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, target_url: {"fetch.url": target_url},
    )
    async def fetch(self, target_url: str) -> str:
        """Fetch ``target_url`` via the relays and return the raw body text.

        Raises:
            FetchFailure: when every relay exhausted its attempts
        """
        session = self._get_session()
        last_error: Optional[BaseException] = None
        max_attempts = self.retry_helper.max_attempts

        for relay in self.relays:
            for attempt in range(1, max_attempts + 1):
                try:
                    body = await relay.request(session, target_url, self.timeout)
                except TimeoutError as e:
                    last_error = e
                    logger.warning(
                        "Timeout fetching %s via %s (attempt %d/%d, timeout=%ss)",
                        target_url,
                        relay.name,
                        attempt,
                        max_attempts,
                        self.timeout,
                    )
                except (ClientError, ValueError) as e:
                    last_error = e
                    logger.warning(
                        "Attempt %d/%d for %s via %s failed: %s",
                        attempt,
                        max_attempts,
                        target_url,
                        relay.name,
                        e,
                    )
                else:
                    if body:
                        logger.debug(f"Fetched {target_url} via {relay.name} ({len(body)} chars)")
                        return body
                    logger.warning(f"Relay {relay.name} returned an empty body for {target_url}")
                    break

                if attempt < max_attempts:
                    await self.retry_helper.sleep_for_attempt(attempt)

        logger.error(f"All relays failed for {target_url}: {last_error}")
        raise FetchFailure(target_url, last_error)
