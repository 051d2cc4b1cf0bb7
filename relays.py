#!/usr/bin/env python3
"""
Relay endpoints used to reach third-party feeds and article pages.

Each relay knows how to rewrite a target URL into its own request URL and how
to unwrap its response, so the fetcher's retry loop stays relay-agnostic.
"""

from json import loads, JSONDecodeError
from typing import Any, Dict, List
from urllib.parse import quote

from aiohttp import ClientSession, ClientTimeout, ClientResponseError

from config import config, get_logger

logger = get_logger("relays")

ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8"


class Relay:
    """A relay that fetches ``target_url`` server-side and returns its body."""

    def __init__(self, name: str, prefix: str):
        self.name = name
        self.prefix = prefix

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    def build_url(self, target_url: str) -> str:
        """Build the relay request URL for a target."""
        return f"{self.prefix}{quote(target_url, safe='')}"

    def unwrap(self, body: str) -> str:
        """Extract the target's body from the relay response."""
        return body

    async def request(self, session: ClientSession, target_url: str, timeout: float) -> str:
        """Perform a single GET through this relay.

        Raises:
            ClientResponseError: On a non-2xx response
            ClientError / TimeoutError: On network failures
            ValueError: When the response envelope cannot be unwrapped
        """
        headers = {
            'Accept': ACCEPT_HEADER,
            'Accept-Language': 'en-US,en;q=0.5',
            'User-Agent': config.USER_AGENT,
        }
        logger.debug(f"Requesting {target_url} via relay {self.name}")
        async with session.get(
            self.build_url(target_url),
            headers=headers,
            timeout=ClientTimeout(total=timeout),
        ) as response:
            if not 200 <= response.status < 300:
                raise ClientResponseError(
                    response.request_info,
                    response.history,
                    status=response.status,
                    message=f"HTTP {response.status} from relay {self.name}",
                )
            body = await response.text(errors='replace')
        return self.unwrap(body)


class PrefixRelay(Relay):
    """Relay that takes the encoded target appended to its prefix and returns the raw body."""


class JsonEnvelopeRelay(Relay):
    """Relay that wraps the target body in a JSON object field (e.g. ``contents``)."""

    def __init__(self, name: str, prefix: str, field: str = "contents"):
        super().__init__(name, prefix)
        self.field = field

    def unwrap(self, body: str) -> str:
        try:
            payload = loads(body)
        except JSONDecodeError as e:
            raise ValueError(f"Relay {self.name} returned invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ValueError(f"Relay {self.name} returned a non-object envelope")
        contents = payload.get(self.field)
        if contents is None:
            return ""
        if not isinstance(contents, str):
            raise ValueError(f"Relay {self.name} envelope field {self.field!r} is not text")
        return contents


def build_relay(entry: Dict[str, Any]) -> Relay:
    """Create a relay from a config mapping (``name``, ``url``, optional ``envelope``)."""
    envelope = entry.get('envelope')
    if envelope:
        return JsonEnvelopeRelay(entry['name'], entry['url'], envelope)
    return PrefixRelay(entry['name'], entry['url'])


def article_relays() -> List[Relay]:
    """Relays used for article HTML, in fallback order."""
    return [build_relay(entry) for entry in config.ARTICLE_RELAYS]


def feed_relays() -> List[Relay]:
    """Relays used for raw feed XML, in fallback order."""
    return [build_relay(entry) for entry in config.FEED_RELAYS]

__all__ = [
    "Relay",
    "PrefixRelay",
    "JsonEnvelopeRelay",
    "build_relay",
    "article_relays",
    "feed_relays",
]
