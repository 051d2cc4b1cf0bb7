#!/usr/bin/env python3
"""
Settings for the feed reader pipeline.

Values come from the process environment, optionally seeded from a ``.env``
file next to this module. Relay endpoints live in ``relays.yaml`` and fall
back to a built-in list when that file is missing or unusable.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List, Optional, Callable
from logging import getLogger, basicConfig, StreamHandler, getLevelName, INFO, DEBUG, WARNING
import sys
import yaml
from dotenv import load_dotenv

BASE_DIR = path.dirname(path.abspath(__file__))

# Libraries that log every candidate node or charset guess at INFO/DEBUG
NOISY_LOGGERS = ("readability", "readability.readability", "charset_normalizer")

MAX_RELAYS_FILE_SIZE = 1024 * 1024


def _configure_logging():
    """Configure the root handler once and return the application logger.

    LOG_LEVEL picks the threshold (DEBUG, INFO, WARNING or ERROR, INFO when
    unrecognised). LOG_TIMESTAMPS=false drops the time prefix, which is handy
    when output is already timestamped by a supervisor.
    """
    level = getLevelName(environ.get("LOG_LEVEL", "INFO").strip().upper())
    if not isinstance(level, int):
        level = INFO

    fields = ['%(name)s', '%(levelname)s', '%(message)s']
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        fields.insert(0, '%(asctime)s')

    basicConfig(level=level, format=' - '.join(fields), handlers=[StreamHandler(sys.stdout)], force=True)

    if level > DEBUG:
        for name in NOISY_LOGGERS:
            getLogger(name).setLevel(WARNING)

    return getLogger("Reader")


def get_logger(name: str):
    """Child of the "Reader" logger, e.g. ``get_logger("fetcher")`` -> ``Reader.fetcher``."""
    return getLogger(f"Reader.{name}")


logger = _configure_logging()

DEFAULT_ARTICLE_RELAYS: List[Dict[str, Any]] = [
    {"name": "corsproxy", "url": "https://corsproxy.io/?"},
    {"name": "allorigins", "url": "https://api.allorigins.win/get?url=", "envelope": "contents"},
    {"name": "codetabs", "url": "https://api.codetabs.com/v1/proxy?quest="},
]

DEFAULT_FEED_RELAYS: List[Dict[str, Any]] = [
    {"name": "allorigins-raw", "url": "https://api.allorigins.win/raw?url="},
]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class Config:
    """Settings holder, built once at import as ``config``.

    relays.yaml layout:
    ```yaml
    article_relays:
      - name: allorigins
        url: "https://api.allorigins.win/get?url="
        envelope: contents   # JSON field holding the page, for wrapping relays
    feed_relays:
      - name: allorigins-raw
        url: "https://api.allorigins.win/raw?url="
    ```
    A missing or malformed section keeps the built-in relays for that section.
    """

    def __init__(self):
        dotenv_path = path.join(BASE_DIR, '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Read settings from {dotenv_path}")
        self._read_settings()
        self._load_relays()

    def _env_number(self, env_var: str, default, minimum, cast: Callable = int):
        """Read a numeric setting, keeping ``default`` for junk or out-of-range values."""
        raw = environ.get(env_var)
        if raw is None:
            return default
        try:
            value = cast(raw)
        except (ValueError, TypeError):
            logger.warning(f"{env_var}={raw!r} is not a number; keeping {default}")
            return default
        if value < minimum:
            logger.warning(f"{env_var}={value} is below {minimum}; keeping {default}")
            return default
        return value

    def _read_settings(self):
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "reader.db")

        # Relay fetching
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)
        self.HTTP_TIMEOUT = self._env_number("HTTP_TIMEOUT", 30, 1)
        self.MAX_ATTEMPTS = self._env_number("MAX_ATTEMPTS", 3, 1)
        self.RETRY_DELAY_BASE = self._env_number("RETRY_DELAY_BASE", 1.0, 0.0, float)

        self.SNIPPET_LENGTH = self._env_number("SNIPPET_LENGTH", 300, 1)

        # Filter discovery and article display
        self.ANALYSIS_SAMPLE_SIZE = self._env_number("ANALYSIS_SAMPLE_SIZE", 10, 1)
        self.PROMINENT_IMAGE_WIDTH = self._env_number("PROMINENT_IMAGE_WIDTH", 300, 0)
        self.STATUS_LOG_SIZE = self._env_number("STATUS_LOG_SIZE", 5, 1)

        self.RELAYS_CONFIG_PATH = environ.get("RELAYS_CONFIG_PATH", path.join(BASE_DIR, "relays.yaml"))

    def _read_relays_file(self) -> Any:
        """Parsed relays.yaml, or None when it is absent, unreadable or empty."""
        file_path = self.RELAYS_CONFIG_PATH
        if not path.isfile(file_path):
            logger.debug(f"No relays file at {file_path}; using built-in relays")
            return None
        if not access(file_path, R_OK):
            logger.error(f"Relays file {file_path} is not readable")
            return None
        try:
            size = path.getsize(file_path)
            if size > MAX_RELAYS_FILE_SIZE:
                logger.error(f"Relays file {file_path} is {size} bytes, over the {MAX_RELAYS_FILE_SIZE} byte limit")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Relays file {file_path} is not valid YAML: {e}")
            return None
        except OSError as e:
            logger.error(f"Could not read relays file {file_path}: {e}")
            return None
        if not data:
            logger.warning(f"Relays file {file_path} is empty")
            return None
        return data

    def _relay_list(self, section: Any, label: str) -> Optional[List[Dict[str, Any]]]:
        if section is None:
            return None
        if not isinstance(section, list):
            logger.warning(f"{label} should be a list of relays; using built-in relays")
            return None
        relays = []
        for entry in section:
            url = entry.get('url') if isinstance(entry, dict) else None
            if not isinstance(url, str) or not url.strip():
                logger.warning(f"Ignoring {label} entry without a url: {entry}")
                continue
            relay = {'name': str(entry.get('name') or url.strip()), 'url': url.strip()}
            envelope = entry.get('envelope')
            if isinstance(envelope, str) and envelope.strip():
                relay['envelope'] = envelope.strip()
            relays.append(relay)
        return relays or None

    def _load_relays(self) -> None:
        data = self._read_relays_file()
        if data is not None and not isinstance(data, dict):
            logger.warning(f"Relays file {self.RELAYS_CONFIG_PATH} should hold a mapping; using built-in relays")
            data = None
        data = data or {}

        self.ARTICLE_RELAYS = (self._relay_list(data.get('article_relays'), 'article_relays')
                               or [dict(r) for r in DEFAULT_ARTICLE_RELAYS])
        self.FEED_RELAYS = (self._relay_list(data.get('feed_relays'), 'feed_relays')
                            or [dict(r) for r in DEFAULT_FEED_RELAYS])
        logger.debug(
            "Relays: article=%s feed=%s",
            ",".join(r['name'] for r in self.ARTICLE_RELAYS),
            ",".join(r['name'] for r in self.FEED_RELAYS),
        )

    def reload_relays(self):
        """Re-read relays.yaml, e.g. after editing it in a long-running process."""
        logger.info(f"Reloading relays from {self.RELAYS_CONFIG_PATH}")
        self._load_relays()


config = Config()
