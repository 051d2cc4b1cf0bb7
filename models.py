#!/usr/bin/env python3
"""
Data model and persistence for the reader pipeline.

Feed sources, filter rules and the paywall pattern library are kept as three
independently keyed JSON records in a small sqlite key-value table. All access
goes through DatabaseQueue, a single worker that serializes operations. Every
write is a full read-modify-write of one record; a missing or corrupt record
loads as its default.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from os import path
from time import time
import json
import re
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Any, Callable, Dict, List, Optional

from config import config, get_logger
from errors import PatternValidationError
from telemetry import trace_span
from utils import is_valid_selector

# Module-specific logger
logger = get_logger("models")

UNCATEGORIZED = "Uncategorized"

FEEDS_KEY = "reader-data"
FILTERS_KEY = "reader-filters"
PAYWALL_KEY = "reader-paywall"

FILTER_UPDATED = "filter-updated"
PAYWALL_UPDATED = "paywall-updated"

PATTERN_KINDS = ("selector", "text")

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated INTEGER NOT NULL
)
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ----------------------------------------------------------------------
# Data model
# ----------------------------------------------------------------------

@dataclass
class Category:
    """A user-defined grouping of feed sources."""

    id: str
    name: str
    created_at: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Category":
        return cls(id=str(data["id"]), name=str(data["name"]), created_at=data.get("created_at") or _now_iso())


@dataclass
class FeedSource:
    """A feed source federating one or more physical feed URLs."""

    id: str
    title: str
    urls: List[str]
    category: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedSource":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            urls=[str(u) for u in data.get("urls") or []],
            category=data.get("category"),
            created_at=data.get("created_at") or _now_iso(),
        )


@dataclass
class FeedItem:
    """A normalized feed item. Created fresh on every fetch and never persisted."""

    title: str
    link: str
    content: str = ""
    content_snippet: str = ""
    iso_date: Optional[str] = None
    creator: Optional[str] = None
    categories: List[str] = field(default_factory=lambda: [UNCATEGORIZED])
    has_paywall: bool = False


@dataclass
class ExtractedArticle:
    """Main content extracted from an article page, already sanitized."""

    title: str
    content: str
    excerpt: str = ""
    byline: Optional[str] = None
    # Built from the feed item because the page itself could not be fetched
    from_feed: bool = False


@dataclass
class FilterRule:
    """Selectors hidden for one feed source, in insertion order, unique."""

    feed_id: str
    hidden_elements: List[str] = field(default_factory=list)


@dataclass
class PaywallPattern:
    id: str
    name: str
    pattern: str
    kind: str
    created_at: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaywallPattern":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            pattern=str(data["pattern"]),
            kind=str(data.get("kind") or data.get("type") or "selector"),
            created_at=data.get("created_at") or _now_iso(),
        )


def validate_pattern(pattern: str, kind: str) -> None:
    """Check that a paywall pattern is a valid selector or regular expression.

    Raises:
        PatternValidationError: when the pattern does not compile for its kind
    """
    if kind not in PATTERN_KINDS:
        raise PatternValidationError(pattern, kind, f"kind must be one of {', '.join(PATTERN_KINDS)}")
    if not pattern or not pattern.strip():
        raise PatternValidationError(pattern, kind, "pattern must not be empty")
    if kind == "selector":
        if not is_valid_selector(pattern):
            raise PatternValidationError(pattern, kind, "not a valid CSS selector")
    else:
        try:
            re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            raise PatternValidationError(pattern, kind, str(e)) from e


def default_paywall_patterns() -> List[PaywallPattern]:
    """The seed pattern library used when no library has been stored yet."""
    return [
        PaywallPattern(
            id="default-subscription",
            name="Subscription Required",
            pattern=".subscription-required, .paywall, [data-paywall], #paywall",
            kind="selector",
        ),
        PaywallPattern(
            id="default-premium",
            name="Premium Content",
            pattern=".premium-content, .premium, [data-premium], #premium",
            kind="selector",
        ),
        PaywallPattern(
            id="default-subscribe",
            name="Subscribe Text",
            pattern="Subscribe now|Subscription required|Premium article|Members only",
            kind="text",
        ),
    ]


# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------

class Notifier:
    """Named, payload-less notifications for views that must re-derive content."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callable[[], None]]] = {}

    def subscribe(self, name: str, callback: Callable[[], None]) -> None:
        self._subscribers.setdefault(name, []).append(callback)

    def unsubscribe(self, name: str, callback: Callable[[], None]) -> None:
        callbacks = self._subscribers.get(name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def notify(self, name: str) -> None:
        for callback in list(self._subscribers.get(name, [])):
            try:
                callback()
            except Exception as e:
                logger.error(f"Subscriber for {name} failed: {e}")


# ----------------------------------------------------------------------
# Key-value storage
# ----------------------------------------------------------------------

def initialize_database(conn) -> None:
    """Create the records table if needed."""
    cursor = conn.cursor()
    try:
        cursor.execute(SCHEMA)
        conn.commit()
    except Error as e:
        logger.error(f"Could not create the records table: {e}")
        raise
    finally:
        cursor.close()


class DatabaseQueue:
    """A queue for database operations to ensure they run one at a time."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DATABASE_PATH
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Spawn the worker task if it is not already running."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("Database worker started")

    async def stop(self) -> None:
        """Ask the worker to finish and wait for it to close the connection."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any waiters so nothing hangs on shutdown
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.debug("Database worker stopped")

    async def _worker(self) -> None:
        """Own the sqlite connection and run queued operations one at a time."""
        if self.db_path != ":memory:" and not path.isfile(self.db_path):
            logger.info(f"Creating new database at {self.db_path}")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        initialize_database(self.conn)

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    if hasattr(self, operation_name):
                        method = getattr(self, operation_name)
                        result = method(**params)
                        self.results[operation_id] = {"result": result}
                    else:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                except Exception as e:
                    logger.error(f"{operation_name} failed: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Queue ``operation_name`` for the worker and await its result."""
        if not self.running:
            await self.start()

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, {"error": "Database worker stopped"})
            if "error" in result:
                raise RuntimeError(result["error"])

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Record operations
    def get_record(self, key: str) -> Optional[str]:
        """Return the raw JSON text stored under ``key``."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT value FROM records WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row["value"] if row else None

    def put_record(self, key: str, value: str) -> bool:
        """Replace the record stored under ``key``."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT INTO records (key, value, updated) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated = excluded.updated",
                (key, value, int(time())),
            )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error saving record {key}: {e}")
            return False


class RecordStore:
    """Base class for a JSON record with a safe default."""

    key = ""

    def __init__(self, db: DatabaseQueue, notifier: Optional[Notifier] = None):
        self.db = db
        self.notifier = notifier or Notifier()

    def default(self) -> Dict[str, Any]:
        raise NotImplementedError

    def is_valid(self, data: Any) -> bool:
        return isinstance(data, dict)

    async def load_record(self) -> Dict[str, Any]:
        """Load the record, falling back to the default when absent or corrupt."""
        raw = await self.db.execute("get_record", key=self.key)
        if raw is None:
            return self.default()
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Corrupt record {self.key}, using defaults: {e}")
            return self.default()
        if not self.is_valid(data):
            logger.warning(f"Record {self.key} has an unexpected shape, using defaults")
            return self.default()
        return data

    async def save_record(self, data: Dict[str, Any]) -> None:
        await self.db.execute("put_record", key=self.key, value=json.dumps(data))


class FeedStore(RecordStore):
    """Feed sources and categories."""

    key = FEEDS_KEY

    def default(self) -> Dict[str, Any]:
        return {"feeds": [], "categories": []}

    def is_valid(self, data: Any) -> bool:
        return (
            isinstance(data, dict)
            and isinstance(data.get("feeds", []), list)
            and isinstance(data.get("categories", []), list)
        )

    @staticmethod
    def migrate(data: Dict[str, Any]) -> bool:
        """Upgrade single-``url`` feeds to the ``urls`` list schema in place.

        Returns:
            True when anything was changed
        """
        changed = False
        data.setdefault("feeds", [])
        data.setdefault("categories", [])
        for feed in data["feeds"]:
            if not isinstance(feed, dict):
                continue
            if not isinstance(feed.get("urls"), list) and feed.get("url"):
                feed["urls"] = [feed["url"]]
                changed = True
            if "url" in feed:
                del feed["url"]
                changed = True
        return changed

    async def load(self) -> Dict[str, Any]:
        data = await self.load_record()
        if self.migrate(data):
            logger.info("Migrated feed records to the multi-URL schema")
            await self.save_record(data)
        return data

    async def save(self, data: Dict[str, Any]) -> None:
        self.migrate(data)
        await self.save_record(data)

    async def list_feeds(self) -> List[FeedSource]:
        data = await self.load()
        feeds = []
        for entry in data["feeds"]:
            try:
                feeds.append(FeedSource.from_dict(entry))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed feed record: {e}")
        return feeds

    async def list_categories(self) -> List[Category]:
        data = await self.load()
        categories = []
        for entry in data["categories"]:
            try:
                categories.append(Category.from_dict(entry))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed category record: {e}")
        return categories

    async def get_feed(self, feed_id: str) -> Optional[FeedSource]:
        for feed in await self.list_feeds():
            if feed.id == feed_id:
                return feed
        return None

    async def add_feed(self, title: str, urls: List[str], category: Optional[str] = None) -> FeedSource:
        valid_urls = [u.strip() for u in urls if u and u.strip()]
        if not valid_urls:
            raise ValueError("A feed needs at least one URL")
        data = await self.load()
        feed = FeedSource(id=str(uuid4()), title=title, urls=valid_urls, category=category)
        data["feeds"].append(asdict(feed))
        await self.save_record(data)
        logger.info(f"Added feed {title} with {len(valid_urls)} URL(s)")
        return feed

    async def update_feed(self, feed: FeedSource) -> bool:
        valid_urls = [u.strip() for u in feed.urls if u and u.strip()]
        if not valid_urls:
            raise ValueError("A feed needs at least one URL")
        feed.urls = valid_urls
        data = await self.load()
        for index, entry in enumerate(data["feeds"]):
            if isinstance(entry, dict) and entry.get("id") == feed.id:
                data["feeds"][index] = asdict(feed)
                await self.save_record(data)
                return True
        return False

    async def remove_feed(self, feed_id: str) -> bool:
        data = await self.load()
        remaining = [f for f in data["feeds"] if not (isinstance(f, dict) and f.get("id") == feed_id)]
        if len(remaining) == len(data["feeds"]):
            return False
        data["feeds"] = remaining
        await self.save_record(data)
        return True

    async def add_category(self, name: str) -> Category:
        data = await self.load()
        category = Category(id=str(uuid4()), name=name)
        data["categories"].append(asdict(category))
        await self.save_record(data)
        return category


class FilterStore(RecordStore):
    """Per-source hidden element selectors."""

    key = FILTERS_KEY

    def default(self) -> Dict[str, Any]:
        return {"filters": []}

    def is_valid(self, data: Any) -> bool:
        return isinstance(data, dict) and isinstance(data.get("filters"), list)

    async def get_rule(self, feed_id: str) -> Optional[FilterRule]:
        data = await self.load_record()
        for entry in data["filters"]:
            if isinstance(entry, dict) and entry.get("feed_id") == feed_id:
                return FilterRule(feed_id=feed_id, hidden_elements=list(entry.get("hidden_elements") or []))
        return None

    async def get_hidden(self, feed_id: str) -> List[str]:
        rule = await self.get_rule(feed_id)
        return rule.hidden_elements if rule else []

    async def add_hidden(self, feed_id: str, selector: str) -> None:
        data = await self.load_record()
        for entry in data["filters"]:
            if isinstance(entry, dict) and entry.get("feed_id") == feed_id:
                hidden = entry.setdefault("hidden_elements", [])
                if selector not in hidden:
                    hidden.append(selector)
                break
        else:
            data["filters"].append(asdict(FilterRule(feed_id=feed_id, hidden_elements=[selector])))
        await self.save_record(data)
        self.notifier.notify(FILTER_UPDATED)

    async def remove_hidden(self, feed_id: str, selector: str) -> None:
        data = await self.load_record()
        for entry in data["filters"]:
            if isinstance(entry, dict) and entry.get("feed_id") == feed_id:
                entry["hidden_elements"] = [s for s in entry.get("hidden_elements") or [] if s != selector]
                await self.save_record(data)
                self.notifier.notify(FILTER_UPDATED)
                return


class PaywallStore(RecordStore):
    """The user-extensible paywall pattern library."""

    key = PAYWALL_KEY

    def default(self) -> Dict[str, Any]:
        return {"patterns": [asdict(p) for p in default_paywall_patterns()]}

    def is_valid(self, data: Any) -> bool:
        return isinstance(data, dict) and isinstance(data.get("patterns"), list)

    async def load(self) -> List[PaywallPattern]:
        data = await self.load_record()
        patterns = []
        for entry in data["patterns"]:
            try:
                patterns.append(PaywallPattern.from_dict(entry))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed paywall pattern: {e}")
        return patterns

    async def add_pattern(self, name: str, pattern: str, kind: str) -> PaywallPattern:
        validate_pattern(pattern, kind)
        data = await self.load_record()
        new_pattern = PaywallPattern(id=str(uuid4()), name=name, pattern=pattern, kind=kind)
        data["patterns"].append(asdict(new_pattern))
        await self.save_record(data)
        self.notifier.notify(PAYWALL_UPDATED)
        return new_pattern

    async def remove_pattern(self, pattern_id: str) -> bool:
        data = await self.load_record()
        remaining = [p for p in data["patterns"] if not (isinstance(p, dict) and p.get("id") == pattern_id)]
        removed = len(remaining) != len(data["patterns"])
        data["patterns"] = remaining
        await self.save_record(data)
        self.notifier.notify(PAYWALL_UPDATED)
        return removed
