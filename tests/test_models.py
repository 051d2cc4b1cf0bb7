import json

import pytest

from models import (
    FEEDS_KEY,
    FILTER_UPDATED,
    FILTERS_KEY,
    PAYWALL_KEY,
    PAYWALL_UPDATED,
    DatabaseQueue,
    FeedSource,
    FeedStore,
    FilterStore,
    Notifier,
    PaywallStore,
)


@pytest.mark.asyncio
async def test_single_url_feeds_are_migrated_and_saved_back(tmp_path):
    db = DatabaseQueue(str(tmp_path / "reader.db"))
    legacy = {
        "feeds": [{"id": "f1", "title": "Old", "url": "https://example.com/rss", "category": "c1"}],
        "categories": [{"id": "c1", "name": "News"}],
    }
    try:
        await db.execute("put_record", key=FEEDS_KEY, value=json.dumps(legacy))

        feeds = await FeedStore(db).list_feeds()

        assert feeds[0].urls == ["https://example.com/rss"]
        stored = json.loads(await db.execute("get_record", key=FEEDS_KEY))
        assert stored["feeds"][0]["urls"] == ["https://example.com/rss"]
        assert "url" not in stored["feeds"][0]
    finally:
        await db.stop()


def test_migration_leaves_current_schema_untouched():
    data = {"feeds": [{"id": "f1", "title": "New", "urls": ["https://a/rss", "https://b/rss"]}]}

    assert FeedStore.migrate(data) is False
    assert data["feeds"][0]["urls"] == ["https://a/rss", "https://b/rss"]
    assert data["categories"] == []


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["{not json", "[1, 2, 3]", '{"feeds": "oops"}', "null"])
async def test_corrupt_records_load_as_defaults(tmp_path, raw):
    db = DatabaseQueue(str(tmp_path / "reader.db"))
    try:
        for key in (FEEDS_KEY, FILTERS_KEY, PAYWALL_KEY):
            await db.execute("put_record", key=key, value=raw)

        assert await FeedStore(db).list_feeds() == []
        assert await FilterStore(db).get_hidden("f1") == []
        assert [p.id for p in await PaywallStore(db).load()] == [
            "default-subscription",
            "default-premium",
            "default-subscribe",
        ]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_feed_crud(tmp_path):
    db = DatabaseQueue(str(tmp_path / "reader.db"))
    store = FeedStore(db)
    try:
        category = await store.add_category("Tech")
        feed = await store.add_feed("Example", ["https://a/rss", "  ", "https://b/atom"], category.id)

        assert feed.urls == ["https://a/rss", "https://b/atom"]
        assert (await store.get_feed(feed.id)).category == category.id
        assert [c.name for c in await store.list_categories()] == ["Tech"]

        feed.title = "Renamed"
        assert await store.update_feed(feed)
        assert (await store.get_feed(feed.id)).title == "Renamed"

        assert await store.remove_feed(feed.id)
        assert await store.get_feed(feed.id) is None
        assert not await store.remove_feed(feed.id)
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_feed_needs_at_least_one_url(tmp_path):
    db = DatabaseQueue(str(tmp_path / "reader.db"))
    store = FeedStore(db)
    try:
        with pytest.raises(ValueError):
            await store.add_feed("Empty", ["", "   "])
        with pytest.raises(ValueError):
            await store.update_feed(FeedSource(id="x", title="x", urls=[]))
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_filter_rules_are_unique_ordered_and_notify(tmp_path):
    db = DatabaseQueue(str(tmp_path / "reader.db"))
    notifier = Notifier()
    events = []
    notifier.subscribe(FILTER_UPDATED, lambda: events.append(FILTER_UPDATED))
    store = FilterStore(db, notifier)
    try:
        assert await store.get_rule("f1") is None

        await store.add_hidden("f1", ".byline")
        await store.add_hidden("f1", "#related")
        await store.add_hidden("f1", ".byline")
        await store.add_hidden("f2", ".ad")

        assert await store.get_hidden("f1") == [".byline", "#related"]
        assert await store.get_hidden("f2") == [".ad"]

        await store.remove_hidden("f1", ".byline")
        assert await store.get_hidden("f1") == ["#related"]
        assert len(events) == 5
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_paywall_library_edits_notify(tmp_path):
    db = DatabaseQueue(str(tmp_path / "reader.db"))
    notifier = Notifier()
    events = []
    notifier.subscribe(PAYWALL_UPDATED, lambda: events.append(PAYWALL_UPDATED))
    store = PaywallStore(db, notifier)
    try:
        pattern = await store.add_pattern("Locked", "Log in to read", "text")
        assert pattern.id in [p.id for p in await store.load()]

        assert await store.remove_pattern(pattern.id)
        assert pattern.id not in [p.id for p in await store.load()]
        assert events == [PAYWALL_UPDATED, PAYWALL_UPDATED]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_records_persist_across_queues(tmp_path):
    path = str(tmp_path / "reader.db")
    first = DatabaseQueue(path)
    try:
        await FilterStore(first).add_hidden("f1", ".promo")
    finally:
        await first.stop()

    second = DatabaseQueue(path)
    try:
        assert await FilterStore(second).get_hidden("f1") == [".promo"]
    finally:
        await second.stop()


def test_notifier_isolates_failing_subscribers():
    notifier = Notifier()
    calls = []

    def broken():
        raise RuntimeError("boom")

    notifier.subscribe("evt", broken)
    notifier.subscribe("evt", lambda: calls.append("ok"))
    notifier.notify("evt")
    notifier.unsubscribe("evt", broken)
    notifier.notify("evt")

    assert calls == ["ok", "ok"]
