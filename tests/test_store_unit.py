"""Unit tests for the SQLite store."""

import sqlite3
from datetime import UTC, datetime, timedelta, timezone

import pytest

from feedbot.errors import StoreError
from feedbot.models import Feed, FeedItem, User
from feedbot.store import SQLiteStore, decode_item, encode_item

BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)


def _item(n: int, published: datetime | None = None) -> FeedItem:
    return FeedItem(
        guid=f"guid-{n}",
        title=f"Item {n}",
        link=f"https://example.com/{n}",
        published=published or BASE_TIME + timedelta(minutes=n),
        description=f"<p>body {n}</p>",
        feed_url="https://example.com/rss",
    )


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(tmp_path / "var" / "feedbot.db")


class TestItemStoreUnit:
    """Unit tests for item storage, iteration and retention."""

    def test_put_creates_then_ignores_duplicate(self, store):
        assert store.put("news", _item(1)) is True
        assert store.put("news", _item(1)) is False
        assert store.count("news") == 1

    def test_same_guid_in_another_feed_is_a_new_record(self, store):
        assert store.put("news", _item(1)) is True
        assert store.put("tech", _item(1)) is True
        assert store.count("news") == 1
        assert store.count("tech") == 1

    def test_duplicate_put_keeps_first_version(self, store):
        store.put("news", _item(1))
        store.put("news", FeedItem(guid="guid-1", title="changed", link="", published=BASE_TIME))

        assert store.load("news")[0].title == "Item 1"

    def test_round_trip_preserves_fields(self, store):
        item = FeedItem(
            guid="g",
            title="Épisode 1",
            link="https://example.com/e1",
            published=datetime(2024, 3, 1, 12, 30, tzinfo=timezone(timedelta(hours=2))),
            description="<b>hi</b>",
            enclosure_url="https://example.com/e1.mp3",
            feed_url="https://example.com/rss",
        )
        store.put("podcast", item)

        assert store.load("podcast") == [item]

    def test_iterate_is_newest_first(self, store):
        for n in (2, 5, 1, 4, 3):
            store.put("news", _item(n))

        assert [item.guid for item in store.load("news")] == [
            "guid-5",
            "guid-4",
            "guid-3",
            "guid-2",
            "guid-1",
        ]

    def test_equal_publish_time_newest_insert_first(self, store):
        store.put("news", _item(1, BASE_TIME))
        store.put("news", _item(2, BASE_TIME))

        assert [item.guid for item in store.load("news")] == ["guid-2", "guid-1"]

    def test_order_uses_utc_instant_not_local_time(self, store):
        # 10:00+02:00 is 08:00 UTC, earlier than 09:00 UTC
        store.put("news", _item(1, datetime(2024, 1, 1, 10, tzinfo=timezone(timedelta(hours=2)))))
        store.put("news", _item(2, datetime(2024, 1, 1, 9, tzinfo=UTC)))

        assert [item.guid for item in store.load("news")] == ["guid-2", "guid-1"]

    def test_load_limit(self, store):
        for n in range(5):
            store.put("news", _item(n))

        assert [item.guid for item in store.load("news", limit=2)] == ["guid-4", "guid-3"]

    def test_iterate_all_feeds(self, store):
        store.put("news", _item(1))
        store.put("tech", _item(2))
        seen = []

        visited = store.iterate(lambda record: seen.append((record.feed_name, record.item.guid)))

        assert visited == 2
        assert seen == [("tech", "guid-2"), ("news", "guid-1")]

    def test_visitor_error_does_not_stop_iteration(self, store):
        for n in range(3):
            store.put("news", _item(n))
        seen = []

        def visitor(record):
            if record.item.guid == "guid-1":
                raise RuntimeError("boom")
            seen.append(record.item.guid)

        assert store.iterate(visitor, "news") == 2
        assert seen == ["guid-2", "guid-0"]

    def test_undecodable_record_is_skipped(self, store):
        store.put("news", _item(1))
        with sqlite3.connect(store.db_path) as conn:
            conn.execute(
                "INSERT INTO feed_items (feed, guid, published, data) VALUES (?, ?, ?, ?)",
                ("news", "broken", "2030-01-01T00:00:00.000000Z", "{not json"),
            )

        assert [item.guid for item in store.load("news")] == ["guid-1"]

    def test_prune_keeps_newest(self, store):
        for n in range(10):
            store.put("news", _item(n))

        assert store.prune("news", 3) == 7
        assert [item.guid for item in store.load("news")] == ["guid-9", "guid-8", "guid-7"]

    def test_prune_to_default_retention(self, store):
        for n in range(5050):
            store.put("busy", _item(n))

        assert store.prune("busy", 5000) == 50
        assert store.count("busy") == 5000
        assert store.load("busy")[-1].guid == "guid-50"

    def test_prune_under_cap_is_noop(self, store):
        store.put("news", _item(1))
        assert store.prune("news", 5) == 0
        assert store.count("news") == 1

    def test_prune_only_touches_its_feed(self, store):
        for n in range(3):
            store.put("news", _item(n))
            store.put("tech", _item(n))

        store.prune("news", 1)

        assert store.count("news") == 1
        assert store.count("tech") == 3

    def test_prune_rejects_negative(self, store):
        with pytest.raises(ValueError):
            store.prune("news", -1)

    def test_pruned_item_can_be_stored_again(self, store):
        for n in range(3):
            store.put("news", _item(n))
        store.prune("news", 2)

        assert store.put("news", _item(0)) is True

    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "feedbot.db"
        SQLiteStore(path).put("news", _item(1))

        assert SQLiteStore(path).put("news", _item(1)) is False

    def test_open_failure_raises_store_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")

        with pytest.raises(StoreError, match="Can't open store"):
            SQLiteStore(blocker / "feedbot.db")

    def test_encode_decode_naive_datetime(self):
        item = _item(1, datetime(2024, 1, 1, 8, 0))
        assert decode_item(encode_item(item)).published == datetime(2024, 1, 1, 8, 0)


class TestRegistryUnit:
    """Unit tests for the feed registry, users and subscriptions."""

    def test_save_feed_is_keyed_by_url(self, store):
        assert store.save_feed(Feed(title="A", url="https://a.example/rss")) is True
        assert store.save_feed(Feed(title="A again", url="https://a.example/rss")) is False
        assert store.feed("https://a.example/rss") == Feed(title="A", url="https://a.example/rss")

    def test_unknown_feed_is_none(self, store):
        assert store.feed("https://missing.example/rss") is None

    def test_iterate_feeds_newest_first(self, store):
        store.save_feed(Feed(title="A", url="https://a.example/rss"))
        store.save_feed(Feed(title="B", url="https://b.example/rss"))
        seen = []

        assert store.iterate_feeds(seen.append) == 2
        assert [feed.title for feed in seen] == ["B", "A"]

    def test_iterate_feeds_visitor_error_is_skipped(self, store):
        store.save_feed(Feed(title="A", url="https://a.example/rss"))
        store.save_feed(Feed(title="B", url="https://b.example/rss"))
        seen = []

        def visitor(feed):
            if feed.title == "B":
                raise RuntimeError("boom")
            seen.append(feed.title)

        assert store.iterate_feeds(visitor) == 1
        assert seen == ["A"]

    def test_save_user_upserts(self, store):
        store.save_user(User(id=42, first_name="Ann"))
        store.save_user(User(id=42, first_name="Ann", username="ann"))

        with sqlite3.connect(store.db_path) as conn:
            rows = conn.execute("SELECT id, data FROM users").fetchall()
        assert len(rows) == 1
        assert '"username": "ann"' in rows[0][1]

    def test_subscribe_and_list(self, store):
        assert store.subscribe(1, "https://a.example/rss") is True
        assert store.subscribe(1, "https://a.example/rss") is False
        store.subscribe(1, "https://b.example/rss")
        store.subscribe(2, "https://a.example/rss")

        assert store.subscriptions(1) == ["https://a.example/rss", "https://b.example/rss"]
        assert store.subscribers("https://a.example/rss") == [1, 2]

    def test_unsubscribe_one(self, store):
        store.subscribe(1, "a")
        store.subscribe(1, "b")

        assert store.unsubscribe(1, "a") == 1
        assert store.subscriptions(1) == ["b"]

    def test_unsubscribe_all(self, store):
        store.subscribe(1, "a")
        store.subscribe(1, "b")
        store.subscribe(2, "a")

        assert store.unsubscribe(1) == 2
        assert store.subscriptions(1) == []
        assert store.subscribers("a") == [2]
