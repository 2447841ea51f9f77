"""SQLite-backed persistent store for feed items, feeds and subscriptions."""

import json
import os
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import closing, contextmanager
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path

from dateutil import parser as date_parser

from .errors import StoreError
from .logging_config import create_execution_logger
from .models import Feed, FeedItem, StoredItem, User

_SCHEMA = (
    # feed_items: one row per (feed, guid); the unique key is the dedup check
    """
    CREATE TABLE IF NOT EXISTS feed_items (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        feed TEXT NOT NULL,
        guid TEXT NOT NULL,
        published TEXT NOT NULL,
        data TEXT NOT NULL,
        UNIQUE (feed, guid)
    )
    """,
    "CREATE INDEX IF NOT EXISTS feed_items_order ON feed_items (feed, published, seq)",
    # feeds: registry of feeds added through the bot, keyed only by URL
    """
    CREATE TABLE IF NOT EXISTS feeds (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL UNIQUE,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        chat_id INTEGER NOT NULL,
        feed TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (chat_id, feed)
    )
    """,
)


def _sort_key(published: datetime) -> str:
    """Fixed-width UTC timestamp so rows sort lexically by publish time."""
    if published.tzinfo is None:
        published = published.replace(tzinfo=UTC)
    return published.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def encode_item(item: FeedItem) -> str:
    data = asdict(item)
    data["published"] = item.published.isoformat()
    return json.dumps(data, ensure_ascii=False)


def decode_item(raw: str) -> FeedItem:
    data = json.loads(raw)
    data["published"] = date_parser.isoparse(data["published"])
    return FeedItem(**data)


class SQLiteStore:
    """Persistent store that satisfies the ItemStore contract.

    Every public operation opens its own connection and runs inside a single
    transaction, so the scheduler workers and the bot thread can share one
    instance without extra locking.
    """

    def __init__(self, db_path: str | Path, timeout: float = 5.0):
        """Open (and create if needed) the database file.

        Args:
            db_path: Path of the SQLite file
            timeout: Seconds to wait on a locked database

        Raises:
            StoreError: If the directory or the database cannot be opened
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self.logger = create_execution_logger("store")

        self.logger.info("Opening persistent store", db_path=self.db_path)
        directory = os.path.dirname(self.db_path)
        try:
            if directory:
                os.makedirs(directory, mode=0o700, exist_ok=True)
            with self._transaction() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                for statement in _SCHEMA:
                    conn.execute(statement)
        except (OSError, StoreError) as e:
            raise StoreError(f"Can't open store {self.db_path}: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(self._connect()) as conn:
                with conn:
                    yield conn
        except sqlite3.Error as e:
            raise StoreError(f"{self.db_path}: {e}") from e

    def put(self, feed_name: str, item: FeedItem) -> bool:
        """Store an item unless (feed_name, guid) is already present.

        Returns:
            True if the record was created, False if it already existed

        Raises:
            StoreError: If the item can't be serialized or written
        """
        try:
            data = encode_item(item)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Can't serialize item {item.guid}: {e}") from e

        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO feed_items (feed, guid, published, data)
                VALUES (?, ?, ?, ?)
                """,
                (feed_name, item.guid, _sort_key(item.published), data),
            )
            created = cur.rowcount == 1

        if created:
            self.logger.debug(
                "Stored item", feed_name=feed_name, item_title=item.title
            )
        return created

    def iterate(
        self, visitor: Callable[[StoredItem], None], feed_name: str | None = None
    ) -> int:
        """Visit stored records newest-first, for one feed or for all feeds.

        Records that can't be decoded and visitor exceptions are logged and
        skipped. Returns the number of records visited successfully.
        """
        query = "SELECT seq, feed, data FROM feed_items"
        params: tuple = ()
        if feed_name is not None:
            query += " WHERE feed = ?"
            params = (feed_name,)
        query += " ORDER BY published DESC, seq DESC"

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()

        visited = 0
        for row in rows:
            try:
                record = StoredItem(
                    feed_name=row["feed"], item=decode_item(row["data"]), seq=row["seq"]
                )
            except (ValueError, TypeError, KeyError) as e:
                self.logger.warning(
                    f"Failed to decode stored item {row['seq']}: {e}",
                    feed_name=row["feed"],
                    error=str(e),
                )
                continue
            try:
                visitor(record)
                visited += 1
            except Exception as e:
                self.logger.warning(
                    f"Visitor failed on stored item: {e}",
                    feed_name=record.feed_name,
                    item_title=record.item.title,
                    error=str(e),
                )
        return visited

    def load(self, feed_name: str, limit: int | None = None) -> list[FeedItem]:
        """Return up to limit items of a feed, newest first."""
        items: list[FeedItem] = []
        self.iterate(lambda record: items.append(record.item), feed_name)
        return items[:limit] if limit is not None else items

    def count(self, feed_name: str) -> int:
        """Number of records kept for a feed."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM feed_items WHERE feed = ?", (feed_name,)
            ).fetchone()
        return int(row["n"])

    def prune(self, feed_name: str, max_keep: int) -> int:
        """Delete the oldest records of a feed beyond max_keep.

        Returns:
            Number of records removed
        """
        if max_keep < 0:
            raise ValueError("max_keep must be >= 0")
        with self._transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM feed_items
                WHERE feed = ? AND seq NOT IN (
                    SELECT seq FROM feed_items WHERE feed = ?
                    ORDER BY published DESC, seq DESC
                    LIMIT ?
                )
                """,
                (feed_name, feed_name, max_keep),
            )
            removed = cur.rowcount

        if removed:
            self.logger.debug(
                f"Removed {removed} old items", feed_name=feed_name, removed=removed
            )
        return removed

    def save_feed(self, feed: Feed) -> bool:
        """Register a feed by URL. Returns False if the URL was already known."""
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO feeds (url, data) VALUES (?, ?)",
                (feed.url, json.dumps(asdict(feed), ensure_ascii=False)),
            )
            created = cur.rowcount == 1
        if created:
            self.logger.info("Registered feed", feed_url=feed.url)
        return created

    def iterate_feeds(self, visitor: Callable[[Feed], None]) -> int:
        """Visit registered feeds, most recently added first.

        Visitor errors are logged and do not stop the walk.
        """
        with self._transaction() as conn:
            rows = conn.execute("SELECT url, data FROM feeds ORDER BY seq DESC").fetchall()

        visited = 0
        for row in rows:
            try:
                feed = Feed(**json.loads(row["data"]))
                visitor(feed)
                visited += 1
            except Exception as e:
                self.logger.warning(
                    f"Failed to visit feed {row['url']}: {e}",
                    feed_url=row["url"],
                    error=str(e),
                )
        return visited

    def feed(self, url: str) -> Feed | None:
        """Look up a registered feed by URL."""
        with self._transaction() as conn:
            row = conn.execute("SELECT data FROM feeds WHERE url = ?", (url,)).fetchone()
        return Feed(**json.loads(row["data"])) if row else None

    def save_user(self, user: User) -> None:
        """Upsert the display fields of a bot user."""
        data = {
            "first_name": user.first_name,
            "last_name": user.last_name,
            "username": user.username,
        }
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO users (id, data) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data
                """,
                (user.id, json.dumps(data, ensure_ascii=False)),
            )

    def subscribe(self, chat_id: int, feed_name: str) -> bool:
        """Subscribe a chat to a feed. Returns False if already subscribed."""
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO subscriptions (chat_id, feed, created_at)
                VALUES (?, ?, ?)
                """,
                (chat_id, feed_name, datetime.now(UTC).isoformat()),
            )
            return cur.rowcount == 1

    def unsubscribe(self, chat_id: int, feed_name: str | None = None) -> int:
        """Remove one subscription, or all of a chat's when feed_name is None."""
        with self._transaction() as conn:
            if feed_name is None:
                cur = conn.execute(
                    "DELETE FROM subscriptions WHERE chat_id = ?", (chat_id,)
                )
            else:
                cur = conn.execute(
                    "DELETE FROM subscriptions WHERE chat_id = ? AND feed = ?",
                    (chat_id, feed_name),
                )
            return cur.rowcount

    def subscriptions(self, chat_id: int) -> list[str]:
        """Feed names a chat is subscribed to, in subscription order."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT feed FROM subscriptions WHERE chat_id = ? ORDER BY rowid",
                (chat_id,),
            ).fetchall()
        return [row["feed"] for row in rows]

    def subscribers(self, feed_name: str) -> list[int]:
        """Chat ids subscribed to a feed."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT chat_id FROM subscriptions WHERE feed = ? ORDER BY rowid",
                (feed_name,),
            ).fetchall()
        return [int(row["chat_id"]) for row in rows]
