"""Data models for feedbot."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class FeedItem:
    """Represents a single RSS/Atom feed item."""

    guid: str
    title: str
    link: str
    published: datetime
    description: str = ""
    enclosure_url: str = ""
    feed_url: str = ""


@dataclass(frozen=True)
class StoredItem:
    """A feed item as persisted, with the feed it belongs to."""

    feed_name: str
    item: FeedItem
    seq: int = 0


@dataclass(frozen=True)
class Feed:
    """Registry entry for a feed added through the bot, keyed by URL."""

    title: str
    url: str


@dataclass
class User:
    """Telegram user who talks to the bot."""

    id: int
    first_name: str = ""
    last_name: str = ""
    username: str = ""
