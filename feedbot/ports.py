"""Capability interfaces used by the scheduler and the bot.

The processor depends only on these protocols, so tests can drive it with
in-memory fakes instead of SQLite, HTTP and Telegram.
"""

from collections.abc import Callable, Iterable
from typing import Protocol

from .config import FeedConfig
from .models import Feed, FeedItem


class ItemStore(Protocol):
    """Storage operations required by the scheduler."""

    def put(self, feed_name: str, item: FeedItem) -> bool:
        ...

    def prune(self, feed_name: str, max_keep: int) -> int:
        ...

    def subscribers(self, feed_name: str) -> list[int]:
        ...


class FeedRegistry(Protocol):
    """Read access to feeds registered through the bot."""

    def iterate_feeds(self, visitor: Callable[[Feed], None]) -> int:
        ...


class NotificationSender(Protocol):
    """Delivers one item to one chat or channel."""

    def send(self, channel_id: str, item: FeedItem) -> None:
        ...


class FeedSource(Protocol):
    """Fetches the candidate items of a feed for one cycle."""

    def fetch(self, feed: FeedConfig, max_items: int) -> list[FeedItem]:
        ...


class FeedLister(Protocol):
    """Enumerates the feeds to poll on each cycle."""

    def feeds(self) -> Iterable[FeedConfig]:
        ...
