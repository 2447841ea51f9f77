"""Feed listing collaborators used by the scheduler."""

from collections.abc import Iterable

from .config import FeedConfig, Source
from .models import Feed
from .ports import FeedLister, FeedRegistry


class ConfigFeedLister:
    """Feeds from the static configuration document."""

    def __init__(self, feeds: Iterable[FeedConfig]):
        self._feeds = tuple(feeds)

    def feeds(self) -> list[FeedConfig]:
        return list(self._feeds)


def feed_config_from_registry(feed: Feed) -> FeedConfig:
    """A registry feed is polled as a one-source feed named by its URL."""
    return FeedConfig(
        name=feed.url,
        title=feed.title,
        link=feed.url,
        sources=(Source(name=feed.title or feed.url, url=feed.url),),
    )


class RegistryFeedLister:
    """Feeds registered through the bot, read from the store on every cycle."""

    def __init__(self, registry: FeedRegistry):
        self._registry = registry

    def feeds(self) -> list[FeedConfig]:
        result: list[FeedConfig] = []
        self._registry.iterate_feeds(
            lambda feed: result.append(feed_config_from_registry(feed))
        )
        return result


class ChainFeedLister:
    """Concatenate listers; a feed name seen earlier wins."""

    def __init__(self, *listers: FeedLister):
        self._listers = listers

    def feeds(self) -> list[FeedConfig]:
        seen = set()
        result = []
        for lister in self._listers:
            for feed in lister.feeds():
                if feed.name in seen:
                    continue
                seen.add(feed.name)
                result.append(feed)
        return result
