"""RSS Feed Processing module for feedbot."""

import hashlib
from dataclasses import replace
from datetime import UTC, datetime

import feedparser
import requests
from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from .config import FeedConfig
from .logging_config import create_execution_logger
from .models import FeedItem

# Items published longer ago than this are never stored or delivered.
MAX_ITEM_AGE = relativedelta(years=1)


class FeedProcessor:
    """Handles RSS/Atom feed download, parsing and normalization."""

    def __init__(self, timeout: int = 30, execution_id: str | None = None):
        """Initialize FeedProcessor with configuration.

        Args:
            timeout: HTTP request timeout in seconds, bounds every fetch
            execution_id: Execution ID for logging context
        """
        self.timeout = timeout
        self.logger = create_execution_logger("feed_processor", execution_id)
        self.session = requests.Session()
        self.session.headers.update(
            {"User-Agent": "feedbot/1.0 (RSS to Telegram relay)"}
        )

        self.logger.info("FeedProcessor initialized", timeout=timeout)

    def fetch(
        self, feed: FeedConfig, max_items: int, now: datetime | None = None
    ) -> list[FeedItem]:
        """Fetch the candidate items of a feed for one cycle.

        Each source is capped to its first max_items entries, then entries
        older than one year are dropped. A failing source yields no items and
        does not affect the others.

        Args:
            feed: Feed configuration
            max_items: Per-source cap
            now: Reference time for the age cutoff (defaults to current time)

        Returns:
            Items of all sources, in source order then feed order
        """
        now = now or datetime.now(UTC)
        cutoff = now - MAX_ITEM_AGE
        result = []

        for source in feed.sources:
            try:
                items = self.parse_feed(source.url)
            except Exception as e:
                self.logger.warning(
                    f"Failed to parse feed {source.url}: {e}",
                    feed_name=feed.name,
                    feed_url=source.url,
                    error=str(e),
                )
                continue

            for item in items[:max_items]:
                if item.published < cutoff:
                    self.logger.debug(
                        "Skipping item older than a year",
                        feed_name=feed.name,
                        item_title=item.title,
                    )
                    continue
                result.append(self.extend_title(item, feed.ext_date))

        return result

    def parse_feed(self, feed_url: str) -> list[FeedItem]:
        """Parse a single RSS/Atom feed.

        Args:
            feed_url: URL of the RSS/Atom feed

        Returns:
            List of FeedItem objects from the feed, in document order

        Raises:
            requests.RequestException: If feed download fails
        """
        self.logger.debug("Downloading feed content", feed_url=feed_url)
        try:
            response = self.session.get(feed_url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            self.logger.error(
                f"Failed to download feed {feed_url}: {e}",
                feed_url=feed_url,
                error=str(e),
            )
            raise

        feed = feedparser.parse(response.content)

        if feed.bozo and hasattr(feed, "bozo_exception"):
            self.logger.warning(
                f"Feed parsing warning for {feed_url}: {feed.bozo_exception}",
                feed_url=feed_url,
                bozo_exception=str(feed.bozo_exception),
            )

        items = []
        for entry in feed.entries:
            try:
                items.append(self.normalize_item(entry, feed_url))
            except Exception as e:
                self.logger.warning(
                    f"Failed to normalize entry from {feed_url}: {e}",
                    feed_url=feed_url,
                    error=str(e),
                )
                continue

        self.logger.info(
            "Successfully parsed feed",
            feed_url=feed_url,
            items_count=len(items),
            total_entries=len(feed.entries),
        )
        return items

    def normalize_item(self, raw_item, feed_url: str) -> FeedItem:
        """Normalize a raw feed entry into a FeedItem.

        Args:
            raw_item: Raw feed entry from feedparser
            feed_url: Source feed URL

        Returns:
            Normalized FeedItem object
        """
        title = getattr(raw_item, "title", None) or ""
        link = getattr(raw_item, "link", None) or ""
        entry_date = self.entry_date(raw_item)
        published = entry_date or datetime.now(UTC)

        # Keep the markup, it is sanitized when the message is formatted
        description = ""
        if getattr(raw_item, "summary", None):
            description = raw_item.summary
        elif getattr(raw_item, "description", None):
            description = raw_item.description
        elif getattr(raw_item, "content", None):
            content = raw_item.content
            if isinstance(content, list) and content:
                description = content[0].get("value", "")
            else:
                description = str(content)

        guid = getattr(raw_item, "id", None) or getattr(raw_item, "guid", None)
        if not guid:
            guid = self.generate_guid(feed_url, link or str(title), entry_date)

        return FeedItem(
            guid=str(guid),
            title=str(title).strip(),
            link=str(link),
            published=published,
            description=str(description),
            enclosure_url=self.extract_enclosure(raw_item),
            feed_url=feed_url,
        )

    def parse_published(self, raw_item) -> datetime:
        """Parse the entry date, falling back to the current time."""
        return self.entry_date(raw_item) or datetime.now(UTC)

    def entry_date(self, raw_item) -> datetime | None:
        """Parse the published (or updated) date of an entry, None if it has none."""
        published_str = getattr(raw_item, "published", None) or getattr(
            raw_item, "updated", None
        )
        if published_str:
            try:
                published = date_parser.parse(published_str)
                if published.tzinfo is None:
                    published = published.replace(tzinfo=UTC)
                return published
            except (ValueError, TypeError, OverflowError):
                self.logger.debug(
                    "Unparseable entry date",
                    published=str(published_str),
                )
        return None

    def extract_enclosure(self, raw_item) -> str:
        """Return the first enclosure URL of an entry, or an empty string."""
        enclosures = getattr(raw_item, "enclosures", None)
        if isinstance(enclosures, list):
            for enclosure in enclosures:
                href = enclosure.get("href") or enclosure.get("url")
                if href:
                    return str(href)

        links = getattr(raw_item, "links", None)
        if isinstance(links, list):
            for entry_link in links:
                if entry_link.get("rel") == "enclosure" and entry_link.get("href"):
                    return str(entry_link["href"])
        return ""

    def generate_guid(
        self, feed_url: str, key: str, published: datetime | None = None
    ) -> str:
        """Stable identifier for entries that carry no GUID.

        SHA256 of feed_url + key (the link, or the title when there is no
        link) + the entry date. Entries without a date of their own hash
        without one, so the identifier is the same on every fetch.
        """
        stamp = published.isoformat() if published else ""
        hash_input = f"{feed_url}{key}{stamp}"
        return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()

    def extend_title(self, item: FeedItem, ext_date: str) -> FeedItem:
        """Append the publish date to the title when the feed asks for it.

        ext_date is a pattern made of yyyy, mm and dd tokens, for example
        "yyyymmdd" turns "Episode 1" into "Episode 1 (20240115)".
        """
        if not ext_date:
            return item
        fmt = ext_date.replace("yyyy", "%Y").replace("mm", "%m").replace("dd", "%d")
        stamp = item.published.strftime(fmt)
        return replace(item, title=f"{item.title} ({stamp})")
