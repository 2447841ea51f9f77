"""Feed polling scheduler.

Each cycle fans out one unit of work per feed to a bounded thread pool:
fetch, filter, store-if-new, deliver. After every unit finished the feeds
are pruned to the retention cap and the loop sleeps until the next cycle.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime
from typing import Any

from .config import FeedConfig, SystemPolicy
from .errors import FilterError, StoreError
from .filters import skip
from .logging_config import ExecutionLogger, create_execution_logger
from .models import FeedItem
from .ports import FeedLister, FeedSource, ItemStore, NotificationSender


class Processor:
    """Polls feeds on a fixed interval and forwards new items."""

    def __init__(
        self,
        policy: SystemPolicy,
        lister: FeedLister,
        source: FeedSource,
        store: ItemStore,
        notifier: NotificationSender,
        stop_event: threading.Event | None = None,
    ):
        """Create the scheduler.

        Args:
            policy: System tunables, defaults are resolved here once
            lister: Enumerates the feeds to poll each cycle
            source: Fetches candidate items of a feed
            store: Dedup store, also provides feed subscribers
            notifier: Delivers new items
            stop_event: Cancellation token shared with the rest of the process
        """
        self.policy = policy.resolve()
        self.lister = lister
        self.source = source
        self.store = store
        self.notifier = notifier
        self._stop = stop_event or threading.Event()
        self.logger = create_execution_logger("processor")

    def run(self) -> None:
        """Poll until stop() is called."""
        self.logger.info(
            "Activate processor",
            update_interval=self.policy.update_interval,
            max_items=self.policy.max_items,
            max_keep=self.policy.max_keep,
            concurrent=self.policy.concurrent,
        )
        while not self._stop.is_set():
            self.run_once()
            self.logger.debug(
                f"Refresh completed, next iteration after {self.policy.update_interval}s"
            )
            if self._stop.wait(self.policy.update_interval):
                break
        self.logger.info("Processor stopped")

    def stop(self) -> None:
        """Drop queued work and wake the loop from its sleep."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_once(self) -> dict[str, Any]:
        """Run one polling cycle and return its metrics."""
        execution_id = f"cycle_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"
        cycle_logger = create_execution_logger("processor", execution_id)
        cycle_logger.log_execution_start()

        metrics: dict[str, Any] = {
            "feeds_total": 0,
            "feeds_processed": 0,
            "feeds_dropped": 0,
            "items_stored": 0,
            "items_pruned": 0,
            "errors": 0,
        }

        try:
            feeds = list(self.lister.feeds())
        except Exception as e:
            cycle_logger.error(f"Failed to list feeds: {e}", error=str(e))
            feeds = []
        metrics["feeds_total"] = len(feeds)

        with ThreadPoolExecutor(
            max_workers=self.policy.concurrent, thread_name_prefix="feedbot-fetch"
        ) as executor:
            futures = {
                executor.submit(self._run_unit, feed, cycle_logger): feed
                for feed in feeds
            }
            # barrier: wait for completion, not for success
            for future in as_completed(futures):
                feed = futures[future]
                try:
                    stored = future.result()
                except Exception as e:
                    metrics["errors"] += 1
                    cycle_logger.error(
                        f"Feed unit failed: {e}",
                        feed_name=feed.name,
                        error=str(e),
                        exc_info=True,
                    )
                    continue
                if stored is None:
                    metrics["feeds_dropped"] += 1
                    continue
                metrics["feeds_processed"] += 1
                metrics["items_stored"] += stored

        for feed in feeds:
            metrics["items_pruned"] += self._prune(feed, cycle_logger)

        cycle_logger.log_metrics(metrics)
        cycle_logger.log_execution_end(success=metrics["errors"] == 0)
        return metrics

    def _run_unit(self, feed: FeedConfig, logger: ExecutionLogger) -> int | None:
        # Queued units never start once cancelled
        if self._stop.is_set():
            logger.debug("Dropping queued feed, processor stopped", feed_name=feed.name)
            return None
        return self.process_feed(feed, logger)

    def process_feed(
        self, feed: FeedConfig, logger: ExecutionLogger | None = None
    ) -> int:
        """Fetch one feed, store its new items and deliver them.

        Items of a source are newest first, so once an item is already in the
        store the rest of that source is skipped for this cycle.

        Returns:
            Number of newly stored items
        """
        logger = logger or self.logger
        logger.debug(f"Fetch feed: '{feed.name}'", feed_name=feed.name)

        items = self.source.fetch(feed, self.policy.max_items)
        exhausted_sources: set[str] = set()
        stored = 0

        for item in items:
            if item.feed_url in exhausted_sources:
                continue

            try:
                if skip(feed.filter, item):
                    logger.debug(
                        "Item excluded by filter",
                        feed_name=feed.name,
                        item_title=item.title,
                    )
                    continue
            except FilterError as e:
                logger.error(str(e), feed_name=feed.name, item_title=item.title)

            try:
                created = self.store.put(feed.name, item)
            except StoreError as e:
                logger.warning(
                    f"Failed to save {item.guid} to {feed.name}: {e}",
                    feed_name=feed.name,
                    item_title=item.title,
                    error=str(e),
                )
                continue

            if not created:
                exhausted_sources.add(item.feed_url)
                continue

            stored += 1
            logger.log_item_processing(item.title, "stored")
            self.deliver(feed, item, logger)

        logger.log_feed_processing(feed.name, stored)
        return stored

    def deliver(
        self, feed: FeedConfig, item: FeedItem, logger: ExecutionLogger | None = None
    ) -> int:
        """Send an item to the feed's channel and to every subscribed chat.

        Returns:
            Number of successful sends
        """
        logger = logger or self.logger
        destinations = []
        if feed.telegram_channel:
            destinations.append(feed.telegram_channel)
        try:
            destinations.extend(str(chat_id) for chat_id in self.store.subscribers(feed.name))
        except StoreError as e:
            logger.warning(
                f"Failed to load subscribers of {feed.name}: {e}",
                feed_name=feed.name,
                error=str(e),
            )

        sent = 0
        for destination in destinations:
            try:
                self.notifier.send(destination, item)
                sent += 1
            except Exception as e:
                logger.warning(
                    f"Failed to send telegram message, url={item.enclosure_url} "
                    f"to channel={destination}: {e}",
                    feed_name=feed.name,
                    item_title=item.title,
                    error=str(e),
                )
        return sent

    def _prune(self, feed: FeedConfig, logger: ExecutionLogger) -> int:
        try:
            removed = self.store.prune(feed.name, self.policy.max_keep)
        except StoreError as e:
            logger.warning(f"Failed to remove old items, {e}", feed_name=feed.name)
            return 0
        if removed:
            logger.debug(f"Removed {removed} from {feed.name}", feed_name=feed.name)
        return removed
