"""Process entry point: wires configuration, store, scheduler and bot."""

import argparse
import os
import signal
import threading

from .bot import CommandBot
from .config import Settings, load_config, parse_duration, single_feed_config
from .errors import ConfigError, StoreError
from .feeds import ChainFeedLister, ConfigFeedLister, RegistryFeedLister
from .logging_config import create_execution_logger, setup_structured_logging
from .processor import Processor
from .rss import FeedProcessor
from .store import SQLiteStore
from .telegram import TelegramClient


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def build_parser() -> argparse.ArgumentParser:
    """Command line options; every option falls back to an environment variable."""
    parser = argparse.ArgumentParser(
        prog="feedbot", description="Relay RSS/Atom feeds to Telegram"
    )
    parser.add_argument(
        "-c", "--db", default=os.getenv("FM_DB", "var/feedbot.db"), help="store file"
    )
    parser.add_argument(
        "-f", "--conf", default=os.getenv("FM_CONF", "feedbot.yml"), help="config file (yml)"
    )
    parser.add_argument(
        "--feed", default=os.getenv("FM_FEED", ""), help="single feed, overrides config"
    )
    parser.add_argument(
        "--update-interval",
        default=os.getenv("UPDATE_INTERVAL", ""),
        help="update interval, e.g. 5m, overrides config",
    )
    parser.add_argument(
        "--telegram-server",
        default=os.getenv("TELEGRAM_SERVER", ""),
        help="telegram bot api server",
    )
    parser.add_argument(
        "--telegram-token", default=os.getenv("TELEGRAM_TOKEN", ""), help="telegram token"
    )
    parser.add_argument(
        "--telegram-timeout",
        default=os.getenv("TELEGRAM_TIMEOUT", ""),
        help="telegram long-poll timeout, e.g. 1m",
    )
    parser.add_argument(
        "--dbg", action="store_true", default=_env_flag("DEBUG"), help="debug mode"
    )
    return parser


def load_settings(opts: argparse.Namespace) -> Settings:
    """Resolve settings from the config file (or --feed) plus overrides.

    Raises:
        ConfigError: If the config can't be loaded or an override is malformed
    """
    update_interval = parse_duration(opts.update_interval)
    if opts.feed:
        settings = single_feed_config(opts.feed, update_interval)
    else:
        settings = load_config(opts.conf)

    return settings.with_overrides(
        update_interval=update_interval,
        telegram_token=opts.telegram_token,
        telegram_server=opts.telegram_server,
        telegram_timeout=parse_duration(opts.telegram_timeout),
    )


def main(argv: list[str] | None = None) -> int:
    """Run until interrupted. Returns the process exit code."""
    opts = build_parser().parse_args(argv)
    setup_structured_logging("DEBUG" if opts.dbg else os.getenv("LOG_LEVEL", "INFO"))
    logger = create_execution_logger("main")

    try:
        settings = load_settings(opts)
    except ConfigError as e:
        logger.error(f"Can't load config {opts.conf}: {e}", error=str(e))
        return 1

    if not settings.telegram.bot_token:
        logger.error("Telegram token is required, set TELEGRAM_TOKEN")
        return 1

    try:
        store = SQLiteStore(opts.db)
    except StoreError as e:
        logger.error(f"Can't open db {opts.db}: {e}", error=str(e))
        return 1

    stop_event = threading.Event()
    telegram = TelegramClient(settings.telegram)
    lister = ChainFeedLister(ConfigFeedLister(settings.feeds), RegistryFeedLister(store))
    processor = Processor(
        settings.system, lister, FeedProcessor(), store, telegram, stop_event
    )
    bot = CommandBot(telegram, store, stop_event)

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    threads = [
        threading.Thread(target=processor.run, name="feedbot-processor", daemon=True),
        threading.Thread(target=bot.run, name="feedbot-bot", daemon=True),
    ]
    logger.log_execution_start(feeds=len(settings.feeds), db=opts.db)
    for thread in threads:
        thread.start()

    while not stop_event.wait(1.0):
        pass

    for thread in threads:
        # the bot may sit in a long poll, daemon threads don't block exit
        thread.join(timeout=5)
    logger.log_execution_end(success=True)
    return 0
