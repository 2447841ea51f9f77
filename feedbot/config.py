"""Configuration management for feedbot."""

import re
from dataclasses import dataclass, replace
from pathlib import Path

import yaml

from .errors import ConfigError

DEFAULT_UPDATE_INTERVAL = 300.0
DEFAULT_MAX_ITEMS = 5
DEFAULT_MAX_TOTAL = 100
DEFAULT_MAX_KEEP = 5000
DEFAULT_CONCURRENT = 8

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value) -> float:
    """Convert a duration into seconds.

    Accepts numbers (seconds) and Go-style strings such as "90s", "5m" or
    "1h30m". Empty values map to 0.
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigError(f"Invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class Source:
    """One source URL contributing items to a feed."""

    name: str
    url: str


@dataclass(frozen=True)
class TitleFilter:
    """Exclude items whose title matches the pattern."""

    title: str = ""


@dataclass(frozen=True)
class FeedConfig:
    """Configuration for one logical feed."""

    name: str
    title: str = ""
    description: str = ""
    link: str = ""
    image: str = ""
    language: str = ""
    sources: tuple[Source, ...] = ()
    filter: TitleFilter = TitleFilter()
    ext_date: str = ""
    telegram_channel: str = ""


@dataclass(frozen=True)
class SystemPolicy:
    """Numeric tunables for the scheduler.

    Zero means "use the default"; call resolve() once before the scheduler
    starts and treat the result as constant.
    """

    update_interval: float = 0.0
    max_items: int = 0
    max_total: int = 0
    max_keep: int = 0
    concurrent: int = 0

    def resolve(self) -> "SystemPolicy":
        """Return a copy with every unset value replaced by its default."""
        return SystemPolicy(
            update_interval=self.update_interval or DEFAULT_UPDATE_INTERVAL,
            max_items=self.max_items or DEFAULT_MAX_ITEMS,
            max_total=self.max_total or DEFAULT_MAX_TOTAL,
            max_keep=self.max_keep or DEFAULT_MAX_KEEP,
            concurrent=self.concurrent or DEFAULT_CONCURRENT,
        )


@dataclass(frozen=True)
class TelegramConfig:
    """Configuration for Telegram Bot API."""

    bot_token: str = ""
    server: str = "https://api.telegram.org"
    timeout: float = 60.0
    parse_mode: str = "HTML"
    retry_attempts: int = 3
    backoff_factor: float = 2.0


@dataclass(frozen=True)
class Settings:
    """Everything loaded from the configuration document."""

    feeds: tuple[FeedConfig, ...] = ()
    system: SystemPolicy = SystemPolicy()
    telegram: TelegramConfig = TelegramConfig()

    def with_overrides(
        self,
        update_interval: float = 0.0,
        telegram_token: str = "",
        telegram_server: str = "",
        telegram_timeout: float = 0.0,
    ) -> "Settings":
        """Apply environment/CLI overrides; empty values keep the file's value."""
        system = self.system
        if update_interval:
            system = replace(system, update_interval=update_interval)

        telegram = self.telegram
        if telegram_token:
            telegram = replace(telegram, bot_token=telegram_token)
        if telegram_server:
            telegram = replace(telegram, server=telegram_server)
        if telegram_timeout:
            telegram = replace(telegram, timeout=telegram_timeout)

        return replace(self, system=system, telegram=telegram)


def _feed_from_dict(name: str, data: dict) -> FeedConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"Feed {name!r} must be a mapping")

    sources = []
    for entry in data.get("sources") or []:
        if not isinstance(entry, dict) or not entry.get("url"):
            raise ConfigError(f"Feed {name!r} has a source without url")
        sources.append(Source(name=str(entry.get("name", "")), url=str(entry["url"])))

    filter_data = data.get("filter") or {}
    if not isinstance(filter_data, dict):
        raise ConfigError(f"Feed {name!r} filter must be a mapping")

    return FeedConfig(
        name=name,
        title=str(data.get("title", "")),
        description=str(data.get("description", "")),
        link=str(data.get("link", "")),
        image=str(data.get("image", "")),
        language=str(data.get("language", "")),
        sources=tuple(sources),
        filter=TitleFilter(title=str(filter_data.get("title", ""))),
        ext_date=str(data.get("ext_date", "")),
        telegram_channel=str(data.get("telegram_channel", "")),
    )


def _int_value(section: dict, key: str) -> int:
    value = section.get(key) or 0
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"system.{key} must be an integer, got {value!r}") from e


def parse_config(data: dict | None) -> Settings:
    """Build Settings from an already-decoded YAML document."""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    feeds_data = data.get("feeds") or {}
    if not isinstance(feeds_data, dict):
        raise ConfigError("'feeds' must be a mapping of feed name to feed")
    feeds = tuple(_feed_from_dict(str(name), body) for name, body in feeds_data.items())

    system_data = data.get("system") or {}
    system = SystemPolicy(
        update_interval=parse_duration(system_data.get("update")),
        max_items=_int_value(system_data, "max_per_feed"),
        max_total=_int_value(system_data, "max_total"),
        max_keep=_int_value(system_data, "max_keep"),
        concurrent=_int_value(system_data, "concurrent"),
    )

    telegram_data = data.get("telegram") or {}
    telegram = TelegramConfig(
        bot_token=str(telegram_data.get("token", "")),
        server=str(telegram_data.get("server", TelegramConfig.server)),
        timeout=parse_duration(telegram_data.get("timeout")) or TelegramConfig.timeout,
    )

    return Settings(feeds=feeds, system=system, telegram=telegram)


def load_config(path: str | Path) -> Settings:
    """Load settings from a YAML file."""
    config_file = Path(path)
    if not config_file.exists():
        raise ConfigError(f"Config file not found: {config_file}")

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {config_file}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Error reading config file {config_file}: {e}") from e

    return parse_config(data)


def single_feed_config(feed_url: str, update_interval: float = 0.0) -> Settings:
    """Settings for polling one feed URL without a config file."""
    feed = FeedConfig(name="auto", sources=(Source(name="auto", url=feed_url),))
    return Settings(
        feeds=(feed,),
        system=SystemPolicy(update_interval=update_interval),
    )
