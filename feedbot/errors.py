"""Exception types raised by feedbot components."""


class FeedbotError(Exception):
    """Base class for feedbot errors."""


class ConfigError(FeedbotError):
    """Configuration document is missing or malformed."""


class StoreError(FeedbotError):
    """Persistent store could not be opened or an operation failed."""


class FilterError(FeedbotError):
    """A feed filter pattern could not be compiled."""


class TelegramError(FeedbotError):
    """Telegram Bot API request failed."""
