"""Title filter evaluation for feed items."""

import re
from functools import lru_cache

from .config import TitleFilter
from .errors import FilterError
from .models import FeedItem


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise FilterError(f"Invalid title filter {pattern!r}: {e}") from e


def skip(title_filter: TitleFilter, item: FeedItem) -> bool:
    """Return True when the item must be excluded by the feed's filter.

    The pattern is a Python regular expression searched anywhere in the
    title, case-insensitively; a plain word acts as a substring match and
    "(?-i:...)" restores case-sensitive matching for part of a pattern.

    Raises:
        FilterError: If the pattern does not compile
    """
    if not title_filter.title:
        return False
    return _compile(title_filter.title).search(item.title) is not None
