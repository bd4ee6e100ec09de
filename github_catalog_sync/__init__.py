"""Turn GitHub repositories into ranked, paginated, cached feeds.

Feeds survive GitHub's rate limits and flaky networks by seeding from a local
cache, fetching one page at a time, and exposing a small set of states per feed.
"""

from .cli import main
from .models import FeedKey, ListType
from .repository import CatalogRepository, FeedStream

__all__ = ["main", "CatalogRepository", "FeedStream", "FeedKey", "ListType"]

if __name__ == "__main__":
    main()
