"""Catalog orchestration: feeds, pagination, cache seeding and state streams.

Each open FeedKey owns one ``_Feed``: its visible entries, its next-page
cursor, a generation counter and at most one in-flight fetch task. Every fetch
captures the generation it was started under; a response is applied only if
the generation is still current, so a superseded request can never overwrite
newer state. All feed mutation happens on the event loop; disk I/O for the
cache and the vault goes through ``asyncio.to_thread``.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable

from .banner import BannerResolver
from .cache import CacheStore
from .errors import CatalogError
from .github import GitHubCatalogClient
from .models import (
    Credential,
    DeveloperProfile,
    ErrorKind,
    FeedKey,
    FeedPage,
    ListType,
    RepositoryDetails,
    RepositoryEntry,
    utcnow,
)
from .pagination import dedupe_entries, merge_page
from .presentation import FEATURED_RAIL_SIZE, error_message, featured_rail
from .readme import extract_screenshots
from .settings import Settings, get_settings
from .states import Empty, Error, FeedState, Idle, Loading, LoadingMore, Success
from .vault import CredentialVault, create_vault

logger = logging.getLogger(__name__)

_REFRESH = "refresh"
_MORE = "more"


class FeedStream:
    """Ordered states of one feed, as seen by one subscriber.

    The state current at subscription time is delivered first, then every
    later transition in the order it happened.
    """

    def __init__(self, feed: "_Feed"):
        self._feed = feed
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queue.put_nowait(feed.state)
        feed.subscribers.append(self)

    @property
    def value(self) -> FeedState:
        return self._feed.state

    @property
    def key(self) -> FeedKey:
        return self._feed.key

    def _push(self, state: FeedState) -> None:
        self._queue.put_nowait(state)

    async def get(self) -> FeedState:
        return await self._queue.get()

    def drain(self) -> list[FeedState]:
        """States delivered but not yet consumed, without waiting."""
        states = []
        while not self._queue.empty():
            states.append(self._queue.get_nowait())
        return states

    def close(self) -> None:
        if self in self._feed.subscribers:
            self._feed.subscribers.remove(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> FeedState:
        return await self._queue.get()


@dataclass(eq=False)
class _Feed:
    key: FeedKey
    state: FeedState = field(default_factory=Idle)
    entries: tuple[RepositoryEntry, ...] = ()
    cursor: str | None = None
    generation: int = 0
    opened: bool = False
    task: asyncio.Task | None = None
    task_kind: str | None = None
    subscribers: list[FeedStream] = field(default_factory=list)

    def in_flight(self) -> bool:
        return self.task is not None and not self.task.done()


class CatalogRepository:
    """Single entry point for consumers of the catalog.

    ``open``, ``refresh``, ``load_more``, ``retry`` and ``search`` never block:
    they schedule work and return the task (or None when nothing was started).
    Results arrive on the feed's FeedStream.
    """

    def __init__(
        self,
        client: GitHubCatalogClient,
        cache: CacheStore,
        vault: CredentialVault | None = None,
        settings: Settings | None = None,
        banners: BannerResolver | None = None,
    ):
        self.client = client
        self.cache = cache
        self.vault = vault
        self.settings = settings or get_settings()
        self.banners = banners or BannerResolver(max_probes=self.settings.banner_max_probes)
        self._feeds: dict[FeedKey, _Feed] = {}
        self._search = _Feed(FeedKey.search(""))
        self._occurrences = itertools.count(1)

    @classmethod
    def create(cls, settings: Settings | None = None) -> "CatalogRepository":
        """Wire the repository from settings: httpx client, feed cache and vault."""
        settings = settings or get_settings()
        cache = CacheStore(
            Path(settings.cache_dir) / "feeds",
            ttl=timedelta(seconds=settings.cache_ttl_seconds),
            stale_after=timedelta(seconds=settings.stale_after_seconds),
        )
        return cls(GitHubCatalogClient(settings), cache, create_vault(settings), settings=settings)

    @property
    def monitor(self):
        return self.client.monitor

    def _feed_for(self, key: FeedKey) -> _Feed:
        if key.list_type is ListType.SEARCH:
            return self._search
        feed = self._feeds.get(key)
        if feed is None:
            feed = self._feeds[key] = _Feed(key)
        return feed

    def _emit(self, feed: _Feed, state: FeedState) -> None:
        feed.state = state
        logger.debug("%s -> %s", feed.key.describe(), type(state).__name__)
        for stream in list(feed.subscribers):
            stream._push(state)

    def _start(self, feed: _Feed, load: Callable[[], Awaitable[None]], kind: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(feed, feed.generation, load))
        feed.task = task
        feed.task_kind = kind

        def _done(t: asyncio.Task) -> None:
            if feed.task is t:
                feed.task = None
                feed.task_kind = None

        task.add_done_callback(_done)
        return task

    async def _run(self, feed: _Feed, generation: int, load: Callable[[], Awaitable[None]]) -> None:
        try:
            await load()
        except asyncio.CancelledError:
            logger.debug("Fetch for %s cancelled", feed.key.describe())
            raise
        except Exception:
            # Background task boundary: surface as an error state instead of losing it
            logger.exception("Unexpected failure loading %s", feed.key.describe())
            if generation == feed.generation:
                self._emit(
                    feed,
                    Error(
                        "Something went wrong while loading. Try again.",
                        ErrorKind.TRANSIENT,
                        entries=feed.entries,
                        occurrence=next(self._occurrences),
                    ),
                )

    async def _credential(self) -> Credential | None:
        if self.vault is None:
            return None
        try:
            return await asyncio.to_thread(self.vault.get)
        except OSError as e:
            logger.warning("Credential store unreadable, continuing signed out: %s", e)
            return None

    async def resolve_token(self) -> tuple[str | None, bool]:
        """Token to send, and whether it came from a stored credential."""
        credential = await self._credential()
        if credential is not None:
            return credential.token, True
        return self.settings.github_token, False

    # Feed operations

    def open(self, key: FeedKey) -> FeedStream:
        """Stream of states for ``key``; the first open seeds from cache and fetches."""
        feed = self._feed_for(key)
        if key.list_type is ListType.SEARCH:
            if key.query and key != feed.key:
                self.search(key.query, category=key.category)
            return FeedStream(feed)

        if feed.opened:
            return FeedStream(feed)

        feed.opened = True
        self._emit(feed, Loading())
        stream = FeedStream(feed)
        self._start(feed, partial(self._open_feed, feed, feed.generation), _REFRESH)
        return stream

    def search_stream(self) -> FeedStream:
        return FeedStream(self._search)

    def refresh(self, key: FeedKey) -> asyncio.Task | None:
        """Reload page 1. Joins a page-1 fetch already in flight for ``key``."""
        feed = self._feed_for(key)
        if key.list_type is ListType.SEARCH and key != feed.key:
            return self.search(key.query or "", category=key.category)
        if key.list_type is ListType.SEARCH and not feed.key.query:
            return None
        return self._refresh_feed(feed)

    def _refresh_feed(self, feed: _Feed) -> asyncio.Task:
        if feed.in_flight():
            if feed.task_kind == _REFRESH:
                return feed.task
            feed.task.cancel()
        feed.opened = True
        feed.generation += 1
        feed.entries = ()
        feed.cursor = None
        self._emit(feed, Loading())
        return self._start(feed, partial(self._fetch_page, feed, feed.generation, append=False), _REFRESH)

    def load_more(self, key: FeedKey) -> asyncio.Task | None:
        """Fetch the next page if there is one and nothing is in flight."""
        feed = self._feed_for(key)
        if key.list_type is ListType.SEARCH and key != feed.key:
            return None
        if feed.in_flight():
            return feed.task
        if not isinstance(feed.state, Success) or feed.cursor is None:
            return None
        self._emit(feed, LoadingMore(feed.entries))
        return self._start(feed, partial(self._fetch_page, feed, feed.generation, append=True), _MORE)

    def retry(self, key: FeedKey) -> asyncio.Task | None:
        """Repeat the failed load; only meaningful from an Error state."""
        feed = self._feed_for(key)
        if not isinstance(feed.state, Error):
            return None
        if feed.key.list_type is ListType.SEARCH and not feed.key.query:
            return None
        return self._refresh_feed(feed)

    def search(self, text: str, category: str | None = None) -> asyncio.Task | None:
        """Start a search; the most recent query always wins. Empty text resets to Idle."""
        feed = self._search
        new_key = FeedKey.search(text, category=category)
        if new_key.query and new_key == feed.key and feed.in_flight() and feed.task_kind == _REFRESH:
            return feed.task

        if feed.in_flight():
            feed.task.cancel()
        feed.task = None
        feed.task_kind = None
        feed.generation += 1
        feed.key = new_key
        feed.entries = ()
        feed.cursor = None

        if not new_key.query:
            feed.opened = False
            self._emit(feed, Idle())
            return None

        feed.opened = True
        self._emit(feed, Loading())
        return self._start(feed, partial(self._fetch_page, feed, feed.generation, append=False), _REFRESH)

    async def join(self, key: FeedKey) -> FeedState:
        """Wait until nothing is in flight for ``key``; returns the resulting state."""
        feed = self._feed_for(key)
        while feed.in_flight():
            await asyncio.wait({feed.task})
        return feed.state

    def state(self, key: FeedKey) -> FeedState:
        return self._feed_for(key).state

    def featured_rail(self, key: FeedKey, size: int = FEATURED_RAIL_SIZE) -> tuple[RepositoryEntry, ...]:
        return featured_rail(self._feed_for(key).entries, size=size)

    async def _open_feed(self, feed: _Feed, generation: int) -> None:
        cached = await asyncio.to_thread(self.cache.get, feed.key)
        if generation != feed.generation:
            return
        if cached is not None and cached.entries:
            feed.entries = dedupe_entries(cached.entries)
            feed.cursor = cached.next_cursor
            logger.debug(
                "Seeded %s from cache (%d entries, stale=%s)", feed.key.describe(), len(feed.entries), cached.stale
            )
            self._emit(feed, Success(feed.entries, from_cache=True))
        await self._fetch_page(feed, generation, append=False)

    async def _fetch_page(self, feed: _Feed, generation: int, append: bool) -> None:
        key = feed.key
        cursor = feed.cursor if append else None
        started = utcnow()
        token, signed_in = await self.resolve_token()
        try:
            page = await self.client.list_repositories(key, cursor=cursor, token=token)
        except CatalogError as e:
            if generation != feed.generation:
                logger.debug("Dropping error for superseded fetch of %s", key.describe())
                return
            self._fail(feed, e, signed_in)
            return

        if generation != feed.generation:
            logger.debug("Discarding superseded response for %s", key.describe())
            return

        if append:
            merged = merge_page(feed.entries, feed.cursor, page.entries, page.next_cursor)
        else:
            merged = merge_page((), None, page.entries, page.next_cursor)

        # Persist before the final state goes out: a consumer reacting to it
        # must find nothing in flight. Search results are never read back.
        if key.list_type is not ListType.SEARCH:
            snapshot = FeedPage(key=key, entries=merged.entries, next_cursor=merged.cursor, fetched_at=started)
            await asyncio.to_thread(self.cache.put, key, snapshot)
            if generation != feed.generation:
                logger.debug("Discarding superseded response for %s", key.describe())
                return

        feed.entries = merged.entries
        feed.cursor = merged.cursor
        logger.info(
            "%s: +%d entries (%d total)%s",
            key.describe(),
            merged.added,
            len(feed.entries),
            "" if feed.cursor else ", exhausted",
        )
        if feed.entries:
            self._emit(feed, Success(feed.entries))
        else:
            self._emit(feed, Empty())

    def _fail(self, feed: _Feed, error: CatalogError, signed_in: bool) -> None:
        key = feed.key
        if error.kind is ErrorKind.NOT_FOUND and key.list_type is not ListType.DEVELOPER and not feed.entries:
            self._emit(feed, Empty())
            return
        subject = "Developer" if key.list_type is ListType.DEVELOPER else "Feed"
        logger.warning("Loading %s failed (%s): %s", key.describe(), error.kind.value, error.message)
        self._emit(
            feed,
            Error(
                error_message(error, subject=subject),
                error.kind,
                entries=feed.entries,
                offer_sign_in=error.kind is ErrorKind.RATE_LIMITED and not signed_in,
                occurrence=next(self._occurrences),
            ),
        )

    # Single-entity lookups

    async def get_developer(self, login: str) -> DeveloperProfile:
        token, _ = await self.resolve_token()
        return await self.client.get_user(login, token=token)

    async def load_details(self, owner: str, repo: str) -> RepositoryDetails:
        """Repository, latest release, README and README screenshots.

        Only the repository itself is required; release and README failures
        leave those parts empty.
        """
        token, _ = await self.resolve_token()
        entry = await self.client.get_repository(owner, repo, token=token)
        releases, readme = await asyncio.gather(
            self.client.get_releases(owner, repo, token=token),
            self.client.get_readme(owner, repo, token=token),
            return_exceptions=True,
        )
        if isinstance(releases, CatalogError):
            logger.info("Releases of %s unavailable: %s", entry.full_name, releases.message)
            releases = []
        elif isinstance(releases, BaseException):
            raise releases
        if isinstance(readme, CatalogError):
            logger.info("README of %s unavailable: %s", entry.full_name, readme.message)
            readme = None
        elif isinstance(readme, BaseException):
            raise readme

        screenshots = extract_screenshots(readme, owner, repo, entry.default_branch) if readme else ()
        return RepositoryDetails(
            entry=entry,
            latest_release=releases[0] if releases else None,
            readme=readme,
            screenshots=screenshots,
        )

    async def close(self) -> None:
        tasks = [f.task for f in [*self._feeds.values(), self._search] if f.in_flight()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.banners.close()
        await self.client.close()
