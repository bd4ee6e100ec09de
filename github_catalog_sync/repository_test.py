"""Unit tests for CatalogRepository.

The remote client is replaced by a fake that serves canned pages; the cache
is a real CacheStore in a tmp dir.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from .banner import BannerResolver
from .cache import CacheStore
from .errors import NetworkError, NotFoundError, RateLimitedError
from .github import RemotePage
from .models import (
    ErrorKind,
    FeedKey,
    FeedPage,
    ListType,
    Owner,
    ReleaseInfo,
    RepositoryEntry,
)
from .rate_limit import RateLimitMonitor
from .repository import CatalogRepository
from .settings import Settings
from .states import Empty, Error, Idle, Loading, LoadingMore, Success
from .vault import CredentialVault

_T = datetime(2024, 1, 1, tzinfo=timezone.utc)
TRENDING = FeedKey(ListType.TRENDING)
C2 = "https://api.github.com/search/repositories?page=2"
C3 = "https://api.github.com/search/repositories?page=3"


def _entry(repo_id, stars=0):
    return RepositoryEntry(
        id=repo_id,
        owner=Owner(login="octo"),
        name=f"repo{repo_id}",
        html_url=f"https://github.com/octo/repo{repo_id}",
        created_at=_T,
        updated_at=_T,
        star_count=stars,
    )


def _page(ids, cursor=None):
    return RemotePage(entries=tuple(_entry(i) for i in ids), next_cursor=cursor)


def _ids(entries):
    return [e.id for e in entries]


class _FakeClient:
    """Serves ``results[(key, cursor)]``; fetches wait on ``gate`` when one is set."""

    def __init__(self):
        self.monitor = RateLimitMonitor()
        self.results = {}
        self.calls = []
        self.gate: asyncio.Event | None = None
        self.closed = False
        self.user = None
        self.repository = None
        self.releases = []
        self.readme = None

    def respond(self, key, cursor, result):
        self.results[(key, cursor)] = result

    async def list_repositories(self, key, cursor=None, token=None):
        self.calls.append((key, cursor, token))
        if self.gate is not None:
            await self.gate.wait()
        result = self.results[(key, cursor)]
        if isinstance(result, Exception):
            raise result
        return result

    async def get_user(self, login, token=None):
        if isinstance(self.user, Exception):
            raise self.user
        return self.user

    async def get_repository(self, owner, repo, token=None):
        if isinstance(self.repository, Exception):
            raise self.repository
        return self.repository

    async def get_releases(self, owner, repo, token=None):
        if isinstance(self.releases, Exception):
            raise self.releases
        return self.releases

    async def get_readme(self, owner, repo, token=None):
        if isinstance(self.readme, Exception):
            raise self.readme
        return self.readme

    async def close(self):
        self.closed = True


async def _never_found(url):
    return False


async def _until_fetching(client, count):
    # Token lookup runs in a worker thread before the fetch reaches the client
    while len(client.calls) < count:
        await asyncio.sleep(0.001)


@pytest.fixture
def settings(tmp_path):
    return Settings(github_token=None, cache_dir=tmp_path / "cache", credentials_dir=tmp_path / "vault")


@pytest.fixture
def client():
    return _FakeClient()


@pytest.fixture
def cache(tmp_path):
    return CacheStore(tmp_path / "cache" / "feeds")


@pytest.fixture
def vault(tmp_path):
    return CredentialVault(tmp_path / "vault")


@pytest.fixture
def repo(client, cache, vault, settings):
    return CatalogRepository(client, cache, vault, settings=settings, banners=BannerResolver(probe=_never_found))


def describe_CatalogRepository():
    def describe_open():
        def it_emits_loading_then_success(repo, client):
            client.respond(TRENDING, None, _page([3, 1, 2], cursor=C2))

            async def run():
                stream = repo.open(TRENDING)
                await repo.join(TRENDING)
                return stream.drain()

            states = asyncio.run(run())

            assert states == [Loading(), Success((_entry(3), _entry(1), _entry(2)))]

        def it_writes_the_fetched_page_to_the_cache(repo, client, cache):
            client.respond(TRENDING, None, _page([1, 2], cursor=C2))

            async def run():
                repo.open(TRENDING)
                await repo.join(TRENDING)

            asyncio.run(run())

            cached = cache.get(TRENDING)
            assert _ids(cached.entries) == [1, 2]
            assert cached.next_cursor == C2

        def it_seeds_from_the_cache_before_fetching(repo, client, cache):
            cache.put(TRENDING, FeedPage(key=TRENDING, entries=(_entry(7),), next_cursor=C2))
            client.respond(TRENDING, None, _page([8, 9]))

            async def run():
                stream = repo.open(TRENDING)
                await repo.join(TRENDING)
                return stream.drain()

            states = asyncio.run(run())

            assert states == [
                Loading(),
                Success((_entry(7),), from_cache=True),
                Success((_entry(8), _entry(9))),
            ]

        def it_keeps_cached_entries_visible_when_the_refresh_fails(repo, client, cache):
            cache.put(TRENDING, FeedPage(key=TRENDING, entries=(_entry(7),), next_cursor=C2))
            client.respond(TRENDING, None, NetworkError("offline"))

            async def run():
                repo.open(TRENDING)
                return await repo.join(TRENDING)

            state = asyncio.run(run())

            assert isinstance(state, Error)
            assert state.kind is ErrorKind.TRANSIENT
            assert _ids(state.entries) == [7]

        def it_fetches_only_once_for_repeated_opens(repo, client):
            client.respond(TRENDING, None, _page([1]))

            async def run():
                repo.open(TRENDING)
                second = repo.open(TRENDING)
                await repo.join(TRENDING)
                return second.drain()

            states = asyncio.run(run())

            assert len(client.calls) == 1
            assert states == [Loading(), Success((_entry(1),))]

        def it_reports_empty_feeds(repo, client):
            client.respond(TRENDING, None, _page([]))

            async def run():
                repo.open(TRENDING)
                return await repo.join(TRENDING)

            assert asyncio.run(run()) == Empty()

        def it_delivers_states_to_every_subscriber(repo, client):
            client.respond(TRENDING, None, _page([1]))

            async def run():
                first = repo.open(TRENDING)
                second = repo.open(TRENDING)
                await repo.join(TRENDING)
                return await first.get(), await first.get(), await second.get(), await second.get()

            assert asyncio.run(run()) == (Loading(), Success((_entry(1),))) * 2

    def describe_load_more():
        def it_appends_the_next_page(repo, client):
            client.respond(TRENDING, None, _page([1, 2], cursor=C2))
            client.respond(TRENDING, C2, _page([2, 3], cursor=C3))

            async def run():
                stream = repo.open(TRENDING)
                await repo.join(TRENDING)
                repo.load_more(TRENDING)
                await repo.join(TRENDING)
                return stream.drain()

            states = asyncio.run(run())

            assert states[-2] == LoadingMore((_entry(1), _entry(2)))
            assert states[-1] == Success((_entry(1), _entry(2), _entry(3)))

        def it_follows_up_as_soon_as_success_arrives(repo, client):
            client.respond(TRENDING, None, _page([1, 2], cursor=C2))
            client.respond(TRENDING, C2, _page([3]))

            async def run():
                stream = repo.open(TRENDING)
                async for state in stream:
                    if isinstance(state, Success):
                        break
                task = repo.load_more(TRENDING)
                await repo.join(TRENDING)
                return task, stream.drain()

            task, states = asyncio.run(run())

            assert task is not None
            assert [cursor for _, cursor, _ in client.calls] == [None, C2]
            assert states == [
                LoadingMore((_entry(1), _entry(2))),
                Success((_entry(1), _entry(2), _entry(3))),
            ]

        def it_leaves_nothing_in_flight_once_success_is_out(repo, client):
            client.respond(TRENDING, None, _page([1], cursor=C2))

            async def run():
                stream = repo.open(TRENDING)
                async for state in stream:
                    if isinstance(state, Success):
                        return repo._feed_for(TRENDING).in_flight()

            assert asyncio.run(run()) is False

        def it_does_nothing_when_the_feed_is_exhausted(repo, client):
            client.respond(TRENDING, None, _page([1]))

            async def run():
                repo.open(TRENDING)
                before = await repo.join(TRENDING)
                task = repo.load_more(TRENDING)
                return before, task, repo.state(TRENDING)

            before, task, after = asyncio.run(run())

            assert task is None
            assert after == before
            assert len(client.calls) == 1

        def it_does_nothing_before_the_feed_is_opened(repo, client):
            async def run():
                return repo.load_more(TRENDING)

            assert asyncio.run(run()) is None
            assert client.calls == []

        def it_issues_one_fetch_for_concurrent_calls(repo, client):
            client.respond(TRENDING, None, _page([1], cursor=C2))
            client.respond(TRENDING, C2, _page([2]))

            async def run():
                repo.open(TRENDING)
                await repo.join(TRENDING)
                client.gate = asyncio.Event()
                first = repo.load_more(TRENDING)
                second = repo.load_more(TRENDING)
                client.gate.set()
                await repo.join(TRENDING)
                return first, second

            first, second = asyncio.run(run())

            assert first is second
            assert [cursor for _, cursor, _ in client.calls] == [None, C2]

        def it_keeps_loaded_entries_when_the_next_page_fails(repo, client):
            client.respond(TRENDING, None, _page([1, 2], cursor=C2))
            client.respond(TRENDING, C2, NetworkError("offline"))

            async def run():
                repo.open(TRENDING)
                await repo.join(TRENDING)
                repo.load_more(TRENDING)
                return await repo.join(TRENDING)

            state = asyncio.run(run())

            assert isinstance(state, Error)
            assert _ids(state.entries) == [1, 2]

    def describe_refresh():
        def it_reloads_the_first_page(repo, client):
            client.respond(TRENDING, None, _page([1], cursor=C2))

            async def run():
                repo.open(TRENDING)
                await repo.join(TRENDING)
                client.respond(TRENDING, None, _page([5, 6]))
                repo.refresh(TRENDING)
                return await repo.join(TRENDING)

            assert asyncio.run(run()) == Success((_entry(5), _entry(6)))

        def it_joins_a_refresh_in_flight(repo, client):
            client.respond(TRENDING, None, _page([1]))

            async def run():
                client.gate = asyncio.Event()
                first = repo.refresh(TRENDING)
                second = repo.refresh(TRENDING)
                client.gate.set()
                await repo.join(TRENDING)
                return first, second

            first, second = asyncio.run(run())

            assert first is second
            assert len(client.calls) == 1

        def it_replaces_a_load_more_in_flight(repo, client):
            client.respond(TRENDING, None, _page([1], cursor=C2))
            client.respond(TRENDING, C2, _page([2]))

            async def run():
                stream = repo.open(TRENDING)
                await repo.join(TRENDING)
                client.gate = asyncio.Event()
                more = repo.load_more(TRENDING)
                await _until_fetching(client, 2)
                repo.refresh(TRENDING)
                client.gate.set()
                final = await repo.join(TRENDING)
                return more, final, stream.drain()

            more, final, states = asyncio.run(run())

            assert more.cancelled()
            assert final == Success((_entry(1),))
            assert Success((_entry(1), _entry(2))) not in states

    def describe_retry():
        def it_only_acts_on_errors(repo, client):
            client.respond(TRENDING, None, _page([1]))

            async def run():
                repo.open(TRENDING)
                await repo.join(TRENDING)
                return repo.retry(TRENDING)

            assert asyncio.run(run()) is None

        def it_reruns_the_failed_load(repo, client):
            client.respond(TRENDING, None, NetworkError("offline"))

            async def run():
                repo.open(TRENDING)
                failed = await repo.join(TRENDING)
                client.respond(TRENDING, None, _page([1]))
                repo.retry(TRENDING)
                return failed, await repo.join(TRENDING)

            failed, recovered = asyncio.run(run())

            assert isinstance(failed, Error)
            assert recovered == Success((_entry(1),))

    def describe_rate_limits():
        def it_surfaces_rate_limits_with_a_sign_in_offer(repo, client):
            client.respond(TRENDING, None, RateLimitedError("quota", status=403))

            async def run():
                repo.open(TRENDING)
                return await repo.join(TRENDING)

            state = asyncio.run(run())

            assert state.is_rate_limit
            assert state.offer_sign_in
            assert "Rate limit exceeded" in state.message

        def it_does_not_offer_sign_in_when_signed_in(repo, client, vault):
            vault.save("tok", "octocat")
            client.respond(TRENDING, None, RateLimitedError("quota", status=403))

            async def run():
                repo.open(TRENDING)
                return await repo.join(TRENDING)

            state = asyncio.run(run())

            assert state.is_rate_limit
            assert not state.offer_sign_in
            assert client.calls[0][2] == "tok"

        def it_numbers_each_occurrence(repo, client):
            client.respond(TRENDING, None, RateLimitedError("quota", status=403))

            async def run():
                repo.open(TRENDING)
                first = await repo.join(TRENDING)
                repo.retry(TRENDING)
                return first, await repo.join(TRENDING)

            first, second = asyncio.run(run())

            assert first.message == second.message
            assert first.occurrence != second.occurrence

        def it_falls_back_to_the_configured_token(repo, client, settings):
            repo.settings = settings.model_copy(update={"github_token": "env-token"})
            client.respond(TRENDING, None, _page([1]))

            async def run():
                repo.open(TRENDING)
                await repo.join(TRENDING)

            asyncio.run(run())

            assert client.calls[0][2] == "env-token"

    def describe_not_found():
        def it_shows_a_missing_list_feed_as_empty(repo, client):
            key = FeedKey(ListType.FEATURED, category="nothing")
            client.respond(key, None, NotFoundError("gone", status=404))

            async def run():
                repo.open(key)
                return await repo.join(key)

            assert asyncio.run(run()) == Empty()

        def it_shows_a_missing_developer_as_an_error(repo, client):
            key = FeedKey.developer("ghost")
            client.respond(key, None, NotFoundError("gone", status=404))

            async def run():
                repo.open(key)
                return await repo.join(key)

            state = asyncio.run(run())

            assert isinstance(state, Error)
            assert state.kind is ErrorKind.NOT_FOUND
            assert state.message == "Developer not found."

    def describe_search():
        def it_starts_idle(repo):
            async def run():
                return repo.search_stream().value

            assert asyncio.run(run()) == Idle()

        def it_loads_results(repo, client):
            client.respond(FeedKey.search("notes"), None, _page([4, 5]))

            async def run():
                repo.search("notes")
                return await repo.join(FeedKey.search("notes"))

            assert asyncio.run(run()) == Success((_entry(4), _entry(5)))

        def it_does_not_cache_results(repo, client, cache):
            key = FeedKey.search("notes")
            client.respond(key, None, _page([4, 5]))

            async def run():
                repo.search("notes")
                await repo.join(key)

            asyncio.run(run())

            assert cache.get(key) is None
            assert list(cache.cache_dir.glob("*.json")) == []

        def it_resets_to_idle_and_discards_the_late_response(repo, client):
            client.respond(FeedKey.search("foo"), None, _page([1]))

            async def run():
                stream = repo.search_stream()
                client.gate = asyncio.Event()
                repo.search("foo")
                await _until_fetching(client, 1)
                result = repo.search("")
                client.gate.set()
                for _ in range(5):
                    await asyncio.sleep(0)
                return result, repo.state(FeedKey.search("")), stream.drain()

            result, final, states = asyncio.run(run())

            assert result is None
            assert final == Idle()
            assert states == [Idle(), Loading(), Idle()]
            assert len(client.calls) == 1

        def it_lets_the_latest_query_win(repo, client):
            client.respond(FeedKey.search("foo"), None, _page([1]))
            client.respond(FeedKey.search("bar"), None, _page([2]))

            async def run():
                client.gate = asyncio.Event()
                repo.search("foo")
                await _until_fetching(client, 1)
                repo.search("bar")
                client.gate.set()
                return await repo.join(FeedKey.search("bar"))

            assert asyncio.run(run()) == Success((_entry(2),))

        def it_makes_no_call_for_blank_text(repo, client):
            async def run():
                return repo.search("   ")

            assert asyncio.run(run()) is None
            assert client.calls == []

    def describe_featured_rail():
        def it_ranks_the_loaded_entries_by_stars(repo, client):
            page = RemotePage(entries=tuple(_entry(i, stars=s) for i, s in [(1, 5), (2, 50), (3, 20)]), next_cursor=None)
            client.respond(TRENDING, None, page)

            async def run():
                repo.open(TRENDING)
                await repo.join(TRENDING)

            asyncio.run(run())

            assert _ids(repo.featured_rail(TRENDING, size=2)) == [2, 3]

    def describe_load_details():
        def it_collects_release_and_screenshots(repo, client):
            client.repository = _entry(1)
            client.releases = [ReleaseInfo(tag_name="v2", html_url="https://x/v2"), ReleaseInfo(tag_name="v1", html_url="https://x/v1")]
            client.readme = "![shot](art/shot.png)"

            details = asyncio.run(repo.load_details("octo", "repo1"))

            assert details.latest_release.tag_name == "v2"
            assert details.screenshots == ("https://raw.githubusercontent.com/octo/repo1/main/art/shot.png",)

        def it_degrades_optional_parts(repo, client):
            client.repository = _entry(1)
            client.releases = NetworkError("offline")
            client.readme = RateLimitedError("quota")

            details = asyncio.run(repo.load_details("octo", "repo1"))

            assert details.latest_release is None
            assert details.readme is None
            assert details.screenshots == ()

        def it_fails_when_the_repository_is_missing(repo, client):
            client.repository = NotFoundError("gone", status=404)

            with pytest.raises(NotFoundError):
                asyncio.run(repo.load_details("octo", "missing"))

    def describe_close():
        def it_cancels_work_in_flight(repo, client):
            client.respond(TRENDING, None, _page([1]))

            async def run():
                client.gate = asyncio.Event()
                task = repo.refresh(TRENDING)
                await _until_fetching(client, 1)
                await repo.close()
                return task

            task = asyncio.run(run())

            assert task.cancelled()
            assert client.closed
