"""Async GitHub REST client for the catalog, built on httpx."""

import asyncio
import base64
import binascii
import logging
import time
from dataclasses import dataclass
from datetime import date, timedelta

import httpx

from .errors import AuthError, DecodeError, NetworkError, NotFoundError, RateLimitedError
from .models import (
    DeveloperProfile,
    ErrorKind,
    FeedKey,
    ListType,
    ReleaseInfo,
    RepositoryEntry,
    developer_from_api,
    release_from_api,
    repository_from_api,
)
from .rate_limit import RateLimitMonitor
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

API_BASE = "https://api.github.com"
TRENDING_WINDOW = timedelta(days=30)
UPDATED_WINDOW = timedelta(days=7)

_SORTS = {
    ListType.TRENDING: "stars",
    ListType.FEATURED: "stars",
    ListType.UPDATED: "updated",
    ListType.SEARCH: None,  # best match
}


@dataclass(frozen=True)
class RemotePage:
    """One page of repositories as returned by GitHub, in GitHub's order."""

    entries: tuple[RepositoryEntry, ...]
    next_cursor: str | None
    total_count: int | None = None
    skipped: int = 0


def build_search_query(key: FeedKey, settings: Settings, today: date | None = None) -> str:
    """Search qualifiers for a feed key (see GitHub's repository search syntax)."""
    today = today or date.today()
    parts = []
    if key.list_type is ListType.SEARCH and key.query:
        parts.append(f"{key.query} in:name,description")
    if settings.catalog_query:
        parts.append(settings.catalog_query)
    if settings.catalog_org:
        parts.append(f"org:{settings.catalog_org}")
    if key.category:
        parts.append(f"topic:{key.category.lower()}")
    if key.list_type is ListType.TRENDING:
        parts.append(f"created:>={(today - TRENDING_WINDOW).isoformat()}")
    elif key.list_type is ListType.UPDATED:
        parts.append(f"pushed:>={(today - UPDATED_WINDOW).isoformat()}")
    return " ".join(parts)


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"GitHub API error {resp.status_code}"
    if isinstance(body, dict) and body.get("message"):
        return f"GitHub API error {resp.status_code}: {body['message']}"
    return f"GitHub API error {resp.status_code}"


class GitHubCatalogClient:
    """Typed calls against the GitHub REST API.

    Every response's rate-limit headers are fed to the shared RateLimitMonitor.
    Failures are raised as CatalogError subclasses; nothing is retried here
    beyond the connect retries done by the httpx transport.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        monitor: RateLimitMonitor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.monitor = monitor or RateLimitMonitor()
        self._client = httpx.AsyncClient(
            base_url=API_BASE,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=self.settings.request_timeout,
            transport=transport or httpx.AsyncHTTPTransport(retries=self.settings.transport_retries),
        )
        self._throttle_lock = asyncio.Lock()
        self._last_request_time = 0.0
        self._min_interval = 1.0 / self.settings.requests_per_second if self.settings.requests_per_second else 0
        self.requests = 0

    async def _throttle(self) -> None:
        """Space requests evenly to stay clear of secondary rate limits."""
        async with self._throttle_lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()

    async def _get(self, url: str, params: dict | None = None, token: str | None = None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        await self._throttle()
        self.requests += 1
        try:
            resp = await self._client.get(url, params=params, headers=headers)
        except httpx.TransportError as e:
            self.monitor.classify(None)
            raise NetworkError(f"Network error: {type(e).__name__}: {e}") from e

        self.monitor.observe(resp.headers)
        if resp.status_code < 400:
            return resp

        classification = self.monitor.classify(resp.status_code, resp.headers)
        message = _error_message(resp)
        logger.info("GET %s -> %s (%s)", resp.request.url.path, resp.status_code, classification.kind.value)
        if classification.kind is ErrorKind.RATE_LIMITED:
            raise RateLimitedError(message, reset_at=classification.reset_at, status=resp.status_code, headers=resp.headers)
        if classification.kind is ErrorKind.NOT_FOUND:
            raise NotFoundError(message, status=resp.status_code, headers=resp.headers)
        if classification.kind is ErrorKind.AUTH_ERROR:
            raise AuthError(message, status=resp.status_code, headers=resp.headers)
        raise NetworkError(message, status=resp.status_code, headers=resp.headers)

    def _json(self, resp: httpx.Response):
        try:
            return resp.json()
        except ValueError as e:
            self.monitor.record(ErrorKind.DECODE_ERROR)
            raise DecodeError(f"Invalid JSON from {resp.request.url.path}: {e}", status=resp.status_code) from e

    def _entries(self, items) -> tuple[tuple[RepositoryEntry, ...], int]:
        if not isinstance(items, list):
            self.monitor.record(ErrorKind.DECODE_ERROR)
            raise DecodeError("Expected a list of repositories")
        entries = []
        skipped = 0
        for item in items:
            try:
                entries.append(repository_from_api(item))
            except (KeyError, TypeError, ValueError) as e:
                skipped += 1
                logger.debug("Skipping undecodable repository item: %s", e)
        return tuple(entries), skipped

    @staticmethod
    def _next_cursor(resp: httpx.Response) -> str | None:
        return resp.links.get("next", {}).get("url")

    def _check_cursor(self, cursor: str) -> str:
        if not cursor.startswith(API_BASE + "/"):
            raise ValueError(f"Cursor does not point at the GitHub API: {cursor[:60]}")
        return cursor

    async def list_repositories(
        self, key: FeedKey, cursor: str | None = None, token: str | None = None
    ) -> RemotePage:
        """Fetch one page of a feed. ``cursor`` is the opaque value from a previous page."""
        if cursor is not None:
            resp = await self._get(self._check_cursor(cursor), token=token)
        elif key.list_type is ListType.DEVELOPER:
            resp = await self._get(
                f"/users/{key.owner}/repos",
                params={"sort": "updated", "per_page": self.settings.per_page},
                token=token,
            )
        else:
            params = {"q": build_search_query(key, self.settings), "per_page": self.settings.per_page}
            sort = _SORTS.get(key.list_type)
            if sort:
                params["sort"] = sort
                params["order"] = "desc"
            resp = await self._get("/search/repositories", params=params, token=token)

        body = self._json(resp)
        if key.list_type is ListType.DEVELOPER:
            entries, skipped = self._entries(body)
            total = None
        else:
            if not isinstance(body, dict):
                self.monitor.record(ErrorKind.DECODE_ERROR)
                raise DecodeError("Expected a search result object")
            entries, skipped = self._entries(body.get("items", []))
            total = body.get("total_count")
        return RemotePage(entries=entries, next_cursor=self._next_cursor(resp), total_count=total, skipped=skipped)

    async def get_user(self, login: str, token: str | None = None) -> DeveloperProfile:
        resp = await self._get(f"/users/{login}", token=token)
        try:
            return developer_from_api(self._json(resp))
        except (KeyError, TypeError) as e:
            raise DecodeError(f"Invalid user payload for {login}: {e}") from e

    async def get_repository(self, owner: str, repo: str, token: str | None = None) -> RepositoryEntry:
        resp = await self._get(f"/repos/{owner}/{repo}", token=token)
        try:
            return repository_from_api(self._json(resp))
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Invalid repository payload for {owner}/{repo}: {e}") from e

    async def get_releases(self, owner: str, repo: str, token: str | None = None) -> list[ReleaseInfo]:
        resp = await self._get(
            f"/repos/{owner}/{repo}/releases", params={"per_page": 10}, token=token
        )
        body = self._json(resp)
        releases = []
        for item in body if isinstance(body, list) else []:
            try:
                releases.append(release_from_api(item))
            except (KeyError, TypeError) as e:
                logger.debug("Skipping undecodable release of %s/%s: %s", owner, repo, e)
        return releases

    async def get_readme(self, owner: str, repo: str, token: str | None = None) -> str | None:
        """README text, or None when the repository has none or it is not text."""
        try:
            resp = await self._get(f"/repos/{owner}/{repo}/readme", token=token)
        except NotFoundError:
            return None
        body = self._json(resp)
        content = body.get("content") if isinstance(body, dict) else None
        if not content or body.get("encoding") != "base64":
            return None
        try:
            return base64.b64decode(content).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            logger.debug("README of %s/%s is not decodable text", owner, repo)
            return None

    async def get_rate_limit(self, token: str | None = None) -> dict:
        """Current quota. GitHub does not count this call against the limit."""
        resp = await self._get("/rate_limit", token=token)
        body = self._json(resp)
        return body.get("rate", {}) if isinstance(body, dict) else {}

    async def close(self) -> None:
        await self._client.aclose()
