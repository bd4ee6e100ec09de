"""Best-effort lookup of a repository's banner image."""

import itertools
import logging
from typing import Awaitable, Callable, Iterator

import httpx

logger = logging.getLogger(__name__)

RAW_CONTENT_BASE = "https://raw.githubusercontent.com"
MAX_PROBES = 10

BANNER_FOLDERS = (
    "screenshots",
    "screenshot",
    "images",
    "image",
    "assets",
    "art",
    "media",
    "pics",
    "pictures",
    "img",
    "fastlane/metadata/android/en-US/images",
)

BANNER_NAMES = (
    "banner.png", "banner.jpg", "banner.jpeg", "banner.webp",
    "feature.png", "feature.jpg", "feature_graphic.png", "feature_graphic.jpg",
    "header.png", "header.jpg", "cover.png", "cover.jpg",
    "1.png", "1.jpg", "01.png", "01.jpg",
    "screenshot1.png", "screenshot1.jpg", "screenshot_1.png", "screenshot_1.jpg",
)

# Fallback when no banner exists; picked by position so it never changes between runs
FALLBACK_GRADIENTS = (
    ("#667eea", "#764ba2"),
    ("#11998e", "#38ef7d"),
    ("#fc4a1a", "#f7b733"),
    ("#4568DC", "#B06AB3"),
    ("#0052D4", "#6FB1FC"),
    ("#ee0979", "#ff6a00"),
)

Probe = Callable[[str], Awaitable[bool]]


def banner_candidates(owner: str, repo: str, branch: str) -> Iterator[str]:
    """Candidate banner URLs in probe order: every folder x name, then the repo root."""
    base = f"{RAW_CONTENT_BASE}/{owner}/{repo}/{branch}"
    for folder in BANNER_FOLDERS:
        for name in BANNER_NAMES:
            yield f"{base}/{folder}/{name}"
    for name in BANNER_NAMES:
        yield f"{base}/{name}"


def fallback_gradient(position: int) -> tuple[str, str]:
    return FALLBACK_GRADIENTS[position % len(FALLBACK_GRADIENTS)]


class BannerResolver:
    """Probes conventional banner locations, stopping at the first image found.

    At most ``max_probes`` URLs are tried per repository. Results (including
    "no banner") are remembered per (owner, repo, branch).
    """

    def __init__(
        self,
        probe: Probe | None = None,
        max_probes: int = MAX_PROBES,
        client: httpx.AsyncClient | None = None,
    ):
        self.max_probes = max_probes
        self._client = client
        self._owns_client = client is None and probe is None
        self._probe = probe or self._http_probe
        self._resolved: dict[tuple[str, str, str], str | None] = {}
        self.probes = 0

    async def _http_probe(self, url: str) -> bool:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0, follow_redirects=True)
        try:
            resp = await self._client.head(url)
        except httpx.HTTPError as e:
            logger.debug("Banner probe failed for %s: %s", url, e)
            return False
        if resp.status_code != 200:
            return False
        content_type = resp.headers.get("content-type", "")
        return not content_type or content_type.startswith("image/") or content_type == "application/octet-stream"

    async def resolve(self, owner: str, repo: str, default_branch: str = "main") -> str | None:
        cache_key = (owner, repo, default_branch)
        if cache_key in self._resolved:
            return self._resolved[cache_key]

        found = None
        for url in itertools.islice(banner_candidates(owner, repo, default_branch), self.max_probes):
            self.probes += 1
            if await self._probe(url):
                found = url
                break

        if found is None:
            logger.debug("No banner for %s/%s after %d probes", owner, repo, self.max_probes)
        self._resolved[cache_key] = found
        return found

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
