"""Extract screenshot URLs from a repository README."""

import re
from urllib.parse import urljoin

from .banner import RAW_CONTENT_BASE

MAX_SCREENSHOTS = 10
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif")

_MARKDOWN_IMAGE = re.compile(r"!\[[^\]]*\]\(\s*<?([^)\s>]+)>?(?:\s+\"[^\"]*\")?\s*\)")
_HTML_IMAGE = re.compile(r"<img\b[^>]*?\bsrc\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)

# Shields and CI badges are images too, but never screenshots
_BADGE_HOSTS = ("img.shields.io", "badge.fury.io", "badgen.net", "github.com/badges", "/badge.svg", "/workflows/")


def _is_badge(url: str) -> bool:
    return any(marker in url for marker in _BADGE_HOSTS)


def _resolve(url: str, owner: str, repo: str, branch: str) -> str:
    if url.startswith(("http://", "https://")):
        # Blob links render an HTML page; the raw host serves the image itself
        blob_prefix = f"https://github.com/{owner}/{repo}/blob/"
        if url.startswith(blob_prefix):
            return f"{RAW_CONTENT_BASE}/{owner}/{repo}/{url[len(blob_prefix):]}"
        return url
    base = f"{RAW_CONTENT_BASE}/{owner}/{repo}/{branch}/"
    return urljoin(base, url.lstrip("/"))


def extract_screenshots(
    readme: str, owner: str, repo: str, branch: str = "main", limit: int = MAX_SCREENSHOTS
) -> tuple[str, ...]:
    """Image URLs referenced by ``readme``, resolved to absolute URLs, badges skipped.

    Order follows the README; duplicates are dropped.
    """
    found = []
    positions = [(m.start(), m.group(1)) for m in _MARKDOWN_IMAGE.finditer(readme)]
    positions += [(m.start(), m.group(1)) for m in _HTML_IMAGE.finditer(readme)]
    for _, raw in sorted(positions):
        url = raw.strip()
        if _is_badge(url):
            continue
        path = url.split("?", 1)[0].lower()
        if not path.endswith(IMAGE_EXTENSIONS):
            continue
        resolved = _resolve(url, owner, repo, branch)
        if resolved not in found:
            found.append(resolved)
        if len(found) >= limit:
            break
    return tuple(found)
