"""Data models and constants for the repository catalog."""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

logger = logging.getLogger(__name__)

NEW_WINDOW = timedelta(days=30)  # Created within this window -> NEW
UPDATED_WINDOW = timedelta(days=7)  # Pushed within this window -> UPDATED
INSTALLABLE_EXTENSIONS = (".apk", ".aab")


class ListType(str, Enum):
    TRENDING = "TRENDING"
    FEATURED = "FEATURED"
    UPDATED = "UPDATED"
    SEARCH = "SEARCH"
    DEVELOPER = "DEVELOPER"


class EntryTag(str, Enum):
    NEW = "NEW"
    UPDATED = "UPDATED"
    ARCHIVED = "ARCHIVED"


class ErrorKind(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    AUTH_ERROR = "auth_error"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    DECODE_ERROR = "decode_error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse GitHub's ISO-8601 timestamps ("2024-01-01T00:00:00Z")."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Owner:
    login: str
    avatar_url: str | None = None


@dataclass(frozen=True)
class RepositoryEntry:
    """Immutable snapshot of one repository as shown in a feed."""

    id: int
    owner: Owner
    name: str
    html_url: str
    created_at: datetime
    updated_at: datetime
    default_branch: str = "main"
    description: str | None = None
    star_count: int = 0
    fork_count: int = 0
    primary_language: str | None = None
    topics: tuple[str, ...] = ()
    pushed_at: datetime | None = None
    archived: bool = False
    tag: EntryTag | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner.login}/{self.name}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner": {"login": self.owner.login, "avatar_url": self.owner.avatar_url},
            "name": self.name,
            "html_url": self.html_url,
            "created_at": _format_timestamp(self.created_at),
            "updated_at": _format_timestamp(self.updated_at),
            "pushed_at": _format_timestamp(self.pushed_at),
            "default_branch": self.default_branch,
            "description": self.description,
            "star_count": self.star_count,
            "fork_count": self.fork_count,
            "primary_language": self.primary_language,
            "topics": list(self.topics),
            "archived": self.archived,
            "tag": self.tag.value if self.tag else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RepositoryEntry":
        """Rebuild an entry from its cached form (see ``to_dict``)."""
        owner = data["owner"]
        return cls(
            id=int(data["id"]),
            owner=Owner(login=owner["login"], avatar_url=owner.get("avatar_url")),
            name=data["name"],
            html_url=data["html_url"],
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
            pushed_at=parse_timestamp(data.get("pushed_at")),
            default_branch=data.get("default_branch") or "main",
            description=data.get("description"),
            star_count=data.get("star_count", 0),
            fork_count=data.get("fork_count", 0),
            primary_language=data.get("primary_language"),
            topics=tuple(data.get("topics") or ()),
            archived=bool(data.get("archived", False)),
            tag=EntryTag(data["tag"]) if data.get("tag") else None,
        )


def derive_tag(
    archived: bool,
    created_at: datetime | None,
    pushed_at: datetime | None,
    now: datetime | None = None,
) -> EntryTag | None:
    """Badge shown next to an entry. Archived wins over NEW, NEW over UPDATED."""
    now = now or utcnow()
    if archived:
        return EntryTag.ARCHIVED
    if created_at and now - created_at <= NEW_WINDOW:
        return EntryTag.NEW
    if pushed_at and now - pushed_at <= UPDATED_WINDOW:
        return EntryTag.UPDATED
    return None


def repository_from_api(item: dict, now: datetime | None = None) -> RepositoryEntry:
    """Convert one item of a GitHub REST repository payload into an entry.

    Raises KeyError/TypeError/ValueError when a required field is missing; optional
    fields that fail to decode are left empty.
    """
    owner = item["owner"]
    created_at = parse_timestamp(item.get("created_at"))
    updated_at = parse_timestamp(item.get("updated_at"))
    pushed_at = parse_timestamp(item.get("pushed_at"))
    archived = bool(item.get("archived", False))
    topics = item.get("topics")
    if not isinstance(topics, list):
        topics = []
    return RepositoryEntry(
        id=int(item["id"]),
        owner=Owner(login=owner["login"], avatar_url=owner.get("avatar_url")),
        name=item["name"],
        html_url=item["html_url"],
        created_at=created_at or utcnow(),
        updated_at=updated_at or created_at or utcnow(),
        pushed_at=pushed_at,
        default_branch=item.get("default_branch") or "main",
        description=item.get("description"),
        star_count=item.get("stargazers_count") or 0,
        fork_count=item.get("forks_count") or 0,
        primary_language=item.get("language"),
        topics=tuple(str(t) for t in topics),
        archived=archived,
        tag=derive_tag(archived, created_at, pushed_at or updated_at, now=now),
    )


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    download_url: str
    size: int | None = None


@dataclass(frozen=True)
class ReleaseInfo:
    tag_name: str
    html_url: str
    display_name: str | None = None
    body_markdown: str | None = None
    published_at: datetime | None = None
    assets: tuple[ReleaseAsset, ...] = ()

    def installable_asset(self) -> ReleaseAsset | None:
        """First asset that can be installed directly (APK/AAB)."""
        for asset in self.assets:
            if asset.name.lower().endswith(INSTALLABLE_EXTENSIONS):
                return asset
        return None


def release_from_api(item: dict) -> ReleaseInfo:
    """Convert a GitHub release payload. Malformed assets are dropped, not fatal."""
    assets = []
    for raw in item.get("assets") or []:
        try:
            assets.append(
                ReleaseAsset(
                    name=raw["name"],
                    download_url=raw["browser_download_url"],
                    size=raw.get("size"),
                )
            )
        except (KeyError, TypeError):
            logger.debug("Dropping malformed asset in release %s", item.get("tag_name"))
    return ReleaseInfo(
        tag_name=item["tag_name"],
        html_url=item["html_url"],
        display_name=item.get("name") or None,
        body_markdown=item.get("body"),
        published_at=parse_timestamp(item.get("published_at")),
        assets=tuple(assets),
    )


@dataclass(frozen=True)
class DeveloperProfile:
    login: str
    html_url: str
    avatar_url: str | None = None
    name: str | None = None
    bio: str | None = None
    public_repos: int = 0


def developer_from_api(item: dict) -> DeveloperProfile:
    return DeveloperProfile(
        login=item["login"],
        html_url=item.get("html_url") or f"https://github.com/{item['login']}",
        avatar_url=item.get("avatar_url"),
        name=item.get("name"),
        bio=item.get("bio"),
        public_repos=item.get("public_repos") or 0,
    )


@dataclass(frozen=True)
class FeedKey:
    """Identity of a feed for pagination and caching."""

    list_type: ListType
    category: str | None = None
    query: str | None = None
    owner: str | None = None

    @classmethod
    def search(cls, text: str, category: str | None = None) -> "FeedKey":
        return cls(ListType.SEARCH, category=category, query=text.strip())

    @classmethod
    def developer(cls, login: str) -> "FeedKey":
        return cls(ListType.DEVELOPER, owner=login)

    @property
    def cache_id(self) -> str:
        """Stable string form, used to name cache records."""
        raw = "|".join(
            [self.list_type.value, self.category or "", self.query or "", self.owner or ""]
        )
        return hashlib.sha256(raw.encode()).hexdigest()[:16]

    def describe(self) -> str:
        parts = [self.list_type.value]
        if self.category:
            parts.append(f"category={self.category}")
        if self.query:
            parts.append(f"query={self.query!r}")
        if self.owner:
            parts.append(f"owner={self.owner}")
        return " ".join(parts)


@dataclass(frozen=True)
class FeedPage:
    key: FeedKey
    entries: tuple[RepositoryEntry, ...]
    next_cursor: str | None
    fetched_at: datetime = field(default_factory=utcnow)
    stale: bool = False


@dataclass(frozen=True)
class CacheRecord:
    page: FeedPage
    expires_at: datetime

    def to_dict(self) -> dict:
        key = self.page.key
        return {
            "key": {
                "list_type": key.list_type.value,
                "category": key.category,
                "query": key.query,
                "owner": key.owner,
            },
            "entries": [e.to_dict() for e in self.page.entries],
            "next_cursor": self.page.next_cursor,
            "fetched_at": self.page.fetched_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheRecord":
        raw_key = data["key"]
        key = FeedKey(
            ListType(raw_key["list_type"]),
            category=raw_key.get("category"),
            query=raw_key.get("query"),
            owner=raw_key.get("owner"),
        )
        fetched_at = parse_timestamp(data["fetched_at"])
        expires_at = parse_timestamp(data["expires_at"])
        if fetched_at is None or expires_at is None:
            raise ValueError("cache record without timestamps")
        page = FeedPage(
            key=key,
            entries=tuple(RepositoryEntry.from_dict(e) for e in data["entries"]),
            next_cursor=data.get("next_cursor"),
            fetched_at=fetched_at,
        )
        return cls(page=page, expires_at=expires_at)


@dataclass(frozen=True)
class Credential:
    token: str
    login: str
    avatar_url: str | None = None
    display_name: str | None = None
    migrated: bool = False

    def __repr__(self) -> str:
        # Keep the token out of logs and tracebacks
        return f"Credential(login={self.login!r}, migrated={self.migrated})"


@dataclass(frozen=True)
class RateState:
    remaining: int | None = None
    limit: int | None = None
    reset_at: datetime | None = None
    last_error_kind: ErrorKind = ErrorKind.OK


@dataclass(frozen=True)
class RepositoryDetails:
    entry: RepositoryEntry
    latest_release: ReleaseInfo | None = None
    readme: str | None = None
    screenshots: tuple[str, ...] = ()
