"""Display helpers sitting between feed states and whatever renders them."""

from datetime import datetime, timezone

from .errors import CatalogError, RateLimitedError
from .models import ErrorKind, RepositoryEntry
from .states import Error, FeedState

FEATURED_RAIL_SIZE = 5


def error_message(error: CatalogError, subject: str = "Repository") -> str:
    """Human message for an error; rendering decisions use ``error.kind``, not this text."""
    if isinstance(error, RateLimitedError):
        if error.reset_at is not None:
            local = error.reset_at.astimezone()
            wait = f"Please wait until {local:%H:%M}"
        else:
            wait = "Please wait a few minutes"
        return (
            f"Rate limit exceeded. {wait} or sign in with GitHub "
            "to raise the limit (60 → 5000 requests/hour)."
        )
    if error.kind is ErrorKind.TRANSIENT:
        if error.status:
            return f"GitHub is having trouble (HTTP {error.status}). Try again shortly."
        return "Network error. Check your connection and try again."
    if error.kind is ErrorKind.NOT_FOUND:
        return f"{subject} not found."
    if error.kind is ErrorKind.AUTH_ERROR:
        return f"GitHub rejected the request (HTTP {error.status})." if error.status else "GitHub rejected the request."
    if error.kind is ErrorKind.DECODE_ERROR:
        return "GitHub sent a response that could not be read."
    return error.message


class SignInPrompter:
    """Decides when to offer GitHub sign-in for a rate-limit error.

    Offered at most once per error occurrence, and only when the error state
    says so (rate limited, no stored credential).
    """

    def __init__(self):
        self._prompted: set[int] = set()

    def should_prompt(self, state: FeedState) -> bool:
        if not isinstance(state, Error) or not state.offer_sign_in:
            return False
        if state.occurrence in self._prompted:
            return False
        self._prompted.add(state.occurrence)
        return True


def featured_rail(entries: tuple[RepositoryEntry, ...], size: int = FEATURED_RAIL_SIZE) -> tuple[RepositoryEntry, ...]:
    """Top ``size`` entries by stars, ties kept in feed order. Read-only view."""
    ranked = sorted(enumerate(entries), key=lambda pair: (-pair[1].star_count, pair[0]))
    return tuple(entry for _, entry in ranked[:size])


def format_count(number: int) -> str:
    if number >= 1_000_000:
        return f"{number / 1_000_000:.1f}M"
    if number >= 1_000:
        return f"{number / 1_000:.1f}K"
    return str(number)


def format_date(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.astimezone(timezone.utc).strftime("%b %d, %Y")
