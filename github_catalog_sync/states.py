"""Consumer-facing feed states.

``FeedState`` is a closed union; consumers are expected to ``match`` on it:

    match state:
        case Loading(): ...
        case LoadingMore(entries=entries): ...
        case Success(entries=entries): ...
        case Empty(): ...
        case Error(message=message, is_rate_limit=True): ...
        case Idle(): ...
"""

from dataclasses import dataclass

from .models import ErrorKind, RepositoryEntry


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Loading:
    pass


@dataclass(frozen=True)
class LoadingMore:
    entries: tuple[RepositoryEntry, ...]


@dataclass(frozen=True)
class Success:
    entries: tuple[RepositoryEntry, ...]
    from_cache: bool = False


@dataclass(frozen=True)
class Empty:
    pass


@dataclass(frozen=True)
class Error:
    message: str
    kind: ErrorKind
    # Entries that were visible when the error happened (kept on screen)
    entries: tuple[RepositoryEntry, ...] = ()
    offer_sign_in: bool = False
    # Distinguishes two consecutive errors with the same message
    occurrence: int = 0

    @property
    def is_rate_limit(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMITED


FeedState = Idle | Loading | LoadingMore | Success | Empty | Error


def visible_entries(state: FeedState) -> tuple[RepositoryEntry, ...]:
    """Entries a consumer should currently be showing for ``state``."""
    match state:
        case LoadingMore(entries=entries) | Success(entries=entries) | Error(entries=entries):
            return entries
        case _:
            return ()
