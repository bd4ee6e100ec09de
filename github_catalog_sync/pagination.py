"""Pure merge of fetched pages into a feed's ordered entry sequence."""

from dataclasses import dataclass
from typing import Iterable

from .models import RepositoryEntry


@dataclass(frozen=True)
class MergeResult:
    entries: tuple[RepositoryEntry, ...]
    cursor: str | None
    added: int = 0


def dedupe_entries(entries: Iterable[RepositoryEntry]) -> tuple[RepositoryEntry, ...]:
    """Drop repeated ids, keeping the first occurrence and the original order."""
    seen: set[int] = set()
    result = []
    for entry in entries:
        if entry.id in seen:
            continue
        seen.add(entry.id)
        result.append(entry)
    return tuple(result)


def merge_page(
    existing: Iterable[RepositoryEntry],
    existing_cursor: str | None,
    new_entries: Iterable[RepositoryEntry],
    new_cursor: str | None,
) -> MergeResult:
    """Append a freshly fetched page after the entries already shown.

    Entries already present keep their position; ids the feed has already
    surfaced are filtered out of the new page. Re-applying a page whose cursor
    equals the current one is a no-op.
    """
    existing = tuple(existing)
    if existing and new_cursor == existing_cursor:
        return MergeResult(entries=existing, cursor=existing_cursor)

    seen = {entry.id for entry in existing}
    appended = []
    for entry in new_entries:
        if entry.id in seen:
            continue
        seen.add(entry.id)
        appended.append(entry)

    return MergeResult(entries=existing + tuple(appended), cursor=new_cursor, added=len(appended))
