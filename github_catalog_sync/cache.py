"""File-backed cache of feed pages with staleness and expiry."""

import json
import logging
import os
import tempfile
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from .errors import CacheError
from .models import CacheRecord, FeedKey, FeedPage, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=6)
DEFAULT_STALE_AFTER = timedelta(minutes=10)


class CacheStore:
    """Persisted, keyed storage of feed pages.

    One JSON file per FeedKey. Records are also held in memory; if the cache
    directory cannot be read or written the store keeps working from memory only
    for the rest of the process.
    """

    def __init__(
        self,
        cache_dir: Path,
        ttl: timedelta = DEFAULT_TTL,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache_dir = Path(cache_dir)
        self.ttl = ttl
        self.stale_after = stale_after
        self._clock = clock
        self._records: dict[FeedKey, CacheRecord] = {}
        self._locks: dict[FeedKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.memory_only = False
        self.hits = 0
        self.misses = 0

    def _path(self, key: FeedKey) -> Path:
        return self.cache_dir / f"{key.cache_id}.json"

    def _lock_for(self, key: FeedKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _degrade(self, exc: Exception) -> None:
        if not self.memory_only:
            logger.warning("Feed cache unavailable at %s, using memory only: %s", self.cache_dir, exc)
        self.memory_only = True

    def get(self, key: FeedKey) -> FeedPage | None:
        """Cached page for ``key``, or None when missing or expired."""
        with self._lock_for(key):
            record = self._records.get(key)
            if record is None and not self.memory_only:
                try:
                    record = self._read(key)
                except CacheError as e:
                    logger.debug("Ignoring unreadable cache record for %s: %s", key.describe(), e)
                    record = None
                if record is not None:
                    self._records[key] = record

            now = self._clock()
            if record is not None and now >= record.expires_at:
                self._drop(key)
                record = None

        if record is None:
            self.misses += 1
            return None

        self.hits += 1
        stale = now - record.page.fetched_at >= self.stale_after
        return replace(record.page, stale=stale)

    def put(self, key: FeedKey, page: FeedPage, ttl: timedelta | None = None) -> bool:
        """Store ``page`` for ``key``. Returns False if a newer fetch is already stored."""
        record = CacheRecord(page=replace(page, stale=False), expires_at=page.fetched_at + (ttl or self.ttl))
        with self._lock_for(key):
            current = self._records.get(key)
            if current is None and not self.memory_only:
                try:
                    current = self._read(key)
                except CacheError:
                    current = None
            # Last write wins by fetch time, not by completion time
            if current is not None and current.page.fetched_at > page.fetched_at:
                logger.debug("Skipping cache write for %s: newer record present", key.describe())
                return False
            self._records[key] = record
            if not self.memory_only:
                try:
                    self._write(key, record)
                except CacheError as e:
                    self._degrade(e)
        self.prune()
        return True

    def prune(self) -> int:
        """Drop expired records from memory and disk. Returns how many went."""
        now = self._clock()
        with self._locks_guard:
            expired = [k for k, r in list(self._records.items()) if now >= r.expires_at]
        dropped = 0
        for key in expired:
            with self._lock_for(key):
                record = self._records.get(key)
                if record is not None and now >= record.expires_at:
                    self._drop(key)
                    dropped += 1
        if dropped:
            logger.debug("Pruned %d expired cache records", dropped)
        return dropped

    def invalidate(self, key: FeedKey) -> None:
        with self._lock_for(key):
            self._drop(key)

    def _drop(self, key: FeedKey) -> None:
        # Caller holds the key's lock
        self._records.pop(key, None)
        if not self.memory_only:
            try:
                self._path(key).unlink(missing_ok=True)
            except OSError as e:
                self._degrade(e)

    def clear(self) -> None:
        with self._locks_guard:
            keys = list(self._records)
        for key in keys:
            self.invalidate(key)
        if not self.memory_only and self.cache_dir.exists():
            for path in self.cache_dir.glob("*.json"):
                try:
                    path.unlink()
                except OSError as e:
                    self._degrade(e)

    def _read(self, key: FeedKey) -> CacheRecord | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = json.load(f)
            return CacheRecord.from_dict(data)
        except (json.JSONDecodeError, OSError, UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
            raise CacheError(f"Unreadable cache record {path.name}: {e}") from e

    def _write(self, key: FeedKey, record: CacheRecord) -> None:
        path = self._path(key)
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{key.cache_id}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(record.to_dict(), f)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise CacheError(f"Cannot write cache record {path.name}: {e}") from e
