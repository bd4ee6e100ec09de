"""Rate-limit bookkeeping and failure classification for GitHub responses."""

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from .models import ErrorKind, RateState

logger = logging.getLogger(__name__)

HEADER_REMAINING = "x-ratelimit-remaining"
HEADER_LIMIT = "x-ratelimit-limit"
HEADER_RESET = "x-ratelimit-reset"
HEADER_RETRY_AFTER = "retry-after"


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    reset_at: datetime | None = None

    @property
    def is_rate_limit(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMITED


def _header(headers, name: str) -> str | None:
    if not headers:
        return None
    # httpx.Headers is case-insensitive; plain dicts from cache/tests may not be
    value = headers.get(name)
    if value is None:
        for key, val in headers.items():
            if key.lower() == name:
                return val
    return value


def _int_header(headers, name: str) -> int | None:
    value = _header(headers, name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_retry_after(headers) -> float | None:
    val = _header(headers, HEADER_RETRY_AFTER)
    if val is None:
        return None
    try:
        return float(val)
    except ValueError:
        return None


def parse_reset(headers) -> datetime | None:
    """Reset instant from ``x-ratelimit-reset`` (epoch seconds) or ``retry-after``."""
    reset = _int_header(headers, HEADER_RESET)
    if reset is not None:
        return datetime.fromtimestamp(reset, tz=timezone.utc)
    retry_after = parse_retry_after(headers)
    if retry_after is not None:
        return datetime.fromtimestamp(time.time() + retry_after, tz=timezone.utc)
    return None


class RateLimitMonitor:
    """Tracks GitHub quota from response headers and classifies failures.

    State is only ever updated from headers GitHub actually sent; nothing here
    estimates or decrements the quota locally.
    """

    def __init__(self):
        self._state = RateState()
        self._lock = threading.Lock()
        self.rate_limit_hits = 0

    @property
    def state(self) -> RateState:
        return self._state

    @property
    def is_exhausted(self) -> bool:
        return self._state.remaining == 0 and self.seconds_until_reset > 0

    @property
    def seconds_until_reset(self) -> int:
        """Seconds until the quota resets, 0 if unknown or already reset."""
        reset_at = self._state.reset_at
        if reset_at is None:
            return 0
        return max(0, int(reset_at.timestamp() - time.time()))

    def observe(self, headers) -> RateState:
        """Update the quota snapshot from whichever rate-limit headers are present."""
        remaining = _int_header(headers, HEADER_REMAINING)
        limit = _int_header(headers, HEADER_LIMIT)
        reset = _int_header(headers, HEADER_RESET)
        if remaining is None and limit is None and reset is None:
            return self._state

        with self._lock:
            changes = {}
            if remaining is not None:
                changes["remaining"] = max(0, remaining)
            if limit is not None:
                changes["limit"] = limit
            if reset is not None:
                changes["reset_at"] = datetime.fromtimestamp(reset, tz=timezone.utc)
            self._state = replace(self._state, **changes)
        logger.debug(
            "Rate limit: %s/%s remaining, resets %s",
            self._state.remaining,
            self._state.limit,
            self._state.reset_at,
        )
        return self._state

    def classify(self, status: int | None, headers=None) -> Classification:
        """Classify a response (or a network failure when ``status`` is None)."""
        if status is None:
            result = Classification(ErrorKind.TRANSIENT)
        elif 200 <= status < 400:
            result = Classification(ErrorKind.OK)
        elif status in (403, 429) and self._is_rate_limited(status, headers):
            self.rate_limit_hits += 1
            result = Classification(ErrorKind.RATE_LIMITED, reset_at=parse_reset(headers))
        elif status == 404:
            result = Classification(ErrorKind.NOT_FOUND)
        elif 400 <= status < 500:
            result = Classification(ErrorKind.AUTH_ERROR)
        else:
            result = Classification(ErrorKind.TRANSIENT)

        if result.kind is not ErrorKind.OK:
            with self._lock:
                self._state = replace(self._state, last_error_kind=result.kind)
        return result

    def record(self, kind: ErrorKind) -> None:
        """Remember a failure classified outside ``classify`` (decode errors)."""
        with self._lock:
            self._state = replace(self._state, last_error_kind=kind)

    def _is_rate_limited(self, status: int, headers) -> bool:
        # Primary limit: quota exhausted. Secondary limit: GitHub sends retry-after.
        if _int_header(headers, HEADER_REMAINING) == 0:
            return True
        if parse_retry_after(headers) is not None:
            return True
        return status == 429
