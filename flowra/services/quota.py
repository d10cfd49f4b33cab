"""Fixed-window quota accounting shared by the request and workspace limiters."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass

from starlette.responses import Response

from flowra.adapters.rate_limit_store import RateLimitStore
from flowra.clock import Clock
from flowra.exceptions import StoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    """Post-increment view of one key's window."""

    key: str
    count: int
    cap: int
    ttl: float
    reset_at: int

    @property
    def remaining(self) -> int:
        return max(0, self.cap - self.count)

    @property
    def exceeded(self) -> bool:
        return self.count > self.cap

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.ttl))


async def consume(
    store: RateLimitStore,
    key: str,
    cap: int,
    window: float,
    clock: Clock,
) -> QuotaDecision:
    """Count one request against ``key``.

    Raises StoreError if the increment fails. A failed TTL lookup after a
    successful increment assumes a full window.
    """
    count = await store.increment(key, window)
    try:
        ttl = await store.get_ttl(key)
    except StoreError:
        logger.error("Failed to read rate limit TTL for key %s, assuming full window", key)
        ttl = window
    return QuotaDecision(
        key=key,
        count=count,
        cap=cap,
        ttl=ttl,
        reset_at=int(clock.time() + ttl),
    )


def apply_headers(response: Response, decision: QuotaDecision) -> None:
    response.headers["X-RateLimit-Limit"] = str(decision.cap)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    response.headers["X-RateLimit-Reset"] = str(decision.reset_at)
    if decision.exceeded:
        response.headers["Retry-After"] = str(decision.retry_after)


class EndpointRateLimits:
    """Per ``METHOD:path`` limit overrides.

    Patterns may end in a single ``*`` matching any suffix. Exact matches win,
    then the longest wildcard prefix. Populate at startup; lookups may run
    concurrently afterwards.
    """

    def __init__(self):
        self._exact: dict[tuple[str, str], int] = {}
        self._prefixes: dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def set(self, pattern: str, limit: int) -> EndpointRateLimits:
        method, sep, path = pattern.partition(":")
        if not sep or not method or not path:
            raise ValueError(f"Endpoint pattern must be METHOD:path, got {pattern!r}")
        if limit < 0:
            raise ValueError("limit must be >= 0")
        with self._lock:
            if path.endswith("*"):
                self._prefixes[(method, path[:-1])] = limit
            else:
                self._exact[(method, path)] = limit
        return self

    def get(self, method: str, path: str, default: int) -> int:
        with self._lock:
            limit = self._exact.get((method, path))
            if limit is not None:
                return limit

            best_len = -1
            best = default
            for (m, prefix), candidate in self._prefixes.items():
                if m == method and path.startswith(prefix) and len(prefix) > best_len:
                    best_len = len(prefix)
                    best = candidate
            return best

    def __len__(self) -> int:
        with self._lock:
            return len(self._exact) + len(self._prefixes)
