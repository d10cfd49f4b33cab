"""Fixed-window counter stores: in-process map and external key-value store."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol

from redis.exceptions import RedisError, ResponseError

from flowra.clock import SYSTEM_CLOCK, Clock
from flowra.exceptions import StoreError

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "flowra:ratelimit:"
DEFAULT_REAP_INTERVAL_S = 30.0


class RateLimitStore(Protocol):
    """Atomic increment-with-expiry keyed by string. Durations are seconds."""

    async def increment(self, key: str, window: float) -> int: ...

    async def get_count(self, key: str) -> int: ...

    async def get_ttl(self, key: str) -> float: ...


@dataclass
class _Entry:
    count: int
    expires_at: float


class MemoryRateLimitStore:
    """In-process store guarded by a single lock.

    Expired entries read as absent whether or not the reaper has run yet.
    When ``max_entries`` is reached, expired entries are purged first and then
    the oldest inserted entries are evicted.
    """

    def __init__(
        self,
        clock: Clock = SYSTEM_CLOCK,
        reap_interval: float = DEFAULT_REAP_INTERVAL_S,
        max_entries: int | None = None,
    ):
        self._clock = clock
        self._reap_interval = reap_interval
        self._max_entries = max_entries
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._task: asyncio.Task | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def increment(self, key: str, window: float) -> int:
        now = self._clock.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now < entry.expires_at:
                entry.count += 1
                return entry.count

            if entry is None and self._max_entries and len(self._entries) >= self._max_entries:
                self._make_room(now)
            # Re-insert so dict order tracks window start for eviction
            self._entries.pop(key, None)
            self._entries[key] = _Entry(count=1, expires_at=now + window)
            return 1

    async def get_count(self, key: str) -> int:
        now = self._clock.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry.expires_at:
                return 0
            return entry.count

    async def get_ttl(self, key: str) -> float:
        now = self._clock.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry.expires_at:
                return 0.0
            return max(0.0, entry.expires_at - now)

    def reset(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        """Delete expired entries, returning how many were removed."""
        now = self._clock.monotonic()
        with self._lock:
            return self._purge_locked(now)

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def _make_room(self, now: float) -> None:
        self._purge_locked(now)
        overflow = len(self._entries) - self._max_entries + 1
        if overflow <= 0:
            return
        for k in list(self._entries)[:overflow]:
            del self._entries[k]
        logger.warning("Rate limit store full, evicted %d oldest entries", overflow)

    # -- Reaper ------------------------------------------------------------

    async def start(self) -> None:
        """Start the background reaper."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._reap_loop(), name="ratelimit-reaper")
        logger.info("MemoryRateLimitStore reaper started (interval=%.1fs)", self._reap_interval)

    async def stop(self) -> None:
        """Stop the background reaper."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("MemoryRateLimitStore reaper stopped")

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reap_interval)
            removed = self.purge_expired()
            if removed:
                logger.debug("Reaped %d expired rate limit entries", removed)


class KeyValueClient(Protocol):
    """Subset of the ``redis.asyncio.Redis`` API used by the external store."""

    async def incr(self, name: str, amount: int = 1) -> int: ...

    async def pexpire(self, name: str, time: Any, nx: bool = False) -> bool: ...

    async def pttl(self, name: str) -> int: ...

    async def get(self, name: str) -> Any: ...


class RedisRateLimitStore:
    """Store backed by an external key-value server.

    ``INCR`` is followed by ``PEXPIRE ... NX`` on every call: the expiry is
    always asserted but never pushed forward, so windows stay fixed.

    ``NX`` needs Redis 7. Servers that reject it get a plain ``PEXPIRE`` on the
    first increment of a window only, which loses the self-healing of a
    missed expiry but keeps windows fixed.
    """

    def __init__(
        self,
        client: KeyValueClient,
        prefix: str = DEFAULT_KEY_PREFIX,
        timeout: float | None = None,
    ):
        self._client = client
        self._prefix = prefix or DEFAULT_KEY_PREFIX
        self._timeout = timeout
        self._expire_nx = True

    @property
    def prefix(self) -> str:
        return self._prefix

    async def increment(self, key: str, window: float) -> int:
        full_key = self._prefix + key
        count = int(await self._call("increment", self._client.incr(full_key)))
        ttl = timedelta(seconds=window)
        if self._expire_nx:
            try:
                await self._call("expire", self._client.pexpire(full_key, ttl, nx=True))
                return count
            except StoreError as exc:
                if not isinstance(exc.__cause__, ResponseError):
                    raise
                logger.warning("Store rejected PEXPIRE NX (needs Redis 7), using plain PEXPIRE: %s", exc)
                self._expire_nx = False
        if count == 1:
            await self._call("expire", self._client.pexpire(full_key, ttl))
        return count

    async def get_count(self, key: str) -> int:
        raw = await self._call("get", self._client.get(self._prefix + key))
        if raw is None or raw == b"" or raw == "":
            return 0
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise StoreError(f"unparseable counter for {key!r}") from exc

    async def get_ttl(self, key: str) -> float:
        millis = await self._call("ttl", self._client.pttl(self._prefix + key))
        # -2: missing key, -1: no expiry set
        if millis is None or millis < 0:
            return 0.0
        return millis / 1000.0

    async def _call(self, op: str, awaitable):
        try:
            if self._timeout:
                return await asyncio.wait_for(awaitable, self._timeout)
            return await awaitable
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise StoreError(f"rate limit store {op} failed: {exc}") from exc
