"""
Rate limiting module for visitproof.

Two families of limiter live here:

- Per-key window limiters (`check_limit(key, limit, window)`), used at the
  HTTP boundary to throttle callers by IP. The in-memory backend suits a
  single instance; the distributed backend shares counters through the
  key-value store and falls back to memory if the store is unreachable.
- Admission limiters for outbound calls: `ConcurrencyGate` caps
  simultaneously in-flight calls with a FIFO wait queue, and
  `AdmissionLimiter` adds a sliding request window on top, protecting a
  quota-limited provider such as the OCR service.
"""

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, TypeVar

from .kvstore import KeyValueStoreError, UpstashRestClient

T = TypeVar("T")

logger = logging.getLogger(__name__)

MAX_ENTRIES = 100_000
EVICTION_RATIO = 0.1
CLEANUP_INTERVAL = 60.0


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check; reset_in is in seconds."""
    success: bool
    remaining: int
    reset_in: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "remaining": self.remaining,
            "reset_in": round(self.reset_in, 3),
        }


@dataclass(frozen=True)
class RateLimitPreset:
    limit: int
    window: float


RATE_LIMITS: Dict[str, RateLimitPreset] = {
    # Check-in, OCR and other expensive operations
    "strict": RateLimitPreset(limit=10, window=60.0),
    # General API
    "normal": RateLimitPreset(limit=60, window=60.0),
    # Read-only lookups
    "relaxed": RateLimitPreset(limit=120, window=60.0),
}


@dataclass
class RateLimitEntry:
    count: int
    reset_time: float


# ============================================================
# Per-key window limiters
# ============================================================

class RateLimiterBackend(ABC):
    """Common contract of the window limiters."""

    kind = "abstract"

    @abstractmethod
    async def check_limit(self, key: str, limit: int, window: float) -> RateLimitResult:
        pass


class InMemoryRateLimiter(RateLimiterBackend):
    """
    Fixed-window counters per key, bounded in size.

    Entries live in an OrderedDict kept in recency order (hash index plus a
    linked recency list), so touching a key and evicting the least recently
    used ones are both O(1). When `max_entries` keys are tracked, the oldest
    10% are evicted before a new key is inserted.
    """

    kind = "memory"

    def __init__(
        self,
        max_entries: int = MAX_ENTRIES,
        cleanup_interval: float = CLEANUP_INTERVAL,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_entries = max(1, max_entries)
        self._entries: "OrderedDict[str, RateLimitEntry]" = OrderedDict()
        self._cleanup_interval = cleanup_interval
        self._clock = clock
        self._last_cleanup = clock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def _evict_lru(self) -> int:
        evict_count = math.ceil(self.max_entries * EVICTION_RATIO)
        target = self.max_entries - evict_count
        removed = 0
        while self._entries and len(self._entries) > target:
            self._entries.popitem(last=False)
            removed += 1
        if removed:
            logger.warning("Rate limit store full; evicted %d least recently used keys", removed)
        return removed

    def cleanup_expired(self) -> int:
        """Remove expired windows. Returns number of keys removed."""
        now = self._clock()
        self._last_cleanup = now
        expired = [k for k, e in self._entries.items() if e.reset_time <= now]
        for k in expired:
            del self._entries[k]
        if len(self._entries) > self.max_entries:
            self._evict_lru()
        return len(expired)

    def check(self, key: str, limit: int, window: float) -> RateLimitResult:
        """Synchronous check; the event loop never yields inside it."""
        now = self._clock()
        if now - self._last_cleanup >= self._cleanup_interval:
            self.cleanup_expired()

        entry = self._entries.get(key)

        if entry is None or entry.reset_time <= now:
            if entry is None and len(self._entries) >= self.max_entries:
                self._evict_lru()
            self._entries[key] = RateLimitEntry(count=1, reset_time=now + window)
            self._entries.move_to_end(key)
            return RateLimitResult(success=True, remaining=max(0, limit - 1), reset_in=window)

        self._entries.move_to_end(key)

        if entry.count >= limit:
            return RateLimitResult(success=False, remaining=0, reset_in=entry.reset_time - now)

        entry.count += 1
        return RateLimitResult(
            success=True,
            remaining=limit - entry.count,
            reset_in=entry.reset_time - now
        )

    async def check_limit(self, key: str, limit: int, window: float) -> RateLimitResult:
        return self.check(key, limit, window)

    def reset(self, key: Optional[str] = None) -> None:
        if key:
            self._entries.pop(key, None)
        else:
            self._entries.clear()


class DistributedRateLimiter(RateLimiterBackend):
    """
    Window counters shared by all instances through the key-value store.

    INCR is the authority: a request is admitted only if its own increment
    lands within the limit, so concurrent checks cannot overshoot. A GET
    first turns away clients already at the limit without bumping the
    counter. A counter found without an expiry (lost EXPIRE) is given a
    fresh window. Any store error falls back to the in-memory limiter for
    that request.
    """

    kind = "distributed"

    def __init__(
        self,
        client: UpstashRestClient,
        fallback: Optional[InMemoryRateLimiter] = None,
        key_prefix: str = "ratelimit:api:"
    ):
        self.client = client
        self.fallback = fallback or InMemoryRateLimiter()
        self.key_prefix = key_prefix

    async def _reset_in(self, key: str, window_sec: int) -> float:
        ttl = await self.client.ttl(key)
        if ttl < 0:
            await self.client.expire(key, window_sec)
            return float(window_sec)
        return float(ttl)

    async def check_limit(self, key: str, limit: int, window: float) -> RateLimitResult:
        store_key = f"{self.key_prefix}{key}"
        window_sec = max(1, math.ceil(window))

        try:
            current_raw = await self.client.get(store_key)
            current = int(current_raw) if current_raw else 0

            if current >= limit:
                return RateLimitResult(
                    success=False,
                    remaining=0,
                    reset_in=await self._reset_in(store_key, window_sec)
                )

            new_count = await self.client.incr(store_key)
            if new_count == 1:
                await self.client.expire(store_key, window_sec)
                reset_in = float(window_sec)
            else:
                reset_in = await self._reset_in(store_key, window_sec)

            if new_count > limit:
                return RateLimitResult(success=False, remaining=0, reset_in=reset_in)

            return RateLimitResult(
                success=True,
                remaining=limit - new_count,
                reset_in=reset_in
            )
        except (KeyValueStoreError, ValueError, TypeError) as e:
            logger.error("Distributed rate limit check failed, falling back to in-memory: %s", e)
            return self.fallback.check(key, limit, window)


def build_rate_limiter(
    client: Optional[UpstashRestClient] = None,
    max_entries: int = MAX_ENTRIES
) -> RateLimiterBackend:
    """Distributed limiter if a key-value client is available, else in-memory."""
    memory = InMemoryRateLimiter(max_entries=max_entries)
    if client is not None:
        logger.info("Using distributed rate limiting")
        return DistributedRateLimiter(client, fallback=memory)
    logger.warning("Using in-memory rate limiting (not suitable for distributed deployment)")
    return memory


def rate_limiter_status(limiter: RateLimiterBackend) -> Dict[str, Any]:
    status: Dict[str, Any] = {"type": limiter.kind, "configured": True}
    if isinstance(limiter, DistributedRateLimiter):
        status["provider"] = "upstash"
    return status


def validate_production_rate_limiting(limiter: RateLimiterBackend, production: bool) -> Dict[str, Any]:
    """
    Check that production deployments share rate limit state.

    In-memory counters reset on restart and are not shared between
    instances, so a horizontally scaled deployment effectively multiplies
    every limit by its instance count.
    """
    warnings: List[str] = []
    if limiter.kind == "memory":
        warnings.append(
            "Rate limiting is using in-memory storage. "
            "This is not suitable for production deployments with multiple instances."
        )
        if production:
            warnings.append(
                "Configure UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN "
                "for distributed rate limiting in production."
            )
            logger.critical("In-memory rate limiting detected in production environment")

    return {
        "valid": limiter.kind != "memory" or not production,
        "warnings": warnings,
    }


def get_client_ip(headers: Mapping[str, str]) -> str:
    """
    Client address as reported by the edge proxy.

    Priority: x-forwarded-for (first hop), x-real-ip, cf-connecting-ip.
    """
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    return "unknown"


# ============================================================
# Outbound admission control
# ============================================================

class ConcurrencyGate:
    """
    Caps the number of simultaneously running calls.

    Waiters queue in arrival order; `release()` hands the freed slot straight
    to the oldest waiter, so no late arrival can overtake it.
    """

    def __init__(self, max_concurrent: int = 5):
        self.max_concurrent = max(1, max_concurrent)
        self.active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if self.active < self.max_concurrent and not self._waiters:
            self.active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just as we were cancelled; pass it on.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self.active = max(0, self.active - 1)

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self:
            return await fn()

    async def __aenter__(self) -> "ConcurrencyGate":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class AdmissionLimiter:
    """
    Request-window plus concurrency limiter for an outbound provider.

    `acquire()` first waits for a concurrency slot, then for room in the
    sliding window, sleeping until the oldest request leaves the window.
    """

    def __init__(
        self,
        max_requests: int,
        window: float = 60.0,
        max_concurrent: int = 5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.max_requests = max(1, max_requests)
        self.window = window
        self.gate = ConcurrencyGate(max_concurrent)
        self._request_times: Deque[float] = deque()
        self._clock = clock
        self._sleep = sleep

    def _prune(self, now: float) -> None:
        while self._request_times and now - self._request_times[0] >= self.window:
            self._request_times.popleft()

    async def acquire(self) -> None:
        await self.gate.acquire()
        try:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._request_times) < self.max_requests:
                    self._request_times.append(now)
                    return
                wait = self.window - (now - self._request_times[0])
                logger.debug("Request window full; waiting %.2fs", wait)
                await self._sleep(max(wait, 0.0))
        except BaseException:
            self.gate.release()
            raise

    def release(self) -> None:
        self.gate.release()

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        await self.acquire()
        try:
            return await fn()
        finally:
            self.release()

    def status(self) -> Dict[str, int]:
        self._prune(self._clock())
        return {
            "current_requests": len(self._request_times),
            "max_requests": self.max_requests,
            "concurrent": self.gate.active,
            "max_concurrent": self.gate.max_concurrent,
            "waiting": self.gate.waiting,
        }
