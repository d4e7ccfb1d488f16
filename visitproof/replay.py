"""
Replay Guard for on-site codes

A TOTP code stays acceptable for up to two windows (current + previous).
Without tracking, a captured code could be resubmitted repeatedly inside that
minute. The guard remembers every accepted (store, user, code) triple until
the code can no longer verify anyway.

Only a SHA-256 digest of the triple is stored, never the code itself, so
inspecting the store's memory does not reveal valid codes.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .kvstore import UpstashRestClient
from .totp import TOTP_WINDOW_SECONDS
from .util import sha256_hex

logger = logging.getLogger(__name__)

# Covers the two acceptable windows plus a one-minute buffer.
TOKEN_EXPIRY_SECONDS = 4 * TOTP_WINDOW_SECONDS
SWEEP_INTERVAL_SECONDS = TOTP_WINDOW_SECONDS


@dataclass(frozen=True)
class UsedTokenEntry:
    """An accepted code, identified only by its digest."""
    hashed_key: str
    used_at: float


def hash_token_key(code: str, store_id: str, user_id: str) -> str:
    """One-way key for a (store, user, code) triple."""
    return sha256_hex(f"{store_id}:{user_id}:{code}")


class UsedTokenStore(ABC):
    """
    Abstract interface for remembering accepted codes.

    Implementations must treat `claim` as an atomic check-and-mark.
    """

    @abstractmethod
    async def contains(self, hashed_key: str) -> bool:
        """Check if the digest has been recorded and not yet expired."""
        pass

    @abstractmethod
    async def claim(self, hashed_key: str) -> bool:
        """
        Record the digest.

        Returns:
            True if this is the first use
            False if the digest was already recorded
        """
        pass

    @abstractmethod
    def sweep(self) -> int:
        """Remove expired entries. Returns count removed."""
        pass


class InMemoryUsedTokenStore(UsedTokenStore):
    """
    Single-process used-token store.

    Expired entries are swept lazily, at most once per `sweep_interval`, on
    the lookup path; `sweep()` can also be driven by a background task.
    The event loop serializes access, so no lock is taken.
    """

    def __init__(
        self,
        ttl: float = TOKEN_EXPIRY_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        self._entries: Dict[str, UsedTokenEntry] = {}
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._entries)

    def _maybe_sweep(self) -> None:
        if self._clock() - self._last_sweep >= self._sweep_interval:
            self.sweep()

    def _live(self, hashed_key: str) -> bool:
        entry = self._entries.get(hashed_key)
        if entry is None:
            return False
        if self._clock() - entry.used_at > self._ttl:
            del self._entries[hashed_key]
            return False
        return True

    async def contains(self, hashed_key: str) -> bool:
        self._maybe_sweep()
        return self._live(hashed_key)

    async def claim(self, hashed_key: str) -> bool:
        self._maybe_sweep()
        if self._live(hashed_key):
            return False
        self._entries[hashed_key] = UsedTokenEntry(hashed_key=hashed_key, used_at=self._clock())
        return True

    def sweep(self) -> int:
        now = self._clock()
        self._last_sweep = now
        expired = [k for k, e in self._entries.items() if now - e.used_at > self._ttl]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug("Swept %d expired used-token entries", len(expired))
        return len(expired)


class KeyValueUsedTokenStore(UsedTokenStore):
    """
    Used-token store shared by every instance through the key-value store.

    Atomicity comes from SET NX; expiry from the key TTL, so `sweep` has
    nothing to do.
    """

    def __init__(
        self,
        client: UpstashRestClient,
        ttl: float = TOKEN_EXPIRY_SECONDS,
        key_prefix: str = "visitproof:used:"
    ):
        self.client = client
        self.key_prefix = key_prefix
        self._ttl = max(1, int(ttl))

    async def contains(self, hashed_key: str) -> bool:
        return await self.client.exists(f"{self.key_prefix}{hashed_key}")

    async def claim(self, hashed_key: str) -> bool:
        return await self.client.set(
            f"{self.key_prefix}{hashed_key}", "1", ex=self._ttl, nx=True
        )

    def sweep(self) -> int:
        return 0


class ReplayGuard:
    """
    Tracks which on-site codes each user has already redeemed at each venue.

    Usage:
        guard = ReplayGuard(InMemoryUsedTokenStore())
        if await guard.claim(code, store_id, user_id):
            ...  # first use
    """

    def __init__(self, store: Optional[UsedTokenStore] = None):
        self.store = store or InMemoryUsedTokenStore()

    async def is_used(self, code: str, store_id: str, user_id: str) -> bool:
        """Check whether this exact (store, user, code) was already accepted."""
        return await self.store.contains(hash_token_key(code, store_id, user_id))

    async def mark_used(self, code: str, store_id: str, user_id: str) -> None:
        """Record the code as redeemed for this store and user."""
        await self.store.claim(hash_token_key(code, store_id, user_id))

    async def claim(self, code: str, store_id: str, user_id: str) -> bool:
        """Atomic check-and-mark. Returns False if the code was already used."""
        return await self.store.claim(hash_token_key(code, store_id, user_id))

    def sweep(self) -> int:
        return self.store.sweep()


async def run_periodic_sweep(guard: ReplayGuard, interval: float = SWEEP_INTERVAL_SECONDS) -> None:
    """Sweep expired entries forever; run as a background task."""
    while True:
        await asyncio.sleep(interval)
        guard.sweep()
