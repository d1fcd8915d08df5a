"""
Pool lookup caching for venue adapters

Pool references change rarely (a pool is deployed once per pair and fee),
pool state changes every block, so each gets its own TTL.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, NamedTuple, Optional

from ..constants import POOL_REF_CACHE_TTL, POOL_STATE_CACHE_TTL
from ..models import PoolState

logger = logging.getLogger(__name__)

# Cached "venue has no pool for this pair", distinct from a cache miss
NO_POOL = object()


class _Entry(NamedTuple):
    value: Any
    expires_at: float


class PoolCache:
    """TTL cache with least-recently-used eviction"""

    def __init__(self, ttl_seconds: float = 5, max_size: int = 1000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self):
        return len(self._entries)

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > time.monotonic():
                self._entries.move_to_end(key)
                self.hits += 1
                return entry.value
            if entry is not None:
                del self._entries[key]
            self.misses += 1
            return None

    async def set(self, key: str, value: Any):
        async with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1
            self._entries[key] = _Entry(value, time.monotonic() + self.ttl)

    async def clear_expired(self) -> int:
        """Drop expired entries, returning how many were removed"""
        async with self._lock:
            now = time.monotonic()
            stale = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in stale:
                del self._entries[key]
            return len(stale)

    async def clear(self):
        async with self._lock:
            self._entries.clear()
            self.hits = self.misses = self.evictions = 0

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            'size': len(self._entries),
            'max_size': self.max_size,
            'hits': self.hits,
            'misses': self.misses,
            'evictions': self.evictions,
            'hit_rate': self.hits / lookups if lookups else 0.0,
            'ttl_seconds': self.ttl
        }

    @staticmethod
    def make_key(*parts) -> str:
        return ':'.join(str(part) for part in parts)


class VenueCache:
    """Pool refs and pool states for a single venue"""

    def __init__(
        self,
        pool_ref_ttl: float = POOL_REF_CACHE_TTL,
        pool_state_ttl: float = POOL_STATE_CACHE_TTL
    ):
        self.pool_refs = PoolCache(ttl_seconds=pool_ref_ttl, max_size=1000)
        self.pool_states = PoolCache(ttl_seconds=pool_state_ttl, max_size=500)

    @staticmethod
    def _pair_key(token_a: str, token_b: str, fee: Optional[int]) -> str:
        # Pools are unordered pairs
        low, high = sorted((token_a, token_b))
        return PoolCache.make_key(low, high, fee)

    async def get_pool_ref(self, token_a: str, token_b: str, fee: Optional[int]) -> Optional[Any]:
        """Pool ref, NO_POOL for a remembered miss, None when not cached"""
        return await self.pool_refs.get(self._pair_key(token_a, token_b, fee))

    async def set_pool_ref(self, token_a: str, token_b: str, fee: Optional[int], pool_ref: Optional[str]):
        await self.pool_refs.set(self._pair_key(token_a, token_b, fee), NO_POOL if pool_ref is None else pool_ref)

    async def get_pool_state(self, pool_ref: str) -> Optional[PoolState]:
        return await self.pool_states.get(pool_ref)

    async def set_pool_state(self, pool_ref: str, state: PoolState):
        await self.pool_states.set(pool_ref, state)

    async def clear_all_expired(self) -> int:
        cleared_refs = await self.pool_refs.clear_expired()
        cleared_states = await self.pool_states.clear_expired()
        if cleared_refs or cleared_states:
            logger.debug(f"Expired {cleared_refs} pool refs and {cleared_states} pool states")
        return cleared_refs + cleared_states

    def get_all_stats(self) -> Dict[str, Dict]:
        return {
            'pool_ref': self.pool_refs.get_stats(),
            'pool_state': self.pool_states.get_stats()
        }
