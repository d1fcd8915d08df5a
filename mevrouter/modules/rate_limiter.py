"""
Request throttling for ledger reads, venue quotes and relay submissions

Each venue gets its own token bucket, cloned from the bucket of its pricing
family, so a slow weighted venue cannot starve a concentrated one.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..constants import RATE_LIMITS

logger = logging.getLogger(__name__)

FALLBACK_LIMIT = {"calls_per_second": 10, "burst": 20}


@dataclass
class RateLimitConfig:
    """Bucket settings for one limiter"""
    calls_per_second: float
    burst: int
    name: str

    @classmethod
    def from_settings(cls, name: str, settings: Mapping[str, Any]) -> "RateLimitConfig":
        return cls(
            calls_per_second=float(settings['calls_per_second']),
            burst=int(settings['burst']),
            name=name
        )


class RateLimiter:
    """Token bucket; bursts up to `burst` calls, then refills at calls_per_second"""

    def __init__(self, calls_per_second: float, burst: int = 5, name: str = "default", family: Optional[str] = None):
        if calls_per_second <= 0:
            raise ValueError(f"Rate limiter {name}: calls_per_second must be positive")
        if burst < 1:
            raise ValueError(f"Rate limiter {name}: burst must be at least 1")
        self.calls_per_second = calls_per_second
        self.burst = burst
        self.name = name
        self.family = family
        self._available = float(burst)
        self._stamp = time.monotonic()
        self._lock = asyncio.Lock()
        self.total_requests = 0
        self.throttled_requests = 0
        self.total_wait_time = 0.0
        self.max_wait_time = 0.0

    @classmethod
    def from_config(cls, config: RateLimitConfig, family: Optional[str] = None) -> "RateLimiter":
        return cls(config.calls_per_second, config.burst, config.name, family)

    def clone(self, name: str) -> "RateLimiter":
        """Fresh bucket with the same settings, tagged with this limiter's name as family"""
        return RateLimiter(self.calls_per_second, self.burst, name, family=self.name)

    @property
    def available(self) -> float:
        return self._available

    def _top_up(self) -> float:
        now = time.monotonic()
        self._available = min(float(self.burst), self._available + (now - self._stamp) * self.calls_per_second)
        self._stamp = now
        return self._available

    async def acquire(self, tokens: int = 1):
        """Take tokens from the bucket, sleeping until enough have refilled"""
        async with self._lock:
            self.total_requests += 1
            deficit = tokens - self._top_up()
            waited = 0.0
            if deficit > 0:
                self.throttled_requests += 1
                delay = deficit / self.calls_per_second
                logger.debug(f"{self.name}: throttled for {delay:.3f}s")
                started = time.monotonic()
                await asyncio.sleep(delay)
                self._top_up()
                waited = time.monotonic() - started
            self._available -= tokens

            self.total_wait_time += waited
            self.max_wait_time = max(self.max_wait_time, waited)
            if waited > 0.1:
                logger.info(f"{self.name}: request delayed {waited:.2f}s by rate limit")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'family': self.family,
            'total_requests': self.total_requests,
            'throttled_requests': self.throttled_requests,
            'total_wait_time': self.total_wait_time,
            'average_wait_time': self.total_wait_time / self.total_requests if self.total_requests else 0.0,
            'max_wait_time': self.max_wait_time,
            'current_tokens': self._available,
            'calls_per_second': self.calls_per_second,
            'burst': self.burst
        }


class RateLimiterGroup:
    """Family templates plus the per-venue and per-relay limiters cloned from them"""

    def __init__(self, configs: Dict[str, RateLimitConfig]):
        self.limiters: Dict[str, RateLimiter] = {
            name: RateLimiter.from_config(config) for name, config in configs.items()
        }

    @classmethod
    def from_settings(cls, settings: Mapping[str, Mapping[str, Any]]) -> "RateLimiterGroup":
        return cls({name: RateLimitConfig.from_settings(name, values) for name, values in settings.items()})

    def get(self, name: str) -> Optional[RateLimiter]:
        return self.limiters.get(name)

    def get_or_create(self, name: str, family: str) -> RateLimiter:
        """Limiter for a venue or relay; first use clones the family template"""
        limiter = self.limiters.get(name)
        if limiter is not None:
            return limiter

        template = self.limiters.get(family)
        if template is None:
            logger.warning(f"No rate limit template for {family}, using fallback for {name}")
            limiter = RateLimiter(FALLBACK_LIMIT['calls_per_second'], FALLBACK_LIMIT['burst'], name, family)
        else:
            limiter = template.clone(name)
        self.limiters[name] = limiter
        return limiter

    async def acquire(self, name: str, tokens: int = 1):
        limiter = self.limiters.get(name)
        if limiter is None:
            logger.warning(f"Unknown rate limiter: {name}")
            return
        await limiter.acquire(tokens)

    def get_all_stats(self) -> Dict[str, Dict]:
        return {name: limiter.get_stats() for name, limiter in self.limiters.items()}


DEFAULT_RATE_LIMITS = {
    name: RateLimitConfig.from_settings(name, settings)
    for name, settings in RATE_LIMITS.items()
}
