"""
Venue quote clients, one adapter per pricing family
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import aiohttp

from ..constants import (
    CONCENTRATED_FEE_TIERS,
    CONSTANT_PRODUCT_FEE,
    FEE_DENOMINATOR,
    QUOTE_TIMEOUT_SECONDS,
    WEIGHTED_DEFAULT_FEE
)
from ..errors import LedgerError
from ..models import PoolState, PricingFamily, Quote, QuoteResult, Venue, VenueErrorKind
from .ledger import Ledger
from .pool_cache import NO_POOL, VenueCache

logger = logging.getLogger(__name__)


def oriented_reserves(state: PoolState, token_in: str) -> Tuple[Decimal, Decimal]:
    """Virtual (reserve_in, reserve_out) from liquidity and price"""
    if state.price <= 0:
        raise ValueError(f"Non-positive pool price {state.price}")
    sqrt_price = state.price.sqrt()
    reserve0 = state.liquidity / sqrt_price
    reserve1 = state.liquidity * sqrt_price
    if token_in == state.token0:
        return reserve0, reserve1
    if token_in == state.token1:
        return reserve1, reserve0
    raise ValueError(f"Token {token_in} not in pool {state.token0}/{state.token1}")


def apply_fee(amount: Decimal, fee: int) -> Decimal:
    return amount * (FEE_DENOMINATOR - fee) / FEE_DENOMINATOR


class VenueAdapter(ABC):
    """Base class for venue adapters"""

    family: PricingFamily

    def __init__(
        self,
        venue: Venue,
        ledger: Ledger,
        rate_limiter=None,
        cache: Optional[VenueCache] = None,
        timeout: float = QUOTE_TIMEOUT_SECONDS
    ):
        self.venue = venue
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.cache = cache or VenueCache()
        self.timeout = timeout

    @property
    def venue_id(self) -> str:
        return self.venue.id

    def quote_tiers(self) -> List[Optional[int]]:
        """Fee tiers to enumerate when quoting a direct swap"""
        return [None]

    @property
    def default_tier(self) -> Optional[int]:
        return self.quote_tiers()[0]

    async def quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        fee_tier: Optional[int] = None
    ) -> QuoteResult:
        """Quote a single swap; failures come back as a VenueError"""
        if token_in == token_out:
            return QuoteResult.failure(self.venue_id, VenueErrorKind.NO_POOL, "identical tokens")

        try:
            return await asyncio.wait_for(
                self._quote(token_in, token_out, Decimal(amount_in), fee_tier),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"{self.venue_id}: quote {token_in}->{token_out} timed out")
            return QuoteResult.failure(self.venue_id, VenueErrorKind.TIMEOUT, f"after {self.timeout}s")
        except (LedgerError, aiohttp.ClientError) as e:
            logger.warning(f"{self.venue_id}: ledger error quoting {token_in}->{token_out}: {e}")
            return QuoteResult.failure(self.venue_id, VenueErrorKind.NETWORK, str(e))
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            logger.warning(f"{self.venue_id}: invalid pool data for {token_in}->{token_out}: {e}")
            return QuoteResult.failure(self.venue_id, VenueErrorKind.INVALID_RESPONSE, str(e))

    @abstractmethod
    async def _quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        fee_tier: Optional[int]
    ) -> QuoteResult:
        ...

    async def _throttle(self):
        if self.rate_limiter:
            await self.rate_limiter.acquire()

    async def _pool_ref(self, token_in: str, token_out: str, fee: Optional[int]) -> Optional[str]:
        cached = await self.cache.get_pool_ref(token_in, token_out, fee)
        if cached is NO_POOL:
            return None
        if cached is not None:
            return cached

        await self._throttle()
        pool_ref = await self.ledger.get_pool(self.venue_id, token_in, token_out, fee)
        await self.cache.set_pool_ref(token_in, token_out, fee, pool_ref)
        return pool_ref

    async def _pool_state(self, pool_ref: str) -> PoolState:
        state = await self.cache.get_pool_state(pool_ref)
        if state is None:
            await self._throttle()
            state = await self.ledger.get_pool_state(pool_ref)
            await self.cache.set_pool_state(pool_ref, state)
        return state

    def _no_pool(self, token_in: str, token_out: str, fee: Optional[int] = None) -> QuoteResult:
        detail = f"{token_in}/{token_out}" + (f" fee {fee}" if fee is not None else "")
        return QuoteResult.failure(self.venue_id, VenueErrorKind.NO_POOL, detail)

    def _make_quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        amount_out: Decimal,
        price_impact: Decimal,
        pool_ref: str,
        fee: Optional[int]
    ) -> QuoteResult:
        if amount_out <= 0:
            raise ValueError(f"Non-positive output {amount_out}")
        return QuoteResult.success(Quote(
            venue_id=self.venue_id,
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            amount_out=amount_out,
            price_impact=min(Decimal("1"), max(Decimal("0"), price_impact)),
            gas_estimate=self.venue.gas_estimate_base,
            pool_ref=pool_ref,
            fee=fee
        ))


class ConstantProductAdapter(VenueAdapter):
    """x*y=k pools"""

    family = PricingFamily.CONSTANT_PRODUCT

    async def _quote(self, token_in, token_out, amount_in, fee_tier):
        pool_ref = await self._pool_ref(token_in, token_out, None)
        if not pool_ref:
            return self._no_pool(token_in, token_out)

        state = await self._pool_state(pool_ref)
        if state.liquidity <= 0:
            return self._no_pool(token_in, token_out)

        fee = self.venue.default_fee
        if fee is None:
            fee = state.swap_fee if state.swap_fee is not None else CONSTANT_PRODUCT_FEE

        reserve_in, reserve_out = oriented_reserves(state, token_in)
        amount_after_fee = apply_fee(amount_in, fee)
        amount_out = reserve_out * amount_after_fee / (reserve_in + amount_after_fee)
        price_impact = amount_after_fee / (reserve_in + amount_after_fee)

        return self._make_quote(token_in, token_out, amount_in, amount_out, price_impact, pool_ref, fee)


class ConcentratedLiquidityAdapter(VenueAdapter):
    """Tick-based pools with independently deployed fee tiers"""

    family = PricingFamily.CONCENTRATED

    def quote_tiers(self) -> List[Optional[int]]:
        return list(self.venue.fee_tiers or CONCENTRATED_FEE_TIERS)

    async def _quote(self, token_in, token_out, amount_in, fee_tier):
        fee = fee_tier if fee_tier is not None else self.default_tier
        pool_ref = await self._pool_ref(token_in, token_out, fee)
        if not pool_ref:
            return self._no_pool(token_in, token_out, fee)

        state = await self._pool_state(pool_ref)
        if state.liquidity <= 0:
            return self._no_pool(token_in, token_out, fee)

        await self._throttle()
        amount_out = await self.ledger.get_quote(pool_ref, token_in, token_out, amount_in)

        # Impact against in-range virtual liquidity
        reserve_in, _ = oriented_reserves(state, token_in)
        price_impact = amount_in / (reserve_in + amount_in)

        return self._make_quote(token_in, token_out, amount_in, amount_out, price_impact, pool_ref, fee)


class WeightedPoolAdapter(VenueAdapter):
    """Weighted pools; stable pools when the pool carries an amplification factor"""

    family = PricingFamily.WEIGHTED

    async def _quote(self, token_in, token_out, amount_in, fee_tier):
        pool_ref = await self._pool_ref(token_in, token_out, None)
        if not pool_ref:
            return self._no_pool(token_in, token_out)

        state = await self._pool_state(pool_ref)
        if state.liquidity <= 0:
            return self._no_pool(token_in, token_out)

        fee = state.swap_fee
        if fee is None:
            fee = self.venue.default_fee if self.venue.default_fee is not None else WEIGHTED_DEFAULT_FEE

        weight0, weight1 = state.weights or (Decimal("0.5"), Decimal("0.5"))
        if weight0 <= 0 or weight1 <= 0:
            raise ValueError(f"Invalid pool weights {weight0}/{weight1}")
        if state.price <= 0:
            raise ValueError(f"Non-positive pool price {state.price}")

        # Balances from pool value: token1 side holds weight1 of value, token0 side weight0
        balance0 = weight0 * state.liquidity / state.price
        balance1 = weight1 * state.liquidity
        if token_in == state.token0:
            reserve_in, reserve_out, weight_in, weight_out = balance0, balance1, weight0, weight1
        elif token_in == state.token1:
            reserve_in, reserve_out, weight_in, weight_out = balance1, balance0, weight1, weight0
        else:
            raise ValueError(f"Token {token_in} not in pool {state.token0}/{state.token1}")

        amount_after_fee = apply_fee(amount_in, fee)
        spot = (reserve_out / weight_out) / (reserve_in / weight_in)

        if state.amplification:
            slippage = amount_after_fee / (reserve_in + amount_after_fee)
            price_impact = slippage / state.amplification
            amount_out = min(amount_after_fee * spot * (1 - price_impact), reserve_out)
        else:
            ratio = reserve_in / (reserve_in + amount_after_fee)
            amount_out = reserve_out * (1 - ratio ** (weight_in / weight_out))
            price_impact = 1 - (amount_out / amount_after_fee) / spot

        return self._make_quote(token_in, token_out, amount_in, amount_out, price_impact, pool_ref, fee)


ADAPTERS = {
    PricingFamily.CONSTANT_PRODUCT: ConstantProductAdapter,
    PricingFamily.CONCENTRATED: ConcentratedLiquidityAdapter,
    PricingFamily.WEIGHTED: WeightedPoolAdapter,
}


def create_adapter(venue: Venue, ledger: Ledger, rate_limiter=None, timeout: float = QUOTE_TIMEOUT_SECONDS) -> VenueAdapter:
    """Adapter for the venue's pricing family"""
    adapter_cls = ADAPTERS[venue.family]
    return adapter_cls(venue, ledger, rate_limiter=rate_limiter, timeout=timeout)


class VenueQuoteClient:
    """Unified interface over all venue adapters"""

    def __init__(self, adapters: List[VenueAdapter]):
        self.adapters: Dict[str, VenueAdapter] = {}
        for adapter in adapters:
            if adapter.venue_id in self.adapters:
                raise ValueError(f"Duplicate venue id: {adapter.venue_id}")
            self.adapters[adapter.venue_id] = adapter

    @classmethod
    def from_venues(
        cls,
        venues: List[Venue],
        ledger: Ledger,
        rate_limiters=None,
        timeout: float = QUOTE_TIMEOUT_SECONDS
    ) -> "VenueQuoteClient":
        adapters = []
        for venue in venues:
            limiter = None
            if rate_limiters is not None:
                limiter = rate_limiters.get_or_create(venue.id, venue.family.value)
            adapters.append(create_adapter(venue, ledger, limiter, timeout))
        return cls(adapters)

    def get(self, venue_id: str) -> Optional[VenueAdapter]:
        return self.adapters.get(venue_id)

    def __iter__(self):
        return iter(self.adapters.values())

    def __len__(self):
        return len(self.adapters)

    async def quote_all(
        self,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        venue_ids: Optional[List[str]] = None
    ) -> List[QuoteResult]:
        """Single-hop quotes on the default tier of every venue, in parallel"""
        adapters = [
            adapter for adapter in self.adapters.values()
            if venue_ids is None or adapter.venue_id in venue_ids
        ]
        return list(await asyncio.gather(*(
            adapter.quote(token_in, token_out, amount_in, adapter.default_tier)
            for adapter in adapters
        )))

    async def get_best_quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: Decimal
    ) -> Optional[Quote]:
        """Highest-output quote across venues"""
        results = await self.quote_all(token_in, token_out, amount_in)
        quotes = [result.quote for result in results if result.ok]
        if not quotes:
            return None
        return max(quotes, key=lambda q: q.amount_out)

    async def clear_expired(self) -> int:
        total = 0
        for adapter in self.adapters.values():
            total += await adapter.cache.clear_all_expired()
        return total
