"""
Multi-venue route optimizer

Enumerates direct, two-leg and fee-tier-expanded paths across all venues,
quotes them concurrently and scores each candidate route.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union

from .config import OptimizerParameters
from .constants import (
    BASE_EXECUTION_TIME_MS,
    COMBINED_SCORE_WEIGHTS,
    DEFAULT_GAS_PRICE,
    EXECUTION_TIME_PER_EXTRA_HOP_MS,
    GAS_EFFICIENCY_REFERENCE,
    RELIABILITY_BASELINE,
    RELIABILITY_PENALTY_PER_HOP,
    RISK_BASE,
    RISK_FEE_DIVISOR,
    RISK_PER_EXTRA_HOP,
    SPEED_EFFICIENCY_REFERENCE_MS
)
from .errors import InvalidRouteError, UnknownStrategyError
from .models import Hop, PricingFamily, Quote, QuoteResult, Route, RouteMetric, content_id
from .modules.venue_clients import VenueAdapter, VenueQuoteClient

logger = logging.getLogger(__name__)

Leg = Tuple[VenueAdapter, Optional[int]]


class GasPricer:
    """Price of one gas unit expressed in a given token"""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None, default: Decimal = DEFAULT_GAS_PRICE):
        self.prices = dict(prices or {})
        self.default = Decimal(default)

    def price(self, token: str) -> Decimal:
        return self.prices.get(token, self.default)

    def cost(self, gas_units: int, token: str) -> Decimal:
        """Gas cost of a route denominated in token"""
        return Decimal(gas_units) * self.price(token)


class QuotePass:
    """Quote memo and task set for one optimization pass"""

    def __init__(self, semaphore: asyncio.Semaphore):
        self.semaphore = semaphore
        self.tasks: Dict[tuple, asyncio.Task] = {}

    def quote(
        self,
        adapter: VenueAdapter,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        fee: Optional[int]
    ) -> "asyncio.Future[QuoteResult]":
        key = (adapter.venue_id, token_in, token_out, amount_in, fee)
        task = self.tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(self._bounded(adapter, token_in, token_out, amount_in, fee))
            self.tasks[key] = task
        return task

    async def _bounded(self, adapter, token_in, token_out, amount_in, fee) -> QuoteResult:
        async with self.semaphore:
            return await adapter.quote(token_in, token_out, amount_in, fee)

    def cancel(self):
        """Cancel quotes still outstanding"""
        for task in self.tasks.values():
            if not task.done():
                task.cancel()


class RouteOptimizer:
    """Finds and scores swap routes across all configured venues"""

    def __init__(
        self,
        quote_client: VenueQuoteClient,
        gas_pricer: Optional[GasPricer] = None,
        params: Optional[OptimizerParameters] = None
    ):
        self.quote_client = quote_client
        self.gas_pricer = gas_pricer or GasPricer()
        self.params = params or OptimizerParameters()
        self._semaphore = asyncio.Semaphore(self.params.max_concurrent_quotes)

    async def find_routes(
        self,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        max_hops: Optional[int] = None,
        sort_by: Union[RouteMetric, str] = RouteMetric.COMBINED,
        limit: Optional[int] = None
    ) -> List[Route]:
        """Candidate routes sorted descending by the chosen metric"""
        max_hops = self.params.max_hops if max_hops is None else max_hops
        amount_in = Decimal(amount_in)
        if max_hops < 1:
            raise InvalidRouteError(f"max_hops must be at least 1, got {max_hops}")
        if amount_in <= 0:
            raise InvalidRouteError(f"amount_in must be positive, got {amount_in}")
        if token_in == token_out:
            raise InvalidRouteError(f"token_in and token_out are both {token_in}")
        if not isinstance(sort_by, RouteMetric):
            try:
                sort_by = RouteMetric(sort_by)
            except ValueError as e:
                raise UnknownStrategyError(f"Unknown route metric: {sort_by}") from e

        quote_pass = QuotePass(self._semaphore)
        try:
            searches = [self._direct_routes(quote_pass, token_in, token_out, amount_in)]
            if max_hops >= 2:
                searches.append(self._two_leg_routes(quote_pass, token_in, token_out, amount_in))
                searches.append(self._fee_tier_routes(quote_pass, token_in, token_out, amount_in))
            results = await asyncio.gather(*searches)
        finally:
            quote_pass.cancel()

        routes: Dict[str, Route] = {}
        for batch in results:
            for route in batch:
                if len(route.hops) <= max_hops:
                    routes.setdefault(route.id, route)

        ranked = sorted(routes.values(), key=lambda r: r.metric(sort_by), reverse=True)
        if limit is not None:
            ranked = ranked[:limit]

        logger.debug(
            f"Route search {token_in}->{token_out} amount={amount_in}: "
            f"{len(routes)} routes from {len(quote_pass.tasks)} quotes"
        )
        return ranked

    def _intermediates(self, token_in: str, token_out: str) -> List[str]:
        return [t for t in self.params.intermediate_tokens if t not in (token_in, token_out)]

    async def _direct_routes(self, quote_pass, token_in, token_out, amount_in) -> List[Route]:
        legs = [
            (adapter, tier)
            for adapter in self.quote_client
            for tier in adapter.quote_tiers()
        ]
        results = await asyncio.gather(*(
            quote_pass.quote(adapter, token_in, token_out, amount_in, tier)
            for adapter, tier in legs
        ))

        routes = []
        for (adapter, _), result in zip(legs, results):
            if result.ok:
                routes.append(self.build_route(token_in, token_out, amount_in, [(result.quote, adapter.family)]))
        return routes

    async def _two_leg_routes(self, quote_pass, token_in, token_out, amount_in) -> List[Route]:
        """token_in -> mid -> token_out across every venue pair on default tiers"""
        legs: List[Leg] = [(adapter, adapter.default_tier) for adapter in self.quote_client]
        searches = [
            self._chain(quote_pass, token_in, mid, token_out, amount_in, first, legs)
            for mid in self._intermediates(token_in, token_out)
            for first in legs
        ]
        batches = await asyncio.gather(*searches)
        return [route for batch in batches for route in batch]

    async def _fee_tier_routes(self, quote_pass, token_in, token_out, amount_in) -> List[Route]:
        """Every fee-tier pair through each concentrated venue"""
        searches = []
        for adapter in self.quote_client:
            if adapter.family != PricingFamily.CONCENTRATED:
                continue
            tiers = adapter.quote_tiers()
            for mid in self._intermediates(token_in, token_out):
                for first_tier in tiers:
                    searches.append(self._chain(
                        quote_pass, token_in, mid, token_out, amount_in,
                        (adapter, first_tier),
                        [(adapter, second_tier) for second_tier in tiers]
                    ))
        batches = await asyncio.gather(*searches)
        return [route for batch in batches for route in batch]

    async def _chain(
        self,
        quote_pass: QuotePass,
        token_in: str,
        mid: str,
        token_out: str,
        amount_in: Decimal,
        first: Leg,
        seconds: List[Leg]
    ) -> List[Route]:
        first_adapter, first_tier = first
        first_result = await quote_pass.quote(first_adapter, token_in, mid, amount_in, first_tier)
        if not first_result.ok:
            return []

        first_quote = first_result.quote
        second_results = await asyncio.gather(*(
            quote_pass.quote(adapter, mid, token_out, first_quote.amount_out, tier)
            for adapter, tier in seconds
        ))

        routes = []
        for (adapter, _), result in zip(seconds, second_results):
            if result.ok:
                routes.append(self.build_route(
                    token_in, token_out, amount_in,
                    [(first_quote, first_adapter.family), (result.quote, adapter.family)]
                ))
        return routes

    def build_route(
        self,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        legs: List[Tuple[Quote, PricingFamily]]
    ) -> Route:
        """Assemble and score a route from successful leg quotes"""
        hops = tuple(Hop.from_quote(quote, family) for quote, family in legs)
        hop_count = len(hops)
        amount_out = hops[-1].amount_out
        gas_estimate = sum(hop.gas_estimate for hop in hops)
        price_impact = min(Decimal("1"), sum((quote.price_impact for quote, _ in legs), Decimal("0")))
        execution_time = BASE_EXECUTION_TIME_MS + EXECUTION_TIME_PER_EXTRA_HOP_MS * (hop_count - 1)

        gas_cost = self.gas_pricer.cost(gas_estimate, token_out)
        profitability = max(0.0, min(1.0, float((amount_out - gas_cost) / amount_out)))

        baseline = min(RELIABILITY_BASELINE[hop.family.value] for hop in hops)
        reliability = max(0.0, baseline - RELIABILITY_PENALTY_PER_HOP * (hop_count - 1))

        fee_total = sum(hop.fee or 0 for hop in hops)
        risk_score = min(1.0, RISK_BASE + RISK_PER_EXTRA_HOP * (hop_count - 1) + fee_total / RISK_FEE_DIVISOR)

        gas_efficiency = min(1.0, GAS_EFFICIENCY_REFERENCE / gas_estimate) if gas_estimate > 0 else 1.0
        speed_efficiency = min(1.0, SPEED_EFFICIENCY_REFERENCE_MS / execution_time)

        combined_score = (
            COMBINED_SCORE_WEIGHTS["profitability"] * profitability * (1 - risk_score)
            + COMBINED_SCORE_WEIGHTS["reliability"] * reliability
            + COMBINED_SCORE_WEIGHTS["gas_efficiency"] * gas_efficiency
            + COMBINED_SCORE_WEIGHTS["execution_speed"] * speed_efficiency
        )

        route_id = content_id(
            "route",
            amount_in,
            *(f"{hop.venue_id}:{hop.pool_ref}:{hop.token_in}>{hop.token_out}:{hop.fee}" for hop in hops)
        )

        return Route(
            id=route_id,
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            hops=hops,
            expected_amount_out=amount_out,
            price_impact=price_impact,
            gas_estimate=gas_estimate,
            execution_time_estimate=execution_time,
            reliability=reliability,
            profitability=profitability,
            risk_score=risk_score,
            gas_efficiency=gas_efficiency,
            speed_efficiency=speed_efficiency,
            combined_score=combined_score
        )
