"""
Arbitrage detection on top of the route optimizer

Loop profit is realized in token A, cross-venue profit in token B. Both are
ranked on their token B value so the two kinds compete on one scale.
"""

import asyncio
import logging
from decimal import Decimal
from typing import List, Optional

from .constants import DEFAULT_OPPORTUNITY_LIMIT, LOOP_CANDIDATES
from .errors import InvalidRouteError
from .models import Opportunity, OpportunityKind, Quote, Route, RouteMetric, content_id
from .route_optimizer import RouteOptimizer

logger = logging.getLogger(__name__)


class ArbitrageDetector:
    """Finds closed A->B->A loops and cross-venue price gaps"""

    def __init__(self, optimizer: RouteOptimizer, loop_candidates: int = LOOP_CANDIDATES):
        self.optimizer = optimizer
        self.loop_candidates = loop_candidates

    async def find_opportunities(
        self,
        token_a: str,
        token_b: str,
        amount_in: Decimal,
        limit: int = DEFAULT_OPPORTUNITY_LIMIT,
        gas_cost: Optional[Decimal] = None,
        max_hops: Optional[int] = None
    ) -> List[Opportunity]:
        """
        Profitable opportunities ranked by net profit in token_b.

        gas_cost, when given, is denominated in token_b; otherwise the gas
        pricer prices each opportunity's gas in its own profit token.
        """
        amount_in = Decimal(amount_in)
        if amount_in <= 0:
            raise InvalidRouteError(f"amount_in must be positive, got {amount_in}")
        if token_a == token_b:
            raise InvalidRouteError(f"token_a and token_b are both {token_a}")
        if gas_cost is not None:
            gas_cost = Decimal(gas_cost)

        loops, cross_venue = await asyncio.gather(
            self.find_loop_opportunities(token_a, token_b, amount_in, gas_cost, max_hops),
            self.find_cross_venue_opportunities(token_a, token_b, amount_in, gas_cost)
        )

        opportunities = sorted(loops + cross_venue, key=lambda o: o.net_profit_quote, reverse=True)[:limit]
        if opportunities:
            best = opportunities[0]
            logger.info(
                f"Found {len(opportunities)} opportunities for {token_a}/{token_b}, "
                f"best {best.kind.value} net profit {best.net_profit} {best.profit_token} "
                f"({best.net_profit_quote:.6f} {token_b})"
            )
        return opportunities

    async def find_loop_opportunities(
        self,
        token_a: str,
        token_b: str,
        amount_in: Decimal,
        gas_cost: Optional[Decimal] = None,
        max_hops: Optional[int] = None
    ) -> List[Opportunity]:
        """Best forward routes A->B, each closed by the best route back to A"""
        forward_routes = await self.optimizer.find_routes(
            token_a, token_b, amount_in,
            max_hops=max_hops,
            sort_by=RouteMetric.OUTPUT,
            limit=self.loop_candidates
        )
        if not forward_routes:
            return []

        backward_results = await asyncio.gather(*(
            self.optimizer.find_routes(
                token_b, token_a, forward.expected_amount_out,
                max_hops=max_hops,
                sort_by=RouteMetric.OUTPUT,
                limit=1
            )
            for forward in forward_routes
        ))

        opportunities = []
        for forward, backward_routes in zip(forward_routes, backward_results):
            if not backward_routes:
                continue
            backward = backward_routes[0]
            # Realized forward rate converts between the two tokens
            quote_rate = forward.expected_amount_out / amount_in
            opportunity = self._evaluate(
                OpportunityKind.LOOP, token_a, token_b,
                input_amount=amount_in,
                final_amount=backward.expected_amount_out,
                profit_token=token_a,
                forward=forward,
                backward=backward,
                gas_cost=None if gas_cost is None else gas_cost / quote_rate,
                quote_rate=quote_rate
            )
            if opportunity:
                opportunities.append(opportunity)
        return opportunities

    async def find_cross_venue_opportunities(
        self,
        token_a: str,
        token_b: str,
        amount_in: Decimal,
        gas_cost: Optional[Decimal] = None
    ) -> List[Opportunity]:
        """Sell on the venue paying most, buy back on the one paying least"""
        quote_client = self.optimizer.quote_client
        results = await quote_client.quote_all(token_a, token_b, amount_in)
        quotes = [result.quote for result in results if result.ok]
        if len(quotes) < 2:
            return []

        best = max(quotes, key=lambda q: q.amount_out)
        worst = min(quotes, key=lambda q: q.amount_out)
        if best.venue_id == worst.venue_id or best.amount_out <= worst.amount_out:
            return []

        forward = self.optimizer.build_route(
            token_a, token_b, amount_in,
            [(best, quote_client.get(best.venue_id).family)]
        )
        buy_back = Quote(
            venue_id=worst.venue_id,
            token_in=token_b,
            token_out=token_a,
            amount_in=worst.amount_out,
            amount_out=amount_in,
            price_impact=worst.price_impact,
            gas_estimate=worst.gas_estimate,
            pool_ref=worst.pool_ref,
            fee=worst.fee
        )
        backward = self.optimizer.build_route(
            token_b, token_a, worst.amount_out,
            [(buy_back, quote_client.get(worst.venue_id).family)]
        )

        opportunity = self._evaluate(
            OpportunityKind.CROSS_VENUE, token_a, token_b,
            input_amount=worst.amount_out,
            final_amount=best.amount_out,
            profit_token=token_b,
            forward=forward,
            backward=backward,
            gas_cost=gas_cost
        )
        return [opportunity] if opportunity else []

    def _evaluate(
        self,
        kind: OpportunityKind,
        token_a: str,
        token_b: str,
        input_amount: Decimal,
        final_amount: Decimal,
        profit_token: str,
        forward: Route,
        backward: Route,
        gas_cost: Optional[Decimal],
        quote_rate: Decimal = Decimal("1")
    ) -> Optional[Opportunity]:
        if gas_cost is None:
            gas_cost = self.optimizer.gas_pricer.cost(
                forward.gas_estimate + backward.gas_estimate, profit_token
            )

        net_profit = final_amount - input_amount - gas_cost
        if net_profit <= 0:
            return None

        return Opportunity(
            id=content_id("opp", kind.value, forward.id, backward.id),
            kind=kind,
            token_a=token_a,
            token_b=token_b,
            input_amount=input_amount,
            final_amount=final_amount,
            gas_cost=gas_cost,
            net_profit=net_profit,
            profit_token=profit_token,
            forward=forward,
            backward=backward,
            quote_rate=quote_rate
        )
