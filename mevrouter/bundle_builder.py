"""
Bundle construction from routes and opportunities
"""

import logging
from decimal import Decimal
from typing import Optional, Sequence, Tuple, Union

from .config import BundleParameters
from .constants import FEE_STRATEGY_MULTIPLIERS
from .errors import InvalidRouteError, UnknownStrategyError
from .models import Bundle, FeeParams, FeeStrategy, Hop, Operation, Opportunity, Route, content_id

logger = logging.getLogger(__name__)


def parse_fee_strategy(strategy: Union[FeeStrategy, str]) -> FeeStrategy:
    if isinstance(strategy, FeeStrategy):
        return strategy
    try:
        return FeeStrategy(strategy)
    except ValueError as e:
        raise UnknownStrategyError(f"Unknown fee strategy: {strategy}") from e


def validate_hops(hops: Sequence[Hop], token_in: Optional[str] = None, token_out: Optional[str] = None):
    """Raise InvalidRouteError unless hops form one contiguous chain"""
    if not hops:
        raise InvalidRouteError("Route has no hops")
    if token_in is not None and hops[0].token_in != token_in:
        raise InvalidRouteError(f"First hop starts at {hops[0].token_in}, expected {token_in}")
    if token_out is not None and hops[-1].token_out != token_out:
        raise InvalidRouteError(f"Last hop ends at {hops[-1].token_out}, expected {token_out}")
    for index, (prev, nxt) in enumerate(zip(hops, hops[1:]), start=1):
        if prev.token_out != nxt.token_in:
            raise InvalidRouteError(
                f"Hop {index} starts at {nxt.token_in} but previous hop ends at {prev.token_out}"
            )


class BundleBuilder:
    """Turns a route into an ordered, fee-priced bundle. Pure and deterministic."""

    def __init__(self, params: Optional[BundleParameters] = None):
        self.params = params or BundleParameters()

    def fee_params(self, strategy: Union[FeeStrategy, str], gas_limit: int) -> FeeParams:
        strategy = parse_fee_strategy(strategy)
        priority_multiplier, max_multiplier = FEE_STRATEGY_MULTIPLIERS[strategy.value]
        base_fee = Decimal(self.params.base_fee_per_gas)
        return FeeParams(
            strategy=strategy,
            priority_fee=int(base_fee * priority_multiplier),
            max_fee=int(base_fee * max_multiplier),
            gas_limit=gas_limit
        )

    def build(
        self,
        route: Route,
        strategy: Union[FeeStrategy, str],
        current_block: int,
        expected_profit: Optional[Decimal] = None,
        nonce: int = 0
    ) -> Bundle:
        """One operation per hop, targeting the next block"""
        validate_hops(route.hops, route.token_in, route.token_out)
        if expected_profit is None:
            if route.token_in == route.token_out:
                expected_profit = route.expected_amount_out - route.amount_in
            else:
                expected_profit = Decimal("0")
        return self._assemble(route.id, route.hops, strategy, current_block, expected_profit, nonce)

    def build_from_opportunity(
        self,
        opportunity: Opportunity,
        strategy: Union[FeeStrategy, str],
        current_block: int,
        nonce: int = 0
    ) -> Bundle:
        """Forward and backward legs in one atomic bundle"""
        hops = opportunity.hops
        validate_hops(hops, opportunity.forward.token_in, opportunity.backward.token_out)
        return self._assemble(opportunity.id, hops, strategy, current_block, opportunity.net_profit, nonce)

    def _assemble(
        self,
        route_id: str,
        hops: Tuple[Hop, ...],
        strategy: Union[FeeStrategy, str],
        current_block: int,
        expected_profit: Decimal,
        nonce: int
    ) -> Bundle:
        strategy = parse_fee_strategy(strategy)
        if current_block < 0:
            raise ValueError(f"current_block must be non-negative, got {current_block}")

        target_block = current_block + 1
        max_block_number = target_block + self.params.block_window
        bundle_id = content_id("bundle", route_id, strategy.value, target_block, nonce)

        operations = tuple(
            Operation(
                sequence=sequence,
                operation_id=content_id("op", bundle_id, sequence, hop.pool_ref, hop.token_in, hop.token_out),
                venue_id=hop.venue_id,
                family=hop.family,
                pool_ref=hop.pool_ref,
                token_in=hop.token_in,
                token_out=hop.token_out,
                gas_limit=hop.gas_estimate,
                quoted_amount_in=hop.amount_in,
                quoted_amount_out=hop.amount_out,
                fee=hop.fee
            )
            for sequence, hop in enumerate(hops)
        )
        gas_estimate = sum(op.gas_limit for op in operations)

        bundle = Bundle(
            id=bundle_id,
            route_id=route_id,
            operations=operations,
            target_block=target_block,
            max_block_number=max_block_number,
            fee_params=self.fee_params(strategy, gas_estimate),
            expected_profit=Decimal(expected_profit),
            gas_estimate=gas_estimate
        )
        logger.debug(
            f"Built bundle {bundle.id}: {len(operations)} ops, blocks {target_block}-{max_block_number}, "
            f"strategy {strategy.value}"
        )
        return bundle
