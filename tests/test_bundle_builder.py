"""
Tests for bundle construction
"""

import dataclasses
from decimal import Decimal

import pytest

from mevrouter.bundle_builder import BundleBuilder, parse_fee_strategy
from mevrouter.config import BundleParameters
from mevrouter.errors import InvalidRouteError, InvalidTransitionError, UnknownStrategyError
from mevrouter.models import BundleStatus, FeeStrategy, Opportunity, OpportunityKind

GWEI = 1_000_000_000


@pytest.fixture
def builder():
    return BundleBuilder(BundleParameters(base_fee_per_gas=20 * GWEI, block_window=5))


@pytest.fixture
def two_hop_route(make_route):
    return make_route(
        ("venue_x", "AAA", "WETH", 10, 20),
        ("venue_y", "WETH", "BBB", 20, 60),
    )


class TestFeeStrategies:

    @pytest.mark.parametrize("strategy,priority,max_fee", [
        ("aggressive", 60 * GWEI, 100 * GWEI),
        ("standard", 20 * GWEI, 60 * GWEI),
        ("conservative", 10 * GWEI, 40 * GWEI),
    ])
    def test_multipliers(self, builder, strategy, priority, max_fee):
        fees = builder.fee_params(strategy, gas_limit=300000)

        assert fees.priority_fee == priority
        assert fees.max_fee == max_fee
        assert fees.gas_limit == 300000

    def test_unknown_strategy(self, builder, two_hop_route):
        with pytest.raises(UnknownStrategyError):
            parse_fee_strategy("reckless")
        with pytest.raises(UnknownStrategyError):
            builder.build(two_hop_route, "reckless", current_block=100)

    def test_payload_is_hex(self, builder):
        payload = builder.fee_params(FeeStrategy.STANDARD, 21000).to_payload()

        assert payload["maxPriorityFeePerGas"] == hex(20 * GWEI)
        assert payload["gasLimit"] == hex(21000)


class TestBuild:

    def test_one_operation_per_hop(self, builder, two_hop_route):
        bundle = builder.build(two_hop_route, "standard", current_block=100)

        assert [op.sequence for op in bundle.operations] == [0, 1]
        assert [op.venue_id for op in bundle.operations] == ["venue_x", "venue_y"]
        assert bundle.operations[0].quoted_amount_out == Decimal("20")
        assert bundle.gas_estimate == 300000
        assert bundle.fee_params.gas_limit == 300000
        assert bundle.status == BundleStatus.PENDING
        assert bundle.route_id == two_hop_route.id

    def test_block_window(self, builder, two_hop_route):
        bundle = builder.build(two_hop_route, "standard", current_block=100)

        assert bundle.target_block == 101
        assert bundle.max_block_number == 106
        assert not bundle.is_stale(106)
        assert bundle.is_stale(107)

    def test_deterministic_ids(self, builder, two_hop_route):
        first = builder.build(two_hop_route, "standard", current_block=100)
        second = builder.build(two_hop_route, "standard", current_block=100)

        assert first.id == second.id
        assert first.operation_ids == second.operation_ids
        assert len(set(first.operation_ids)) == 2

    def test_ids_vary_with_inputs(self, builder, two_hop_route):
        base = builder.build(two_hop_route, "standard", current_block=100)

        assert builder.build(two_hop_route, "aggressive", current_block=100).id != base.id
        assert builder.build(two_hop_route, "standard", current_block=101).id != base.id
        assert builder.build(two_hop_route, "standard", current_block=100, nonce=1).id != base.id

    def test_expected_profit_defaults(self, builder, two_hop_route, make_route):
        assert builder.build(two_hop_route, "standard", 100).expected_profit == Decimal("0")
        assert builder.build(two_hop_route, "standard", 100, expected_profit=Decimal("3")).expected_profit == Decimal("3")

        loop = make_route(("venue_x", "AAA", "BBB", 10, 20), ("venue_y", "BBB", "AAA", 20, 11))
        assert builder.build(loop, "standard", 100).expected_profit == Decimal("1")

    def test_empty_route_rejected(self, builder, two_hop_route):
        empty = dataclasses.replace(two_hop_route, hops=())

        with pytest.raises(InvalidRouteError):
            builder.build(empty, "standard", current_block=100)

    def test_non_contiguous_route_rejected(self, builder, make_route):
        broken = make_route(
            ("venue_x", "AAA", "WETH", 10, 20),
            ("venue_y", "DAI", "BBB", 20, 60),
        )

        with pytest.raises(InvalidRouteError):
            builder.build(broken, "standard", current_block=100)

    def test_negative_block_rejected(self, builder, two_hop_route):
        with pytest.raises(ValueError):
            builder.build(two_hop_route, "standard", current_block=-1)

    def test_from_opportunity(self, builder, make_route):
        forward = make_route(("venue_x", "AAA", "BBB", 10, 20))
        backward = make_route(("venue_y", "BBB", "AAA", 20, 12))
        opportunity = Opportunity(
            id="opp_test",
            kind=OpportunityKind.LOOP,
            token_a="AAA",
            token_b="BBB",
            input_amount=Decimal("10"),
            final_amount=Decimal("12"),
            gas_cost=Decimal("0.5"),
            net_profit=Decimal("1.5"),
            profit_token="AAA",
            forward=forward,
            backward=backward
        )

        bundle = builder.build_from_opportunity(opportunity, FeeStrategy.AGGRESSIVE, current_block=50)

        assert len(bundle.operations) == 2
        assert bundle.route_id == "opp_test"
        assert bundle.expected_profit == Decimal("1.5")
        assert bundle.operations[1].token_out == "AAA"


class TestLifecycle:

    def test_forward_transitions(self, builder, two_hop_route):
        bundle = builder.build(two_hop_route, "standard", current_block=100)

        bundle.transition(BundleStatus.SUBMITTED)
        bundle.transition(BundleStatus.INCLUDED)

        assert bundle.status == BundleStatus.INCLUDED
        assert bundle.status.terminal

    def test_reversal_raises(self, builder, two_hop_route):
        bundle = builder.build(two_hop_route, "standard", current_block=100)
        bundle.transition(BundleStatus.SUBMITTED)

        with pytest.raises(InvalidTransitionError):
            bundle.transition(BundleStatus.PENDING)

    def test_terminal_states_are_final(self, builder, two_hop_route):
        bundle = builder.build(two_hop_route, "standard", current_block=100)
        bundle.transition(BundleStatus.EXPIRED)

        for status in BundleStatus:
            assert not bundle.can_transition(status)
