"""
Tests for relay selection, failover and bundle status ownership
"""

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from mevrouter.bundle_builder import BundleBuilder
from mevrouter.config import AggregatorParameters
from mevrouter.constants import ERROR_MESSAGES
from mevrouter.errors import InvalidTransitionError, UnknownStrategyError
from mevrouter.models import BundleStatus, HealthUpdate, RelayPerformance, SelectionStrategy
from mevrouter.modules.relay_client import JsonRpcRelayClient, RelayEndpoint
from mevrouter.relay_aggregator import RelayAggregator, relay_score


def seed(aggregator, relay_id, submissions, inclusions, avg_latency_ms, cost=Decimal("0")):
    """Give a relay a submission history"""
    perf = aggregator.relays[relay_id].performance
    perf.total_submissions = submissions
    perf.successful_inclusions = inclusions
    perf.total_latency_ms = avg_latency_ms * submissions
    perf.last_latency_ms = avg_latency_ms
    perf.total_cost = cost * submissions
    return perf


@pytest.fixture
def bundle_factory(make_route):
    builder = BundleBuilder()
    route = make_route(("venue_x", "AAA", "BBB", 10, 20))

    def factory(current_block=100, nonce=0):
        return builder.build(route, "standard", current_block=current_block, nonce=nonce)

    return factory


class TestSelection:
    """Strategy-based relay selection over healthy relays"""

    @pytest.fixture
    def aggregator(self, make_relay):
        aggregator = RelayAggregator(AggregatorParameters(min_success_rate=0.5))
        aggregator.register_relay(make_relay("relay_a"))
        aggregator.register_relay(make_relay("relay_b"))
        seed(aggregator, "relay_a", 100, 95, 50)
        seed(aggregator, "relay_b", 100, 60, 20)
        return aggregator

    @pytest.mark.asyncio
    async def test_balanced_prefers_reliable_relay(self, aggregator):
        scores = await aggregator.recompute_scores()

        assert scores["relay_a"] > scores["relay_b"]
        assert aggregator.select_relay(SelectionStrategy.BALANCED) == "relay_a"

    def test_fastest_prefers_low_latency(self, aggregator):
        assert aggregator.select_relay(SelectionStrategy.FASTEST) == "relay_b"

    def test_highest_success(self, aggregator):
        assert aggregator.select_relay("highest_success") == "relay_a"

    def test_lowest_cost(self, aggregator):
        seed(aggregator, "relay_a", 100, 95, 50, cost=Decimal("5"))
        seed(aggregator, "relay_b", 100, 60, 20, cost=Decimal("2"))

        assert aggregator.select_relay(SelectionStrategy.LOWEST_COST) == "relay_b"

    def test_exclusion(self, aggregator):
        assert aggregator.select_relay(SelectionStrategy.FASTEST, exclude=["relay_b"]) == "relay_a"
        assert aggregator.select_relay(SelectionStrategy.FASTEST, exclude=["relay_a", "relay_b"]) is None

    def test_low_success_rate_is_unhealthy(self, make_relay):
        aggregator = RelayAggregator(AggregatorParameters())
        aggregator.register_relay(make_relay("relay_a"))
        aggregator.register_relay(make_relay("relay_b"))
        seed(aggregator, "relay_a", 100, 95, 50)
        seed(aggregator, "relay_b", 100, 60, 20)

        assert aggregator.get_active_relays() == ["relay_a"]
        assert aggregator.select_relay(SelectionStrategy.FASTEST) == "relay_a"

    def test_new_relays_are_healthy(self, make_relay):
        aggregator = RelayAggregator()
        aggregator.register_relay(make_relay("relay_a"))
        seed(aggregator, "relay_a", 5, 0, 10)

        assert aggregator.get_active_relays() == ["relay_a"]

    def test_slow_relay_is_unhealthy(self, aggregator):
        aggregator.relays["relay_b"].performance.last_latency_ms = 20000

        assert aggregator.get_active_relays() == ["relay_a"]

    def test_tie_goes_to_first_registered(self, make_relay):
        aggregator = RelayAggregator()
        for relay_id in ("relay_a", "relay_b", "relay_c"):
            aggregator.register_relay(make_relay(relay_id))

        assert aggregator.select_relay(SelectionStrategy.BALANCED) == "relay_a"
        assert aggregator.select_relay(SelectionStrategy.FASTEST) == "relay_a"

    def test_round_robin_cycles(self, make_relay):
        aggregator = RelayAggregator()
        for relay_id in ("relay_a", "relay_b", "relay_c"):
            aggregator.register_relay(make_relay(relay_id))

        picks = [aggregator.select_relay(SelectionStrategy.ROUND_ROBIN) for _ in range(4)]

        assert picks == ["relay_a", "relay_b", "relay_c", "relay_a"]

    def test_unknown_strategy(self, aggregator):
        with pytest.raises(UnknownStrategyError):
            aggregator.select_relay("cheapest_first")

    def test_duplicate_registration(self, aggregator, make_relay):
        with pytest.raises(ValueError):
            aggregator.register_relay(make_relay("relay_a"))

    def test_performance_snapshot_is_a_copy(self, aggregator):
        snapshot = aggregator.get_relay_performance("relay_a")
        snapshot.total_submissions = 0

        assert aggregator.relays["relay_a"].performance.total_submissions == 100
        assert aggregator.get_relay_performance("missing") is None


class TestScore:

    def test_score_bounds(self):
        perfect = RelayPerformance(relay_id="r", total_submissions=10, successful_inclusions=10)
        assert relay_score(perfect) == pytest.approx(10000)

        failing = RelayPerformance(relay_id="r", total_submissions=10, consecutive_failures=4)
        assert 0 <= relay_score(failing) < relay_score(perfect)

    @pytest.mark.asyncio
    async def test_scores_published_to_metrics(self, make_relay, metrics):
        aggregator = RelayAggregator(metrics=metrics)
        aggregator.register_relay(make_relay("relay_a"))

        await aggregator.recompute_scores()

        assert "relay_a" in metrics.get_metrics()["relay_scores"]


class TestFailover:
    """Bounded failover across distinct relays"""

    @pytest.mark.asyncio
    async def test_rejection_fails_over_to_next_relay(self, make_relay, bundle_factory, metrics):
        aggregator = RelayAggregator(metrics=metrics)
        primary = make_relay("primary", accept=False)
        secondary = make_relay("secondary")
        aggregator.register_relay(primary)
        aggregator.register_relay(secondary)
        bundle = bundle_factory()

        result = await aggregator.submit_with_failover(bundle, SelectionStrategy.BALANCED)

        assert result.success
        assert result.relay_id == "secondary"
        assert result.relays_tried == ["primary", "secondary"]
        assert len(result.attempts) == 2
        assert not result.attempts[0].success
        assert result.attempts[0].failure_reason == "bundle rejected"
        assert bundle.status == BundleStatus.SUBMITTED
        assert len(aggregator.attempts_for(bundle.id)) == 2
        assert aggregator.relays["primary"].performance.consecutive_failures == 1
        assert aggregator.relays["secondary"].performance.total_submissions == 1
        assert metrics.get_metrics()["total_attempts"] == 2

    @pytest.mark.asyncio
    async def test_failover_is_bounded(self, make_relay, bundle_factory, metrics):
        aggregator = RelayAggregator(AggregatorParameters(max_failover_attempts=3), metrics=metrics)
        relays = [make_relay(f"relay_{i}", accept=False) for i in range(4)]
        for relay in relays:
            aggregator.register_relay(relay)
        bundle = bundle_factory()

        result = await aggregator.submit_with_failover(bundle)

        assert result.status == BundleStatus.FAILED
        assert result.error == ERROR_MESSAGES["ALL_RELAYS_EXHAUSTED"]
        assert len(result.attempts) == 3
        assert len(set(result.relays_tried)) == 3
        assert relays[3].received == []
        assert bundle.status == BundleStatus.FAILED
        assert metrics.get_metrics()["failed_bundles"] == 1

    @pytest.mark.asyncio
    async def test_fewer_relays_than_attempts(self, make_relay, bundle_factory):
        aggregator = RelayAggregator(AggregatorParameters(max_failover_attempts=5))
        aggregator.register_relay(make_relay("relay_a", accept=False))
        aggregator.register_relay(make_relay("relay_b", accept=False))

        result = await aggregator.submit_with_failover(bundle_factory())

        assert result.status == BundleStatus.FAILED
        assert result.relays_tried == ["relay_a", "relay_b"]

    @pytest.mark.asyncio
    async def test_no_relays_fails_without_attempts(self, bundle_factory):
        aggregator = RelayAggregator()

        result = await aggregator.submit_with_failover(bundle_factory())

        assert result.status == BundleStatus.FAILED
        assert result.attempts == []

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, make_relay, bundle_factory):
        aggregator = RelayAggregator(AggregatorParameters(submission_timeout_seconds=0.05))
        aggregator.register_relay(make_relay("slow", delay=0.5))
        aggregator.register_relay(make_relay("fast"))

        result = await aggregator.submit_with_failover(bundle_factory())

        assert result.relay_id == "fast"
        assert result.attempts[0].failure_reason == ERROR_MESSAGES["SUBMISSION_TIMEOUT"]
        assert result.attempts[0].latency_ms >= 40

    @pytest.mark.asyncio
    async def test_undecodable_relay_response_fails_over(self, make_relay, bundle_factory):
        aggregator = RelayAggregator()
        bad = JsonRpcRelayClient(RelayEndpoint(id="bad", url="https://bad.example"))
        aggregator.register_relay(bad)
        aggregator.register_relay(make_relay("good"))
        bundle = bundle_factory()

        broken_json = AsyncMock(side_effect=json.JSONDecodeError("Expecting value", "<html>", 0))
        with patch.object(bad, '_post', broken_json):
            result = await aggregator.submit_with_failover(bundle)

        assert result.success
        assert result.relay_id == "good"
        assert result.relays_tried == ["bad", "good"]
        assert "invalid response" in result.attempts[0].failure_reason
        assert aggregator.relays["bad"].performance.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_raising_relay_client_fails_over(self, make_relay, bundle_factory, metrics):
        aggregator = RelayAggregator(metrics=metrics)
        broken = make_relay("broken")
        aggregator.register_relay(broken)
        aggregator.register_relay(make_relay("good"))

        with patch.object(broken, 'send_bundle', AsyncMock(side_effect=KeyError("result"))):
            result = await aggregator.submit_with_failover(bundle_factory())

        assert result.relay_id == "good"
        assert result.attempts[0].failure_reason.startswith("KeyError")
        assert metrics.get_metrics()["total_attempts"] == 2

    @pytest.mark.asyncio
    async def test_expired_before_submission(self, make_relay, bundle_factory, metrics):
        aggregator = RelayAggregator(metrics=metrics)
        relay = make_relay("relay_a")
        aggregator.register_relay(relay)
        bundle = bundle_factory(current_block=100)

        result = await aggregator.submit_with_failover(bundle, current_block=bundle.max_block_number + 1)

        assert result.status == BundleStatus.EXPIRED
        assert result.error == ERROR_MESSAGES["BUNDLE_EXPIRED"]
        assert result.attempts == []
        assert relay.received == []
        assert metrics.get_metrics()["expired_bundles"] == 1

    @pytest.mark.asyncio
    async def test_resubmitting_submitted_bundle_raises(self, make_relay, bundle_factory):
        aggregator = RelayAggregator()
        aggregator.register_relay(make_relay("relay_a"))
        bundle = bundle_factory()
        await aggregator.submit_with_failover(bundle)

        with pytest.raises(InvalidTransitionError):
            await aggregator.submit_with_failover(bundle)

    @pytest.mark.asyncio
    async def test_consecutive_failures_mark_relay_unhealthy(self, make_relay, bundle_factory):
        aggregator = RelayAggregator(AggregatorParameters(max_consecutive_failures=2, max_failover_attempts=1))
        aggregator.register_relay(make_relay("relay_a", accept=False))

        await aggregator.submit_with_failover(bundle_factory(nonce=1))
        await aggregator.submit_with_failover(bundle_factory(nonce=2))

        assert aggregator.get_active_relays() == []

    @pytest.mark.asyncio
    async def test_success_resets_failures_and_adds_cost(self, make_relay, bundle_factory):
        aggregator = RelayAggregator()
        relay = make_relay("relay_a", cost=Decimal("2"))
        aggregator.register_relay(relay)
        aggregator.relays["relay_a"].performance.consecutive_failures = 3

        await aggregator.submit_with_failover(bundle_factory())
        perf = aggregator.get_relay_performance("relay_a")

        assert perf.consecutive_failures == 0
        assert perf.total_cost == Decimal("2")
        assert perf.total_submissions == 1

    @pytest.mark.asyncio
    async def test_concurrent_submissions(self, make_relay, bundle_factory):
        aggregator = RelayAggregator()
        aggregator.register_relay(make_relay("relay_a", delay=0.01))
        bundles = [bundle_factory(nonce=n) for n in range(5)]

        results = await asyncio.gather(*(aggregator.submit_with_failover(b) for b in bundles))

        assert all(r.success for r in results)
        assert aggregator.get_relay_performance("relay_a").total_submissions == 5

    @pytest.mark.asyncio
    async def test_attempts_are_persisted(self, make_relay, bundle_factory):
        store = AsyncMock()
        aggregator = RelayAggregator(audit_store=store)
        aggregator.register_relay(make_relay("relay_a", accept=False))
        aggregator.register_relay(make_relay("relay_b"))

        await aggregator.submit_with_failover(bundle_factory())

        assert store.append_attempt.await_count == 2
        store.save_bundle.assert_awaited_once()


class TestSimulation:
    """Dry run before any relay sees the bundle"""

    @pytest.mark.asyncio
    async def test_failed_simulation_blocks_submission(self, make_relay, bundle_factory, metrics):
        aggregator = RelayAggregator(metrics=metrics)
        relay = make_relay("relay_a", simulates=False)
        aggregator.register_relay(relay)
        bundle = bundle_factory()

        result = await aggregator.submit_with_failover(bundle)

        assert result.status == BundleStatus.FAILED
        assert result.error == ERROR_MESSAGES["SIMULATION_FAILED"]
        assert result.simulation.errors == ("execution reverted",)
        assert result.attempts == []
        assert relay.received == []
        assert bundle.status == BundleStatus.FAILED
        assert metrics.get_metrics()["failed_bundles"] == 1

    @pytest.mark.asyncio
    async def test_successful_simulation_is_reported(self, make_relay, bundle_factory):
        aggregator = RelayAggregator()
        relay = make_relay("relay_a", simulates=True)
        aggregator.register_relay(relay)
        bundle = bundle_factory()

        result = await aggregator.submit_with_failover(bundle)

        assert result.success
        assert result.simulation.success
        assert result.simulation.relay_id == "relay_a"
        assert relay.simulated == [bundle.id]
        assert relay.received == [bundle.id]

    @pytest.mark.asyncio
    async def test_first_relay_able_to_simulate_decides(self, make_relay, bundle_factory):
        aggregator = RelayAggregator()
        aggregator.register_relay(make_relay("no_sim"))
        checker = make_relay("checker", simulates=False)
        aggregator.register_relay(checker)

        result = await aggregator.submit_with_failover(bundle_factory())

        assert result.status == BundleStatus.FAILED
        assert result.simulation.relay_id == "checker"

    @pytest.mark.asyncio
    async def test_submits_unsimulated_when_no_relay_can_simulate(self, make_relay, bundle_factory):
        aggregator = RelayAggregator()
        aggregator.register_relay(make_relay("relay_a"))

        result = await aggregator.submit_with_failover(bundle_factory())

        assert result.success
        assert result.simulation is None

    @pytest.mark.asyncio
    async def test_raising_simulator_is_skipped(self, make_relay, bundle_factory):
        aggregator = RelayAggregator()
        broken = make_relay("broken", simulates=True)
        aggregator.register_relay(broken)
        aggregator.register_relay(make_relay("checker", simulates=True))

        with patch.object(broken, 'simulate_bundle', AsyncMock(side_effect=RuntimeError("boom"))):
            result = await aggregator.submit_with_failover(bundle_factory())

        assert result.success
        assert result.simulation.relay_id == "checker"
        assert result.relay_id == "broken"

    @pytest.mark.asyncio
    async def test_simulation_can_be_disabled(self, make_relay, bundle_factory):
        aggregator = RelayAggregator(AggregatorParameters(simulate_before_submit=False))
        relay = make_relay("relay_a", simulates=False)
        aggregator.register_relay(relay)

        result = await aggregator.submit_with_failover(bundle_factory())

        assert result.success
        assert relay.simulated == []


class TestInclusionFeedback:

    @pytest.mark.asyncio
    async def test_mark_included_credits_relay(self, make_relay, bundle_factory, metrics):
        aggregator = RelayAggregator(metrics=metrics)
        aggregator.register_relay(make_relay("relay_a"))
        bundle = bundle_factory()
        await aggregator.submit_with_failover(bundle)

        assert await aggregator.mark_included(bundle.id)

        assert bundle.status == BundleStatus.INCLUDED
        assert aggregator.get_relay_performance("relay_a").successful_inclusions == 1
        assert metrics.get_metrics()["successful_bundles"] == 1
        assert not await aggregator.mark_included(bundle.id)

    @pytest.mark.asyncio
    async def test_expire_skips_terminal_bundles(self, make_relay, bundle_factory):
        aggregator = RelayAggregator()
        aggregator.register_relay(make_relay("relay_a"))
        bundle = bundle_factory()
        await aggregator.submit_with_failover(bundle)
        await aggregator.mark_included(bundle.id)

        assert not await aggregator.expire(bundle.id)
        assert bundle.status == BundleStatus.INCLUDED
        assert not await aggregator.expire("unknown")


class TestHealthFeed:

    @pytest.mark.asyncio
    async def test_unresponsive_relay_is_deactivated(self, make_relay):
        aggregator = RelayAggregator()
        aggregator.register_relay(make_relay("relay_a"))
        aggregator.register_relay(make_relay("relay_b"))

        assert await aggregator.apply_health_update(HealthUpdate("relay_a", latency_ms=40, responsive=False))

        assert aggregator.get_active_relays() == ["relay_b"]
        assert not await aggregator.apply_health_update(HealthUpdate("unknown", latency_ms=1, responsive=True))

    @pytest.mark.asyncio
    async def test_feed_consumer(self, make_relay):
        aggregator = RelayAggregator()
        aggregator.register_relay(make_relay("relay_a"))
        queue = asyncio.Queue()
        consumer = asyncio.create_task(aggregator.consume_health_feed(queue))

        await queue.put(HealthUpdate("relay_a", latency_ms=30, responsive=False))
        await queue.put(HealthUpdate("relay_a", latency_ms=25, responsive=True, queue_length=3))
        await asyncio.wait_for(queue.join(), timeout=1)
        consumer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await consumer

        perf = aggregator.get_relay_performance("relay_a")
        assert perf.active
        assert perf.last_latency_ms == 25
        assert perf.queue_length == 3
