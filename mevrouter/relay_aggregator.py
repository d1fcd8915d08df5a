"""
Relay aggregator

Tracks per-relay performance and health, selects relays through a pluggable
strategy, drives bounded failover and owns every bundle status transition.
"""

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from .config import AggregatorParameters
from .constants import (
    COST_REFERENCE,
    ERROR_MESSAGES,
    LATENCY_REFERENCE_MS,
    MAX_RELAY_SCORE,
    RELAY_SCORE_WEIGHTS
)
from .errors import InvalidTransitionError, UnknownStrategyError
from .metrics import MetricsCollector
from .models import (
    Bundle,
    BundleSimulation,
    BundleStatus,
    HealthUpdate,
    RelayPerformance,
    SelectionStrategy,
    SubmissionAttempt,
    SubmissionResult
)
from .modules.database import AuditStore
from .modules.relay_client import RelayClient, RelayResponse

logger = logging.getLogger(__name__)


def parse_selection_strategy(strategy: Union[SelectionStrategy, str]) -> SelectionStrategy:
    if isinstance(strategy, SelectionStrategy):
        return strategy
    try:
        return SelectionStrategy(strategy)
    except ValueError as e:
        raise UnknownStrategyError(f"Unknown selection strategy: {strategy}") from e


def relay_score(perf: RelayPerformance) -> float:
    """Weighted 0-10000 score from success rate, latency, cost and recent failures"""
    success_score = perf.success_rate * MAX_RELAY_SCORE
    latency_score = MAX_RELAY_SCORE * LATENCY_REFERENCE_MS / (perf.average_latency_ms + LATENCY_REFERENCE_MS)
    cost_score = MAX_RELAY_SCORE * COST_REFERENCE / (float(perf.average_cost) + COST_REFERENCE)
    if perf.consecutive_failures == 0:
        reliability_score = MAX_RELAY_SCORE
    else:
        reliability_score = MAX_RELAY_SCORE / (perf.consecutive_failures + 1)

    return (
        RELAY_SCORE_WEIGHTS["success_rate"] * success_score
        + RELAY_SCORE_WEIGHTS["latency"] * latency_score
        + RELAY_SCORE_WEIGHTS["cost"] * cost_score
        + RELAY_SCORE_WEIGHTS["reliability"] * reliability_score
    )


@dataclass
class RegisteredRelay:
    client: RelayClient
    performance: RelayPerformance
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass
class TrackedBundle:
    bundle: Bundle
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    attempts: List[SubmissionAttempt] = field(default_factory=list)
    relay_id: Optional[str] = None
    receipt: Optional[str] = None


class RelayAggregator:
    """Relay registry, selection and failover"""

    def __init__(
        self,
        params: Optional[AggregatorParameters] = None,
        metrics: Optional[MetricsCollector] = None,
        audit_store: Optional[AuditStore] = None
    ):
        self.params = params or AggregatorParameters()
        self.metrics = metrics
        self.audit_store = audit_store
        self.relays: Dict[str, RegisteredRelay] = {}
        self.bundles: Dict[str, TrackedBundle] = {}
        self._round_robin_cursor = 0

    # ===== REGISTRY =====

    def register_relay(self, client: RelayClient) -> RelayPerformance:
        relay_id = client.relay_id
        if relay_id in self.relays:
            raise ValueError(f"Relay already registered: {relay_id}")
        performance = RelayPerformance(relay_id=relay_id)
        self.relays[relay_id] = RegisteredRelay(client=client, performance=performance)
        logger.info(f"Registered relay {relay_id}")
        return performance

    def is_healthy(self, perf: RelayPerformance) -> bool:
        if not perf.active:
            return False
        if (perf.total_submissions >= self.params.min_submissions_for_health
                and perf.success_rate < self.params.min_success_rate):
            return False
        if perf.last_latency_ms > self.params.max_latency_ms:
            return False
        if perf.consecutive_failures >= self.params.max_consecutive_failures:
            return False
        return True

    def healthy_relays(self, exclude: Iterable[str] = ()) -> List[RelayPerformance]:
        """Healthy relays in registration order"""
        excluded = set(exclude)
        return [
            relay.performance for relay_id, relay in self.relays.items()
            if relay_id not in excluded and self.is_healthy(relay.performance)
        ]

    # ===== SELECTION =====

    def select_relay(
        self,
        strategy: Union[SelectionStrategy, str, None] = None,
        exclude: Iterable[str] = ()
    ) -> Optional[str]:
        """Pick a healthy relay not in exclude, None if none remain"""
        strategy = parse_selection_strategy(strategy or self.params.default_strategy)
        candidates = self.healthy_relays(exclude)
        if not candidates:
            return None

        # Ties resolve to the earliest registered relay
        if strategy == SelectionStrategy.ROUND_ROBIN:
            return self._next_round_robin({p.relay_id for p in candidates})
        if strategy == SelectionStrategy.FASTEST:
            chosen = min(candidates, key=lambda p: p.average_latency_ms or p.last_latency_ms)
        elif strategy == SelectionStrategy.HIGHEST_SUCCESS:
            chosen = max(candidates, key=lambda p: p.success_rate)
        elif strategy == SelectionStrategy.LOWEST_COST:
            chosen = min(candidates, key=lambda p: p.average_cost)
        else:
            chosen = max(candidates, key=lambda p: p.score)
        return chosen.relay_id

    def _next_round_robin(self, candidate_ids) -> str:
        order = list(self.relays)
        for offset in range(len(order)):
            index = (self._round_robin_cursor + offset) % len(order)
            if order[index] in candidate_ids:
                self._round_robin_cursor = index + 1
                return order[index]
        raise RuntimeError("round robin called without candidates")

    # ===== SCORING & HEALTH =====

    async def recompute_scores(self) -> Dict[str, float]:
        """Batch job: refresh every relay's score"""
        scores = {}
        for relay_id, relay in self.relays.items():
            async with relay.lock:
                relay.performance.score = relay_score(relay.performance)
                scores[relay_id] = relay.performance.score

        if self.metrics:
            self.metrics.observe_relay_scores(scores)
        logger.debug(f"Relay scores: {scores}")
        return scores

    async def apply_health_update(self, update: HealthUpdate) -> bool:
        relay = self.relays.get(update.relay_id)
        if relay is None:
            logger.warning(f"Health update for unknown relay {update.relay_id}")
            return False

        async with relay.lock:
            perf = relay.performance
            perf.last_latency_ms = update.latency_ms
            perf.responsive = update.responsive
            perf.queue_length = update.queue_length
            if perf.active != update.responsive:
                logger.info(f"Relay {update.relay_id} {'re-activated' if update.responsive else 'deactivated'}")
            perf.active = update.responsive
        return True

    async def consume_health_feed(self, queue: "asyncio.Queue[HealthUpdate]"):
        """Apply pushed health updates until cancelled"""
        while True:
            update = await queue.get()
            try:
                await self.apply_health_update(update)
            finally:
                queue.task_done()

    # ===== SUBMISSION =====

    def _track(self, bundle: Bundle) -> TrackedBundle:
        tracked = self.bundles.get(bundle.id)
        if tracked is None:
            tracked = TrackedBundle(bundle=bundle)
            self.bundles[bundle.id] = tracked
        elif tracked.bundle is not bundle:
            raise ValueError(f"Bundle id {bundle.id} is already tracked for another bundle")
        return tracked

    async def submit_with_failover(
        self,
        bundle: Bundle,
        strategy: Union[SelectionStrategy, str, None] = None,
        current_block: Optional[int] = None
    ) -> SubmissionResult:
        """Submit through the selected relay, failing over to distinct healthy relays"""
        strategy = parse_selection_strategy(strategy or self.params.default_strategy)
        tracked = self._track(bundle)

        async with tracked.lock:
            if not bundle.can_transition(BundleStatus.SUBMITTED):
                raise InvalidTransitionError(bundle.id, bundle.status, BundleStatus.SUBMITTED)

            if current_block is not None and bundle.is_stale(current_block):
                logger.warning(f"Bundle {bundle.id} expired before submission (block {current_block})")
                await self._finish(tracked, BundleStatus.EXPIRED)
                return SubmissionResult(
                    bundle_id=bundle.id,
                    status=BundleStatus.EXPIRED,
                    error=ERROR_MESSAGES["BUNDLE_EXPIRED"]
                )

            if self.metrics:
                self.metrics.record_bundle(bundle)

            simulation = None
            if self.params.simulate_before_submit:
                simulation = await self.simulate(bundle)
                if simulation is not None and not simulation.success:
                    await self._finish(tracked, BundleStatus.FAILED)
                    logger.warning(f"Bundle {bundle.id} failed simulation on {simulation.relay_id}: {simulation.errors}")
                    return SubmissionResult(
                        bundle_id=bundle.id,
                        status=BundleStatus.FAILED,
                        error=ERROR_MESSAGES["SIMULATION_FAILED"],
                        simulation=simulation
                    )

            chain_attempts: List[SubmissionAttempt] = []
            tried: List[str] = []
            for _ in range(self.params.max_failover_attempts):
                relay_id = self.select_relay(strategy, exclude=tried)
                if relay_id is None:
                    logger.warning(f"Bundle {bundle.id}: no healthy relay left after {tried}")
                    break
                tried.append(relay_id)

                response = await self._attempt(tracked, relay_id, chain_attempts)
                if response.accepted:
                    tracked.relay_id = relay_id
                    tracked.receipt = response.receipt
                    await self._finish(tracked, BundleStatus.SUBMITTED)
                    logger.info(f"Bundle {bundle.id} submitted via {relay_id} after {len(tried)} attempt(s)")
                    return SubmissionResult(
                        bundle_id=bundle.id,
                        status=BundleStatus.SUBMITTED,
                        relay_id=relay_id,
                        receipt=response.receipt,
                        attempts=chain_attempts,
                        simulation=simulation
                    )

            await self._finish(tracked, BundleStatus.FAILED)
            logger.error(f"Bundle {bundle.id}: all relays exhausted ({tried})")
            return SubmissionResult(
                bundle_id=bundle.id,
                status=BundleStatus.FAILED,
                attempts=chain_attempts,
                error=ERROR_MESSAGES["ALL_RELAYS_EXHAUSTED"],
                simulation=simulation
            )

    async def simulate(self, bundle: Bundle) -> Optional[BundleSimulation]:
        """Dry-run on the best-scored healthy relay that can simulate, None if none can"""
        candidates = sorted(self.healthy_relays(), key=lambda p: p.score, reverse=True)
        for perf in candidates:
            client = self.relays[perf.relay_id].client
            try:
                simulation = await asyncio.wait_for(
                    client.simulate_bundle(bundle),
                    timeout=self.params.submission_timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.warning(f"Relay {perf.relay_id} timed out simulating {bundle.id}")
                continue
            except Exception as e:
                logger.error(f"Relay {perf.relay_id} raised simulating {bundle.id}: {type(e).__name__}: {e}")
                continue
            if simulation is not None:
                return simulation

        logger.debug(f"No relay could simulate bundle {bundle.id}; submitting unsimulated")
        return None

    async def _attempt(
        self,
        tracked: TrackedBundle,
        relay_id: str,
        chain_attempts: List[SubmissionAttempt]
    ) -> RelayResponse:
        relay = self.relays[relay_id]
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                relay.client.send_bundle(tracked.bundle),
                timeout=self.params.submission_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(f"Relay {relay_id} timed out on bundle {tracked.bundle.id}")
            response = RelayResponse(accepted=False, error=ERROR_MESSAGES["SUBMISSION_TIMEOUT"])
        except Exception as e:
            # Any other client failure is a rejection
            logger.error(f"Relay {relay_id} raised on bundle {tracked.bundle.id}: {type(e).__name__}: {e}")
            response = RelayResponse(accepted=False, error=f"{type(e).__name__}: {e}")
        latency_ms = (time.monotonic() - started) * 1000

        attempt = SubmissionAttempt(
            bundle_id=tracked.bundle.id,
            relay_id=relay_id,
            timestamp=time.time(),
            latency_ms=latency_ms,
            success=response.accepted,
            failure_reason=None if response.accepted else (response.error or ERROR_MESSAGES["RELAY_REJECTED"])
        )

        async with relay.lock:
            perf = relay.performance
            perf.total_submissions += 1
            perf.total_latency_ms += latency_ms
            perf.last_latency_ms = latency_ms
            if response.accepted:
                perf.consecutive_failures = 0
                perf.total_cost += Decimal(response.cost)
            else:
                perf.consecutive_failures += 1

        tracked.attempts.append(attempt)
        chain_attempts.append(attempt)
        if self.metrics:
            self.metrics.record_attempt(attempt)
        if self.audit_store:
            await self._persist(self.audit_store.append_attempt(attempt))
        return response

    async def _finish(self, tracked: TrackedBundle, status: BundleStatus):
        """Apply a status transition and propagate it to metrics and storage"""
        tracked.bundle.transition(status)
        if self.metrics:
            if status == BundleStatus.INCLUDED:
                self.metrics.record_included(tracked.bundle)
            elif status == BundleStatus.FAILED:
                self.metrics.record_failed(tracked.bundle)
            elif status == BundleStatus.EXPIRED:
                self.metrics.record_expired(tracked.bundle)
        if self.audit_store:
            await self._persist(self.audit_store.save_bundle(tracked.bundle, tracked.relay_id, tracked.receipt))

    async def _persist(self, operation):
        try:
            await operation
        except sqlite3.Error as e:
            logger.warning(f"Audit store write failed: {e}")

    # ===== INCLUSION FEEDBACK =====

    async def mark_included(self, bundle_id: str) -> bool:
        """Submitted -> Included, crediting the relay that carried it"""
        tracked = self.bundles.get(bundle_id)
        if tracked is None:
            return False

        async with tracked.lock:
            if tracked.bundle.status != BundleStatus.SUBMITTED:
                return False
            await self._finish(tracked, BundleStatus.INCLUDED)

        relay = self.relays.get(tracked.relay_id)
        if relay:
            async with relay.lock:
                relay.performance.successful_inclusions += 1
        logger.info(f"Bundle {bundle_id} included (relay {tracked.relay_id})")
        return True

    async def expire(self, bundle_id: str) -> bool:
        """Mark a bundle expired unless it already reached a terminal status"""
        tracked = self.bundles.get(bundle_id)
        if tracked is None:
            return False

        async with tracked.lock:
            if tracked.bundle.status.terminal:
                return False
            await self._finish(tracked, BundleStatus.EXPIRED)
        logger.warning(f"Bundle {bundle_id} expired without inclusion")
        return True

    def forget(self, bundle_id: str):
        self.bundles.pop(bundle_id, None)

    # ===== DASHBOARD =====

    def get_bundle(self, bundle_id: str) -> Optional[Bundle]:
        tracked = self.bundles.get(bundle_id)
        return tracked.bundle if tracked else None

    def attempts_for(self, bundle_id: str) -> List[SubmissionAttempt]:
        tracked = self.bundles.get(bundle_id)
        return list(tracked.attempts) if tracked else []

    def get_relay_performance(self, relay_id: str) -> Optional[RelayPerformance]:
        relay = self.relays.get(relay_id)
        return relay.performance.snapshot() if relay else None

    def get_active_relays(self) -> List[str]:
        return [perf.relay_id for perf in self.healthy_relays()]
