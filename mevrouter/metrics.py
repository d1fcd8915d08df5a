"""
Bundle and relay metrics, exported through Prometheus
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import prometheus_client
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from .models import Bundle, SubmissionAttempt

logger = logging.getLogger(__name__)

LATENCY_BUCKETS_MS = (10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)


class MetricsCollector:
    """Running totals for bundles, gas and relay submissions"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.bundle_counter = Counter(
            'mevrouter_bundles_total', 'Bundles by final status', ['status'], registry=self.registry
        )
        self.attempt_counter = Counter(
            'mevrouter_submission_attempts_total', 'Relay submission attempts', ['relay', 'outcome'],
            registry=self.registry
        )
        self.latency_histogram = Histogram(
            'mevrouter_relay_latency_ms', 'Relay submission latency in milliseconds', ['relay'],
            buckets=LATENCY_BUCKETS_MS, registry=self.registry
        )
        self.profit_histogram = Histogram(
            'mevrouter_bundle_profit', 'Expected profit of included bundles', registry=self.registry
        )
        self.gas_counter = Counter(
            'mevrouter_gas_used_total', 'Gas used by included bundles', registry=self.registry
        )
        self.relay_score_gauge = Gauge(
            'mevrouter_relay_score', 'Current relay score (0-10000)', ['relay'], registry=self.registry
        )
        self.opportunity_gauge = Gauge(
            'mevrouter_opportunities_active', 'Opportunities found in the last cycle', registry=self.registry
        )

        self.total_bundles = 0
        self.successful_bundles = 0
        self.failed_bundles = 0
        self.expired_bundles = 0
        self.total_profit = Decimal("0")
        self.total_gas_used = 0
        self.total_attempts = 0
        self.relay_scores: Dict[str, float] = {}

    def record_bundle(self, bundle: Bundle):
        """Count a bundle entering submission"""
        self.total_bundles += 1
        self.bundle_counter.labels(status='submitted').inc()

    def record_attempt(self, attempt: SubmissionAttempt):
        self.total_attempts += 1
        outcome = 'accepted' if attempt.success else 'rejected'
        self.attempt_counter.labels(relay=attempt.relay_id, outcome=outcome).inc()
        self.latency_histogram.labels(relay=attempt.relay_id).observe(attempt.latency_ms)

    def record_included(self, bundle: Bundle):
        self.successful_bundles += 1
        self.total_profit += bundle.expected_profit
        self.total_gas_used += bundle.gas_estimate
        self.bundle_counter.labels(status='included').inc()
        self.profit_histogram.observe(float(bundle.expected_profit))
        self.gas_counter.inc(bundle.gas_estimate)

    def record_failed(self, bundle: Bundle):
        self.failed_bundles += 1
        self.bundle_counter.labels(status='failed').inc()

    def record_expired(self, bundle: Bundle):
        self.expired_bundles += 1
        self.bundle_counter.labels(status='expired').inc()

    def observe_relay_scores(self, scores: Dict[str, float]):
        """Publish the latest batch of relay scores"""
        for relay_id, score in scores.items():
            self.relay_scores[relay_id] = score
            self.relay_score_gauge.labels(relay=relay_id).set(score)

    def record_opportunities(self, count: int):
        self.opportunity_gauge.set(count)

    def get_metrics(self) -> Dict[str, Any]:
        """Dashboard snapshot"""
        average_profit = (
            self.total_profit / self.successful_bundles
            if self.successful_bundles > 0 else Decimal("0")
        )
        profitability_score = (
            self.successful_bundles / self.total_bundles
            if self.total_bundles > 0 else 0.0
        )
        return {
            'total_bundles': self.total_bundles,
            'successful_bundles': self.successful_bundles,
            'failed_bundles': self.failed_bundles,
            'expired_bundles': self.expired_bundles,
            'average_profit': average_profit,
            'total_gas_used': self.total_gas_used,
            'profitability_score': profitability_score,
            'total_attempts': self.total_attempts,
            'relay_scores': dict(self.relay_scores)
        }

    def start_server(self, port: int):
        """Serve this collector's registry over HTTP"""
        prometheus_client.start_http_server(port, registry=self.registry)
        logger.info(f"Metrics server started on port {port}")
