#!/usr/bin/env python3
"""Query the router's metrics endpoint and report relay and bundle health"""

import os
import sys
from collections import defaultdict
from datetime import datetime

import requests
from prometheus_client.parser import text_string_to_metric_families

METRICS_URL = os.environ.get('METRICS_URL', 'http://localhost:8000/metrics')
MIN_RELAY_SCORE = float(os.environ.get('MIN_RELAY_SCORE', '5000'))

REQUIRED_FAMILIES = {
    'mevrouter_bundles': 'Bundle counter',
    'mevrouter_submission_attempts': 'Submission attempts',
    'mevrouter_relay_score': 'Relay scores',
    'mevrouter_opportunities_active': 'Opportunity gauge',
}


def fetch_samples(url: str):
    """Metric samples grouped by family name"""
    response = requests.get(url, timeout=5)
    response.raise_for_status()
    samples = defaultdict(list)
    for family in text_string_to_metric_families(response.text):
        samples[family.name].extend(family.samples)
    return samples


def check_health(url: str = METRICS_URL) -> bool:
    try:
        samples = fetch_samples(url)
    except requests.exceptions.ConnectionError:
        print(f"❌ Cannot connect to {url}")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Metrics endpoint error: {e}")
        return False

    healthy = True
    for family, label in REQUIRED_FAMILIES.items():
        present = family in samples
        print(f"{'✅' if present else '❌'} {label}")
        healthy = healthy and present

    outcomes = {
        s.labels.get('status'): s.value
        for s in samples.get('mevrouter_bundles', [])
        if s.name == 'mevrouter_bundles_total'
    }
    if outcomes:
        summary = ", ".join(f"{status} {int(count)}" for status, count in sorted(outcomes.items()))
        print(f"   Bundles: {summary}")

    scores = {s.labels['relay']: s.value for s in samples.get('mevrouter_relay_score', [])}
    for relay, score in sorted(scores.items(), key=lambda item: -item[1]):
        marker = "✅" if score >= MIN_RELAY_SCORE else "⚠️ "
        print(f"   {marker} {relay}: {score:.0f}")
    if scores and max(scores.values()) < MIN_RELAY_SCORE:
        print(f"❌ No relay scores at least {MIN_RELAY_SCORE:.0f}")
        healthy = False

    return healthy


if __name__ == "__main__":
    print(f"🏥 Health Check - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("-" * 50)

    if check_health():
        print("\n✅ Router is healthy!")
        sys.exit(0)
    print("\n❌ Router health check failed!")
    sys.exit(1)
