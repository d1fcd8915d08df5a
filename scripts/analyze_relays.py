#!/usr/bin/env python3
"""Summarize relay performance and bundle outcomes from the audit store"""

import asyncio
import os
import statistics
import sys
from collections import Counter

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from mevrouter.constants import DB_PATH
from mevrouter.modules.database import AuditStore


async def analyze(db_path: str):
    if not os.path.exists(db_path):
        print(f"No audit database at {db_path}")
        return

    store = AuditStore(db_path)
    relay_stats = await store.get_relay_stats()
    bundles = await store.get_recent_bundles(limit=1000)

    print("📊 Relay Performance")
    print(f"{'Relay':<16} {'Attempts':<10} {'Accepted':<10} {'Accept %':<10} {'Avg Latency'}")
    print("-" * 60)
    for relay_id, stats in sorted(relay_stats.items(), key=lambda x: x[1]['attempts'], reverse=True):
        accepted = stats['accepted'] or 0
        rate = accepted / stats['attempts'] * 100 if stats['attempts'] else 0
        print(f"{relay_id:<16} {stats['attempts']:<10} {accepted:<10} {rate:<9.1f}% {stats['avg_latency_ms']:.1f}ms")

    if not bundles:
        print("\nNo bundles recorded yet")
        return

    print(f"\n📦 Bundle Outcomes (last {len(bundles)})")
    print("-" * 60)
    for status, count in Counter(b['status'] for b in bundles).most_common():
        print(f"{status:<12} {count}")

    included = [b['expected_profit'] for b in bundles if b['status'] == 'included']
    if included:
        print(f"\n💰 Included: {len(included)} bundles, avg expected profit {statistics.mean(included):.6f}")

    by_relay = Counter(b['relay_id'] for b in bundles if b['status'] == 'included')
    if by_relay:
        print("\n🏁 Inclusions by relay:")
        for relay_id, count in by_relay.most_common():
            print(f"   {relay_id:<16} {count}")


if __name__ == "__main__":
    asyncio.run(analyze(sys.argv[1] if len(sys.argv) > 1 else DB_PATH))
