"""
Constants and defaults for the route optimizer and relay aggregator
"""

from decimal import Decimal
from typing import Dict, Tuple

# ===== FEES =====
# Fees are expressed in parts per million (3000 = 0.30%)
FEE_DENOMINATOR = 1_000_000

CONCENTRATED_FEE_TIERS = (500, 3000, 10000)  # 0.05%, 0.3%, 1%
CONSTANT_PRODUCT_FEE = 3000
WEIGHTED_DEFAULT_FEE = 1000

# ===== GAS =====
DEFAULT_GAS_ESTIMATES = {
    "constant_product": 150_000,
    "concentrated": 180_000,
    "weighted": 200_000,
}

# Price of one gas unit in token units when no per-token price is configured
DEFAULT_GAS_PRICE = Decimal("0")

# ===== ROUTING =====
DEFAULT_MAX_HOPS = 2

# Curated intermediate tokens for two-leg paths
INTERMEDIATE_TOKENS = ("WETH", "USDC", "DAI", "USDT", "WBTC")

# Per-family reliability baseline for a single-hop route
RELIABILITY_BASELINE = {
    "constant_product": 0.95,
    "concentrated": 0.96,
    "weighted": 0.93,
}
RELIABILITY_PENALTY_PER_HOP = 0.1

RISK_BASE = 0.1
RISK_PER_EXTRA_HOP = 0.1
RISK_FEE_DIVISOR = 100_000  # 3000 ppm fee adds 0.03 risk

# Execution time estimates (milliseconds)
BASE_EXECUTION_TIME_MS = 15_000
EXECUTION_TIME_PER_EXTRA_HOP_MS = 5_000

# Inverse-normalization references for the combined score
GAS_EFFICIENCY_REFERENCE = 100_000
SPEED_EFFICIENCY_REFERENCE_MS = 10_000

COMBINED_SCORE_WEIGHTS = {
    "profitability": 0.4,
    "reliability": 0.3,
    "gas_efficiency": 0.2,
    "execution_speed": 0.1,
}

# ===== QUOTING =====
QUOTE_TIMEOUT_SECONDS = 3.0
MAX_CONCURRENT_QUOTES = 32

# ===== ARBITRAGE =====
DEFAULT_OPPORTUNITY_LIMIT = 10
LOOP_CANDIDATES = 5

# ===== BUNDLES =====
# Base fee per gas unit in the smallest ledger denomination (20 gwei)
BASE_FEE_PER_GAS = 20_000_000_000
DEFAULT_BLOCK_WINDOW = 5

# (priority multiplier, max fee multiplier) per strategy
FEE_STRATEGY_MULTIPLIERS: Dict[str, Tuple[Decimal, Decimal]] = {
    "aggressive": (Decimal("3"), Decimal("5")),
    "standard": (Decimal("1"), Decimal("3")),
    "conservative": (Decimal("0.5"), Decimal("2")),
}

# ===== RELAYS =====
MAX_FAILOVER_ATTEMPTS = 3
MIN_RELAY_SUCCESS_RATE = 0.70
MIN_SUBMISSIONS_FOR_HEALTH = 10
MAX_RELAY_LATENCY_MS = 10_000
MAX_CONSECUTIVE_FAILURES = 5
SUBMISSION_TIMEOUT_SECONDS = 5.0

MAX_RELAY_SCORE = 10_000
RELAY_SCORE_WEIGHTS = {
    "success_rate": 0.40,
    "latency": 0.25,
    "cost": 0.20,
    "reliability": 0.15,
}
LATENCY_REFERENCE_MS = 1000
COST_REFERENCE = 1000

# ===== MONITORING =====
METRICS_PORT = 8000
HEALTH_CHECK_INTERVAL = 60  # seconds
SCORE_RECOMPUTE_INTERVAL = 15  # seconds
INCLUSION_POLL_INTERVAL = 2  # seconds
BUNDLE_MAX_AGE_BLOCKS = 50
MAX_INCLUSION_FETCH_FAILURES = 20
LOG_ROTATION_SIZE = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT = 7

# ===== RATE LIMITS =====
RATE_LIMITS = {
    "ledger": {"calls_per_second": 40, "burst": 50},
    "constant_product": {"calls_per_second": 20, "burst": 40},
    "concentrated": {"calls_per_second": 20, "burst": 40},
    "weighted": {"calls_per_second": 10, "burst": 20},
    "relay": {"calls_per_second": 5, "burst": 10},
}

# ===== CACHE SETTINGS =====
POOL_STATE_CACHE_TTL = 2  # seconds
POOL_REF_CACHE_TTL = 300  # seconds

# ===== DATABASE =====
DB_PATH = "data/mevrouter.db"

# ===== ERROR MESSAGES =====
ERROR_MESSAGES = {
    "ALL_RELAYS_EXHAUSTED": "AllRelaysExhausted: no healthy relay accepted the bundle",
    "BUNDLE_EXPIRED": "BundleExpired: max block number passed without inclusion",
    "RELAY_REJECTED": "RelayRejected",
    "SUBMISSION_TIMEOUT": "Relay submission timed out",
    "NO_HEALTHY_RELAY": "No healthy relay available",
    "SIMULATION_FAILED": "SimulationFailed: bundle reverted in pre-submission simulation",
}
