"""
MEV Router

Multi-venue route optimizer and relay aggregator for atomic swap bundles.
"""

__version__ = "1.0.0"

from .arbitrage_detector import ArbitrageDetector
from .bundle_builder import BundleBuilder
from .config import get_config, initialize_config
from .engine import ArbitrageEngine
from .inclusion_monitor import InclusionMonitor
from .metrics import MetricsCollector
from .relay_aggregator import RelayAggregator
from .route_optimizer import GasPricer, RouteOptimizer

__all__ = [
    'ArbitrageDetector',
    'ArbitrageEngine',
    'BundleBuilder',
    'GasPricer',
    'InclusionMonitor',
    'MetricsCollector',
    'RelayAggregator',
    'RouteOptimizer',
    'get_config',
    'initialize_config',
]
