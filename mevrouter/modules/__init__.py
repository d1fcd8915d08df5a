"""
Router modules: venue and relay clients, ledger access, caching and storage
"""

from .venue_clients import (
    VenueAdapter,
    VenueQuoteClient,
    ConstantProductAdapter,
    ConcentratedLiquidityAdapter,
    WeightedPoolAdapter,
    create_adapter
)
from .ledger import Ledger, JsonRpcLedger
from .relay_client import (
    RelayClient,
    RelayEndpoint,
    RelayResponse,
    JsonRpcRelayClient,
    LedgerRelayClient,
    create_relay_client
)
from .pool_cache import PoolCache, VenueCache
from .rate_limiter import RateLimiter, RateLimiterGroup
from .database import AuditStore

__all__ = [
    'VenueAdapter',
    'VenueQuoteClient',
    'ConstantProductAdapter',
    'ConcentratedLiquidityAdapter',
    'WeightedPoolAdapter',
    'create_adapter',
    'Ledger',
    'JsonRpcLedger',
    'RelayClient',
    'RelayEndpoint',
    'RelayResponse',
    'JsonRpcRelayClient',
    'LedgerRelayClient',
    'create_relay_client',
    'PoolCache',
    'VenueCache',
    'RateLimiter',
    'RateLimiterGroup',
    'AuditStore'
]
