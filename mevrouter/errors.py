"""
Exceptions raised for contract violations.

Business-level failures (a venue without a pool, a relay rejecting a bundle,
an exhausted failover chain) are returned as result objects instead.
"""


class MevRouterError(Exception):
    """Base class for all hard failures"""


class ConfigError(MevRouterError):
    """Invalid or missing configuration"""


class InvalidRouteError(MevRouterError, ValueError):
    """Route request or route structure violates its invariants"""


class UnknownStrategyError(MevRouterError, ValueError):
    """Selection or fee strategy name is not recognized"""


class InvalidTransitionError(MevRouterError):
    """Bundle status change that would reverse or skip the lifecycle"""

    def __init__(self, bundle_id: str, current, requested):
        self.bundle_id = bundle_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Bundle {bundle_id}: illegal transition {current.value} -> {requested.value}"
        )


class LedgerError(MevRouterError):
    """Ledger call failed (transport error or JSON-RPC error payload)"""
