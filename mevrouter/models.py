"""
Data model shared by the optimizer, bundle builder and relay aggregator
"""

import dataclasses
import hashlib
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

import base58

from .errors import InvalidTransitionError


def content_id(prefix: str, *parts) -> str:
    """Deterministic identifier derived from a sha256 of the given parts"""
    payload = "|".join(str(part) for part in parts).encode("utf-8")
    digest = hashlib.sha256(payload).digest()
    return f"{prefix}_{base58.b58encode(digest[:16]).decode('utf-8')}"


# ===== VENUES & QUOTES =====

class PricingFamily(Enum):
    CONSTANT_PRODUCT = "constant_product"
    CONCENTRATED = "concentrated"
    WEIGHTED = "weighted"


@dataclass(frozen=True)
class Venue:
    """Immutable venue configuration"""
    id: str
    family: PricingFamily
    fee_tiers: Tuple[int, ...] = ()
    gas_estimate_base: int = 150_000

    @property
    def default_fee(self) -> Optional[int]:
        return self.fee_tiers[0] if self.fee_tiers else None


@dataclass(frozen=True)
class PoolState:
    """Pool snapshot; price is token1 per token0"""
    token0: str
    token1: str
    liquidity: Decimal
    price: Decimal
    tick_spacing: Optional[int] = None
    weights: Optional[Tuple[Decimal, Decimal]] = None
    amplification: Optional[Decimal] = None
    swap_fee: Optional[int] = None


@dataclass(frozen=True)
class Block:
    number: int
    transactions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Quote:
    venue_id: str
    token_in: str
    token_out: str
    amount_in: Decimal
    amount_out: Decimal
    price_impact: Decimal
    gas_estimate: int
    pool_ref: str
    fee: Optional[int] = None


class VenueErrorKind(Enum):
    NO_POOL = "no_pool"
    TIMEOUT = "timeout"
    NETWORK = "network"
    INVALID_RESPONSE = "invalid_response"


@dataclass(frozen=True)
class VenueError:
    venue_id: str
    kind: VenueErrorKind
    detail: str = ""


@dataclass(frozen=True)
class QuoteResult:
    """Either a quote or the reason the venue could not provide one"""
    quote: Optional[Quote] = None
    error: Optional[VenueError] = None

    @property
    def ok(self) -> bool:
        return self.quote is not None

    @classmethod
    def success(cls, quote: Quote) -> "QuoteResult":
        return cls(quote=quote)

    @classmethod
    def failure(cls, venue_id: str, kind: VenueErrorKind, detail: str = "") -> "QuoteResult":
        return cls(error=VenueError(venue_id, kind, detail))


# ===== ROUTES =====

@dataclass(frozen=True)
class Hop:
    venue_id: str
    family: PricingFamily
    token_in: str
    token_out: str
    pool_ref: str
    gas_estimate: int
    amount_in: Decimal
    amount_out: Decimal
    fee: Optional[int] = None

    @classmethod
    def from_quote(cls, quote: Quote, family: PricingFamily) -> "Hop":
        return cls(
            venue_id=quote.venue_id,
            family=family,
            token_in=quote.token_in,
            token_out=quote.token_out,
            pool_ref=quote.pool_ref,
            gas_estimate=quote.gas_estimate,
            amount_in=quote.amount_in,
            amount_out=quote.amount_out,
            fee=quote.fee,
        )


class RouteMetric(Enum):
    COMBINED = "combined"
    OUTPUT = "output"
    PROFITABILITY = "profitability"
    RELIABILITY = "reliability"
    GAS_EFFICIENCY = "gas_efficiency"


@dataclass(frozen=True)
class Route:
    id: str
    token_in: str
    token_out: str
    amount_in: Decimal
    hops: Tuple[Hop, ...]
    expected_amount_out: Decimal
    price_impact: Decimal
    gas_estimate: int
    execution_time_estimate: int
    reliability: float
    profitability: float
    risk_score: float
    gas_efficiency: float = 0.0
    speed_efficiency: float = 0.0
    combined_score: float = 0.0

    def metric(self, metric: RouteMetric):
        if metric == RouteMetric.OUTPUT:
            return self.expected_amount_out
        if metric == RouteMetric.PROFITABILITY:
            return self.profitability
        if metric == RouteMetric.RELIABILITY:
            return self.reliability
        if metric == RouteMetric.GAS_EFFICIENCY:
            return self.gas_efficiency
        return self.combined_score

    def is_contiguous(self) -> bool:
        if not self.hops:
            return False
        if self.hops[0].token_in != self.token_in or self.hops[-1].token_out != self.token_out:
            return False
        return all(
            prev.token_out == nxt.token_in
            for prev, nxt in zip(self.hops, self.hops[1:])
        )

    @property
    def venues(self) -> List[str]:
        return [hop.venue_id for hop in self.hops]


class OpportunityKind(Enum):
    LOOP = "loop"
    CROSS_VENUE = "cross_venue"


@dataclass(frozen=True)
class Opportunity:
    """Closed route pair whose output exceeds input after gas"""
    id: str
    kind: OpportunityKind
    token_a: str
    token_b: str
    input_amount: Decimal
    final_amount: Decimal
    gas_cost: Decimal
    net_profit: Decimal
    profit_token: str
    forward: Route
    backward: Route
    # token_b per unit of profit_token
    quote_rate: Decimal = Decimal("1")

    @property
    def net_profit_quote(self) -> Decimal:
        """Net profit in token_b, comparable across loop and cross-venue kinds"""
        return self.net_profit * self.quote_rate

    @property
    def hops(self) -> Tuple[Hop, ...]:
        return self.forward.hops + self.backward.hops

    @property
    def gas_estimate(self) -> int:
        return self.forward.gas_estimate + self.backward.gas_estimate


# ===== BUNDLES =====

class FeeStrategy(Enum):
    AGGRESSIVE = "aggressive"
    STANDARD = "standard"
    CONSERVATIVE = "conservative"


class BundleStatus(Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    INCLUDED = "included"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self in (BundleStatus.INCLUDED, BundleStatus.FAILED, BundleStatus.EXPIRED)


ALLOWED_TRANSITIONS: Dict[BundleStatus, Tuple[BundleStatus, ...]] = {
    BundleStatus.PENDING: (BundleStatus.SUBMITTED, BundleStatus.FAILED, BundleStatus.EXPIRED),
    BundleStatus.SUBMITTED: (BundleStatus.INCLUDED, BundleStatus.FAILED, BundleStatus.EXPIRED),
    BundleStatus.INCLUDED: (),
    BundleStatus.FAILED: (),
    BundleStatus.EXPIRED: (),
}


@dataclass(frozen=True)
class Operation:
    sequence: int
    operation_id: str
    venue_id: str
    family: PricingFamily
    pool_ref: str
    token_in: str
    token_out: str
    gas_limit: int
    quoted_amount_in: Decimal
    quoted_amount_out: Decimal
    fee: Optional[int] = None

    def to_payload(self) -> Dict[str, object]:
        return {
            "sequence": self.sequence,
            "id": self.operation_id,
            "venue": self.venue_id,
            "family": self.family.value,
            "pool": self.pool_ref,
            "tokenIn": self.token_in,
            "tokenOut": self.token_out,
            "fee": self.fee,
            "gasLimit": self.gas_limit,
            "amountIn": str(self.quoted_amount_in),
            "amountOutQuoted": str(self.quoted_amount_out),
        }


@dataclass(frozen=True)
class FeeParams:
    strategy: FeeStrategy
    priority_fee: int
    max_fee: int
    gas_limit: int

    def to_payload(self) -> Dict[str, object]:
        return {
            "strategy": self.strategy.value,
            "maxPriorityFeePerGas": hex(self.priority_fee),
            "maxFeePerGas": hex(self.max_fee),
            "gasLimit": hex(self.gas_limit),
        }


@dataclass
class Bundle:
    id: str
    route_id: str
    operations: Tuple[Operation, ...]
    target_block: int
    max_block_number: int
    fee_params: FeeParams
    expected_profit: Decimal
    gas_estimate: int
    status: BundleStatus = BundleStatus.PENDING

    def can_transition(self, new_status: BundleStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, new_status: BundleStatus):
        """Move forward in the lifecycle; reversals raise"""
        if not self.can_transition(new_status):
            raise InvalidTransitionError(self.id, self.status, new_status)
        self.status = new_status

    def is_stale(self, current_block: int) -> bool:
        return current_block > self.max_block_number

    @property
    def operation_ids(self) -> Tuple[str, ...]:
        return tuple(op.operation_id for op in self.operations)


# ===== RELAYS =====

class SelectionStrategy(Enum):
    FASTEST = "fastest"
    HIGHEST_SUCCESS = "highest_success"
    LOWEST_COST = "lowest_cost"
    BALANCED = "balanced"
    ROUND_ROBIN = "round_robin"


@dataclass
class RelayPerformance:
    relay_id: str
    total_submissions: int = 0
    successful_inclusions: int = 0
    total_latency_ms: float = 0.0
    total_cost: Decimal = Decimal("0")
    consecutive_failures: int = 0
    active: bool = True
    score: float = 0.0
    last_latency_ms: float = 0.0
    responsive: bool = True
    queue_length: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_submissions == 0:
            return 0.0
        return self.successful_inclusions / self.total_submissions

    @property
    def average_latency_ms(self) -> float:
        if self.total_submissions == 0:
            return 0.0
        return self.total_latency_ms / self.total_submissions

    @property
    def average_cost(self) -> Decimal:
        if self.total_submissions == 0:
            return Decimal("0")
        return self.total_cost / self.total_submissions

    def snapshot(self) -> "RelayPerformance":
        return dataclasses.replace(self)


@dataclass(frozen=True)
class SubmissionAttempt:
    bundle_id: str
    relay_id: str
    timestamp: float
    latency_ms: float
    success: bool
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class BundleSimulation:
    """Outcome of a relay-side dry run of a bundle against the latest state"""
    bundle_id: str
    relay_id: str
    success: bool
    gas_used: int = 0
    profit: int = 0
    errors: Tuple[str, ...] = ()


@dataclass
class SubmissionResult:
    bundle_id: str
    status: BundleStatus
    relay_id: Optional[str] = None
    receipt: Optional[str] = None
    attempts: List[SubmissionAttempt] = field(default_factory=list)
    error: Optional[str] = None
    simulation: Optional[BundleSimulation] = None

    @property
    def success(self) -> bool:
        return self.status == BundleStatus.SUBMITTED

    @property
    def relays_tried(self) -> List[str]:
        return [attempt.relay_id for attempt in self.attempts]


@dataclass(frozen=True)
class HealthUpdate:
    """Pushed by the external health-check feed"""
    relay_id: str
    latency_ms: float
    responsive: bool
    queue_length: int = 0
