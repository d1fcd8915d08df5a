"""Shared fixtures: in-memory ledger, fixed-rate venues and scripted relays"""

import asyncio
from collections import Counter
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from mevrouter.errors import LedgerError
from mevrouter.metrics import MetricsCollector
from mevrouter.models import Block, BundleSimulation, PoolState, PricingFamily, Quote, Venue
from mevrouter.modules.ledger import Ledger
from mevrouter.modules.relay_client import RelayClient, RelayEndpoint, RelayResponse
from mevrouter.modules.venue_clients import VenueAdapter, VenueQuoteClient
from mevrouter.route_optimizer import RouteOptimizer


class FakeLedger(Ledger):
    """In-memory ledger with pools, blocks and failure injection"""

    def __init__(self):
        self.pools = {}
        self.states: Dict[str, PoolState] = {}
        self.blocks: Dict[int, Block] = {}
        self.failing_blocks = set()
        self.current_block = 100
        self.submitted: List[dict] = []
        self.delay = 0.0
        self.error: Optional[Exception] = None
        self.calls = Counter()

    def add_pool(self, venue_id: str, state: PoolState, fee: Optional[int] = None, ref: Optional[str] = None) -> str:
        ref = ref or f"{venue_id}:{state.token0}/{state.token1}:{fee}"
        self.pools[(venue_id, frozenset((state.token0, state.token1)), fee)] = ref
        self.states[ref] = state
        return ref

    async def _io(self, name: str):
        self.calls[name] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error

    async def get_pool(self, venue_id, token_a, token_b, fee=None):
        await self._io('get_pool')
        return self.pools.get((venue_id, frozenset((token_a, token_b)), fee))

    async def get_pool_state(self, pool_ref):
        await self._io('get_pool_state')
        return self.states[pool_ref]

    async def get_quote(self, pool_ref, token_in, token_out, amount_in):
        await self._io('get_quote')
        state = self.states[pool_ref]
        rate = state.price if token_in == state.token0 else 1 / state.price
        return amount_in * rate * Decimal("0.997")

    async def submit_bundle(self, payload):
        await self._io('submit_bundle')
        self.submitted.append(payload)
        return f"ledger-{len(self.submitted)}"

    async def get_block(self, number):
        self.calls['get_block'] += 1
        if number in self.failing_blocks:
            raise LedgerError(f"block {number} unavailable")
        return self.blocks.get(number, Block(number=number))

    async def get_current_block(self):
        self.calls['get_current_block'] += 1
        return self.current_block


class FixedRateAdapter(VenueAdapter):
    """Venue quoting at fixed exchange rates per (token_in, token_out[, fee])"""

    def __init__(
        self,
        venue_id: str,
        rates: Dict[tuple, Decimal],
        family: PricingFamily = PricingFamily.CONSTANT_PRODUCT,
        fee_tiers=(3000,),
        gas: int = 150_000,
        delay: float = 0.0,
        timeout: float = 1.0
    ):
        super().__init__(Venue(venue_id, family, tuple(fee_tiers), gas), ledger=None, timeout=timeout)
        self.family = family
        self.rates = {key: Decimal(str(rate)) for key, rate in rates.items()}
        self.delay = delay
        self.calls = []
        self.cancelled = 0

    def quote_tiers(self):
        if self.family == PricingFamily.CONCENTRATED:
            return list(self.venue.fee_tiers)
        return [None]

    async def _quote(self, token_in, token_out, amount_in, fee_tier):
        fee = fee_tier if fee_tier is not None else self.venue.default_fee
        self.calls.append((token_in, token_out, amount_in, fee))
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise

        rate = self.rates.get((token_in, token_out, fee), self.rates.get((token_in, token_out)))
        if rate is None:
            return self._no_pool(token_in, token_out, fee)
        return self._make_quote(
            token_in, token_out, amount_in, amount_in * rate,
            Decimal("0.001"), f"{self.venue_id}:{token_in}/{token_out}:{fee}", fee
        )


class ScriptedRelay(RelayClient):
    """Relay that accepts or rejects every bundle, optionally after a delay

    simulates=None means the relay cannot simulate; True or False is the
    outcome every simulation reports.
    """

    def __init__(self, relay_id: str, accept: bool = True, delay: float = 0.0,
                 cost: Decimal = Decimal("0"), error: str = "bundle rejected",
                 simulates: Optional[bool] = None):
        super().__init__(RelayEndpoint(id=relay_id, cost=cost))
        self.accept = accept
        self.delay = delay
        self.error = error
        self.simulates = simulates
        self.received: List[str] = []
        self.simulated: List[str] = []

    async def simulate_bundle(self, bundle):
        if self.simulates is None:
            return None
        self.simulated.append(bundle.id)
        errors = () if self.simulates else ("execution reverted",)
        return BundleSimulation(bundle.id, self.relay_id, success=self.simulates, gas_used=bundle.gas_estimate, errors=errors)

    async def send_bundle(self, bundle):
        self.received.append(bundle.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.accept:
            return RelayResponse(accepted=True, receipt=f"{self.relay_id}-{bundle.id}", cost=self.endpoint.cost)
        return RelayResponse(accepted=False, error=self.error)


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def make_adapter():
    return FixedRateAdapter


@pytest.fixture
def make_relay():
    return ScriptedRelay


@pytest.fixture
def optimizer_factory():
    def factory(*adapters, gas_pricer=None, params=None):
        return RouteOptimizer(VenueQuoteClient(list(adapters)), gas_pricer=gas_pricer, params=params)
    return factory


@pytest.fixture
def make_route():
    """Build a scored route from (venue_id, token_in, token_out, amount_in, amount_out) legs"""
    optimizer = RouteOptimizer(VenueQuoteClient([]))

    def factory(*legs, family=PricingFamily.CONSTANT_PRODUCT, fee=3000, gas=150_000):
        quotes = []
        for venue_id, token_in, token_out, amount_in, amount_out in legs:
            quotes.append((Quote(
                venue_id=venue_id,
                token_in=token_in,
                token_out=token_out,
                amount_in=Decimal(str(amount_in)),
                amount_out=Decimal(str(amount_out)),
                price_impact=Decimal("0.001"),
                gas_estimate=gas,
                pool_ref=f"{venue_id}:{token_in}/{token_out}",
                fee=fee
            ), family))
        first, last = quotes[0][0], quotes[-1][0]
        return optimizer.build_route(first.token_in, last.token_out, first.amount_in, quotes)

    return factory
