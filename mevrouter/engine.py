"""
Route optimizer and relay aggregator engine

Wires the optimizer, detector, bundle builder, relay aggregator and
inclusion monitor together and runs them as background loops.
"""

import asyncio
import json
import logging
import os
import signal
from decimal import Decimal
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional

import aiohttp

from .arbitrage_detector import ArbitrageDetector
from .bundle_builder import BundleBuilder
from .config import Config, initialize_config
from .constants import HEALTH_CHECK_INTERVAL, LOG_BACKUP_COUNT, LOG_ROTATION_SIZE
from .errors import LedgerError
from .inclusion_monitor import InclusionMonitor
from .metrics import MetricsCollector
from .models import Bundle, HealthUpdate, SubmissionResult
from .modules.database import AuditStore
from .modules.ledger import JsonRpcLedger, Ledger
from .modules.rate_limiter import DEFAULT_RATE_LIMITS, RateLimiterGroup
from .modules.relay_client import RelayClient, RelayEndpoint, create_relay_client
from .modules.venue_clients import VenueQuoteClient
from .relay_aggregator import RelayAggregator
from .route_optimizer import GasPricer, RouteOptimizer

logger = logging.getLogger(__name__)


def setup_logging(log_dir: str = "logs", level: int = logging.INFO):
    """Rotating file log plus console output"""
    os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            RotatingFileHandler(
                os.path.join(log_dir, 'mevrouter.log'),
                maxBytes=LOG_ROTATION_SIZE,
                backupCount=LOG_BACKUP_COUNT
            ),
            logging.StreamHandler()
        ]
    )


class ArbitrageEngine:
    """Discovers opportunities each cycle and drives their bundles to inclusion"""

    def __init__(
        self,
        config: Config,
        ledger: Optional[Ledger] = None,
        relay_clients: Optional[List[RelayClient]] = None,
        metrics: Optional[MetricsCollector] = None,
        audit_store: Optional[AuditStore] = None
    ):
        self.config = config
        self.rate_limiters = RateLimiterGroup(DEFAULT_RATE_LIMITS)
        self.ledger = ledger or JsonRpcLedger(
            config.ledger_endpoint,
            rate_limiter=self.rate_limiters.get('ledger')
        )

        optimizer_params = config.optimizer_parameters
        self.quote_client = VenueQuoteClient.from_venues(
            config.venues,
            self.ledger,
            rate_limiters=self.rate_limiters,
            timeout=optimizer_params.quote_timeout_seconds
        )
        self.optimizer = RouteOptimizer(
            self.quote_client,
            GasPricer(config.gas_prices, config.default_gas_price),
            optimizer_params
        )
        self.detector = ArbitrageDetector(self.optimizer)
        self.builder = BundleBuilder(config.bundle_parameters)

        self.metrics = metrics or MetricsCollector()
        if audit_store is None and config.db_path:
            audit_store = AuditStore(config.db_path)
        self.audit_store = audit_store

        self.aggregator = RelayAggregator(config.aggregator_parameters, self.metrics, self.audit_store)
        if relay_clients is None:
            relay_clients = self._build_relay_clients()
        for client in relay_clients:
            self.aggregator.register_relay(client)

        self.monitor_params = config.monitor_parameters
        self.monitor = InclusionMonitor(self.ledger, self.aggregator, self.monitor_params)
        self.health_feed: "asyncio.Queue[HealthUpdate]" = asyncio.Queue()

        self.running = False
        self.tasks: List[asyncio.Task] = []
        self._nonce = 0

    def _build_relay_clients(self) -> List[RelayClient]:
        clients = []
        for data in self.config.relays:
            endpoint = RelayEndpoint(
                id=data['id'],
                url=data.get('url', ''),
                provider=data.get('provider', data['id']),
                kind=data.get('kind', 'jsonrpc'),
                cost=Decimal(str(data.get('cost', 0))),
                timeout=data.get('timeout', self.config.aggregator_parameters.submission_timeout_seconds),
                auth_header=data.get('auth_header')
            )
            clients.append(create_relay_client(endpoint, self.ledger))
        return clients

    # ===== CYCLE =====

    async def run_cycle(self) -> List[SubmissionResult]:
        """Scan every configured pair and submit the best opportunity of each"""
        current_block = await self.ledger.get_current_block()
        pairs = self.config.pairs
        limit = self.config.optimizer_parameters.opportunity_limit

        found = await asyncio.gather(*(
            self.detector.find_opportunities(pair.token_a, pair.token_b, pair.amount_in, limit=limit)
            for pair in pairs
        ))
        self.metrics.record_opportunities(sum(len(opportunities) for opportunities in found))

        submissions = []
        for pair, opportunities in zip(pairs, found):
            if not opportunities:
                continue
            # Opportunities of one pair compete for the same liquidity
            best = opportunities[0]
            if self.audit_store:
                await self.audit_store.save_opportunity(best)

            self._nonce += 1
            bundle = self.builder.build_from_opportunity(best, pair.strategy, current_block, nonce=self._nonce)
            submissions.append(self.submit(bundle, current_block))

        return list(await asyncio.gather(*submissions))

    async def submit(self, bundle: Bundle, current_block: Optional[int] = None) -> SubmissionResult:
        result = await self.aggregator.submit_with_failover(bundle, current_block=current_block)
        if result.success:
            self.monitor.watch(bundle)
        return result

    # ===== BACKGROUND LOOPS =====

    async def cycle_loop(self):
        """Main discovery loop"""
        logger.info("Starting route discovery loop...")
        consecutive_errors = 0

        while self.running:
            try:
                results = await self.run_cycle()
                if results:
                    submitted = sum(1 for result in results if result.success)
                    logger.info(f"Cycle submitted {submitted}/{len(results)} bundles")
                consecutive_errors = 0
            except (LedgerError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                consecutive_errors += 1
                logger.error(f"Cycle error: {e}")

                if consecutive_errors > 5:
                    logger.error("Too many consecutive errors, pausing...")
                    await asyncio.sleep(30)
                    consecutive_errors = 0

            await asyncio.sleep(self.monitor_params.check_interval)

    async def score_loop(self):
        """Periodic relay score recomputation"""
        while self.running:
            await self.aggregator.recompute_scores()
            await asyncio.sleep(self.monitor_params.score_recompute_interval)

    async def health_check(self):
        """Periodic cache maintenance and status log"""
        while self.running:
            cleared = await self.quote_client.clear_expired()
            active = self.aggregator.get_active_relays()
            logger.info(
                f"Health check OK. Block: {self.monitor.last_block}, "
                f"active relays: {len(active)}/{len(self.aggregator.relays)}, cache entries cleared: {cleared}"
            )
            if not active:
                logger.warning("No healthy relays available")
            await asyncio.sleep(HEALTH_CHECK_INTERVAL)

    # ===== DASHBOARD =====

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.get_metrics()

    def get_relay_performance(self, relay_id: Optional[str] = None):
        """One relay's performance, or all of them keyed by relay id"""
        if relay_id is not None:
            return self.aggregator.get_relay_performance(relay_id)
        return {
            relay_id: self.aggregator.get_relay_performance(relay_id)
            for relay_id in self.aggregator.relays
        }

    def get_active_relays(self) -> List[str]:
        return self.aggregator.get_active_relays()

    # ===== LIFECYCLE =====

    def stop(self):
        logger.info("Shutdown signal received")
        self.running = False
        self.monitor.stop()
        for task in self.tasks:
            task.cancel()

    async def close(self):
        for relay in self.aggregator.relays.values():
            await relay.client.close()
        if isinstance(self.ledger, JsonRpcLedger):
            await self.ledger.close()

    async def start(self):
        """Start the engine and block until stopped"""
        self.running = True

        try:
            self.metrics.start_server(self.monitor_params.metrics_port)
        except OSError as e:
            logger.warning(f"Failed to start metrics server: {e}. Continuing without metrics.")

        await self.aggregator.recompute_scores()

        self.tasks = [
            asyncio.create_task(self.cycle_loop()),
            asyncio.create_task(self.monitor.run()),
            asyncio.create_task(self.score_loop()),
            asyncio.create_task(self.health_check()),
            asyncio.create_task(self.aggregator.consume_health_feed(self.health_feed)),
        ]

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                logger.debug(f"Signal handlers not supported for {sig}")

        try:
            results = await asyncio.gather(*self.tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                    logger.error(f"Engine task failed: {result!r}")
        finally:
            self.running = False
            await self.close()
            logger.info("Engine stopped")


DEFAULT_CONFIG = {
    "config.json": {
        "ledger_endpoint": "http://localhost:8545",
        "db_path": "data/mevrouter.db",
        "check_interval": 10,
        "default_gas_price": "0",
        "gas_prices": {
            "WETH": "0.00000002",
            "USDC": "0.00005"
        },
        "pairs": [
            {"token_a": "WETH", "token_b": "USDC", "amount_in": "10", "strategy": "standard"}
        ],
        "optimizer": {
            "max_hops": 2,
            "intermediate_tokens": ["WETH", "USDC", "DAI", "USDT", "WBTC"]
        },
        "bundles": {"block_window": 5},
        "monitoring": {"metrics_port": 8000, "max_age_blocks": 50, "max_fetch_failures": 20}
    },
    "venues.json": {
        "venues": {
            "uniswap_v2": {"family": "constant_product", "fee_tiers": [3000]},
            "sushiswap": {"family": "constant_product", "fee_tiers": [3000]},
            "uniswap_v3": {"family": "concentrated", "fee_tiers": [500, 3000, 10000]},
            "balancer": {"family": "weighted"},
            "curve": {"family": "weighted", "fee_tiers": [400]}
        }
    },
    "relays.json": {
        "selection": {
            "default_strategy": "balanced",
            "max_failover_attempts": 3,
            "min_success_rate": 0.7,
            "simulate_before_submit": True
        },
        "relays": {
            "flashbots": {"url": "https://relay.flashbots.net", "provider": "flashbots"},
            "bloxroute": {"url": "https://mev.api.blxrbdn.com", "provider": "bloxroute"},
            "public": {"kind": "ledger", "provider": "public"}
        }
    }
}


async def main():
    """Main entry point"""
    config_dir = os.environ.get('MEVROUTER_CONFIG_DIR', 'config')

    if not os.path.exists(os.path.join(config_dir, 'config.json')):
        print(f"Creating default configuration in {config_dir}/...")
        os.makedirs(config_dir, exist_ok=True)
        for filename, contents in DEFAULT_CONFIG.items():
            path = os.path.join(config_dir, filename)
            if not os.path.exists(path):
                with open(path, 'w') as f:
                    json.dump(contents, f, indent=2)

        print(f"Please review the files in {config_dir}/ and start again")
        return

    setup_logging()
    os.makedirs('data', exist_ok=True)

    config = initialize_config(config_dir)
    engine = ArbitrageEngine(config)
    await engine.start()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    print("=" * 60)
    print("MEV ROUTER - route optimizer and relay aggregator")
    print("=" * 60)
    run()
