"""
Configuration management for the route optimizer and relay aggregator
"""

import json
import os
from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass
from decimal import Decimal
import logging

from .constants import (
    BASE_FEE_PER_GAS,
    BUNDLE_MAX_AGE_BLOCKS,
    DEFAULT_BLOCK_WINDOW,
    DEFAULT_GAS_ESTIMATES,
    DEFAULT_GAS_PRICE,
    DEFAULT_MAX_HOPS,
    DEFAULT_OPPORTUNITY_LIMIT,
    INCLUSION_POLL_INTERVAL,
    INTERMEDIATE_TOKENS,
    MAX_CONCURRENT_QUOTES,
    MAX_CONSECUTIVE_FAILURES,
    MAX_FAILOVER_ATTEMPTS,
    MAX_INCLUSION_FETCH_FAILURES,
    MAX_RELAY_LATENCY_MS,
    METRICS_PORT,
    MIN_RELAY_SUCCESS_RATE,
    MIN_SUBMISSIONS_FOR_HEALTH,
    QUOTE_TIMEOUT_SECONDS,
    SCORE_RECOMPUTE_INTERVAL,
    SUBMISSION_TIMEOUT_SECONDS
)
from .errors import ConfigError
from .models import PricingFamily, Venue

logger = logging.getLogger(__name__)

@dataclass
class OptimizerParameters:
    """Route search parameters"""
    max_hops: int = DEFAULT_MAX_HOPS
    intermediate_tokens: Tuple[str, ...] = INTERMEDIATE_TOKENS
    quote_timeout_seconds: float = QUOTE_TIMEOUT_SECONDS
    max_concurrent_quotes: int = MAX_CONCURRENT_QUOTES
    opportunity_limit: int = DEFAULT_OPPORTUNITY_LIMIT

@dataclass
class BundleParameters:
    """Bundle construction parameters"""
    base_fee_per_gas: int = BASE_FEE_PER_GAS
    block_window: int = DEFAULT_BLOCK_WINDOW
    default_strategy: str = "standard"

@dataclass
class AggregatorParameters:
    """Relay selection and failover parameters"""
    max_failover_attempts: int = MAX_FAILOVER_ATTEMPTS
    min_success_rate: float = MIN_RELAY_SUCCESS_RATE
    min_submissions_for_health: int = MIN_SUBMISSIONS_FOR_HEALTH
    max_latency_ms: float = MAX_RELAY_LATENCY_MS
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES
    submission_timeout_seconds: float = SUBMISSION_TIMEOUT_SECONDS
    default_strategy: str = "balanced"
    simulate_before_submit: bool = True

@dataclass
class MonitorParameters:
    """Inclusion monitoring and background job intervals"""
    poll_interval_seconds: float = INCLUSION_POLL_INTERVAL
    max_age_blocks: int = BUNDLE_MAX_AGE_BLOCKS
    max_fetch_failures: int = MAX_INCLUSION_FETCH_FAILURES
    score_recompute_interval: float = SCORE_RECOMPUTE_INTERVAL
    check_interval: float = 10
    metrics_port: int = METRICS_PORT

@dataclass
class TradingPair:
    """Token pair scanned each cycle"""
    token_a: str
    token_b: str
    amount_in: Decimal
    strategy: str = "standard"

class Config:
    """Centralized configuration management"""

    def __init__(self, config_dir: str = "config"):
        self.config_dir = config_dir
        self._main_config: Dict[str, Any] = {}
        self._venue_config: Dict[str, Any] = {}
        self._relay_config: Dict[str, Any] = {}
        self._env_overrides: Dict[str, Any] = {}

        self.reload()

    def _load_json(self, filename: str) -> Dict[str, Any]:
        path = os.path.join(self.config_dir, filename)
        if not os.path.exists(path):
            return {}
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Malformed {path}: {e}") from e
        logger.info(f"Loaded config from {path}")
        return data

    def reload(self):
        """Reload all configuration files"""
        self._main_config = self._load_json("config.json")
        self._venue_config = self._load_json("venues.json")
        self._relay_config = self._load_json("relays.json")
        self._env_overrides = {}
        self._load_env_overrides()

    def _load_env_overrides(self):
        """Load configuration overrides from environment variables"""
        env_mappings = {
            'LEDGER_ENDPOINT': ('ledger_endpoint', str),
            'MAX_FAILOVER_ATTEMPTS': ('max_failover_attempts', int),
            'MIN_RELAY_SUCCESS_RATE': ('min_relay_success_rate', float),
            'MAX_RELAY_LATENCY_MS': ('max_relay_latency_ms', float),
            'QUOTE_TIMEOUT_SECONDS': ('quote_timeout_seconds', float),
            'METRICS_PORT': ('metrics_port', int),
            'CHECK_INTERVAL': ('check_interval', float),
        }

        for env_var, (config_key, type_func) in env_mappings.items():
            value = os.environ.get(env_var)
            if value:
                try:
                    self._env_overrides[config_key] = type_func(value)
                    logger.info(f"Override {config_key} from environment: {value}")
                except ValueError:
                    logger.warning(f"Invalid value for {env_var}: {value}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with environment override support"""
        if key in self._env_overrides:
            return self._env_overrides[key]

        if key in self._main_config:
            return self._main_config[key]

        if '.' in key:
            parts = key.split('.')
            config_map = {
                'venues': self._venue_config,
                'relays': self._relay_config,
                'main': self._main_config
            }

            if parts[0] in config_map:
                value = config_map[parts[0]]
                for part in parts[1:]:
                    if isinstance(value, dict) and part in value:
                        value = value[part]
                    else:
                        return default
                return value

        return default

    @property
    def ledger_endpoint(self) -> Optional[str]:
        return self.get('ledger_endpoint') or os.environ.get('RPC_ENDPOINT')

    @property
    def db_path(self) -> Optional[str]:
        """Audit database path; None disables persistence"""
        return self.get('db_path')

    @property
    def venues(self) -> List[Venue]:
        """Configured venues"""
        venues = []
        for venue_id, data in self._venue_config.get('venues', {}).items():
            if not data.get('enabled', True):
                continue
            try:
                family = PricingFamily(data['family'])
            except (KeyError, ValueError) as e:
                raise ConfigError(f"Venue {venue_id}: invalid pricing family") from e
            venues.append(Venue(
                id=venue_id,
                family=family,
                fee_tiers=tuple(data.get('fee_tiers', ())),
                gas_estimate_base=int(data.get('gas_estimate', DEFAULT_GAS_ESTIMATES[family.value]))
            ))
        return venues

    @property
    def relays(self) -> List[Dict[str, Any]]:
        """Relay endpoint definitions in registration order"""
        return [
            dict(data, id=relay_id)
            for relay_id, data in self._relay_config.get('relays', {}).items()
            if data.get('enabled', True)
        ]

    @property
    def pairs(self) -> List[TradingPair]:
        """Token pairs scanned each cycle"""
        return [
            TradingPair(
                token_a=pair['token_a'],
                token_b=pair['token_b'],
                amount_in=Decimal(str(pair['amount_in'])),
                strategy=pair.get('strategy', 'standard'),
            )
            for pair in self._main_config.get('pairs', [])
        ]

    @property
    def gas_prices(self) -> Dict[str, Decimal]:
        """Price of one gas unit per token"""
        return {
            token: Decimal(str(price))
            for token, price in self._main_config.get('gas_prices', {}).items()
        }

    @property
    def default_gas_price(self) -> Decimal:
        return Decimal(str(self.get('default_gas_price', DEFAULT_GAS_PRICE)))

    @property
    def optimizer_parameters(self) -> OptimizerParameters:
        data = self._main_config.get('optimizer', {})

        return OptimizerParameters(
            max_hops=data.get('max_hops', DEFAULT_MAX_HOPS),
            intermediate_tokens=tuple(data.get('intermediate_tokens', INTERMEDIATE_TOKENS)),
            quote_timeout_seconds=self.get('quote_timeout_seconds', data.get('quote_timeout_seconds', QUOTE_TIMEOUT_SECONDS)),
            max_concurrent_quotes=data.get('max_concurrent_quotes', MAX_CONCURRENT_QUOTES),
            opportunity_limit=data.get('opportunity_limit', DEFAULT_OPPORTUNITY_LIMIT)
        )

    @property
    def bundle_parameters(self) -> BundleParameters:
        data = self._main_config.get('bundles', {})

        return BundleParameters(
            base_fee_per_gas=data.get('base_fee_per_gas', BASE_FEE_PER_GAS),
            block_window=data.get('block_window', DEFAULT_BLOCK_WINDOW),
            default_strategy=data.get('default_strategy', 'standard')
        )

    @property
    def aggregator_parameters(self) -> AggregatorParameters:
        data = self._relay_config.get('selection', {})

        return AggregatorParameters(
            max_failover_attempts=self.get('max_failover_attempts', data.get('max_failover_attempts', MAX_FAILOVER_ATTEMPTS)),
            min_success_rate=self.get('min_relay_success_rate', data.get('min_success_rate', MIN_RELAY_SUCCESS_RATE)),
            min_submissions_for_health=data.get('min_submissions_for_health', MIN_SUBMISSIONS_FOR_HEALTH),
            max_latency_ms=self.get('max_relay_latency_ms', data.get('max_latency_ms', MAX_RELAY_LATENCY_MS)),
            max_consecutive_failures=data.get('max_consecutive_failures', MAX_CONSECUTIVE_FAILURES),
            submission_timeout_seconds=data.get('submission_timeout_seconds', SUBMISSION_TIMEOUT_SECONDS),
            default_strategy=data.get('default_strategy', 'balanced'),
            simulate_before_submit=data.get('simulate_before_submit', True)
        )

    @property
    def monitor_parameters(self) -> MonitorParameters:
        data = self._main_config.get('monitoring', {})

        return MonitorParameters(
            poll_interval_seconds=data.get('poll_interval_seconds', INCLUSION_POLL_INTERVAL),
            max_age_blocks=data.get('max_age_blocks', BUNDLE_MAX_AGE_BLOCKS),
            max_fetch_failures=data.get('max_fetch_failures', MAX_INCLUSION_FETCH_FAILURES),
            score_recompute_interval=data.get('score_recompute_interval', SCORE_RECOMPUTE_INTERVAL),
            check_interval=self.get('check_interval', data.get('check_interval', 10)),
            metrics_port=self.get('metrics_port', data.get('metrics_port', METRICS_PORT))
        )

    def validate(self) -> bool:
        """Validate configuration"""
        if not self.ledger_endpoint:
            logger.error("Missing required configuration: ledger_endpoint")
            return False

        if not self._venue_config.get('venues'):
            logger.error("No venues defined")
            return False

        if not self.relays:
            logger.error("No relays defined")
            return False

        optimizer = self.optimizer_parameters
        if optimizer.max_hops < 1:
            logger.error(f"max_hops must be at least 1, got {optimizer.max_hops}")
            return False

        aggregator = self.aggregator_parameters
        if not 0 <= aggregator.min_success_rate <= 1:
            logger.error(f"min_success_rate out of range: {aggregator.min_success_rate}")
            return False
        if aggregator.max_failover_attempts < 1:
            logger.error("max_failover_attempts must be at least 1")
            return False

        return True

# Global config instance
config = None

def initialize_config(config_dir: str = "config") -> Config:
    """Initialize global configuration"""
    global config
    config = Config(config_dir)

    if not config.validate():
        raise ConfigError("Invalid configuration")

    return config

def get_config() -> Config:
    """Get global configuration instance"""
    global config
    if config is None:
        config = initialize_config()
    return config
