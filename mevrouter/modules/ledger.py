"""
Ledger interface and JSON-RPC client
"""

import itertools
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from ..errors import LedgerError
from ..models import Block, PoolState

logger = logging.getLogger(__name__)


class Ledger(ABC):
    """Read access to pools and blocks plus direct bundle submission"""

    @abstractmethod
    async def get_pool(self, venue_id: str, token_a: str, token_b: str, fee: Optional[int] = None) -> Optional[str]:
        """Pool reference for the pair on a venue, None if no pool exists"""

    @abstractmethod
    async def get_pool_state(self, pool_ref: str) -> PoolState:
        ...

    @abstractmethod
    async def get_quote(self, pool_ref: str, token_in: str, token_out: str, amount_in: Decimal) -> Decimal:
        """Exact output amount from the venue's on-chain quoter"""

    @abstractmethod
    async def submit_bundle(self, payload: Dict[str, Any]) -> str:
        """Submit a bundle payload directly; returns a receipt id"""

    @abstractmethod
    async def get_block(self, number: int) -> Block:
        ...

    @abstractmethod
    async def get_current_block(self) -> int:
        ...


class JsonRpcLedger(Ledger):
    """Ledger client over JSON-RPC"""

    def __init__(self, endpoint: str, timeout: float = 10.0, rate_limiter=None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self.session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _call(self, method: str, params: List[Any]) -> Any:
        """Make a JSON-RPC call; transport and RPC errors raise LedgerError"""
        if self.rate_limiter:
            await self.rate_limiter.acquire()

        if not self.session:
            self.session = aiohttp.ClientSession()

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params
        }

        try:
            async with self.session.post(
                self.endpoint,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    raise LedgerError(f"{method}: HTTP {response.status}")
                body = await response.json()
        except aiohttp.ClientError as e:
            raise LedgerError(f"{method}: {e}") from e

        if body.get("error"):
            raise LedgerError(f"{method}: {body['error']}")
        return body.get("result")

    async def get_pool(self, venue_id: str, token_a: str, token_b: str, fee: Optional[int] = None) -> Optional[str]:
        return await self._call("router_getPool", [venue_id, token_a, token_b, fee])

    async def get_pool_state(self, pool_ref: str) -> PoolState:
        data = await self._call("router_getPoolState", [pool_ref])
        if not data:
            raise LedgerError(f"Pool {pool_ref} has no state")

        weights = data.get("weights")
        amplification = data.get("amplification")
        return PoolState(
            token0=data["token0"],
            token1=data["token1"],
            liquidity=Decimal(str(data["liquidity"])),
            price=Decimal(str(data["price"])),
            tick_spacing=data.get("tickSpacing"),
            weights=tuple(Decimal(str(w)) for w in weights) if weights else None,
            amplification=Decimal(str(amplification)) if amplification is not None else None,
            swap_fee=data.get("swapFee"),
        )

    async def get_quote(self, pool_ref: str, token_in: str, token_out: str, amount_in: Decimal) -> Decimal:
        result = await self._call("router_quoteExactInput", [pool_ref, token_in, token_out, str(amount_in)])
        return Decimal(str(result))

    async def submit_bundle(self, payload: Dict[str, Any]) -> str:
        result = await self._call("router_sendBundle", [payload])
        logger.info(f"Bundle submitted directly to ledger: {result}")
        return str(result)

    async def get_block(self, number: int) -> Block:
        data = await self._call("eth_getBlockByNumber", [hex(number), False])
        if data is None:
            raise LedgerError(f"Block {number} not available")
        return Block(number=number, transactions=tuple(data.get("transactions", [])))

    async def get_current_block(self) -> int:
        result = await self._call("eth_blockNumber", [])
        return int(result, 16) if isinstance(result, str) else int(result)
