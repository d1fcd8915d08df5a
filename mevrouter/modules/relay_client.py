"""
Relay clients for private bundle submission
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from ..constants import SUBMISSION_TIMEOUT_SECONDS
from ..errors import LedgerError
from ..models import Bundle, BundleSimulation
from .ledger import Ledger

logger = logging.getLogger(__name__)


@dataclass
class RelayEndpoint:
    """Relay configuration"""
    id: str
    url: str = ""
    provider: str = ""
    kind: str = "jsonrpc"
    cost: Decimal = Decimal("0")
    timeout: float = SUBMISSION_TIMEOUT_SECONDS
    auth_header: Optional[str] = None


@dataclass
class RelayResponse:
    accepted: bool
    receipt: Optional[str] = None
    error: Optional[str] = None
    cost: Decimal = Decimal("0")


def bundle_payload(bundle: Bundle) -> Dict[str, Any]:
    """Wire form of a bundle; the relay enforces the block window as the deadline"""
    return {
        "bundleId": bundle.id,
        "txs": [op.to_payload() for op in bundle.operations],
        "blockNumber": hex(bundle.target_block),
        "maxBlockNumber": hex(bundle.max_block_number),
        **bundle.fee_params.to_payload(),
    }


def _quantity(value) -> int:
    # JSON-RPC quantities are hex strings; some relays send plain integers
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class RelayClient(ABC):
    """A single relay endpoint"""

    def __init__(self, endpoint: RelayEndpoint):
        self.endpoint = endpoint

    @property
    def relay_id(self) -> str:
        return self.endpoint.id

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        pass

    @abstractmethod
    async def send_bundle(self, bundle: Bundle) -> RelayResponse:
        """Submit a bundle; rejections come back as RelayResponse(accepted=False)"""

    async def simulate_bundle(self, bundle: Bundle) -> Optional[BundleSimulation]:
        """Dry-run a bundle; None when this relay cannot simulate"""
        return None


class JsonRpcRelayClient(RelayClient):
    """Relay speaking the sendBundle JSON-RPC method"""

    def __init__(self, endpoint: RelayEndpoint):
        super().__init__(endpoint)
        self.session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.endpoint.auth_header:
            headers["X-Relay-Signature"] = self.endpoint.auth_header
        return headers

    async def _post(self, method: str, params: list) -> Dict[str, Any]:
        if not self.session:
            self.session = aiohttp.ClientSession()

        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params
        }
        async with self.session.post(
            self.endpoint.url,
            json=request,
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=self.endpoint.timeout)
        ) as response:
            if response.status != 200:
                return {"error": f"HTTP {response.status}: {await response.text()}", "httpStatus": response.status}
            return await response.json()

    async def send_bundle(self, bundle: Bundle) -> RelayResponse:
        """Send bundle to the relay"""
        try:
            result = await self._post("sendBundle", [bundle_payload(bundle)])
        except asyncio.TimeoutError:
            logger.warning(f"Relay {self.relay_id}: sendBundle timed out for {bundle.id}")
            return RelayResponse(accepted=False, error="timeout")
        except aiohttp.ClientError as e:
            logger.warning(f"Relay {self.relay_id}: transport error for {bundle.id}: {e}")
            return RelayResponse(accepted=False, error=str(e))
        except ValueError as e:
            logger.warning(f"Relay {self.relay_id}: undecodable response for {bundle.id}: {e}")
            return RelayResponse(accepted=False, error=f"invalid response: {e}")

        if not isinstance(result, dict):
            logger.warning(f"Relay {self.relay_id}: unexpected response for {bundle.id}: {result!r}")
            return RelayResponse(accepted=False, error="invalid response")

        if result.get("result"):
            receipt = result["result"]
            if isinstance(receipt, dict):
                receipt = receipt.get("bundleHash") or receipt.get("bundleId")
            logger.info(f"Relay {self.relay_id} accepted bundle {bundle.id}: {receipt}")
            return RelayResponse(accepted=True, receipt=str(receipt), cost=self.endpoint.cost)

        error = result.get("error", "Unknown error")
        logger.warning(f"Relay {self.relay_id} rejected bundle {bundle.id}: {error}")
        return RelayResponse(accepted=False, error=str(error))

    async def simulate_bundle(self, bundle: Bundle) -> Optional[BundleSimulation]:
        """Run callBundle against the latest state

        A JSON-RPC error or a reverted transaction is a failed simulation.
        Transport problems return None so another relay can be asked.
        """
        params = {**bundle_payload(bundle), "stateBlockNumber": "latest"}
        try:
            result = await self._post("callBundle", [params])
        except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as e:
            logger.warning(f"Relay {self.relay_id}: callBundle failed for {bundle.id}: {e}")
            return None

        if not isinstance(result, dict) or "httpStatus" in result:
            logger.warning(f"Relay {self.relay_id}: callBundle unavailable for {bundle.id}")
            return None

        if result.get("error"):
            error = result["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            logger.info(f"Relay {self.relay_id}: simulation of {bundle.id} failed: {message}")
            return BundleSimulation(bundle.id, self.relay_id, success=False, errors=(message,))

        body = result.get("result")
        if not isinstance(body, dict):
            logger.warning(f"Relay {self.relay_id}: callBundle returned no result for {bundle.id}")
            return None

        errors = [str(body["error"])] if body.get("error") else []
        for index, tx in enumerate(body.get("results") or []):
            if isinstance(tx, dict) and (tx.get("error") or tx.get("revertReason")):
                errors.append(f"tx {index}: {tx.get('revertReason') or tx.get('error')}")

        try:
            gas_used = _quantity(body.get("totalGasUsed", body.get("gasUsed")))
            profit = _quantity(body.get("coinbaseDiff")) + _quantity(body.get("ethSentToCoinbase"))
        except (TypeError, ValueError):
            logger.warning(f"Relay {self.relay_id}: malformed callBundle result for {bundle.id}")
            return None

        return BundleSimulation(
            bundle_id=bundle.id,
            relay_id=self.relay_id,
            success=not errors,
            gas_used=gas_used,
            profit=profit,
            errors=tuple(errors)
        )

    async def get_bundle_status(self, receipt: str) -> Optional[Dict[str, Any]]:
        """Relay-side status of a previously accepted bundle"""
        try:
            result = await self._post("getBundleStatuses", [[receipt]])
        except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as e:
            logger.warning(f"Relay {self.relay_id}: status lookup failed: {e}")
            return None

        statuses = result.get("result") if isinstance(result, dict) else None
        if statuses:
            return statuses[0]
        return None


class LedgerRelayClient(RelayClient):
    """Direct submission to the ledger, used as the public fallback channel"""

    def __init__(self, endpoint: RelayEndpoint, ledger: Ledger):
        super().__init__(endpoint)
        self.ledger = ledger

    async def send_bundle(self, bundle: Bundle) -> RelayResponse:
        try:
            receipt = await self.ledger.submit_bundle(bundle_payload(bundle))
        except (LedgerError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Direct ledger submission failed for {bundle.id}: {e}")
            return RelayResponse(accepted=False, error=str(e) or type(e).__name__)
        return RelayResponse(accepted=True, receipt=receipt, cost=self.endpoint.cost)


def create_relay_client(endpoint: RelayEndpoint, ledger: Optional[Ledger] = None) -> RelayClient:
    if endpoint.kind == "ledger":
        if ledger is None:
            raise ValueError(f"Relay {endpoint.id} submits to the ledger but no ledger was given")
        return LedgerRelayClient(endpoint, ledger)
    if endpoint.kind == "jsonrpc":
        return JsonRpcRelayClient(endpoint)
    raise ValueError(f"Unknown relay kind: {endpoint.kind}")
