"""
Inclusion monitoring for submitted bundles
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import aiohttp

from .config import MonitorParameters
from .errors import LedgerError
from .models import Block, Bundle, BundleStatus
from .modules.ledger import Ledger
from .relay_aggregator import RelayAggregator

logger = logging.getLogger(__name__)


@dataclass
class WatchEntry:
    bundle: Bundle
    next_block: int
    fetch_failures: int = 0


class InclusionMonitor:
    """Polls blocks in each bundle's window for evidence of inclusion"""

    def __init__(
        self,
        ledger: Ledger,
        aggregator: RelayAggregator,
        params: Optional[MonitorParameters] = None
    ):
        self.ledger = ledger
        self.aggregator = aggregator
        self.params = params or MonitorParameters()
        self.watched: Dict[str, WatchEntry] = {}
        self.last_block: Optional[int] = None
        self.is_running = False

    def watch(self, bundle: Bundle):
        if bundle.id not in self.watched:
            self.watched[bundle.id] = WatchEntry(bundle=bundle, next_block=bundle.target_block)

    async def _fetch_block(self, number: int, block_cache: Dict[int, Optional[Block]]) -> Optional[Block]:
        """One fetch per block per sweep; failures are cached as None until the next sweep"""
        if number not in block_cache:
            try:
                block_cache[number] = await self.ledger.get_block(number)
            except (LedgerError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Failed to fetch block {number}: {e}")
                block_cache[number] = None
        return block_cache[number]

    async def sweep(self) -> Dict[str, BundleStatus]:
        """Check every submitted bundle once; returns the status of each watched bundle"""
        try:
            current_block = await self.ledger.get_current_block()
        except (LedgerError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Inclusion sweep skipped, current block unavailable: {e}")
            return {}
        self.last_block = current_block

        block_cache: Dict[int, Optional[Block]] = {}
        statuses: Dict[str, BundleStatus] = {}

        for bundle_id, entry in list(self.watched.items()):
            bundle = entry.bundle
            if bundle.status != BundleStatus.SUBMITTED:
                statuses[bundle_id] = bundle.status
                continue

            if await self._find_inclusion(entry, current_block, block_cache):
                await self.aggregator.mark_included(bundle_id)
            elif bundle.is_stale(current_block) and self._window_settled(entry):
                await self.aggregator.expire(bundle_id)

            statuses[bundle_id] = bundle.status

        return statuses

    async def _find_inclusion(
        self,
        entry: WatchEntry,
        current_block: int,
        block_cache: Dict[int, Optional[Block]]
    ) -> bool:
        bundle = entry.bundle
        required = set(bundle.operation_ids)
        last_block = min(current_block, bundle.max_block_number)

        while entry.next_block <= last_block:
            block = await self._fetch_block(entry.next_block, block_cache)
            if block is None:
                entry.fetch_failures += 1
                return False
            entry.next_block += 1
            if required.issubset(block.transactions):
                logger.info(f"Bundle {bundle.id} found in block {block.number}")
                return True
        return False

    def _window_settled(self, entry: WatchEntry) -> bool:
        """Every block in the window was examined, or fetching them kept failing"""
        if entry.next_block > entry.bundle.max_block_number:
            return True
        if entry.fetch_failures >= self.params.max_fetch_failures:
            logger.warning(
                f"Bundle {entry.bundle.id}: giving up on block {entry.next_block} "
                f"after {entry.fetch_failures} failed fetches"
            )
            return True
        return False

    def collect_garbage(self, current_block: int) -> List[str]:
        """Drop bundles older than max_age_blocks from the monitor and the aggregator"""
        candidates = {entry.bundle.id: entry.bundle for entry in self.watched.values()}
        for bundle_id, tracked in self.aggregator.bundles.items():
            candidates.setdefault(bundle_id, tracked.bundle)

        removed = []
        for bundle_id, bundle in candidates.items():
            if current_block - bundle.target_block > self.params.max_age_blocks:
                self.watched.pop(bundle_id, None)
                self.aggregator.forget(bundle_id)
                removed.append(bundle_id)

        if removed:
            logger.debug(f"Collected {len(removed)} bundles older than {self.params.max_age_blocks} blocks")
        return removed

    async def run(self):
        """Periodic sweep until stop() or cancellation"""
        self.is_running = True
        logger.info("Inclusion monitor started")
        while self.is_running:
            await self.sweep()
            if self.last_block is not None:
                self.collect_garbage(self.last_block)
            await asyncio.sleep(self.params.poll_interval_seconds)

    def stop(self):
        self.is_running = False
