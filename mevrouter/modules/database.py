"""
Audit store for bundles, submission attempts and opportunities
"""

import sqlite3
import asyncio
import os
from typing import List, Dict, Any, Optional
import json
import logging
from contextlib import contextmanager

from ..constants import DB_PATH
from ..models import Bundle, BundleStatus, Opportunity, SubmissionAttempt

logger = logging.getLogger(__name__)

class AuditStore:
    """SQLite persistence for the submission audit trail"""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database tables"""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS bundles (
                    id TEXT PRIMARY KEY,
                    route_id TEXT,
                    target_block INTEGER,
                    max_block_number INTEGER,
                    strategy TEXT,
                    priority_fee INTEGER,
                    max_fee INTEGER,
                    gas_estimate INTEGER,
                    expected_profit REAL,
                    status TEXT,
                    relay_id TEXT,
                    receipt TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    operations TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS submission_attempts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bundle_id TEXT,
                    relay_id TEXT,
                    timestamp REAL,
                    latency_ms REAL,
                    success BOOLEAN,
                    failure_reason TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS opportunities (
                    id TEXT PRIMARY KEY,
                    kind TEXT,
                    token_a TEXT,
                    token_b TEXT,
                    input_amount REAL,
                    final_amount REAL,
                    gas_cost REAL,
                    net_profit REAL,
                    profit_token TEXT,
                    net_profit_quote REAL,
                    venues TEXT,
                    discovered_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_bundles_status ON bundles(status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_attempts_bundle ON submission_attempts(bundle_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_attempts_relay ON submission_attempts(relay_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_opportunities_timestamp ON opportunities(discovered_at)")

            conn.commit()

        logger.info(f"Audit store initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        conn = None
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            yield conn
        finally:
            if conn:
                conn.close()

    async def _run(self, fn):
        return await asyncio.get_running_loop().run_in_executor(None, fn)

    async def save_opportunity(self, opportunity: Opportunity):
        """Save discovered opportunity"""
        def _save():
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO opportunities
                    (id, kind, token_a, token_b, input_amount, final_amount,
                     gas_cost, net_profit, profit_token, net_profit_quote, venues)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    opportunity.id,
                    opportunity.kind.value,
                    opportunity.token_a,
                    opportunity.token_b,
                    float(opportunity.input_amount),
                    float(opportunity.final_amount),
                    float(opportunity.gas_cost),
                    float(opportunity.net_profit),
                    opportunity.profit_token,
                    float(opportunity.net_profit_quote),
                    json.dumps([hop.venue_id for hop in opportunity.hops])
                ))
                conn.commit()

        await self._run(_save)

    async def save_bundle(self, bundle: Bundle, relay_id: Optional[str] = None, receipt: Optional[str] = None):
        """Insert or refresh a bundle row with its current status"""
        def _save():
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO bundles
                    (id, route_id, target_block, max_block_number, strategy,
                     priority_fee, max_fee, gas_estimate, expected_profit,
                     status, relay_id, receipt, operations)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        relay_id = COALESCE(excluded.relay_id, bundles.relay_id),
                        receipt = COALESCE(excluded.receipt, bundles.receipt),
                        updated_at = CURRENT_TIMESTAMP
                """, (
                    bundle.id,
                    bundle.route_id,
                    bundle.target_block,
                    bundle.max_block_number,
                    bundle.fee_params.strategy.value,
                    bundle.fee_params.priority_fee,
                    bundle.fee_params.max_fee,
                    bundle.gas_estimate,
                    float(bundle.expected_profit),
                    bundle.status.value,
                    relay_id,
                    receipt,
                    json.dumps([op.to_payload() for op in bundle.operations])
                ))
                conn.commit()

        await self._run(_save)

    async def update_bundle_status(self, bundle_id: str, status: BundleStatus):
        def _update():
            with self._get_connection() as conn:
                conn.execute(
                    "UPDATE bundles SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (status.value, bundle_id)
                )
                conn.commit()

        await self._run(_update)

    async def append_attempt(self, attempt: SubmissionAttempt):
        """Append one submission attempt to the audit trail"""
        def _save():
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO submission_attempts
                    (bundle_id, relay_id, timestamp, latency_ms, success, failure_reason)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    attempt.bundle_id,
                    attempt.relay_id,
                    attempt.timestamp,
                    attempt.latency_ms,
                    attempt.success,
                    attempt.failure_reason
                ))
                conn.commit()

        await self._run(_save)

    async def get_attempts(self, bundle_id: str) -> List[Dict]:
        """Attempts for a bundle in submission order"""
        def _get():
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    SELECT * FROM submission_attempts
                    WHERE bundle_id = ?
                    ORDER BY id ASC
                """, (bundle_id,))
                return [dict(row) for row in cursor.fetchall()]

        return await self._run(_get)

    async def get_bundle(self, bundle_id: str) -> Optional[Dict]:
        def _get():
            with self._get_connection() as conn:
                row = conn.execute("SELECT * FROM bundles WHERE id = ?", (bundle_id,)).fetchone()
                return dict(row) if row else None

        return await self._run(_get)

    async def get_recent_bundles(self, limit: int = 100) -> List[Dict]:
        def _get():
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    SELECT * FROM bundles
                    ORDER BY created_at DESC
                    LIMIT ?
                """, (limit,))
                return [dict(row) for row in cursor.fetchall()]

        return await self._run(_get)

    async def get_relay_stats(self) -> Dict[str, Dict[str, Any]]:
        """Per-relay attempt counts and latency from the audit trail"""
        def _get():
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    SELECT
                        relay_id,
                        COUNT(*) as attempts,
                        SUM(CASE WHEN success THEN 1 ELSE 0 END) as accepted,
                        AVG(latency_ms) as avg_latency_ms
                    FROM submission_attempts
                    GROUP BY relay_id
                """)
                return {row['relay_id']: dict(row) for row in cursor.fetchall()}

        return await self._run(_get)

    async def cleanup_old_data(self, days: int = 30) -> int:
        """Delete audit rows older than the retention window"""
        def _cleanup():
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("""
                    DELETE FROM submission_attempts
                    WHERE bundle_id IN (
                        SELECT id FROM bundles
                        WHERE created_at < datetime('now', '-' || ? || ' days')
                    )
                """, (days,))
                deleted = cursor.rowcount
                cursor.execute("""
                    DELETE FROM bundles
                    WHERE created_at < datetime('now', '-' || ? || ' days')
                """, (days,))
                deleted += cursor.rowcount
                cursor.execute("""
                    DELETE FROM opportunities
                    WHERE discovered_at < datetime('now', '-' || ? || ' days')
                """, (days,))
                deleted += cursor.rowcount
                conn.commit()
                return deleted

        deleted = await self._run(_cleanup)
        logger.info(f"Cleaned up {deleted} old audit records")
        return deleted
