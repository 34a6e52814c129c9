"""
Durable queue of refunds that could not be applied immediately.

A debited-but-unserved request must end in a refund or in a row here;
``drain`` replays the rows against the ledger later. Replays are safe
because ledger refunds are idempotent on the debit reference.
"""

import logging
from datetime import datetime
from typing import List, Optional

from ..core.errors import LedgerError
from .db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH, get_connection
from .ledger import DEFAULT_REFUND_DESCRIPTION, CreditLedger
from .models import PendingRefund

logger = logging.getLogger(__name__)


def _row_to_refund(row) -> PendingRefund:
    resolved = row["resolved_at"]
    return PendingRefund(
        reference_id=row["reference_id"],
        user_id=row["user_id"],
        amount=row["amount"],
        description=row["description"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=datetime.fromisoformat(row["created_at"]),
        resolved_at=datetime.fromisoformat(resolved) if resolved else None
    )


class RefundQueue:
    """Reconciliation obligations keyed by the debit reference."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, busy_timeout: float = DEFAULT_BUSY_TIMEOUT):
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def enqueue(
        self,
        user_id: str,
        amount: int,
        debit_reference_id: str,
        error: Optional[str] = None,
        description: str = DEFAULT_REFUND_DESCRIPTION
    ) -> None:
        """Record that the debit under ``debit_reference_id`` still needs a refund.

        Enqueuing the same reference twice keeps one row and refreshes its
        last error.
        """
        conn = get_connection(self.db_path, timeout=self.busy_timeout)
        try:
            conn.execute("""
                INSERT INTO pending_refunds
                (reference_id, user_id, amount, description, attempts, last_error, created_at)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(reference_id) DO UPDATE SET last_error = excluded.last_error
            """, (debit_reference_id, user_id, amount, description, error, datetime.now().isoformat()))
        finally:
            conn.close()
        logger.error(f"Queued refund of {amount} for user {user_id} ({debit_reference_id}): {error}")

    def pending(self, limit: int = 100) -> List[PendingRefund]:
        """Unresolved obligations, oldest first."""
        conn = get_connection(self.db_path, timeout=self.busy_timeout)
        try:
            rows = conn.execute("""
                SELECT * FROM pending_refunds
                WHERE resolved_at IS NULL
                ORDER BY created_at ASC
                LIMIT ?
            """, (limit,)).fetchall()
            return [_row_to_refund(row) for row in rows]
        finally:
            conn.close()

    def get(self, debit_reference_id: str) -> Optional[PendingRefund]:
        conn = get_connection(self.db_path, timeout=self.busy_timeout)
        try:
            row = conn.execute(
                "SELECT * FROM pending_refunds WHERE reference_id = ?", (debit_reference_id,)
            ).fetchone()
            return _row_to_refund(row) if row else None
        finally:
            conn.close()

    def _mark(self, reference_id: str, error: Optional[str]) -> None:
        conn = get_connection(self.db_path, timeout=self.busy_timeout)
        try:
            if error is None:
                conn.execute("""
                    UPDATE pending_refunds
                    SET attempts = attempts + 1, last_error = NULL, resolved_at = ?
                    WHERE reference_id = ?
                """, (datetime.now().isoformat(), reference_id))
            else:
                conn.execute("""
                    UPDATE pending_refunds
                    SET attempts = attempts + 1, last_error = ?
                    WHERE reference_id = ?
                """, (error, reference_id))
        finally:
            conn.close()

    def drain(self, ledger: CreditLedger, limit: int = 100) -> int:
        """Apply pending refunds through the ledger.

        Args:
            ledger: Ledger to refund through
            limit: Maximum number of obligations to process

        Returns:
            Number of obligations resolved
        """
        resolved = 0
        for item in self.pending(limit=limit):
            try:
                ledger.refund(item.user_id, item.amount, item.reference_id, description=item.description)
            except LedgerError as e:
                logger.warning(f"Refund {item.reference_id} still pending: {e}")
                self._mark(item.reference_id, str(e))
                continue
            self._mark(item.reference_id, None)
            resolved += 1
        if resolved:
            logger.info(f"Reconciled {resolved} pending refunds")
        return resolved
