"""
Credit ledger.

Authoritative per-user balance plus an append-only transaction log. Every
mutation runs as a single write transaction whose debit is a conditional
update, so concurrent debits on one account can never overdraw it.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from ..core.errors import LedgerConflict, LedgerUnavailable, UnknownAccount
from ..core.retry import RetryPolicy
from .db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH, get_connection, is_conflict, write_transaction
from .models import (
    CreditAccount,
    CreditResult,
    CreditTransaction,
    DebitResult,
    DebitStatus,
    TransactionType,
)
from .repository import fetch_transactions, get_package

logger = logging.getLogger(__name__)

T = TypeVar("T")

WELCOME_CREDITS = 5
DEFAULT_DEBIT_DESCRIPTION = "JumpinAI Studio generation"
DEFAULT_REFUND_DESCRIPTION = "Refund for failed generation"


def refund_reference(reference_id: str) -> str:
    """Reference under which the refund of a debit is recorded."""
    return f"{reference_id}:refund"


def default_conflict_policy(attempts: int = 3, backoff: float = 0.05) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=attempts,
        initial_delay=backoff,
        multiplier=2.0,
        retry_on=(LedgerConflict,)
    )


class CreditLedger:
    """Balance and audit trail for user credits.

    Debits and credits are idempotent on ``reference_id``: replaying an
    operation with a reference that was already applied changes nothing.
    Storage lock conflicts are retried a bounded number of times and then
    raised as ``LedgerUnavailable``.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        welcome_credits: int = WELCOME_CREDITS,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
        conflict_policy: Optional[RetryPolicy] = None
    ):
        if welcome_credits < 0:
            raise ValueError("welcome_credits must be >= 0")
        self.db_path = db_path
        self.welcome_credits = welcome_credits
        self.busy_timeout = busy_timeout
        self.conflict_policy = conflict_policy or default_conflict_policy()

    def _attempt(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        conn = get_connection(self.db_path, timeout=self.busy_timeout)
        try:
            with write_transaction(conn):
                return operation(conn)
        except sqlite3.OperationalError as e:
            if is_conflict(e):
                raise LedgerConflict(str(e)) from e
            raise
        finally:
            conn.close()

    def _write(self, name: str, operation: Callable[[sqlite3.Connection], T]) -> T:
        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.debug(f"Ledger {name} conflict on attempt {attempt}: {error}")

        try:
            return self.conflict_policy.run(lambda: self._attempt(operation), on_retry=on_retry)
        except LedgerConflict as e:
            logger.error(f"Ledger {name} gave up after repeated conflicts: {e}")
            raise LedgerUnavailable(f"Ledger {name} unavailable: {e}") from e

    @staticmethod
    def _balance(conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute(
            "SELECT balance FROM credit_accounts WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            raise UnknownAccount(user_id)
        return row["balance"]

    @staticmethod
    def _has_entry(
        conn: sqlite3.Connection,
        user_id: str,
        kind: TransactionType,
        reference_id: str
    ) -> bool:
        row = conn.execute("""
            SELECT 1 FROM credit_transactions
            WHERE user_id = ? AND type = ? AND reference_id = ?
        """, (user_id, kind.value, reference_id)).fetchone()
        return row is not None

    @staticmethod
    def _append(
        conn: sqlite3.Connection,
        user_id: str,
        kind: TransactionType,
        amount: int,
        description: str,
        reference_id: Optional[str],
        now: str
    ) -> None:
        conn.execute("""
            INSERT INTO credit_transactions
            (user_id, type, amount, description, reference_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (user_id, kind.value, amount, description, reference_id, now))

    def initialize(self, user_id: str) -> bool:
        """Create the account with the welcome grant.

        Args:
            user_id: Account owner

        Returns:
            True if the account was created, False if it already existed
        """
        if not user_id:
            raise ValueError("user_id is required")

        def operation(conn: sqlite3.Connection) -> bool:
            exists = conn.execute(
                "SELECT 1 FROM credit_accounts WHERE user_id = ?", (user_id,)
            ).fetchone()
            if exists:
                return False
            now = datetime.now().isoformat()
            conn.execute("""
                INSERT INTO credit_accounts (user_id, balance, total_purchased, created_at, updated_at)
                VALUES (?, ?, 0, ?, ?)
            """, (user_id, self.welcome_credits, now, now))
            if self.welcome_credits > 0:
                self._append(
                    conn, user_id, TransactionType.WELCOME_BONUS, self.welcome_credits,
                    "Welcome bonus credits", None, now
                )
            return True

        created = self._write("initialize", operation)
        if created:
            logger.info(f"Initialized {self.welcome_credits} welcome credits for user {user_id}")
        return created

    def get_account(self, user_id: str) -> Optional[CreditAccount]:
        conn = get_connection(self.db_path, timeout=self.busy_timeout)
        try:
            row = conn.execute(
                "SELECT * FROM credit_accounts WHERE user_id = ?", (user_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return CreditAccount(
            user_id=row["user_id"],
            balance=row["balance"],
            total_purchased=row["total_purchased"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"])
        )

    def get_balance(self, user_id: str) -> int:
        """Current spendable balance; 0 for an unknown account."""
        account = self.get_account(user_id)
        return account.balance if account else 0

    def try_debit(
        self,
        user_id: str,
        amount: int = 1,
        description: str = DEFAULT_DEBIT_DESCRIPTION,
        reference_id: Optional[str] = None
    ) -> DebitResult:
        """Atomically spend ``amount`` credits if the balance covers them.

        An insufficient balance is an expected outcome reported through
        ``DebitResult.status``, not an exception.

        Args:
            user_id: Account owner
            amount: Credits to spend (> 0)
            description: Audit trail text
            reference_id: Idempotency key for the debit

        Returns:
            DebitResult with the status and the balance after the call

        Raises:
            ValueError: If amount is not positive
            UnknownAccount: If the user has no account
            LedgerUnavailable: If storage conflicts persist
        """
        if amount <= 0:
            raise ValueError("amount must be > 0")

        def operation(conn: sqlite3.Connection) -> DebitResult:
            balance = self._balance(conn, user_id)
            if reference_id is not None and self._has_entry(conn, user_id, TransactionType.USAGE, reference_id):
                refunded = self._has_entry(
                    conn, user_id, TransactionType.REFUND, refund_reference(reference_id)
                )
                status = DebitStatus.COMPENSATED if refunded else DebitStatus.REPLAYED
                return DebitResult(status=status, balance=balance)

            now = datetime.now().isoformat()
            cursor = conn.execute("""
                UPDATE credit_accounts
                SET balance = balance - ?, updated_at = ?
                WHERE user_id = ? AND balance >= ?
            """, (amount, now, user_id, amount))
            if cursor.rowcount == 0:
                return DebitResult(status=DebitStatus.INSUFFICIENT_CREDITS, balance=balance)

            self._append(conn, user_id, TransactionType.USAGE, -amount, description, reference_id, now)
            return DebitResult(status=DebitStatus.GRANTED, balance=balance - amount)

        result = self._write("debit", operation)
        logger.debug(f"Debit of {amount} for user {user_id} ({reference_id}): {result.status.value}")
        return result

    def credit(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        kind: TransactionType = TransactionType.PURCHASE
    ) -> CreditResult:
        """Add credits to an account.

        Idempotent on ``(kind, reference_id)``: repeating a credit that was
        already applied is a no-op reported as ``applied=False``.

        Args:
            user_id: Account owner
            amount: Credits to add (> 0)
            description: Audit trail text
            reference_id: Idempotency key (payment reference, refund key)
            kind: Any transaction type except ``usage``

        Returns:
            CreditResult with whether it was applied and the resulting balance

        Raises:
            ValueError: If amount is not positive or kind is ``usage``
            UnknownAccount: If the user has no account
            LedgerUnavailable: If storage conflicts persist
        """
        if amount <= 0:
            raise ValueError("amount must be > 0")
        if kind == TransactionType.USAGE:
            raise ValueError("usage entries are written by try_debit only")

        def operation(conn: sqlite3.Connection) -> CreditResult:
            balance = self._balance(conn, user_id)
            if reference_id is not None and self._has_entry(conn, user_id, kind, reference_id):
                return CreditResult(applied=False, balance=balance)

            now = datetime.now().isoformat()
            purchased = amount if kind == TransactionType.PURCHASE else 0
            conn.execute("""
                UPDATE credit_accounts
                SET balance = balance + ?, total_purchased = total_purchased + ?, updated_at = ?
                WHERE user_id = ?
            """, (amount, purchased, now, user_id))
            self._append(conn, user_id, kind, amount, description, reference_id, now)
            return CreditResult(applied=True, balance=balance + amount)

        result = self._write("credit", operation)
        if result.applied:
            logger.info(f"Credited {amount} ({kind.value}) to user {user_id}, balance {result.balance}")
        else:
            logger.info(f"Skipped duplicate {kind.value} credit {reference_id} for user {user_id}")
        return result

    def refund(
        self,
        user_id: str,
        amount: int,
        debit_reference_id: str,
        description: str = DEFAULT_REFUND_DESCRIPTION
    ) -> CreditResult:
        """Compensate the debit recorded under ``debit_reference_id``."""
        return self.credit(
            user_id,
            amount,
            description,
            reference_id=refund_reference(debit_reference_id),
            kind=TransactionType.REFUND
        )

    def purchase_package(self, user_id: str, package_id: str, payment_reference: str) -> CreditResult:
        """Credit an active package under the payment provider's reference.

        Raises:
            ValueError: If the package is unknown or inactive, or the
                reference is missing
        """
        if not payment_reference:
            raise ValueError("payment_reference is required")
        package = get_package(package_id, db_path=self.db_path)
        if package is None or not package.active:
            raise ValueError(f"Unknown or inactive credit package: {package_id}")
        return self.credit(
            user_id,
            package.credits,
            f"Purchased {package.name}",
            reference_id=payment_reference,
            kind=TransactionType.PURCHASE
        )

    def list_transactions(
        self,
        user_id: str,
        reference_id: Optional[str] = None,
        limit: int = 100
    ) -> List[CreditTransaction]:
        return fetch_transactions(user_id, reference_id=reference_id, limit=limit, db_path=self.db_path)
