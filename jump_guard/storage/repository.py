"""
Schema and read-side data access.

Creates the tables, serves the credit package catalog and reads the
transaction audit trail.
"""

from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import CreditPackage, CreditTransaction, TransactionType

SCHEMA = """
CREATE TABLE IF NOT EXISTS credit_accounts (
    user_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL CHECK (balance >= 0),
    total_purchased INTEGER NOT NULL DEFAULT 0 CHECK (total_purchased >= 0),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES credit_accounts(user_id),
    type TEXT NOT NULL CHECK (type IN ('purchase', 'usage', 'welcome_bonus', 'refund')),
    amount INTEGER NOT NULL,
    description TEXT NOT NULL,
    reference_id TEXT,
    created_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS credit_transactions_reference
    ON credit_transactions (user_id, type, reference_id)
    WHERE reference_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS credit_transactions_user
    ON credit_transactions (user_id, created_at);

CREATE TABLE IF NOT EXISTS credit_packages (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    credits INTEGER NOT NULL CHECK (credits > 0),
    price_cents INTEGER NOT NULL CHECK (price_cents >= 0),
    stripe_price_id TEXT,
    active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS jump_usage_counters (
    jump_id TEXT PRIMARY KEY,
    views_count INTEGER NOT NULL DEFAULT 0,
    clarifications_count INTEGER NOT NULL DEFAULT 0,
    reroutes_count INTEGER NOT NULL DEFAULT 0,
    tools_clicked_count INTEGER NOT NULL DEFAULT 0,
    prompts_copied_count INTEGER NOT NULL DEFAULT 0,
    combos_used_count INTEGER NOT NULL DEFAULT 0,
    max_clarification_level INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_refunds (
    reference_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    description TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    resolved_at TEXT
);
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create every table and index if they don't exist.

    ``credit_transactions`` is an append-only ledger: no UPDATE or DELETE
    is ever issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def _row_to_transaction(row) -> CreditTransaction:
    return CreditTransaction(
        id=row["id"],
        user_id=row["user_id"],
        type=TransactionType(row["type"]),
        amount=row["amount"],
        description=row["description"],
        reference_id=row["reference_id"],
        created_at=datetime.fromisoformat(row["created_at"])
    )


def fetch_transactions(
    user_id: str,
    reference_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[CreditTransaction]:
    """Fetch a user's ledger entries, newest first.

    Args:
        user_id: Account owner
        reference_id: Optional filter on the idempotency reference
        limit: Maximum number of entries to return
        db_path: Path to SQLite database file

    Returns:
        List of transactions ordered by creation (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = "SELECT * FROM credit_transactions WHERE user_id = ?"
        params: list = [user_id]
        if reference_id is not None:
            query += " AND reference_id = ?"
            params.append(reference_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        return [_row_to_transaction(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def upsert_package(package: CreditPackage, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert or replace a catalog entry (synced from the payment provider)."""
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO credit_packages (id, name, credits, price_cents, stripe_price_id, active)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                credits = excluded.credits,
                price_cents = excluded.price_cents,
                stripe_price_id = excluded.stripe_price_id,
                active = excluded.active
        """, (
            package.id,
            package.name,
            package.credits,
            package.price_cents,
            package.stripe_price_id,
            int(package.active)
        ))
    finally:
        conn.close()


def _row_to_package(row) -> CreditPackage:
    return CreditPackage(
        id=row["id"],
        name=row["name"],
        credits=row["credits"],
        price_cents=row["price_cents"],
        stripe_price_id=row["stripe_price_id"],
        active=bool(row["active"])
    )


def get_package(package_id: str, db_path: str = DEFAULT_DB_PATH) -> Optional[CreditPackage]:
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM credit_packages WHERE id = ?", (package_id,)
        ).fetchone()
        return _row_to_package(row) if row else None
    finally:
        conn.close()


def list_packages(active_only: bool = True, db_path: str = DEFAULT_DB_PATH) -> List[CreditPackage]:
    """List catalog entries, smallest bundle first."""
    conn = get_connection(db_path)
    try:
        query = "SELECT * FROM credit_packages"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY credits ASC"
        return [_row_to_package(row) for row in conn.execute(query).fetchall()]
    finally:
        conn.close()
