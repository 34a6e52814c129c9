"""
Data models for storage layer.

Defines database entities and ledger outcomes.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class TransactionType(Enum):
    """Kinds of ledger movement. Only ``usage`` is a debit."""
    PURCHASE = "purchase"
    USAGE = "usage"
    WELCOME_BONUS = "welcome_bonus"
    REFUND = "refund"


class DebitStatus(Enum):
    """Outcome of a conditional debit."""
    GRANTED = "granted"
    REPLAYED = "replayed"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    COMPENSATED = "compensated"


@dataclass(frozen=True)
class CreditAccount:
    """Spendable balance of one user."""
    user_id: str
    balance: int
    total_purchased: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class CreditTransaction:
    """Immutable ledger entry.

    Append-only records that make up the audit trail of an account.
    Corrections are new entries, never edits.
    """
    id: int
    user_id: str
    type: TransactionType
    amount: int
    description: str
    reference_id: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class DebitResult:
    status: DebitStatus
    balance: int

    @property
    def granted(self) -> bool:
        return self.status in (DebitStatus.GRANTED, DebitStatus.REPLAYED)


@dataclass(frozen=True)
class CreditResult:
    applied: bool
    balance: int


@dataclass(frozen=True)
class CreditPackage:
    """Purchasable bundle of credits."""
    id: str
    name: str
    credits: int
    price_cents: int
    stripe_price_id: Optional[str] = None
    active: bool = True


@dataclass(frozen=True)
class UsageCounters:
    """Engagement counters for one jump.

    Additive counters are lower bounds under concurrent tracking.
    ``max_clarification_level`` is a running maximum.
    """
    jump_id: str
    views_count: int = 0
    clarifications_count: int = 0
    reroutes_count: int = 0
    tools_clicked_count: int = 0
    prompts_copied_count: int = 0
    combos_used_count: int = 0
    max_clarification_level: int = 0


@dataclass(frozen=True)
class PendingRefund:
    """Refund obligation awaiting reconciliation."""
    reference_id: str
    user_id: str
    amount: int
    description: str
    attempts: int
    last_error: Optional[str]
    created_at: datetime
    resolved_at: Optional[datetime] = None
