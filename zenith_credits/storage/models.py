"""
Data models for storage layer.

Defines accounts, subscriptions and credit transactions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class TransactionType(Enum):
    """Kinds of balance change recorded in the ledger."""
    USAGE = "usage"
    PURCHASE = "purchase"
    BONUS = "bonus"
    REFUND = "refund"


@dataclass(frozen=True)
class Transaction:
    """Immutable record of one balance change.

    Append-only entries that create an auditable history of credits.
    Once written, these records must never be modified.
    """
    id: str
    user_id: str
    type: TransactionType
    amount: int  # negative for usage, positive for credits
    description: str
    balance_after: int
    timestamp: datetime
    sequence: int  # ledger-wide application order, assigned under the account lock
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Subscription:
    """Plan attached to an account."""
    plan: str
    active: bool
    monthly_credits: int  # -1 means unlimited
    renew_date: datetime


@dataclass
class Account:
    """Per-user credit state, mutated only by the ledger."""
    user_id: str
    balance: int
    created_at: datetime
    last_updated: datetime
    total_used: int = 0
    total_purchased: int = 0
    subscription: Optional[Subscription] = None
