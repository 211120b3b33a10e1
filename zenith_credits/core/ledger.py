"""
Credit ledger.

Single source of truth for per-user spendable credits. Balances are kept in
process memory; every change is recorded as an immutable transaction and can
be mirrored to a durable journal.

Mutating operations on one user are serialized by a per-user asyncio lock so
the read-check-write of a debit is indivisible. Different users never share a
lock. Reads are plain synchronous calls: mutations have no suspension point
between checking and writing, so a reader never sees half-applied state.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from zenith_credits.config.loader import LedgerConfig
from zenith_credits.storage.models import Account, Subscription, Transaction, TransactionType
from zenith_credits.storage.repository import TransactionJournal

from .plans import UNLIMITED, get_plan
from .pricing import calculate_usage_cost
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE = "insufficient balance"

RENEWAL_PERIOD = timedelta(days=30)
STATS_WINDOW = timedelta(days=30)
DEFAULT_HISTORY_LIMIT = 50

_CREDIT_TYPES = (TransactionType.PURCHASE, TransactionType.BONUS, TransactionType.REFUND)


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of a debit. Callers must branch on ``success``."""
    success: bool
    new_balance: int
    error: Optional[str] = None
    transaction: Optional[Transaction] = None


@dataclass(frozen=True)
class CreditResult:
    """Outcome of a credit."""
    success: bool
    new_balance: int
    error: Optional[str] = None
    transaction: Optional[Transaction] = None


@dataclass(frozen=True)
class UsageStats:
    """Derived per-user statistics."""
    current_balance: int
    total_used: int
    total_purchased: int
    subscription: Optional[Subscription]
    usage_30_days: int
    purchases_30_days: int
    average_daily_usage: float


class CreditLedger:
    """Per-user credit accounts with an append-only transaction history.

    Construct one per process and hand it to whatever needs it; the ledger
    holds no module-level state.
    """

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        journal: Optional[TransactionJournal] = None
    ):
        """Initialize an empty ledger.

        Args:
            config: Grant size and pricing table (defaults to LedgerConfig())
            journal: Optional durable journal mirrored after each change
        """
        self.config = config or LedgerConfig()
        self.journal = journal
        self._accounts: Dict[str, Account] = {}
        self._transactions: Dict[str, List[Transaction]] = defaultdict(list)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._last_sequence = 0
        self._unjournaled: List[Transaction] = []

    @classmethod
    def restore(
        cls,
        journal: TransactionJournal,
        config: Optional[LedgerConfig] = None
    ) -> "CreditLedger":
        """Rebuild a ledger by replaying a journal.

        Each user's balance is the free-tier grant plus the sum of their
        transaction amounts. Subscriptions are not journaled and come back
        as the free plan.
        """
        ledger = cls(config=config, journal=journal)
        for txn in journal.fetch_transactions():
            account = ledger._ensure_account(txn.user_id, now=txn.timestamp)
            account.balance += txn.amount
            if txn.type is TransactionType.USAGE:
                account.total_used += -txn.amount
            elif txn.type in (TransactionType.PURCHASE, TransactionType.BONUS):
                account.total_purchased += txn.amount
            account.last_updated = txn.timestamp
            ledger._transactions[txn.user_id].append(txn)
            ledger._last_sequence = max(ledger._last_sequence, txn.sequence)

            if account.balance != txn.balance_after:
                logger.warning(
                    "Journal balance mismatch for %s at %s: replayed %d, recorded %d",
                    txn.user_id, txn.id, account.balance, txn.balance_after
                )
        return ledger

    # Reads

    def get_balance(self, user_id: str) -> int:
        """Return the user's balance, creating the account on first sight."""
        _check_user_id_type(user_id)
        return self._ensure_account(user_id).balance

    def calculate_usage_cost(self, model_id: str, input_tokens: int, output_tokens: int) -> int:
        """Price a generation in whole credits against the configured table."""
        usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        return calculate_usage_cost(model_id, usage, self.config.pricing)

    def get_transaction_history(
        self,
        user_id: str,
        limit: Optional[int] = DEFAULT_HISTORY_LIMIT
    ) -> List[Transaction]:
        """Return the user's transactions, most recent first."""
        history = list(reversed(self._transactions.get(user_id, ())))
        if limit is not None:
            history = history[:max(limit, 0)]
        return history

    def get_usage_stats(self, user_id: str, now: Optional[datetime] = None) -> Optional[UsageStats]:
        """Return derived usage statistics, or None for an unseen user.

        Never creates an account.
        """
        account = self._accounts.get(user_id)
        if account is None:
            return None

        cutoff = (now or datetime.now()) - STATS_WINDOW
        recent = [t for t in self._transactions.get(user_id, ()) if t.timestamp > cutoff]
        usage_30_days = sum(-t.amount for t in recent if t.type is TransactionType.USAGE)
        purchases_30_days = sum(t.amount for t in recent if t.type is TransactionType.PURCHASE)

        return UsageStats(
            current_balance=account.balance,
            total_used=account.total_used,
            total_purchased=account.total_purchased,
            subscription=account.subscription,
            usage_30_days=usage_30_days,
            purchases_30_days=purchases_30_days,
            average_daily_usage=usage_30_days / STATS_WINDOW.days
        )

    # Mutations

    async def consume_credits(
        self,
        user_id: str,
        amount: int,
        description: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ConsumeResult:
        """Debit ``amount`` credits if the balance covers it.

        Insufficient balance and invalid input are reported in the result,
        never raised.

        Raises:
            TypeError: If user_id is not a str or amount is not an int
        """
        _check_user_id_type(user_id)
        _check_amount_type(amount)

        error = _validate(user_id, amount)
        if error:
            return ConsumeResult(success=False, new_balance=self._peek_balance(user_id), error=error)

        async with self._lock_for(user_id):
            account = self._ensure_account(user_id)
            if account.balance < amount:
                logger.warning(
                    "Refused debit of %d for %s: balance %d", amount, user_id, account.balance
                )
                return ConsumeResult(
                    success=False,
                    new_balance=account.balance,
                    error=INSUFFICIENT_BALANCE
                )

            account.balance -= amount
            account.total_used += amount
            txn = self._record(account, TransactionType.USAGE, -amount, description, metadata)

        await self._mirror(txn)
        return ConsumeResult(success=True, new_balance=txn.balance_after, transaction=txn)

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        type: Union[TransactionType, str],
        description: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> CreditResult:
        """Credit ``amount`` to the user as a purchase, bonus or refund.

        Raises:
            TypeError: If user_id is not a str or amount is not an int
        """
        _check_user_id_type(user_id)
        _check_amount_type(amount)

        error = _validate(user_id, amount)
        txn_type = _parse_credit_type(type)
        if txn_type is None:
            error = error or f"invalid credit type: {type!r}"
        if error:
            return CreditResult(success=False, new_balance=self._peek_balance(user_id), error=error)

        async with self._lock_for(user_id):
            account = self._ensure_account(user_id)
            account.balance += amount
            if txn_type in (TransactionType.PURCHASE, TransactionType.BONUS):
                account.total_purchased += amount
            txn = self._record(account, txn_type, amount, description, metadata)

        await self._mirror(txn)
        return CreditResult(success=True, new_balance=txn.balance_after, transaction=txn)

    async def update_subscription(self, user_id: str, plan: str) -> None:
        """Move the user to ``plan``. The balance is left untouched.

        Raises:
            ValueError: If the plan tag is unknown
        """
        _check_user_id_type(user_id)
        details = get_plan(plan)

        async with self._lock_for(user_id):
            account = self._ensure_account(user_id)
            now = datetime.now()
            account.subscription = Subscription(
                plan=plan,
                active=True,
                monthly_credits=details.monthly_credits,
                renew_date=now + RENEWAL_PERIOD
            )
            account.last_updated = now
        logger.info("Subscription for %s set to %s", user_id, plan)

    async def renew_monthly_credits(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """Grant the plan's monthly credits if the renewal date has passed.

        Returns:
            True if credits were granted
        """
        now = now or datetime.now()
        account = self._accounts.get(user_id)
        if account is None:
            return False

        async with self._lock_for(user_id):
            sub = account.subscription
            if sub is None or not sub.active or sub.renew_date > now:
                return False
            if sub.monthly_credits == UNLIMITED or sub.monthly_credits <= 0:
                return False

            granted = sub.monthly_credits
            account.balance += granted
            account.total_purchased += granted
            txn = self._record(
                account,
                TransactionType.BONUS,
                granted,
                f"Monthly credits renewal ({sub.plan})",
                {"plan": sub.plan}
            )
            sub.renew_date = now + RENEWAL_PERIOD

        await self._mirror(txn)
        return True

    @property
    def unjournaled(self) -> List[Transaction]:
        """Applied transactions whose journal write failed, oldest first."""
        return sorted(self._unjournaled, key=lambda t: t.sequence)

    async def flush_journal(self) -> int:
        """Retry journal writes that failed earlier.

        The pending rows are written as one batch; on failure they stay
        pending and the error propagates.

        Returns:
            Number of transactions written
        """
        if self.journal is None or not self._unjournaled:
            return 0
        pending = self.unjournaled
        await asyncio.to_thread(self.journal.append_many, pending)
        written = {t.id for t in pending}
        self._unjournaled = [t for t in self._unjournaled if t.id not in written]
        logger.info("Flushed %d pending transaction(s) to the journal", len(pending))
        return len(pending)

    def clear_data(self) -> None:
        """Wipe all accounts and transactions. Test isolation only."""
        self._accounts.clear()
        self._transactions.clear()
        self._locks.clear()
        self._last_sequence = 0
        self._unjournaled.clear()

    # Internals

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def _peek_balance(self, user_id: str) -> int:
        account = self._accounts.get(user_id)
        return account.balance if account else 0

    def _ensure_account(self, user_id: str, now: Optional[datetime] = None) -> Account:
        account = self._accounts.get(user_id)
        if account is None:
            now = now or datetime.now()
            free = get_plan("free")
            account = Account(
                user_id=user_id,
                balance=self.config.free_tier_grant,
                created_at=now,
                last_updated=now,
                subscription=Subscription(
                    plan="free",
                    active=True,
                    monthly_credits=free.monthly_credits,
                    renew_date=now + RENEWAL_PERIOD
                )
            )
            self._accounts[user_id] = account
            logger.debug("Initialized account %s with %d credits", user_id, account.balance)
        return account

    def _record(
        self,
        account: Account,
        txn_type: TransactionType,
        amount: int,
        description: str,
        metadata: Optional[Dict[str, Any]]
    ) -> Transaction:
        now = datetime.now()
        account.last_updated = now
        self._last_sequence += 1
        txn = Transaction(
            id=f"txn_{uuid.uuid4().hex}",
            sequence=self._last_sequence,
            user_id=account.user_id,
            type=txn_type,
            amount=amount,
            description=description,
            metadata=dict(metadata or {}),
            timestamp=now,
            balance_after=account.balance
        )
        self._transactions[account.user_id].append(txn)
        logger.debug(
            "%s %+d for %s, balance now %d",
            txn_type.value, amount, account.user_id, account.balance
        )
        return txn

    async def _mirror(self, txn: Transaction) -> None:
        if self.journal is None:
            return
        try:
            await asyncio.to_thread(self.journal.append, txn)
        except Exception:
            # The in-memory change already stands; keep the row for flush_journal
            logger.exception("Journal write failed for %s (%s)", txn.id, txn.user_id)
            self._unjournaled.append(txn)


def _check_user_id_type(user_id) -> None:
    if not isinstance(user_id, str):
        raise TypeError(f"user_id must be a str, got {type(user_id).__name__}")


def _check_amount_type(amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError(f"amount must be an int, got {type(amount).__name__}")


def _validate(user_id: str, amount: int) -> Optional[str]:
    if not user_id.strip():
        return "user_id cannot be empty"
    if amount <= 0:
        return "amount must be positive"
    return None


def _parse_credit_type(value) -> Optional[TransactionType]:
    if isinstance(value, TransactionType):
        return value if value in _CREDIT_TYPES else None
    try:
        parsed = TransactionType(str(value).lower())
    except ValueError:
        return None
    return parsed if parsed in _CREDIT_TYPES else None
