"""
Credit monitoring for depleting balances.

Raises alerts when a balance runs low or drains quickly, and projects how
long the remaining credits will last.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from zenith_credits.config.loader import AlertThresholds
from zenith_credits.storage.models import TransactionType

from .ledger import CreditLedger

logger = logging.getLogger(__name__)

RAPID_USAGE_WINDOW = timedelta(hours=1)
RAPID_USAGE_SHARE = 0.1
PROJECTION_WINDOW = timedelta(days=30)
TOP_UP_HORIZON_DAYS = 60


class AlertSeverity(Enum):
    """Severity levels for credit alerts."""
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class CreditAlert:
    """A triggered alert with the values that caused it."""
    user_id: str
    rule: str  # "low_balance" or "rapid_usage"
    severity: AlertSeverity
    current_balance: int
    message: str
    timestamp: datetime
    threshold: Optional[float] = None


@dataclass(frozen=True)
class UsageProjection:
    """Spend rates and runway derived from recent usage."""
    daily_rate: float
    weekly_rate: float
    monthly_rate: float
    days_until_empty: float  # math.inf with no recent usage
    recommended_top_up: int


class CreditMonitor:
    """Watches ledger balances against alert thresholds."""

    def __init__(self, ledger: CreditLedger, thresholds: Optional[AlertThresholds] = None):
        self.ledger = ledger
        self.thresholds = thresholds or ledger.config.alerts
        self._listeners: List[Callable[[CreditAlert], None]] = []

    def on_alert(self, callback: Callable[[CreditAlert], None]) -> None:
        """Register a callback run for every alert. Listener errors are logged, not raised."""
        self._listeners.append(callback)

    def check_alerts(self, user_id: str, now: Optional[datetime] = None) -> List[CreditAlert]:
        """Evaluate alert rules for a user and notify listeners.

        Rules:
        - low_balance (CRITICAL): balance <= critical threshold
        - low_balance (WARNING): balance <= warning threshold
        - rapid_usage (WARNING): last hour's usage > 10% of balance

        Args:
            user_id: Account to check
            now: Evaluation time (defaults to now)

        Returns:
            Triggered alerts, empty if none
        """
        now = now or datetime.now()
        balance = self.ledger.get_balance(user_id)
        alerts = []

        if balance <= self.thresholds.critical:
            alerts.append(CreditAlert(
                user_id=user_id,
                rule="low_balance",
                severity=AlertSeverity.CRITICAL,
                current_balance=balance,
                threshold=self.thresholds.critical,
                message=f"Credits critically low: {balance} remaining",
                timestamp=now
            ))
        elif balance <= self.thresholds.warning:
            alerts.append(CreditAlert(
                user_id=user_id,
                rule="low_balance",
                severity=AlertSeverity.WARNING,
                current_balance=balance,
                threshold=self.thresholds.warning,
                message=f"Credits running low: {balance} remaining",
                timestamp=now
            ))

        recent = self._usage_since(user_id, now - RAPID_USAGE_WINDOW)
        limit = balance * RAPID_USAGE_SHARE
        if recent > limit:
            alerts.append(CreditAlert(
                user_id=user_id,
                rule="rapid_usage",
                severity=AlertSeverity.WARNING,
                current_balance=balance,
                threshold=limit,
                message=f"High usage detected: {recent} credits in the last hour",
                timestamp=now
            ))

        for alert in alerts:
            self._notify(alert)
        return alerts

    def project_usage(self, user_id: str, now: Optional[datetime] = None) -> UsageProjection:
        """Project spend from the last 30 days of usage.

        The daily rate averages over days that had usage, not over the whole
        window, so a new account is not diluted by empty days.
        """
        now = now or datetime.now()
        balance = self.ledger.get_balance(user_id)

        per_day: Dict[str, int] = defaultdict(int)
        for txn in self._usage_transactions(user_id, now - PROJECTION_WINDOW):
            per_day[txn.timestamp.date().isoformat()] += -txn.amount

        daily = sum(per_day.values()) / len(per_day) if per_day else 0.0
        days_left = math.floor(balance / daily) if daily > 0 else math.inf

        top_up = 0
        if days_left < 30:
            top_up = max(0, math.ceil(daily * TOP_UP_HORIZON_DAYS - balance))

        return UsageProjection(
            daily_rate=daily,
            weekly_rate=daily * 7,
            monthly_rate=daily * 30,
            days_until_empty=days_left,
            recommended_top_up=top_up
        )

    def spending_by_model(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """Credits spent per model over the last 30 days, largest first.

        Usage recorded without a ``model`` in its metadata is grouped under
        "unknown".
        """
        now = now or datetime.now()
        totals: Dict[str, int] = defaultdict(int)
        for txn in self._usage_transactions(user_id, now - PROJECTION_WINDOW):
            totals[txn.metadata.get("model", "unknown")] += -txn.amount
        return dict(sorted(totals.items(), key=lambda item: item[1], reverse=True))

    def _usage_transactions(self, user_id: str, since: datetime):
        for txn in self.ledger.get_transaction_history(user_id, limit=None):
            if txn.timestamp <= since:
                break
            if txn.type is TransactionType.USAGE:
                yield txn

    def _usage_since(self, user_id: str, since: datetime) -> int:
        return sum(-t.amount for t in self._usage_transactions(user_id, since))

    def _notify(self, alert: CreditAlert) -> None:
        for callback in self._listeners:
            try:
                callback(alert)
            except Exception:
                logger.exception("Alert listener failed for %s", alert.user_id)
