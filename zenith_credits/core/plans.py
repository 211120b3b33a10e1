"""
Subscription plans and their monthly credit allowances.
"""

from dataclasses import dataclass
from typing import Dict

UNLIMITED = -1


@dataclass(frozen=True)
class SubscriptionPlan:
    name: str
    monthly_credits: int  # UNLIMITED for custom enterprise contracts
    price: float  # -1 means negotiated


SUBSCRIPTION_PLANS: Dict[str, SubscriptionPlan] = {
    "free": SubscriptionPlan(name="Free", monthly_credits=100, price=0.0),
    "basic": SubscriptionPlan(name="Basic", monthly_credits=1000, price=9.99),
    "pro": SubscriptionPlan(name="Pro", monthly_credits=5000, price=39.99),
    "enterprise": SubscriptionPlan(name="Enterprise", monthly_credits=UNLIMITED, price=-1),
}


def get_plan(plan: str) -> SubscriptionPlan:
    """Look up a plan by tag.

    Raises:
        ValueError: If the plan tag is unknown
    """
    try:
        return SUBSCRIPTION_PLANS[plan]
    except KeyError:
        raise ValueError(
            f"Unknown subscription plan: {plan}. "
            f"Must be one of: {list(SUBSCRIPTION_PLANS)}"
        ) from None
