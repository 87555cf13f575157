"""
workspace_billing/models/subscription.py

Locally persisted subscription record.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from workspace_billing.core.database import ensure_utc


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    UNPAID = "UNPAID"
    CANCELED = "CANCELED"
    TRIALING = "TRIALING"
    INCOMPLETE = "INCOMPLETE"
    INCOMPLETE_EXPIRED = "INCOMPLETE_EXPIRED"


# Gateway status vocabulary -> local status
GATEWAY_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "trialing": SubscriptionStatus.TRIALING,
    "unpaid": SubscriptionStatus.UNPAID,
}


def map_gateway_status(status: Optional[str]) -> SubscriptionStatus:
    # paused and unknown future values are treated as not paid up
    return GATEWAY_STATUS_MAP.get((status or "").lower(), SubscriptionStatus.INCOMPLETE)


class WorkspaceTier(str, Enum):
    FREE = "FREE"
    PRO = "PRO"


def tier_for_plan_name(plan_name: str) -> WorkspaceTier:
    return WorkspaceTier.PRO if plan_name.lower().startswith("pro") else WorkspaceTier.FREE


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_paid(self) -> bool:
        return self.stripe_subscription_id is not None

    @classmethod
    def from_row(cls, row) -> "Subscription":
        data = dict(row._mapping)
        for key in ("current_period_start", "current_period_end", "canceled_at",
                    "trial_start", "trial_end", "created_at", "updated_at"):
            data[key] = ensure_utc(data.get(key))
        data["cancel_at_period_end"] = bool(data.get("cancel_at_period_end"))
        return cls(**data)
