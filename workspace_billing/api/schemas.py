"""Request/response models and serializers shared by the billing routes."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from workspace_billing.features.billing.lifecycle import LifecycleResult
from workspace_billing.models.proration import ProrationBehavior
from workspace_billing.models.plan import SubscriptionPlan
from workspace_billing.models.subscription import Subscription


class CreateSubscriptionRequest(BaseModel):
    plan_id: str
    country_code: Optional[str] = None


class ChangeSubscriptionRequest(BaseModel):
    new_plan_id: str
    country_code: Optional[str] = None
    proration_behavior: ProrationBehavior = "create_prorations"
    apply_immediately: bool = True
    add_on_price_ids: Optional[List[str]] = None


class ScheduleCancelRequest(BaseModel):
    cancel_at_period_end: bool = True


class ProrationPreviewRequest(BaseModel):
    new_plan_id: str
    country_code: Optional[str] = None


class TrialRequest(BaseModel):
    days: Optional[int] = Field(default=None, ge=1, le=90)


class VerifyCheckoutRequest(BaseModel):
    session_id: str = Field(min_length=1)


class RegisterWorkspaceRequest(BaseModel):
    id: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=255)


def plan_to_dict(plan: SubscriptionPlan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "display_name": plan.display_name,
        "description": plan.description,
        "price": plan.price,
        "currency": plan.currency,
        "interval": plan.interval.value,
        "stripe_price_id": plan.stripe_price_id or None,
        "used_fallback": plan.used_fallback,
        "country_code": plan.country_code,
        "is_popular": plan.is_popular,
        "badges": plan.badges,
        "original_price": plan.original_price,
        "savings": plan.savings,
        "limits": plan.limits.as_dict(),
    }


def subscription_to_dict(sub: Optional[Subscription]) -> Optional[Dict[str, Any]]:
    if sub is None:
        return None
    return sub.model_dump(mode="json")


def result_to_dict(result: LifecycleResult) -> Dict[str, Any]:
    checkout = None
    if result.checkout is not None:
        checkout = {
            "session_id": result.checkout.session_id,
            "url": result.checkout.url,
            "used_fallback": result.checkout.used_fallback,
            "country_code": result.checkout.country_code,
        }
    return {
        "action": result.action,
        "message": result.message,
        "subscription": subscription_to_dict(result.subscription),
        "checkout": checkout,
    }
