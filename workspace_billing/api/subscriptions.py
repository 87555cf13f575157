"""
Subscription API routes.

- GET  /api/subscriptions/plans: Priced plans for the caller's country
- GET  /api/subscriptions/current: Current subscription
- POST /api/subscriptions: Subscribe (free: immediate, paid: checkout URL)
- POST /api/subscriptions/change: Change plan
- POST /api/subscriptions/cancel: Cancel immediately
- POST /api/subscriptions/schedule-cancel: Toggle cancel at period end
- POST /api/subscriptions/proration-preview: Preview a plan change
- GET  /api/subscriptions/limits: Feature limits for the caller's plan
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from workspace_billing.api.deps import get_caller_id, get_lifecycle, get_plan_service
from workspace_billing.api.schemas import (
    ChangeSubscriptionRequest,
    CreateSubscriptionRequest,
    ProrationPreviewRequest,
    ScheduleCancelRequest,
    plan_to_dict,
    result_to_dict,
    subscription_to_dict,
)
from workspace_billing.core.errors import ValidationError
from workspace_billing.features.billing.lifecycle import SubscriptionLifecycle
from workspace_billing.features.plans.country import detect_country
from workspace_billing.features.plans.limits import check_limit
from workspace_billing.features.plans.service import PlanService
from workspace_billing.models.limits import FEATURE_DIMENSIONS
from workspace_billing.models.proration import ProrationConfig

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def _country(request: Request, explicit: Optional[str], plans: PlanService) -> str:
    if explicit:
        return explicit
    return detect_country(request.headers, plans.prices.home_country)


@router.get("/plans")
def list_plans(
    request: Request,
    country_code: Optional[str] = Query(None),
    plans: PlanService = Depends(get_plan_service),
):
    """Active plans, monthly first, priced for the detected or given country."""
    country = _country(request, country_code, plans)
    return {
        "country_code": country.upper(),
        "plans": [plan_to_dict(plan) for plan in plans.get_available_plans(country)],
    }


@router.get("/current")
def current_subscription(
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    sub = lifecycle.get_current_subscription(user_id)
    return {"subscription": subscription_to_dict(sub)}


@router.post("")
def create_subscription(
    body: CreateSubscriptionRequest,
    request: Request,
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
    plans: PlanService = Depends(get_plan_service),
):
    """
    Subscribe to a plan.

    Free plans are activated immediately. Paid plans return a checkout URL;
    the subscription row appears once the gateway reports it (webhook or sync).
    """
    result = lifecycle.create(user_id, body.plan_id, _country(request, body.country_code, plans))
    return result_to_dict(result)


@router.post("/change")
def change_subscription(
    body: ChangeSubscriptionRequest,
    request: Request,
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
    plans: PlanService = Depends(get_plan_service),
):
    config = ProrationConfig(behavior=body.proration_behavior, apply_immediately=body.apply_immediately)
    result = lifecycle.change(
        user_id,
        body.new_plan_id,
        config,
        _country(request, body.country_code, plans),
        add_on_handles=body.add_on_price_ids,
    )
    return result_to_dict(result)


@router.post("/cancel")
def cancel_subscription(
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    return result_to_dict(lifecycle.cancel(user_id))


@router.post("/schedule-cancel")
def schedule_cancel(
    body: ScheduleCancelRequest,
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    return result_to_dict(lifecycle.schedule_cancellation(user_id, body.cancel_at_period_end))


@router.post("/proration-preview")
def proration_preview(
    body: ProrationPreviewRequest,
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    """Display-only; `preview` is null when no preview could be computed."""
    preview = lifecycle.preview_change(user_id, body.new_plan_id, body.country_code)
    return {"preview": preview.model_dump(mode="json") if preview else None}


@router.get("/limits")
def feature_limits(
    feature: Optional[str] = Query(None),
    usage: int = Query(0, ge=0),
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    limits = lifecycle.limits_for_user(user_id)
    response = {"plan_name": limits.plan_name, "limits": limits.as_dict()}
    if feature is not None:
        if feature not in FEATURE_DIMENSIONS:
            raise ValidationError(f"Unknown feature: {feature}")
        check = check_limit(limits.dimension(feature), usage, feature)
        response["check"] = {
            "feature": feature,
            "allowed": check.allowed,
            "limit": check.limit,
            "usage": check.usage,
            "message": check.message,
        }
    return response
