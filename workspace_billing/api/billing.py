"""
Billing API routes.

- POST /api/billing/sync: Reconcile the caller's subscription from Stripe
- POST /api/billing/verify-checkout: Confirm a finished checkout and sync it
- POST /api/billing/portal: Open the Stripe billing portal
- POST /api/billing/webhook: Handle Stripe webhooks
- POST /api/trial/initialize: Start the caller's trial (once)
- GET  /api/trial/status: Days left in the caller's trial
"""
from fastapi import APIRouter, Depends, HTTPException, Request

from workspace_billing.api.deps import get_caller_id, get_lifecycle, get_webhook_processor
from workspace_billing.api.schemas import TrialRequest, VerifyCheckoutRequest, subscription_to_dict
from workspace_billing.features.billing.lifecycle import SubscriptionLifecycle
from workspace_billing.features.billing.provider import BillingWebhookError
from workspace_billing.features.billing.webhooks import WebhookProcessor

router = APIRouter(prefix="/api/billing", tags=["billing"])
trial_router = APIRouter(prefix="/api/trial", tags=["trial"])


def _iso(value):
    return value.isoformat() if value else None


@router.post("/sync")
def sync_subscription(
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    """
    Pull the caller's subscription state from Stripe.

    Safe to call repeatedly; used when a webhook may have been missed.
    """
    sub = lifecycle.sync(user_id)
    return {"subscription": subscription_to_dict(sub)}


@router.post("/verify-checkout")
def verify_checkout(
    body: VerifyCheckoutRequest,
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    """
    Called from the checkout success page with the session id Stripe put in
    the redirect URL.

    Errors:
        404: Unknown session, or a session started by another user
        400: Session has no customer
    """
    result = lifecycle.verify_checkout(user_id, body.session_id)
    return {
        "success": result.paid,
        "session_id": result.session_id,
        "payment_status": result.payment_status,
        "subscription": subscription_to_dict(result.subscription),
    }


@router.post("/portal")
def billing_portal(
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    return {"url": lifecycle.create_portal_url(user_id)}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Handle Stripe webhook events.

    Errors:
        400: Missing/invalid signature or payload
        503: Billing disabled
    """
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    try:
        outcome = processor.process(headers, body)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "received": True,
        "event_id": outcome.event_id,
        "duplicate": outcome.duplicate,
        "action": outcome.action,
    }


@trial_router.post("/initialize")
def initialize_trial(
    body: TrialRequest,
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    user = lifecycle.initialize_trial(user_id, body.days)
    return {
        "user_id": user.user_id,
        "trial_start_date": _iso(user.trial_start_date),
        "trial_end_date": _iso(user.trial_end_date),
    }


@trial_router.get("/status")
def trial_status(
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    status = lifecycle.trial_status(user_id)
    return {
        "has_active_subscription": status.has_active_subscription,
        "has_valid_trial": status.has_valid_trial,
        "is_expired": status.is_expired,
        "days_remaining": status.days_remaining,
        "trial_start_date": _iso(status.trial_start),
        "trial_end_date": _iso(status.trial_end),
    }
