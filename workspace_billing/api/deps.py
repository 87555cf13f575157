"""FastAPI dependencies resolving the services built in the app lifespan."""
from typing import Optional

from fastapi import Depends, Header, Request

from workspace_billing.core.auth import get_current_user_id
from workspace_billing.core.errors import BillingDisabledError
from workspace_billing.features.access.gate import WorkspaceAccessGate
from workspace_billing.features.billing.lifecycle import SubscriptionLifecycle
from workspace_billing.features.billing.webhooks import WebhookProcessor
from workspace_billing.features.plans.service import PlanService
from workspace_billing.services import BillingServices


def get_services(request: Request) -> BillingServices:
    return request.app.state.services


def get_lifecycle(request: Request) -> SubscriptionLifecycle:
    return get_services(request).lifecycle


def get_plan_service(request: Request) -> PlanService:
    return get_services(request).plans


def get_gate(request: Request) -> WorkspaceAccessGate:
    return get_services(request).gate


def get_webhook_processor(request: Request) -> WebhookProcessor:
    processor = get_services(request).webhooks
    if processor is None:
        raise BillingDisabledError()
    return processor


def get_caller_id(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    x_user_email: Optional[str] = Header(None, description="Caller email from the auth layer"),
    x_user_name: Optional[str] = Header(None, description="Caller display name from the auth layer"),
) -> str:
    """
    Caller id for routes that act on the caller's billing state.

    The first request from a user creates their row; later requests refresh
    email and display name when the auth layer forwards them.
    """
    get_services(request).store.upsert_user(user_id, email=x_user_email, display_name=x_user_name)
    return user_id
