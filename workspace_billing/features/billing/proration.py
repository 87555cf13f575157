"""
Proration for mid-cycle plan changes.

preview() is display-only and returns None instead of raising. apply_change()
swaps the subscription's first item to the new plan's price and reconciles
add-on items; it is a gateway mutation and is never retried.
"""
import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from workspace_billing.core.database import utcnow
from workspace_billing.core.errors import AppError, NotFoundError, ValidationError
from workspace_billing.core.logging import log_event
from workspace_billing.features.billing.provider import (
    BillingGateway,
    BillingProviderError,
    GatewaySubscription,
)
from workspace_billing.features.plans.prices import PriceResolver
from workspace_billing.features.plans.service import PlanService
from workspace_billing.models.plan import ANNUAL_SUFFIX, BillingInterval
from workspace_billing.models.proration import PlanChangeValidation, ProrationConfig, ProrationPreview

DEFAULT_PRORATION_CONFIG = ProrationConfig()


def yearly_downgrade_days_remaining(
    current_plan_id: str,
    new_plan_id: str,
    current_period_end: Optional[datetime],
    now: Optional[datetime] = None,
) -> Optional[int]:
    """Days left on a yearly period when moving to a monthly plan, else None."""
    if not current_plan_id.endswith(ANNUAL_SUFFIX) or new_plan_id.endswith(ANNUAL_SUFFIX):
        return None
    if current_period_end is None:
        return None
    remaining = (current_period_end - (now or utcnow())).total_seconds()
    if remaining <= 0:
        return None
    return math.ceil(remaining / 86400)


def _minor_to_major(amount: int) -> float:
    return round(amount / 100, 2)


class ProrationService:
    def __init__(self, gateway: BillingGateway, plans: PlanService, prices: PriceResolver):
        self.gateway = gateway
        self.plans = plans
        self.prices = prices

    def preview(
        self,
        subscription_handle: str,
        new_plan_id: str,
        country_code: Optional[str] = None,
    ) -> Optional[ProrationPreview]:
        try:
            sub = self.gateway.retrieve_subscription(subscription_handle)
            if not sub.items:
                log_event("warning", "proration.preview_skipped", subscription_id=subscription_handle,
                          extra={"reason": "subscription has no items"})
                return None

            match = self.prices.find_plan_by_price_handle(sub.items[0].price_id)
            if match is None:
                log_event("warning", "proration.preview_skipped", subscription_id=subscription_handle,
                          extra={"reason": "current price not in catalog", "price_id": sub.items[0].price_id})
                return None
            current_key = match.plan_name + (ANNUAL_SUFFIX if match.interval == BillingInterval.YEARLY else "")
            current_plan = self.plans.resolve_plan(current_key, match.country_code)
            new_plan = self.plans.resolve_plan(new_plan_id, country_code or match.country_code)
            if current_plan is None or new_plan is None or not new_plan.is_purchasable:
                log_event("warning", "proration.preview_skipped", subscription_id=subscription_handle,
                          extra={"reason": "plan not resolvable", "new_plan_id": new_plan_id})
                return None

            invoice = self.gateway.preview_invoice(
                sub.customer_id,
                sub.id,
                [{"id": sub.items[0].id, "price": new_plan.stripe_price_id}],
                "create_prorations",
            )
        except (BillingProviderError, AppError) as e:
            log_event("warning", "proration.preview_failed", subscription_id=subscription_handle,
                      error_code="preview_failed", extra={"error": e})
            return None

        proration_lines = [line for line in invoice.lines if line.proration]
        if proration_lines:
            proration_amount = _minor_to_major(sum(line.amount for line in proration_lines))
        elif invoice.amount_due > 0:
            # Some upgrades come back without a dedicated proration line
            proration_amount = _minor_to_major(invoice.amount_due)
        else:
            proration_amount = 0.0

        return ProrationPreview(
            current_plan_cost=current_plan.price,
            new_plan_cost=new_plan.price,
            proration_amount=proration_amount,
            next_invoice_amount=new_plan.price,
            immediate_charge=max(proration_amount, 0.0),
            currency=invoice.currency.upper(),
            period_end=sub.current_period_end or utcnow(),
        )

    def apply_change(
        self,
        subscription_handle: str,
        new_plan_id: str,
        config: Optional[ProrationConfig] = None,
        add_on_handles: Optional[Sequence[str]] = None,
        country_code: Optional[str] = None,
    ) -> GatewaySubscription:
        """Swap the plan item and reconcile add-ons.

        add_on_handles=None leaves extra items as they are; a sequence makes the
        extra items match it exactly (missing ones deleted, new ones added).
        """
        config = config or DEFAULT_PRORATION_CONFIG
        sub = self.gateway.retrieve_subscription(subscription_handle)
        if not sub.items:
            raise ValidationError(f"Subscription {subscription_handle} has no items to change")

        new_plan = self.plans.resolve_plan(new_plan_id, country_code)
        if new_plan is None:
            raise NotFoundError(f"Plan not found: {new_plan_id}")
        if not new_plan.is_purchasable:
            raise ValidationError(f"Plan {new_plan_id} is not configured with a gateway price")

        items: List[Dict[str, object]] = [{"id": sub.items[0].id, "price": new_plan.stripe_price_id}]
        extras = sub.items[1:]
        if add_on_handles is not None:
            wanted = list(dict.fromkeys(add_on_handles))
            present = {item.price_id for item in extras}
            for item in extras:
                if item.price_id not in wanted:
                    items.append({"id": item.id, "deleted": True})
            for handle in wanted:
                if handle not in present:
                    items.append({"price": handle})

        updated = self.gateway.update_subscription(
            sub.id,
            items,
            config.effective_behavior,
            metadata={"plan_id": new_plan.id},
        )
        log_event(
            "info",
            "proration.applied",
            subscription_id=sub.id,
            event_type="subscription.plan_changed",
            extra={"new_plan_id": new_plan.id, "proration_behavior": config.effective_behavior, "items": len(items)},
        )
        return updated

    def validate_change(
        self,
        current_plan_id: str,
        new_plan_id: str,
        *,
        current_period_end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> PlanChangeValidation:
        if current_plan_id == new_plan_id:
            return PlanChangeValidation(is_valid=False, reason="You are already subscribed to this plan")

        new_config = self.plans.find_plan_config(new_plan_id)
        if new_config is None:
            return PlanChangeValidation(is_valid=False, reason=f"Plan {new_plan_id} does not exist")
        if not new_config.is_active:
            return PlanChangeValidation(is_valid=False, reason=f"Plan {new_plan_id} is no longer available")

        interval = BillingInterval.YEARLY if new_plan_id.endswith(ANNUAL_SUFFIX) else BillingInterval.MONTHLY
        if not new_config.is_free and new_config.pricing.for_interval(interval).stripe_price_env is None:
            return PlanChangeValidation(is_valid=False, reason=f"Plan {new_plan_id} is not available for purchase")

        if self.plans.find_plan_config(current_plan_id) is None:
            # Deprecated plans must not trap the user
            log_event("warning", "plan_change.current_plan_missing", extra={"current_plan_id": current_plan_id})

        days = yearly_downgrade_days_remaining(current_plan_id, new_plan_id, current_period_end, now)
        if days is not None:
            return PlanChangeValidation(
                is_valid=False,
                reason=(
                    f"Cannot switch from a yearly to a monthly plan while your yearly subscription is active. "
                    f"{days} days remaining."
                ),
                days_remaining=days,
            )

        return PlanChangeValidation(is_valid=True)
