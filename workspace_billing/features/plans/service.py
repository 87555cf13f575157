"""
Plan service (priced, limited plans).

Projects catalog entries into SubscriptionPlan objects for one interval and
one country, and resolves stored plan ids (including `_annual` variants and
legacy names) back to plans.
"""
import logging
from typing import Callable, List, Optional

from workspace_billing.core.logging import LOGGER_NAME, log_event
from workspace_billing.features.billing.provider import BillingGateway, BillingProviderError
from workspace_billing.features.plans.catalog import PlanCatalog
from workspace_billing.features.plans.limits import LimitResolver
from workspace_billing.features.plans.prices import PriceResolver
from workspace_billing.models.plan import (
    ANNUAL_SUFFIX,
    BillingInterval,
    PlanConfig,
    SubscriptionPlan,
    strip_annual_suffix,
)

logger = logging.getLogger(LOGGER_NAME)

PlanLookup = Callable[[PlanCatalog, str], Optional[PlanConfig]]


def _by_id(catalog: PlanCatalog, key: str) -> Optional[PlanConfig]:
    return catalog.get_plan_by_id(key)


def _by_name(catalog: PlanCatalog, key: str) -> Optional[PlanConfig]:
    return catalog.get_plan_by_name(key)


def _by_legacy_name(catalog: PlanCatalog, key: str) -> Optional[PlanConfig]:
    # Older rows stored ids such as "PRO_plan_id"
    legacy = key.replace("_plan_id", "").lower()
    return catalog.get_plan_by_name(legacy) or catalog.get_plan_by_id(legacy)


PLAN_LOOKUP_STAGES: List[PlanLookup] = [_by_id, _by_name, _by_legacy_name]


class PlanService:
    def __init__(
        self,
        catalog: PlanCatalog,
        prices: PriceResolver,
        limits: LimitResolver,
        gateway: Optional[BillingGateway] = None,
    ):
        self.catalog = catalog
        self.prices = prices
        self.limits = limits
        self.gateway = gateway

    def to_subscription_plan(
        self,
        plan: PlanConfig,
        interval: BillingInterval = BillingInterval.MONTHLY,
        country_code: Optional[str] = None,
    ) -> SubscriptionPlan:
        pricing = plan.pricing.for_interval(interval)
        resolution = self.prices.resolve(plan, interval, country_code)

        plan_id, name, display_name = plan.id, plan.name, plan.display_name
        if interval == BillingInterval.YEARLY and pricing.stripe_price_env is not None:
            plan_id = f"{plan.id}{ANNUAL_SUFFIX}"
            name = f"{plan.name}{ANNUAL_SUFFIX}"
            display_name = f"{plan.display_name} Annual"

        return SubscriptionPlan(
            id=plan_id,
            name=name,
            display_name=display_name,
            description=plan.description,
            price=pricing.price,
            currency=pricing.currency,
            interval=interval,
            stripe_price_id=resolution.price_handle,
            stripe_product_id=resolution.product_handle,
            used_fallback=resolution.used_fallback,
            country_code=resolution.country_code,
            is_popular=plan.is_popular,
            badges=list(plan.badges),
            original_price=pricing.original_price,
            savings=pricing.savings,
            limits=self.limits.limits_for(plan.name),
        )

    def find_plan_config(self, plan_id_or_name: str) -> Optional[PlanConfig]:
        key = strip_annual_suffix(plan_id_or_name or "")
        if not key:
            return None
        for lookup in PLAN_LOOKUP_STAGES:
            plan = lookup(self.catalog, key)
            if plan is not None:
                return plan
        return None

    def resolve_plan(self, plan_id_or_name: str, country_code: Optional[str] = None) -> Optional[SubscriptionPlan]:
        """Resolve a stored plan id or name; `_annual` selects the yearly variant."""
        plan = self.find_plan_config(plan_id_or_name)
        if plan is None:
            return None
        interval = BillingInterval.YEARLY if (plan_id_or_name or "").endswith(ANNUAL_SUFFIX) else BillingInterval.MONTHLY
        return self.to_subscription_plan(plan, interval, country_code)

    def get_available_plans(self, country_code: Optional[str] = None) -> List[SubscriptionPlan]:
        """Monthly plans followed by yearly plans, priced for the country."""
        result: List[SubscriptionPlan] = []
        for interval in (BillingInterval.MONTHLY, BillingInterval.YEARLY):
            for plan in self.catalog.get_plans_by_billing_interval(interval):
                if interval == BillingInterval.YEARLY and plan.is_free:
                    # The free plan is listed once, with the monthly plans
                    continue
                result.append(self._with_gateway_price(self.to_subscription_plan(plan, interval, country_code)))
        return result

    def _with_gateway_price(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        """Show the gateway's amount for country prices; keep config values if the lookup fails."""
        if self.gateway is None or not plan.is_purchasable:
            return plan
        try:
            price = self.gateway.retrieve_price(plan.stripe_price_id)
        except BillingProviderError as e:
            log_event(
                "warning",
                "plans.price_lookup_failed",
                event_type="plans.price_lookup_failed",
                error_code="gateway_error",
                extra={"plan_id": plan.id, "error": e},
            )
            return plan
        if price.unit_amount is None:
            return plan
        return plan.model_copy(update={"price": price.unit_amount / 100, "currency": price.currency.upper()})
