"""
Subscription lifecycle service.

Orchestrates create / change / cancel / sync across the plan catalog, the
payment gateway and the local subscription store. Every operation can be
re-run with the same inputs and converges on the same end state; webhook
deliveries and manual syncs are expected to race.

Gateway and database are not updated in one transaction. When the process
dies between the two, sync() brings the local row back in line.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from workspace_billing.core.database import utcnow
from workspace_billing.core.errors import (
    BillingDisabledError,
    CurrencyMismatchError,
    GatewayStateError,
    NotFoundError,
    ValidationError,
)
from workspace_billing.core.logging import log_event
from workspace_billing.core.metrics import lifecycle_operations_total
from workspace_billing.features.access.cache import AccessStatusCache
from workspace_billing.features.billing.proration import ProrationService, yearly_downgrade_days_remaining
from workspace_billing.features.billing.provider import BillingGateway, GatewayResourceMissing
from workspace_billing.features.billing.store import SubscriptionStore, UserRecord, WorkspaceRecord
from workspace_billing.features.plans.currency import currency_for_country
from workspace_billing.features.plans.service import PlanService
from workspace_billing.models.limits import FeatureLimits
from workspace_billing.models.plan import ANNUAL_SUFFIX, BillingInterval, SubscriptionPlan
from workspace_billing.models.proration import ProrationConfig
from workspace_billing.models.subscription import (
    Subscription,
    SubscriptionStatus,
    WorkspaceTier,
    map_gateway_status,
    tier_for_plan_name,
)

GATEWAY_LIST_LIMIT = 10
DEFAULT_PERIOD_DAYS = 30
PAID_CHECKOUT_STATUSES = ("paid", "no_payment_required")


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    url: str
    price_handle: str
    used_fallback: bool
    country_code: str


@dataclass(frozen=True)
class CheckoutVerification:
    session_id: str
    payment_status: Optional[str]
    paid: bool
    subscription: Optional[Subscription] = None


@dataclass(frozen=True)
class TrialStatus:
    has_active_subscription: bool
    has_valid_trial: bool
    is_expired: bool
    days_remaining: Optional[int]
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None


@dataclass(frozen=True)
class LifecycleResult:
    action: str  # activated_free | checkout | changed | canceled | scheduled | noop
    message: str
    subscription: Optional[Subscription] = None
    checkout: Optional[CheckoutResult] = None


class SubscriptionLifecycle:
    def __init__(
        self,
        store: SubscriptionStore,
        plans: PlanService,
        gateway: Optional[BillingGateway] = None,
        proration: Optional[ProrationService] = None,
        *,
        app_url: str = "http://localhost:3000",
        free_period_days: int = 365,
        trial_days: int = 14,
        incomplete_cleanup_hours: int = 24,
        access_cache: Optional[AccessStatusCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.plans = plans
        self.gateway = gateway
        self.proration = proration
        self.app_url = app_url.rstrip("/")
        self.free_period_days = free_period_days
        self.trial_days = trial_days
        self.incomplete_cleanup_hours = incomplete_cleanup_hours
        self.access_cache = access_cache
        self.clock = clock

    # -- helpers -------------------------------------------------------------

    def _require_user(self, user_id: str) -> UserRecord:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    def _require_gateway(self) -> BillingGateway:
        if self.gateway is None:
            raise BillingDisabledError()
        return self.gateway

    def _require_plan(self, plan_id: str, country_code: Optional[str] = None) -> SubscriptionPlan:
        plan = self.plans.resolve_plan(plan_id, country_code)
        if plan is None:
            raise NotFoundError(f"Plan not found: {plan_id}")
        return plan

    def _invalidate(self, user_id: str) -> None:
        if self.access_cache is not None:
            self.access_cache.invalidate(user_id)

    def _record(self, operation: str, outcome: str) -> None:
        lifecycle_operations_total.inc(labels={"operation": operation, "outcome": outcome})

    def _plan_key(self, plan_name: str, interval: BillingInterval) -> str:
        return plan_name + (ANNUAL_SUFFIX if interval == BillingInterval.YEARLY else "")

    # -- create --------------------------------------------------------------

    def create(self, user_id: str, plan_id: str, country_code: Optional[str] = None) -> LifecycleResult:
        user = self._require_user(user_id)
        plan = self._require_plan(plan_id, country_code)

        if plan.is_free:
            sub = self._activate_free(user, plan)
            self._record("create", "free")
            return LifecycleResult("activated_free", f"Subscribed to {plan.display_name}", subscription=sub)
        if not plan.is_purchasable:
            raise ValidationError(f"Plan {plan_id} is not available for {plan.interval.value} billing")

        gateway = self._require_gateway()
        self._verify_currency(plan)
        self._cancel_existing_paid(user.user_id)
        customer_id = self._ensure_customer(user)

        metadata = {
            "user_id": user.user_id,
            "plan_id": plan.id,
            "plan_name": plan.name,
            "billing_interval": plan.interval.value,
            "country_code": plan.country_code,
            "used_fallback": str(plan.used_fallback).lower(),
        }
        session = gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=plan.stripe_price_id,
            success_url=f"{self.app_url}/dashboard?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.app_url}/pricing?canceled=true",
            metadata=metadata,
        )
        log_event(
            "info",
            "subscription.checkout_created",
            user_id=user.user_id,
            event_type="checkout.created",
            extra={
                "plan_id": plan.id,
                "country_code": plan.country_code,
                "used_fallback": plan.used_fallback,
                "session_id": session.id,
            },
        )
        self._record("create", "checkout")
        return LifecycleResult(
            "checkout",
            "Checkout session created",
            checkout=CheckoutResult(
                session_id=session.id,
                url=session.url,
                price_handle=plan.stripe_price_id,
                used_fallback=plan.used_fallback,
                country_code=plan.country_code,
            ),
        )

    def _activate_free(self, user: UserRecord, plan: SubscriptionPlan) -> Subscription:
        active = self.store.get_active(user.user_id)
        if active is not None and not active.is_paid and active.plan_id == plan.id:
            return active
        if active is not None and active.is_paid:
            self._cancel_subscription_row(active)

        now = self.clock()
        sub = self.store.activate(
            user.user_id,
            plan.id,
            period_start=now,
            period_end=now + timedelta(days=self.free_period_days),
            stripe_customer_id=user.stripe_customer_id,
            now=now,
        )
        self.store.set_workspace_tier(user.user_id, tier_for_plan_name(plan.name))
        self._invalidate(user.user_id)
        return sub

    def _verify_currency(self, plan: SubscriptionPlan) -> None:
        """The gateway price must charge the currency the plan promises."""
        country_specific = plan.country_code != self.plans.prices.home_country and not plan.used_fallback
        expected = currency_for_country(plan.country_code) if country_specific else plan.currency
        try:
            price = self._require_gateway().retrieve_price(plan.stripe_price_id)
        except GatewayResourceMissing:
            raise NotFoundError(f"Price handle for plan {plan.id} does not exist at the gateway")
        if price.currency.upper() != expected.upper():
            log_event(
                "error",
                "subscription.currency_mismatch",
                error_code="currency_mismatch",
                extra={"plan_id": plan.id, "expected": expected, "actual": price.currency, "country_code": plan.country_code},
            )
            raise CurrencyMismatchError(
                f"Price for plan {plan.id} in {plan.country_code} is billed in {price.currency.upper()}, expected {expected.upper()}"
            )

    def _ensure_customer(self, user: UserRecord) -> str:
        """Return a live gateway customer id, recreating a stale one."""
        gateway = self._require_gateway()
        if user.stripe_customer_id:
            try:
                gateway.retrieve_customer(user.stripe_customer_id)
                return user.stripe_customer_id
            except GatewayResourceMissing:
                log_event(
                    "warning",
                    "customer.stale_handle",
                    user_id=user.user_id,
                    extra={"stripe_customer_id": user.stripe_customer_id},
                )
                self.store.set_customer_id(user.user_id, None)

        customer_id = gateway.create_customer(user.user_id, user.email, user.display_name)
        self.store.set_customer_id(user.user_id, customer_id)
        log_event("info", "customer.created", user_id=user.user_id, extra={"stripe_customer_id": customer_id})
        return customer_id

    def _cancel_existing_paid(self, user_id: str) -> Optional[Subscription]:
        current = self.store.get_active_paid(user_id)
        if current is None:
            return None
        return self._cancel_subscription_row(current)

    def _cancel_subscription_row(self, sub: Subscription) -> Subscription:
        gateway = self._require_gateway()
        try:
            remote = gateway.retrieve_subscription(sub.stripe_subscription_id)
        except GatewayResourceMissing:
            log_event("warning", "subscription.gateway_missing", user_id=sub.user_id, subscription_id=sub.id)
            canceled = self.store.mark_canceled(sub.id, self.clock(), clear_gateway_id=True)
        else:
            if remote.status != "canceled":
                gateway.cancel_subscription(remote.id)
            canceled = self.store.mark_canceled(sub.id, self.clock())

        self.store.set_workspace_tier(sub.user_id, WorkspaceTier.FREE)
        self._invalidate(sub.user_id)
        log_event("info", "subscription.canceled", user_id=sub.user_id, subscription_id=sub.id,
                  event_type="subscription.canceled")
        return canceled

    # -- change --------------------------------------------------------------

    def change(
        self,
        user_id: str,
        new_plan_id: str,
        proration_config: Optional[ProrationConfig] = None,
        country_code: Optional[str] = None,
        add_on_handles: Optional[Sequence[str]] = None,
    ) -> LifecycleResult:
        self._require_user(user_id)
        new_plan = self._require_plan(new_plan_id, country_code)

        active = self.store.get_active(user_id)
        if active is not None and active.plan_id == new_plan.id:
            self._record("change", "noop")
            return LifecycleResult("noop", f"Already subscribed to {new_plan.display_name}", subscription=active)

        current = active if active is not None and active.is_paid else None
        if current is None:
            return self.create(user_id, new_plan_id, country_code)

        days = yearly_downgrade_days_remaining(current.plan_id, new_plan.id, current.current_period_end, self.clock())
        if days is not None:
            self._record("change", "rejected")
            raise ValidationError(
                f"Cannot switch from a yearly to a monthly plan while your yearly subscription is active. "
                f"{days} days remaining."
            )

        if new_plan.is_free:
            self._cancel_subscription_row(current)
            return self.create(user_id, new_plan_id, country_code)

        validation = self._require_proration().validate_change(current.plan_id, new_plan.id)
        if not validation.is_valid:
            self._record("change", "rejected")
            raise ValidationError(validation.reason or "Plan change is not allowed")

        gateway = self._require_gateway()
        try:
            remote = gateway.retrieve_subscription(current.stripe_subscription_id)
        except GatewayResourceMissing:
            log_event("warning", "subscription.gateway_missing", user_id=user_id, subscription_id=current.id)
            self.store.mark_canceled(current.id, self.clock(), clear_gateway_id=True)
            self._invalidate(user_id)
            return self.create(user_id, new_plan_id, country_code)

        if remote.status == "canceled":
            self.store.mark_canceled(current.id, self.clock())
            self._invalidate(user_id)
            return self.create(user_id, new_plan_id, country_code)
        if remote.status != "active":
            self._record("change", "gateway_state")
            raise GatewayStateError(
                f"Subscription {remote.id} is {remote.status} at the gateway; resolve it before changing plans"
            )

        updated = self._require_proration().apply_change(
            remote.id, new_plan.id, proration_config, add_on_handles, country_code
        )
        sub = self.store.update_fields(
            current.id,
            {
                "plan_id": new_plan.id,
                "status": map_gateway_status(updated.status),
                "current_period_start": updated.current_period_start or current.current_period_start,
                "current_period_end": updated.current_period_end or current.current_period_end,
                "cancel_at_period_end": updated.cancel_at_period_end,
            },
            self.clock(),
        )
        if updated.status == "active":
            self.store.set_workspace_tier(user_id, tier_for_plan_name(new_plan.name))
        self._invalidate(user_id)
        self._record("change", "changed")
        return LifecycleResult("changed", f"Switched to {new_plan.display_name}", subscription=sub)

    def _require_proration(self) -> ProrationService:
        if self.proration is None:
            raise BillingDisabledError()
        return self.proration

    def preview_change(self, user_id: str, new_plan_id: str, country_code: Optional[str] = None):
        """Proration preview for the user's active paid subscription, or None."""
        current = self.store.get_active_paid(user_id)
        if current is None or self.proration is None:
            return None
        return self.proration.preview(current.stripe_subscription_id, new_plan_id, country_code)

    # -- cancel --------------------------------------------------------------

    def cancel(self, user_id: str) -> LifecycleResult:
        self._require_user(user_id)
        current = self.store.get_active_paid(user_id)
        if current is None:
            self._record("cancel", "noop")
            return LifecycleResult("noop", "No active paid subscription")
        sub = self._cancel_subscription_row(current)
        self._record("cancel", "canceled")
        return LifecycleResult("canceled", "Subscription canceled", subscription=sub)

    def schedule_cancellation(self, user_id: str, cancel_at_period_end: bool = True) -> LifecycleResult:
        """Stop (or resume) renewal at the end of the current period."""
        self._require_user(user_id)
        current = self.store.get_active_paid(user_id)
        if current is None:
            raise NotFoundError("No active paid subscription")
        if current.cancel_at_period_end == cancel_at_period_end:
            return LifecycleResult("noop", "Renewal setting unchanged", subscription=current)

        remote = self._require_gateway().set_cancel_at_period_end(current.stripe_subscription_id, cancel_at_period_end)
        sub = self.store.update_fields(current.id, {"cancel_at_period_end": remote.cancel_at_period_end}, self.clock())
        self._invalidate(user_id)
        return LifecycleResult("scheduled", "Renewal updated", subscription=sub)

    # -- sync ----------------------------------------------------------------

    def sync(self, user_id: str) -> Optional[Subscription]:
        """Reconcile the user's local subscription from the gateway's view."""
        user = self._require_user(user_id)
        if not user.stripe_customer_id:
            raise NotFoundError(f"User {user_id} has no gateway customer")
        gateway = self._require_gateway()
        now = self.clock()

        remote_subs = gateway.list_subscriptions(user.stripe_customer_id, limit=GATEWAY_LIST_LIMIT)
        if not remote_subs:
            if self.store.cancel_all(user_id, now):
                self.store.set_workspace_tier(user_id, WorkspaceTier.FREE)
                self._invalidate(user_id)
            self._record("sync", "no_subscriptions")
            return None

        chosen = next((s for s in remote_subs if s.status == "active"), remote_subs[0])
        price_id = chosen.first_price_id
        if not price_id:
            raise GatewayStateError(f"Gateway subscription {chosen.id} has no price")

        match = self.plans.prices.find_plan_by_price_handle(price_id)
        plan = None
        if match is not None:
            plan = self.plans.resolve_plan(self._plan_key(match.plan_name, match.interval), match.country_code)

        existing = self.store.get_by_gateway_id(chosen.id)
        if plan is None:
            log_event(
                "warning",
                "sync.plan_unresolvable",
                user_id=user_id,
                subscription_id=chosen.id,
                extra={"price_id": price_id},
            )
            if existing is not None:
                self.store.mark_canceled(existing.id, now)
            if self.store.get_active(user_id) is None:
                self.store.set_workspace_tier(user_id, WorkspaceTier.FREE)
            self._invalidate(user_id)
            self._record("sync", "plan_unresolvable")
            return None

        status = map_gateway_status(chosen.status)
        values = {
            "plan_id": plan.id,
            "status": status,
            "stripe_customer_id": chosen.customer_id or user.stripe_customer_id,
            "current_period_start": chosen.current_period_start
            or (existing.current_period_start if existing else now),
            "current_period_end": chosen.current_period_end
            or (existing.current_period_end if existing else now + timedelta(days=DEFAULT_PERIOD_DAYS)),
            "cancel_at_period_end": chosen.cancel_at_period_end,
            "canceled_at": chosen.canceled_at or (existing.canceled_at if existing else None),
            "trial_start": chosen.trial_start,
            "trial_end": chosen.trial_end,
        }
        sub = self.store.upsert_from_gateway(user_id, chosen.id, values, now)

        if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            self.store.set_workspace_tier(user_id, tier_for_plan_name(plan.name))
        elif self.store.get_active(user_id) is None:
            self.store.set_workspace_tier(user_id, WorkspaceTier.FREE)
        self._invalidate(user_id)
        self._record("sync", "synced")
        log_event("info", "subscription.synced", user_id=user_id, subscription_id=sub.id,
                  extra={"status": status.value, "plan_id": plan.id})
        return sub

    def verify_checkout(self, user_id: str, session_id: str) -> CheckoutVerification:
        """
        Confirm a checkout the caller just returned from and sync its result.

        Runs the same reconciliation as sync() so the subscription is active
        even when the checkout webhook has not arrived yet. A session that
        belongs to another user is reported as missing.
        """
        user = self._require_user(user_id)
        gateway = self._require_gateway()
        try:
            session = gateway.retrieve_checkout_session(session_id)
        except GatewayResourceMissing:
            raise NotFoundError(f"Checkout session not found: {session_id}")

        owned = session.metadata.get("user_id") == user_id or (
            user.stripe_customer_id is not None and session.customer_id == user.stripe_customer_id
        )
        if not owned:
            log_event("warning", "checkout.verify_foreign_session", user_id=user_id, extra={"session_id": session_id})
            raise NotFoundError(f"Checkout session not found: {session_id}")
        if not session.customer_id:
            raise ValidationError("Checkout session has no customer")

        if session.customer_id != user.stripe_customer_id:
            # Checkout may have created the customer itself
            self.store.set_customer_id(user_id, session.customer_id)
            log_event("info", "customer.linked_from_checkout", user_id=user_id,
                      extra={"stripe_customer_id": session.customer_id})

        if session.payment_status not in PAID_CHECKOUT_STATUSES:
            self._record("verify_checkout", "unpaid")
            return CheckoutVerification(session.id, session.payment_status, paid=False)

        sub = self.sync(user_id)
        self._record("verify_checkout", "verified")
        log_event("info", "checkout.verified", user_id=user_id, subscription_id=sub.id if sub else None,
                  extra={"session_id": session.id})
        return CheckoutVerification(session.id, session.payment_status, paid=True, subscription=sub)

    def create_portal_url(self, user_id: str) -> str:
        """Billing portal link for the caller, creating a gateway customer if needed."""
        user = self._require_user(user_id)
        customer_id = self._ensure_customer(user)
        url = self._require_gateway().create_portal_session(customer_id, f"{self.app_url}/dashboard")
        self._record("portal", "created")
        log_event("info", "billing.portal_created", user_id=user_id)
        return url

    # -- trial / housekeeping ------------------------------------------------

    def initialize_trial(self, user_id: str, days: Optional[int] = None) -> UserRecord:
        """Start the user's trial window once; later calls leave it unchanged."""
        self._require_user(user_id)
        now = self.clock()
        started = self.store.start_trial(user_id, now, now + timedelta(days=days or self.trial_days))
        if started:
            self._invalidate(user_id)
            log_event("info", "trial.started", user_id=user_id, extra={"days": days or self.trial_days})
        return self.store.get_user(user_id)

    def trial_status(self, user_id: str) -> TrialStatus:
        user = self._require_user(user_id)
        if self.store.get_active(user_id) is not None:
            return TrialStatus(has_active_subscription=True, has_valid_trial=False, is_expired=False, days_remaining=None)

        now = self.clock()
        end = user.trial_end_date
        valid = end is not None and now <= end
        days = math.ceil((end - now).total_seconds() / 86400) if valid else None
        return TrialStatus(
            has_active_subscription=False,
            has_valid_trial=valid,
            is_expired=end is not None and now > end,
            days_remaining=days,
            trial_start=user.trial_start_date,
            trial_end=end,
        )

    def cleanup_incomplete(self, older_than_hours: Optional[int] = None) -> int:
        hours = older_than_hours if older_than_hours is not None else self.incomplete_cleanup_hours
        removed = self.store.delete_incomplete_before(self.clock() - timedelta(hours=hours))
        if removed:
            log_event("info", "subscription.incomplete_cleanup", extra={"removed": removed, "older_than_hours": hours})
        return removed

    # -- workspaces ----------------------------------------------------------

    def register_workspace(self, user_id: str, workspace_id: str, name: str) -> WorkspaceRecord:
        """Record a workspace owned by the caller, tiered from their current plan."""
        self._require_user(user_id)
        tier = tier_for_plan_name(self._active_plan_name(user_id))
        return self.store.create_workspace(workspace_id, user_id, name, tier)

    # -- reads ---------------------------------------------------------------

    def get_current_subscription(self, user_id: str) -> Optional[Subscription]:
        active = self.store.get_active(user_id)
        if active is not None:
            return active
        rows = self.store.list_for_user(user_id)
        return rows[0] if rows else None

    def _active_plan_name(self, user_id: str) -> str:
        active = self.store.get_active(user_id)
        if active is not None:
            plan = self.plans.find_plan_config(active.plan_id)
            if plan is not None:
                return plan.name
        return "free"

    def limits_for_user(self, user_id: str) -> FeatureLimits:
        return self.plans.limits.limits_for(self._active_plan_name(user_id))
