"""
Subscription lifecycle: create, change, cancel, sync and housekeeping.

Runs against an in-memory database and the FakeGateway; every test checks the
gateway mutations it expects (or that there were none).
"""
from dataclasses import replace
from datetime import timedelta

import pytest

from workspace_billing.conftest import START
from workspace_billing.core.errors import (
    BillingDisabledError,
    ConflictError,
    CurrencyMismatchError,
    GatewayStateError,
    NotFoundError,
    ValidationError,
)
from workspace_billing.features.billing.lifecycle import SubscriptionLifecycle
from workspace_billing.models.limits import Capped
from workspace_billing.models.subscription import SubscriptionStatus, WorkspaceTier
from workspace_billing.tests.mocks import insert_workspace


def _seed_paid(store, gateway, user_id, *, price="price_pro_m", plan_id="pro", status="active",
               period_end=START + timedelta(days=30), customer="cus_1"):
    """A gateway subscription plus the local ACTIVE row pointing at it."""
    if customer not in gateway.customers:
        gateway.add_customer(customer)
    store.set_customer_id(user_id, customer)
    remote = gateway.add_subscription(customer, [price], status=status, period_start=START, period_end=period_end)
    row = store.activate(
        user_id,
        plan_id,
        period_start=START,
        period_end=period_end,
        stripe_subscription_id=remote.id,
        stripe_customer_id=customer,
        now=START,
    )
    return remote, row


def _tier(store, workspace_id="ws_1"):
    return store.get_workspace(workspace_id).subscription_tier


# -- create ------------------------------------------------------------------


def test_create_free_activates_locally(db, store, gateway, lifecycle, user):
    insert_workspace(db, "ws_1", user.user_id, tier="PRO")

    result = lifecycle.create(user.user_id, "free")

    assert result.action == "activated_free"
    sub = result.subscription
    assert sub.plan_id == "free"
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.stripe_subscription_id is None
    assert sub.current_period_end == START + timedelta(days=365)
    assert gateway.mutations == []
    assert _tier(store) == WorkspaceTier.FREE


def test_create_free_twice_keeps_one_row(store, lifecycle, user):
    first = lifecycle.create(user.user_id, "free").subscription
    second = lifecycle.create(user.user_id, "free").subscription
    assert first.id == second.id
    assert len(store.list_for_user(user.user_id)) == 1


def test_create_free_cancels_active_paid_subscription(store, gateway, lifecycle, user):
    remote, row = _seed_paid(store, gateway, user.user_id)

    lifecycle.create(user.user_id, "free")

    assert gateway.mutation_names() == ["cancel_subscription"]
    assert store.get(row.id).status == SubscriptionStatus.CANCELED
    assert store.get_active(user.user_id).plan_id == "free"


def test_create_paid_india_uses_country_price(store, gateway, lifecycle, user):
    result = lifecycle.create(user.user_id, "pro", "IN")

    assert result.action == "checkout"
    assert result.checkout.price_handle == "price_pro_m_in"
    assert result.checkout.used_fallback is False
    assert result.checkout.country_code == "IN"
    assert gateway.mutation_names() == ["create_customer", "create_checkout_session"]

    session = gateway.mutations[-1][1]
    assert session["price_id"] == "price_pro_m_in"
    assert session["metadata"] == {
        "user_id": "user_alice",
        "plan_id": "pro",
        "plan_name": "pro",
        "billing_interval": "monthly",
        "country_code": "IN",
        "used_fallback": "false",
    }
    assert session["success_url"] == "https://app.example.com/dashboard?success=true&session_id={CHECKOUT_SESSION_ID}"
    assert session["cancel_url"] == "https://app.example.com/pricing?canceled=true"
    assert store.get_user(user.user_id).stripe_customer_id == session["customer_id"]


def test_create_paid_france_falls_back_to_default_price(gateway, lifecycle, user):
    result = lifecycle.create(user.user_id, "pro", "FR")

    assert result.checkout.price_handle == "price_pro_m"
    assert result.checkout.used_fallback is True
    session = gateway.mutations[-1][1]
    assert session["metadata"]["used_fallback"] == "true"
    assert session["metadata"]["country_code"] == "FR"


def test_create_annual_plan(gateway, lifecycle, user):
    result = lifecycle.create(user.user_id, "pro_annual", "US")
    session = gateway.mutations[-1][1]
    assert result.checkout.price_handle == "price_pro_y"
    assert session["metadata"]["plan_id"] == "pro_annual"
    assert session["metadata"]["billing_interval"] == "yearly"


def test_currency_mismatch_stops_before_any_mutation(gateway, lifecycle, user):
    gateway.add_price("price_pro_m_in", "USD", 1900, "month")
    with pytest.raises(CurrencyMismatchError):
        lifecycle.create(user.user_id, "pro", "IN")
    assert gateway.mutations == []


def test_price_missing_at_gateway_is_not_found(gateway, lifecycle, user):
    del gateway.prices["price_team_m"]
    with pytest.raises(NotFoundError):
        lifecycle.create(user.user_id, "team")
    assert gateway.mutations == []


def test_stale_customer_is_recreated(store, gateway, lifecycle, user):
    store.set_customer_id(user.user_id, "cus_deleted")

    lifecycle.create(user.user_id, "pro")

    new_customer = store.get_user(user.user_id).stripe_customer_id
    assert new_customer != "cus_deleted"
    assert new_customer in gateway.customers
    assert gateway.mutations[-1][1]["customer_id"] == new_customer


def test_live_customer_is_reused(store, gateway, lifecycle, user):
    gateway.add_customer("cus_live")
    store.set_customer_id(user.user_id, "cus_live")

    lifecycle.create(user.user_id, "pro")

    assert gateway.mutation_names() == ["create_checkout_session"]
    assert gateway.mutations[-1][1]["customer_id"] == "cus_live"


def test_create_paid_cancels_existing_paid_first(store, gateway, lifecycle, user):
    remote, row = _seed_paid(store, gateway, user.user_id)

    lifecycle.create(user.user_id, "team")

    assert gateway.mutation_names() == ["cancel_subscription", "create_checkout_session"]
    assert store.get(row.id).status == SubscriptionStatus.CANCELED


def test_create_rejects_interval_without_price(gateway, lifecycle, user):
    with pytest.raises(ValidationError):
        lifecycle.create(user.user_id, "team_annual")
    assert gateway.mutations == []


def test_create_unknown_user_or_plan(lifecycle, user):
    with pytest.raises(NotFoundError):
        lifecycle.create("user_nobody", "free")
    with pytest.raises(NotFoundError):
        lifecycle.create(user.user_id, "enterprise")


def test_paid_create_requires_gateway(store, plan_service, user, clock):
    lifecycle = SubscriptionLifecycle(store, plan_service, None, None, clock=clock)
    assert lifecycle.create(user.user_id, "free").action == "activated_free"
    with pytest.raises(BillingDisabledError):
        lifecycle.create(user.user_id, "pro")


# -- change ------------------------------------------------------------------


def test_change_to_same_plan_is_noop(store, gateway, lifecycle, user):
    _seed_paid(store, gateway, user.user_id)

    result = lifecycle.change(user.user_id, "pro")

    assert result.action == "noop"
    assert gateway.mutations == []


def test_change_without_paid_subscription_creates(gateway, lifecycle, user):
    result = lifecycle.change(user.user_id, "pro", country_code="IN")
    assert result.action == "checkout"
    assert result.checkout.price_handle == "price_pro_m_in"


def test_change_from_free_to_paid_creates_checkout(store, gateway, lifecycle, user):
    lifecycle.create(user.user_id, "free")
    result = lifecycle.change(user.user_id, "pro")
    assert result.action == "checkout"
    # free row stays active until the paid subscription exists
    assert store.get_active(user.user_id).plan_id == "free"


def test_change_applies_new_price(db, store, gateway, lifecycle, user, access_cache):
    insert_workspace(db, "ws_1", user.user_id)
    remote, row = _seed_paid(store, gateway, user.user_id)
    access_cache.set(user.user_id, "cached")

    result = lifecycle.change(user.user_id, "pro_annual")

    assert result.action == "changed"
    assert result.subscription.plan_id == "pro_annual"
    assert result.subscription.id == row.id
    assert gateway.mutation_names() == ["update_subscription"]
    assert gateway.subscriptions[remote.id].first_price_id == "price_pro_y"
    assert _tier(store) == WorkspaceTier.PRO
    assert access_cache.get(user.user_id) is None


def test_yearly_to_monthly_blocked_while_period_remains(store, gateway, lifecycle, user):
    _seed_paid(store, gateway, user.user_id, price="price_pro_y", plan_id="pro_annual",
               period_end=START + timedelta(days=10))

    with pytest.raises(ValidationError, match="10 days remaining"):
        lifecycle.change(user.user_id, "pro")
    assert gateway.mutations == []


def test_yearly_to_monthly_allowed_after_period_end(store, gateway, lifecycle, user, clock):
    _seed_paid(store, gateway, user.user_id, price="price_pro_y", plan_id="pro_annual",
               period_end=START + timedelta(days=10))
    clock.advance(days=11)

    result = lifecycle.change(user.user_id, "pro")

    assert result.action == "changed"
    assert result.subscription.plan_id == "pro"


def test_change_when_gateway_subscription_canceled_creates_new(store, gateway, lifecycle, user):
    remote, row = _seed_paid(store, gateway, user.user_id, status="canceled")

    result = lifecycle.change(user.user_id, "team")

    assert result.action == "checkout"
    assert store.get(row.id).status == SubscriptionStatus.CANCELED
    assert "cancel_subscription" not in gateway.mutation_names()


def test_change_when_gateway_subscription_missing_creates_new(store, gateway, lifecycle, user):
    remote, row = _seed_paid(store, gateway, user.user_id)
    del gateway.subscriptions[remote.id]

    result = lifecycle.change(user.user_id, "team")

    assert result.action == "checkout"
    stale = store.get(row.id)
    assert stale.status == SubscriptionStatus.CANCELED
    assert stale.stripe_subscription_id is None


def test_change_past_due_subscription_is_gateway_state_error(store, gateway, lifecycle, user):
    _seed_paid(store, gateway, user.user_id, status="past_due")
    with pytest.raises(GatewayStateError):
        lifecycle.change(user.user_id, "team")
    assert gateway.mutations == []


def test_change_paid_to_free_cancels_then_activates_free(store, gateway, lifecycle, user):
    remote, row = _seed_paid(store, gateway, user.user_id)

    result = lifecycle.change(user.user_id, "free")

    assert result.action == "activated_free"
    assert gateway.mutation_names() == ["cancel_subscription"]
    assert store.get(row.id).status == SubscriptionStatus.CANCELED
    assert store.get_active(user.user_id).plan_id == "free"


# -- cancel ------------------------------------------------------------------


def test_cancel_without_paid_subscription_is_noop(store, gateway, lifecycle, user):
    lifecycle.create(user.user_id, "free")
    result = lifecycle.cancel(user.user_id)
    assert result.action == "noop"
    assert store.get_active(user.user_id).plan_id == "free"
    assert gateway.mutations == []


def test_cancel_paid_subscription(db, store, gateway, lifecycle, user):
    insert_workspace(db, "ws_1", user.user_id, tier="PRO")
    remote, row = _seed_paid(store, gateway, user.user_id)

    result = lifecycle.cancel(user.user_id)

    assert result.action == "canceled"
    assert gateway.mutation_names() == ["cancel_subscription"]
    assert gateway.subscriptions[remote.id].status == "canceled"
    canceled = store.get(row.id)
    assert canceled.status == SubscriptionStatus.CANCELED
    assert canceled.canceled_at == START
    assert _tier(store) == WorkspaceTier.FREE


def test_cancel_when_gateway_subscription_missing(store, gateway, lifecycle, user):
    remote, row = _seed_paid(store, gateway, user.user_id)
    del gateway.subscriptions[remote.id]

    lifecycle.cancel(user.user_id)

    assert gateway.mutations == []
    canceled = store.get(row.id)
    assert canceled.status == SubscriptionStatus.CANCELED
    assert canceled.stripe_subscription_id is None


def test_cancel_already_canceled_at_gateway(store, gateway, lifecycle, user):
    _seed_paid(store, gateway, user.user_id, status="canceled")
    lifecycle.cancel(user.user_id)
    assert gateway.mutations == []


def test_schedule_cancellation_round_trip(store, gateway, lifecycle, user):
    remote, row = _seed_paid(store, gateway, user.user_id)

    scheduled = lifecycle.schedule_cancellation(user.user_id)
    assert scheduled.action == "scheduled"
    assert scheduled.subscription.cancel_at_period_end is True

    again = lifecycle.schedule_cancellation(user.user_id)
    assert again.action == "noop"

    resumed = lifecycle.schedule_cancellation(user.user_id, cancel_at_period_end=False)
    assert resumed.subscription.cancel_at_period_end is False
    assert gateway.mutation_names() == ["set_cancel_at_period_end", "set_cancel_at_period_end"]


def test_schedule_cancellation_without_paid_subscription(lifecycle, user):
    with pytest.raises(NotFoundError):
        lifecycle.schedule_cancellation(user.user_id)


# -- sync --------------------------------------------------------------------


def _with_customer(store, gateway, user_id, customer="cus_1"):
    gateway.add_customer(customer)
    store.set_customer_id(user_id, customer)
    return customer


def test_sync_requires_customer(lifecycle, user):
    with pytest.raises(NotFoundError):
        lifecycle.sync(user.user_id)


def test_sync_creates_row_from_gateway(db, store, gateway, lifecycle, user):
    insert_workspace(db, "ws_1", user.user_id)
    customer = _with_customer(store, gateway, user.user_id)
    remote = gateway.add_subscription(customer, ["price_pro_m_in"], period_start=START,
                                      period_end=START + timedelta(days=30))

    sub = lifecycle.sync(user.user_id)

    assert sub.plan_id == "pro"
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.stripe_subscription_id == remote.id
    assert sub.current_period_end == START + timedelta(days=30)
    assert _tier(store) == WorkspaceTier.PRO
    assert gateway.mutations == []


def test_sync_twice_leaves_row_identical(store, gateway, lifecycle, user, clock):
    customer = _with_customer(store, gateway, user.user_id)
    gateway.add_subscription(customer, ["price_pro_y"], period_start=START, period_end=START + timedelta(days=365))

    first = lifecycle.sync(user.user_id)
    clock.advance(hours=2)
    second = lifecycle.sync(user.user_id)

    assert first.plan_id == "pro_annual"
    assert second == first
    assert store.get(first.id) == first


def test_sync_maps_status_changes(store, gateway, lifecycle, user, clock):
    customer = _with_customer(store, gateway, user.user_id)
    remote = gateway.add_subscription(customer, ["price_pro_m"], period_start=START)
    first = lifecycle.sync(user.user_id)

    gateway.subscriptions[remote.id] = replace(remote, status="past_due")
    clock.advance(minutes=5)
    second = lifecycle.sync(user.user_id)

    assert second.id == first.id
    assert second.status == SubscriptionStatus.PAST_DUE
    assert second.updated_at == clock.now


def test_sync_without_gateway_subscriptions_cancels_everything(store, gateway, lifecycle, user):
    _with_customer(store, gateway, user.user_id)
    lifecycle.create(user.user_id, "free")

    assert lifecycle.sync(user.user_id) is None
    assert store.get_active(user.user_id) is None
    assert all(s.status == SubscriptionStatus.CANCELED for s in store.list_for_user(user.user_id))


def test_sync_prefers_active_over_newer_canceled(store, gateway, lifecycle, user):
    customer = _with_customer(store, gateway, user.user_id)
    active = gateway.add_subscription(customer, ["price_pro_m"], created=START)
    gateway.add_subscription(customer, ["price_team_m"], status="canceled", created=START + timedelta(days=1))

    sub = lifecycle.sync(user.user_id)

    assert sub.stripe_subscription_id == active.id
    assert sub.plan_id == "pro"


def test_sync_keeps_single_active_row(store, gateway, lifecycle, user):
    customer = _with_customer(store, gateway, user.user_id)
    free_row = lifecycle.create(user.user_id, "free").subscription
    gateway.add_subscription(customer, ["price_pro_m"], period_start=START)

    lifecycle.sync(user.user_id)

    statuses = [s.status for s in store.list_for_user(user.user_id)]
    assert statuses.count(SubscriptionStatus.ACTIVE) == 1
    assert store.get(free_row.id).status == SubscriptionStatus.CANCELED
    assert store.get_active(user.user_id).plan_id == "pro"


def test_sync_deprecated_price_cancels_local_row(store, gateway, lifecycle, user):
    remote, row = _seed_paid(store, gateway, user.user_id, price="price_legacy", plan_id="legacy")

    assert lifecycle.sync(user.user_id) is None
    assert store.get(row.id).status == SubscriptionStatus.CANCELED


def test_sync_unknown_price_without_row_writes_nothing(store, gateway, lifecycle, user):
    customer = _with_customer(store, gateway, user.user_id)
    gateway.add_subscription(customer, ["price_from_another_product"])

    assert lifecycle.sync(user.user_id) is None
    assert store.list_for_user(user.user_id) == []


# -- checkout verification / portal ------------------------------------------


def _checkout(gateway, user_id, customer="cus_9"):
    gateway.add_customer(customer)
    return gateway.create_checkout_session(
        customer, "price_pro_m", "https://app.example.com/ok", "https://app.example.com/no", {"user_id": user_id}
    )


def test_verify_checkout_links_customer_and_syncs(db, store, gateway, lifecycle, user):
    insert_workspace(db, "ws_1", user.user_id)
    session = _checkout(gateway, user.user_id)
    remote = gateway.add_subscription("cus_9", ["price_pro_m"], period_start=START)
    gateway.complete_checkout(session.id, remote.id)

    result = lifecycle.verify_checkout(user.user_id, session.id)

    assert result.paid is True
    assert result.subscription.stripe_subscription_id == remote.id
    assert result.subscription.status == SubscriptionStatus.ACTIVE
    assert store.get_user(user.user_id).stripe_customer_id == "cus_9"
    assert store.get_workspace("ws_1").subscription_tier == WorkspaceTier.PRO


def test_verify_checkout_unpaid_does_not_sync(store, gateway, lifecycle, user):
    session = _checkout(gateway, user.user_id)
    gateway.list_error = AssertionError("sync must not run")

    result = lifecycle.verify_checkout(user.user_id, session.id)

    assert result.paid is False
    assert result.payment_status == "unpaid"
    assert store.list_for_user(user.user_id) == []


def test_verify_checkout_rejects_foreign_session(store, gateway, lifecycle, user):
    other = store.upsert_user("user_bob")
    session = _checkout(gateway, other.user_id)

    with pytest.raises(NotFoundError):
        lifecycle.verify_checkout(user.user_id, session.id)
    with pytest.raises(NotFoundError):
        lifecycle.verify_checkout(user.user_id, "cs_missing")
    assert store.get_user(user.user_id).stripe_customer_id is None


def test_portal_reuses_live_customer(store, gateway, lifecycle, user):
    gateway.add_customer("cus_1")
    store.set_customer_id(user.user_id, "cus_1")

    url = lifecycle.create_portal_url(user.user_id)

    assert url == "https://billing.example.com/p/cus_1"
    assert gateway.mutations == [("create_portal_session", "cus_1", "https://app.example.com/dashboard")]


def test_portal_requires_gateway(store, plan_service, user, clock):
    lifecycle = SubscriptionLifecycle(store, plan_service, None, None, clock=clock)
    with pytest.raises(BillingDisabledError):
        lifecycle.create_portal_url(user.user_id)


# -- trial / housekeeping / reads -------------------------------------------


def test_initialize_trial_only_once(store, lifecycle, user, clock):
    first = lifecycle.initialize_trial(user.user_id)
    assert first.trial_start_date == START
    assert first.trial_end_date == START + timedelta(days=14)

    clock.advance(days=3)
    second = lifecycle.initialize_trial(user.user_id, days=30)
    assert second.trial_end_date == first.trial_end_date


def test_trial_status_counts_partial_days_up(lifecycle, user, clock):
    lifecycle.initialize_trial(user.user_id, days=3)
    clock.advance(hours=1)

    status = lifecycle.trial_status(user.user_id)
    assert status.has_valid_trial is True
    assert status.days_remaining == 3
    assert status.trial_end == START + timedelta(days=3)

    clock.advance(days=3)
    expired = lifecycle.trial_status(user.user_id)
    assert expired.has_valid_trial is False
    assert expired.is_expired is True
    assert expired.days_remaining is None


def test_cleanup_incomplete_removes_only_old_rows(store, lifecycle, user):
    old = store.activate(user.user_id, "pro", period_start=START, period_end=START + timedelta(days=30),
                         status=SubscriptionStatus.INCOMPLETE, now=START - timedelta(hours=25))
    recent = store.activate(user.user_id, "pro", period_start=START, period_end=START + timedelta(days=30),
                            status=SubscriptionStatus.INCOMPLETE, now=START - timedelta(hours=1))

    assert lifecycle.cleanup_incomplete() == 1
    assert store.get(old.id) is None
    assert store.get(recent.id) is not None


def test_current_subscription_and_limits(store, gateway, lifecycle, user):
    assert lifecycle.get_current_subscription(user.user_id) is None
    assert lifecycle.limits_for_user(user.user_id).plan_name == "free"

    _seed_paid(store, gateway, user.user_id, price="price_pro_y", plan_id="pro_annual")

    assert lifecycle.get_current_subscription(user.user_id).plan_id == "pro_annual"
    limits = lifecycle.limits_for_user(user.user_id)
    assert limits.plan_name == "pro"
    assert limits.workspaces == Capped(5)


def test_current_subscription_falls_back_to_latest_row(store, gateway, lifecycle, user):
    remote, row = _seed_paid(store, gateway, user.user_id)
    lifecycle.cancel(user.user_id)
    current = lifecycle.get_current_subscription(user.user_id)
    assert current.id == row.id
    assert current.status == SubscriptionStatus.CANCELED


def test_register_workspace(store, gateway, lifecycle, user):
    with pytest.raises(NotFoundError):
        lifecycle.register_workspace("user_nobody", "ws_x", "X")

    free = lifecycle.register_workspace(user.user_id, "ws_free", "Free")
    assert free.subscription_tier == WorkspaceTier.FREE

    _seed_paid(store, gateway, user.user_id)
    assert lifecycle.register_workspace(user.user_id, "ws_paid", "Paid").subscription_tier == WorkspaceTier.PRO

    store.upsert_user("user_bob")
    with pytest.raises(ConflictError):
        lifecycle.register_workspace("user_bob", "ws_free", "Mine now")
    assert store.get_workspace("ws_free").owner_id == user.user_id
