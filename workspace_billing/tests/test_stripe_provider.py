"""
Stripe provider: retry policy, error translation and payload normalization.

The stripe SDK is patched at the resource level; no network calls are made.
"""
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import stripe

from workspace_billing.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    GatewayResourceMissing,
)
from workspace_billing.features.billing.stripe_provider import StripeProvider, parse_event

PERIOD_START = 1717243200  # 2024-06-01T12:00:00Z
PERIOD_END = 1719835200  # 2024-07-01T12:00:00Z


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def provider(sleeps):
    return StripeProvider("sk_test_123", "whsec_test", max_read_attempts=3, read_backoff_seconds=0.5,
                          sleep=sleeps.append)


def _subscription_payload(**overrides):
    payload = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "cancel_at_period_end": False,
        "created": PERIOD_START,
        "items": {"data": [{
            "id": "si_1",
            "price": {"id": "price_pro_m"},
            "current_period_start": PERIOD_START,
            "current_period_end": PERIOD_END,
        }]},
        "metadata": {"user_id": "user_alice"},
    }
    payload.update(overrides)
    return payload


def test_missing_secret_key_is_rejected(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    with pytest.raises(BillingProviderError, match="STRIPE_SECRET_KEY"):
        StripeProvider()


def test_read_retries_transient_errors(provider, sleeps):
    with patch("stripe.Customer.retrieve") as retrieve:
        retrieve.side_effect = [
            stripe.APIConnectionError("connection reset"),
            stripe.RateLimitError("slow down"),
            {"id": "cus_1", "email": "alice@example.com"},
        ]
        customer = provider.retrieve_customer("cus_1")

    assert customer.id == "cus_1"
    assert retrieve.call_count == 3
    assert sleeps == [0.5, 1.0]
    retrieve.assert_called_with("cus_1", api_key="sk_test_123")


def test_read_gives_up_after_max_attempts(provider, sleeps):
    with patch("stripe.Price.retrieve", side_effect=stripe.APIConnectionError("down")) as retrieve:
        with pytest.raises(BillingProviderError, match="after 3 attempts"):
            provider.retrieve_price("price_pro_m")
    assert retrieve.call_count == 3
    assert sleeps == [0.5, 1.0]


def test_mutations_are_not_retried(provider, sleeps):
    with patch("stripe.Subscription.cancel", side_effect=stripe.APIConnectionError("down")) as cancel:
        with pytest.raises(BillingProviderError):
            provider.cancel_subscription("sub_1")
    assert cancel.call_count == 1
    assert sleeps == []


def test_resource_missing_is_translated(provider):
    error = stripe.InvalidRequestError("No such customer: 'cus_gone'", "id", code="resource_missing")
    with patch("stripe.Customer.retrieve", side_effect=error):
        with pytest.raises(GatewayResourceMissing) as exc_info:
            provider.retrieve_customer("cus_gone")
    assert exc_info.value.resource == "customer"


def test_other_invalid_requests_are_provider_errors(provider):
    error = stripe.InvalidRequestError("Invalid integer", "limit", code="parameter_invalid_integer")
    with patch("stripe.Subscription.retrieve", side_effect=error):
        with pytest.raises(BillingProviderError) as exc_info:
            provider.retrieve_subscription("sub_1")
    assert not isinstance(exc_info.value, GatewayResourceMissing)


def test_deleted_customer_is_missing(provider):
    with patch("stripe.Customer.retrieve", return_value={"id": "cus_1", "deleted": True}):
        with pytest.raises(GatewayResourceMissing):
            provider.retrieve_customer("cus_1")


def test_price_currency_is_upper_cased(provider):
    payload = {"id": "price_pro_m_in", "currency": "inr", "unit_amount": 149900, "recurring": {"interval": "month"}}
    with patch("stripe.Price.retrieve", return_value=payload):
        price = provider.retrieve_price("price_pro_m_in")
    assert price.currency == "INR"
    assert price.unit_amount == 149900
    assert price.recurring_interval == "month"


def test_subscription_period_read_from_items(provider):
    with patch("stripe.Subscription.retrieve", return_value=_subscription_payload()):
        sub = provider.retrieve_subscription("sub_1")
    assert sub.current_period_start == datetime(2024, 6, 1, 12, tzinfo=timezone.utc)
    assert sub.current_period_end == datetime(2024, 7, 1, 12, tzinfo=timezone.utc)
    assert sub.first_price_id == "price_pro_m"
    assert sub.metadata == {"user_id": "user_alice"}


def test_list_subscriptions_newest_first(provider):
    older = _subscription_payload(id="sub_old", created=PERIOD_START - 100)
    newer = _subscription_payload(id="sub_new", created=PERIOD_START)
    with patch("stripe.Subscription.list", return_value={"data": [older, newer]}) as list_subs:
        subs = provider.list_subscriptions("cus_1", limit=5)
    assert [s.id for s in subs] == ["sub_new", "sub_old"]
    list_subs.assert_called_once_with(customer="cus_1", status="all", limit=5, api_key="sk_test_123")


def test_preview_invoice(provider):
    invoice = {
        "amount_due": 3000,
        "currency": "usd",
        "lines": {"data": [
            {"amount": -950, "proration": True},
            {"amount": 3950, "parent": {"subscription_item_details": {"proration": True}}},
            {"amount": 4900},
        ]},
    }
    items = [{"id": "si_1", "price": "price_team_m"}]
    with patch("stripe.Invoice.create_preview", return_value=invoice) as create_preview:
        preview = provider.preview_invoice("cus_1", "sub_1", items, "create_prorations")

    assert preview.amount_due == 3000
    assert preview.currency == "USD"
    assert [line.proration for line in preview.lines] == [True, True, False]
    kwargs = create_preview.call_args.kwargs
    assert kwargs["subscription_details"] == {"items": items, "proration_behavior": "create_prorations"}


def test_checkout_session_parameters(provider):
    with patch("stripe.checkout.Session.create", return_value={"id": "cs_1", "url": "https://pay"}) as create:
        session = provider.create_checkout_session(
            "cus_1", "price_pro_m", "https://ok", "https://cancel", {"user_id": "user_alice"}
        )

    assert session.url == "https://pay"
    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["payment_method_types"] == ["card"]
    assert kwargs["line_items"] == [{"price": "price_pro_m", "quantity": 1}]
    assert kwargs["allow_promotion_codes"] is True
    assert kwargs["subscription_data"] == {"metadata": {"user_id": "user_alice"}}
    assert kwargs["api_key"] == "sk_test_123"


def test_retrieve_checkout_session_unwraps_expanded_fields(provider):
    payload = {
        "id": "cs_1",
        "url": None,
        "customer": {"id": "cus_1", "object": "customer"},
        "subscription": "sub_1",
        "payment_status": "paid",
        "metadata": {"user_id": "user_alice"},
    }
    with patch("stripe.checkout.Session.retrieve",
               side_effect=[stripe.APIConnectionError("reset"), payload]) as retrieve:
        session = provider.retrieve_checkout_session("cs_1")

    assert retrieve.call_count == 2
    assert session.customer_id == "cus_1"
    assert session.subscription_id == "sub_1"
    assert session.payment_status == "paid"
    assert session.metadata == {"user_id": "user_alice"}


def test_portal_session_is_sent_once(provider, sleeps):
    with patch("stripe.billing_portal.Session.create", return_value={"url": "https://portal"}) as create:
        url = provider.create_portal_session("cus_1", "https://app.example.com/dashboard")

    assert url == "https://portal"
    create.assert_called_once_with(
        customer="cus_1", return_url="https://app.example.com/dashboard", api_key="sk_test_123"
    )

    with patch("stripe.billing_portal.Session.create", side_effect=stripe.APIConnectionError("down")) as create:
        with pytest.raises(BillingProviderError):
            provider.create_portal_session("cus_1", "https://app.example.com/dashboard")
    assert create.call_count == 1
    assert sleeps == []


def test_update_subscription_sends_items_and_metadata(provider):
    with patch("stripe.Subscription.modify", return_value=_subscription_payload()) as modify:
        provider.update_subscription("sub_1", [{"id": "si_1", "price": "price_team_m"}], "none", {"plan_id": "team"})
    modify.assert_called_once_with(
        "sub_1",
        api_key="sk_test_123",
        items=[{"id": "si_1", "price": "price_team_m"}],
        proration_behavior="none",
        metadata={"plan_id": "team"},
    )


def test_closed_provider_refuses_calls(provider):
    provider.close()
    with patch("stripe.Customer.retrieve") as retrieve:
        with pytest.raises(BillingProviderError, match="closed"):
            provider.retrieve_customer("cus_1")
    retrieve.assert_not_called()


def test_webhook_requires_signature(provider):
    with pytest.raises(BillingWebhookError, match="Missing stripe-signature"):
        provider.parse_webhook({}, b"{}")


def test_webhook_bad_signature(provider):
    error = stripe.SignatureVerificationError("bad signature", "t=1,v1=abc")
    with patch("stripe.Webhook.construct_event", side_effect=error):
        with pytest.raises(BillingWebhookError, match="Invalid signature"):
            provider.parse_webhook({"stripe-signature": "t=1,v1=abc"}, b"{}")


def test_webhook_parsed(provider):
    event = {
        "id": "evt_1",
        "type": "customer.subscription.updated",
        "data": {"object": _subscription_payload(status="past_due")},
    }
    with patch("stripe.Webhook.construct_event", return_value=event):
        result = provider.parse_webhook({"stripe-signature": "t=1,v1=abc"}, b"{}")
    assert result.event_id == "evt_1"
    assert result.subscription_id == "sub_1"
    assert result.customer_id == "cus_1"
    assert result.status == "past_due"
    assert result.user_id == "user_alice"


def test_parse_checkout_event_reads_subscription_field():
    event = {
        "id": "evt_2",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_1",
            "customer": {"id": "cus_9"},
            "subscription": "sub_9",
            "metadata": {"userId": "user_bob"},
        }},
    }
    result = parse_event(event)
    assert result.subscription_id == "sub_9"
    assert result.customer_id == "cus_9"
    assert result.user_id == "user_bob"
