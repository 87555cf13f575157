"""
Stripe billing gateway.

Implements BillingGateway with the `stripe` library. Every call passes this
instance's api_key explicitly, so several providers (or none) can coexist in
one process. Reads get a bounded retry on connection and rate-limit errors;
mutations are sent once.
"""
import os
import time
from typing import Any, Callable, Dict, List, Optional, Sequence
from datetime import datetime, timezone
import stripe

from workspace_billing.core.logging import log_event
from workspace_billing.core.metrics import gateway_calls_total
from workspace_billing.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    CheckoutSession,
    GatewayCustomer,
    GatewayInvoiceLine,
    GatewayInvoicePreview,
    GatewayPrice,
    GatewayResourceMissing,
    GatewaySubscription,
    GatewaySubscriptionItem,
)

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


def _ts(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)


def _is_missing(e: stripe.StripeError) -> bool:
    return getattr(e, "code", None) == "resource_missing" or "No such" in str(e)


def _ref(value: Any) -> Optional[str]:
    """Id of a field that may be expanded into an object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _to_checkout_session(obj: Dict[str, Any]) -> CheckoutSession:
    return CheckoutSession(
        id=obj["id"],
        url=obj.get("url"),
        customer_id=_ref(obj.get("customer")),
        subscription_id=_ref(obj.get("subscription")),
        payment_status=obj.get("payment_status"),
        metadata=dict(obj.get("metadata") or {}),
    )


def _to_subscription(obj: Dict[str, Any]) -> GatewaySubscription:
    item_objs = (obj.get("items") or {}).get("data") or []
    items = [
        GatewaySubscriptionItem(id=item["id"], price_id=(item.get("price") or {}).get("id", ""))
        for item in item_objs
    ]
    # Newer API versions report billing periods on the items
    first_item = item_objs[0] if item_objs else {}
    period_start = obj.get("current_period_start") or first_item.get("current_period_start")
    period_end = obj.get("current_period_end") or first_item.get("current_period_end")
    return GatewaySubscription(
        id=obj["id"],
        customer_id=_ref(obj.get("customer")) or "",
        status=obj.get("status") or "",
        items=items,
        current_period_start=_ts(period_start),
        current_period_end=_ts(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        canceled_at=_ts(obj.get("canceled_at")),
        trial_start=_ts(obj.get("trial_start")),
        trial_end=_ts(obj.get("trial_end")),
        created=_ts(obj.get("created")),
        metadata=dict(obj.get("metadata") or {}),
    )


class StripeProvider:
    """Stripe implementation of the BillingGateway protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        *,
        max_read_attempts: int = 3,
        read_backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
            max_read_attempts: attempts for idempotent reads (>= 1)
            read_backoff_seconds: base delay, doubled per attempt
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        self.max_read_attempts = max(1, max_read_attempts)
        self.read_backoff_seconds = read_backoff_seconds
        self._sleep = sleep
        self._closed = False

    @classmethod
    def from_settings(cls, settings_obj) -> "StripeProvider":
        return cls(
            settings_obj.STRIPE_SECRET_KEY,
            settings_obj.STRIPE_WEBHOOK_SECRET,
            max_read_attempts=settings_obj.GATEWAY_READ_MAX_ATTEMPTS,
            read_backoff_seconds=settings_obj.GATEWAY_READ_BACKOFF_SECONDS,
        )

    def close(self) -> None:
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise BillingProviderError("Stripe provider has been closed")

    def _read(self, operation: str, resource: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        self._check_open()
        attempt = 1
        while True:
            try:
                result = fn(*args, api_key=self.secret_key, **kwargs)
                gateway_calls_total.inc(labels={"operation": operation, "outcome": "ok"})
                return result
            except _TRANSIENT_ERRORS as e:
                if attempt >= self.max_read_attempts:
                    gateway_calls_total.inc(labels={"operation": operation, "outcome": "error"})
                    raise BillingProviderError(f"Stripe {operation} failed after {attempt} attempts: {e}")
                log_event(
                    "warning",
                    "stripe.read_retry",
                    event_type="stripe.read_retry",
                    extra={"operation": operation, "attempt": attempt, "error": e},
                )
                self._sleep(self.read_backoff_seconds * (2 ** (attempt - 1)))
                attempt += 1
            except stripe.StripeError as e:
                raise self._translate(operation, resource, e)

    def _write(self, operation: str, resource: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        self._check_open()
        try:
            result = fn(*args, api_key=self.secret_key, **kwargs)
        except stripe.StripeError as e:
            raise self._translate(operation, resource, e)
        gateway_calls_total.inc(labels={"operation": operation, "outcome": "ok"})
        return result

    def _translate(self, operation: str, resource: str, e: stripe.StripeError) -> BillingProviderError:
        if isinstance(e, stripe.InvalidRequestError) and _is_missing(e):
            gateway_calls_total.inc(labels={"operation": operation, "outcome": "missing"})
            return GatewayResourceMissing(f"Stripe {resource} not found: {e}", resource=resource)
        gateway_calls_total.inc(labels={"operation": operation, "outcome": "error"})
        return BillingProviderError(f"Stripe {operation} failed: {e}")

    # -- reads -------------------------------------------------------------

    def retrieve_customer(self, customer_id: str) -> GatewayCustomer:
        customer = self._read("customer.retrieve", "customer", stripe.Customer.retrieve, customer_id)
        if customer.get("deleted"):
            raise GatewayResourceMissing(f"No such customer: {customer_id} (deleted)", resource="customer")
        return GatewayCustomer(
            id=customer["id"],
            email=customer.get("email"),
            metadata=dict(customer.get("metadata") or {}),
        )

    def retrieve_price(self, price_id: str) -> GatewayPrice:
        price = self._read("price.retrieve", "price", stripe.Price.retrieve, price_id)
        recurring = price.get("recurring") or {}
        return GatewayPrice(
            id=price["id"],
            currency=(price.get("currency") or "").upper(),
            unit_amount=price.get("unit_amount"),
            recurring_interval=recurring.get("interval"),
        )

    def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        sub = self._read("subscription.retrieve", "subscription", stripe.Subscription.retrieve, subscription_id)
        return _to_subscription(sub)

    def list_subscriptions(self, customer_id: str, limit: int = 10) -> List[GatewaySubscription]:
        page = self._read(
            "subscription.list",
            "customer",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=limit,
        )
        subs = [_to_subscription(obj) for obj in page.get("data") or []]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(subs, key=lambda s: s.created or epoch, reverse=True)

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        session = self._read("checkout.retrieve", "checkout session", stripe.checkout.Session.retrieve, session_id)
        return _to_checkout_session(session)

    def preview_invoice(
        self,
        customer_id: str,
        subscription_id: str,
        items: Sequence[Dict[str, Any]],
        proration_behavior: str,
    ) -> GatewayInvoicePreview:
        invoice = self._read(
            "invoice.preview",
            "subscription",
            stripe.Invoice.create_preview,
            customer=customer_id,
            subscription=subscription_id,
            subscription_details={
                "items": list(items),
                "proration_behavior": proration_behavior,
            },
        )
        lines = []
        for line in (invoice.get("lines") or {}).get("data") or []:
            proration = bool(line.get("proration"))
            if not proration:
                # Newer API versions nest the flag under parent details
                parent = line.get("parent") or {}
                details = parent.get("subscription_item_details") or {}
                proration = bool(details.get("proration"))
            lines.append(GatewayInvoiceLine(
                amount=int(line.get("amount") or 0),
                proration=proration,
                description=line.get("description"),
            ))
        return GatewayInvoicePreview(
            amount_due=int(invoice.get("amount_due") or 0),
            currency=(invoice.get("currency") or "usd").upper(),
            lines=lines,
        )

    # -- mutations (never retried) -------------------------------------------

    def create_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        customer_data: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            customer_data["email"] = email
        if name:
            customer_data["name"] = name
        customer = self._write("customer.create", "customer", stripe.Customer.create, **customer_data)
        return customer["id"]

    def update_subscription(
        self,
        subscription_id: str,
        items: Sequence[Dict[str, Any]],
        proration_behavior: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewaySubscription:
        params: Dict[str, Any] = {"items": list(items), "proration_behavior": proration_behavior}
        if metadata:
            params["metadata"] = metadata
        sub = self._write("subscription.update", "subscription", stripe.Subscription.modify, subscription_id, **params)
        return _to_subscription(sub)

    def cancel_subscription(self, subscription_id: str) -> GatewaySubscription:
        sub = self._write("subscription.cancel", "subscription", stripe.Subscription.cancel, subscription_id)
        return _to_subscription(sub)

    def set_cancel_at_period_end(self, subscription_id: str, cancel_at_period_end: bool) -> GatewaySubscription:
        sub = self._write(
            "subscription.update",
            "subscription",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=cancel_at_period_end,
        )
        return _to_subscription(sub)

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        session = self._write(
            "checkout.create",
            "customer",
            stripe.checkout.Session.create,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            allow_promotion_codes=True,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata or {},
            subscription_data={"metadata": metadata or {}},
        )
        return _to_checkout_session(session)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._write(
            "portal.create",
            "customer",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session["url"]

    # -- webhooks ------------------------------------------------------------

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return parse_event(event)


def parse_event(event: Dict[str, Any]) -> BillingWebhookResult:
    """Normalize a Stripe event into a BillingWebhookResult."""
    event_type = event["type"]
    data = (event.get("data") or {}).get("object") or {}
    metadata = dict(data.get("metadata") or {})

    subscription_id = None
    status = None
    if event_type.startswith("customer.subscription."):
        subscription_id = data.get("id")
        status = data.get("status")
    elif event_type.startswith("checkout.session.") or event_type.startswith("invoice."):
        subscription_id = _ref(data.get("subscription"))
        status = data.get("status")

    return BillingWebhookResult(
        event_id=event["id"],
        event_type=event_type,
        customer_id=_ref(data.get("customer")),
        subscription_id=subscription_id,
        user_id=metadata.get("user_id") or metadata.get("userId"),
        status=status,
        metadata=metadata,
    )
