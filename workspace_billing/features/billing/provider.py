"""
Billing gateway protocol.

Defines the interface the lifecycle, proration and webhook code use to talk to
the payment gateway (Stripe). Gateway objects are normalized into the small
dataclasses below so business logic never touches provider SDK types.
"""
from typing import Protocol, Dict, Any, List, Optional, Sequence
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class GatewayCustomer:
    id: str
    email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayPrice:
    id: str
    currency: str
    unit_amount: Optional[int]  # minor units
    recurring_interval: Optional[str] = None  # month | year


@dataclass(frozen=True)
class GatewaySubscriptionItem:
    id: str
    price_id: str


@dataclass(frozen=True)
class GatewaySubscription:
    id: str
    customer_id: str
    status: str  # gateway vocabulary: active, canceled, past_due, ...
    items: List[GatewaySubscriptionItem]
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    created: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def first_price_id(self) -> Optional[str]:
        return self.items[0].price_id if self.items else None


@dataclass(frozen=True)
class GatewayInvoiceLine:
    amount: int  # minor units, negative for credits
    proration: bool = False
    description: Optional[str] = None


@dataclass(frozen=True)
class GatewayInvoicePreview:
    amount_due: int  # minor units
    currency: str
    lines: List[GatewayInvoiceLine] = field(default_factory=list)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]  # None once the session is complete
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_status: Optional[str] = None  # paid | unpaid | no_payment_required
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    user_id: Optional[str]  # from object metadata when present
    status: Optional[str]
    metadata: Dict[str, Any]


class BillingGateway(Protocol):
    """
    Protocol for billing gateways.

    Read operations (retrieve_*, list_subscriptions, preview_invoice) may be
    retried by implementations on transient failures. Mutating operations must
    be attempted exactly once.

    All methods raise BillingProviderError on failure and
    GatewayResourceMissing when the addressed resource does not exist.
    """

    def retrieve_customer(self, customer_id: str) -> GatewayCustomer:
        """
        Fetch a customer.

        Raises:
            GatewayResourceMissing: customer deleted or unknown
        """
        ...

    def create_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Create a customer tagged with the internal user id.

        Returns:
            Gateway customer ID
        """
        ...

    def retrieve_price(self, price_id: str) -> GatewayPrice:
        ...

    def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        ...

    def list_subscriptions(self, customer_id: str, limit: int = 10) -> List[GatewaySubscription]:
        """All subscriptions for the customer, any status, newest first."""
        ...

    def preview_invoice(
        self,
        customer_id: str,
        subscription_id: str,
        items: Sequence[Dict[str, Any]],
        proration_behavior: str,
    ) -> GatewayInvoicePreview:
        """
        Preview the next invoice as if `items` were applied to the subscription.

        Args:
            items: [{"id": <item id>, "price": <price id>}, ...]
        """
        ...

    def update_subscription(
        self,
        subscription_id: str,
        items: Sequence[Dict[str, Any]],
        proration_behavior: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewaySubscription:
        """
        Apply item changes. Items use the gateway's update form:
        {"id", "price"} to swap, {"id", "deleted": True} to remove,
        {"price"} to add.
        """
        ...

    def cancel_subscription(self, subscription_id: str) -> GatewaySubscription:
        """Cancel immediately (not at period end)."""
        ...

    def set_cancel_at_period_end(self, subscription_id: str, cancel_at_period_end: bool) -> GatewaySubscription:
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """
        Create a subscription-mode checkout session.

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        """
        Fetch a checkout session, including its customer and subscription.

        Raises:
            GatewayResourceMissing: unknown session id
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a self-service billing portal session.

        Returns:
            Portal URL
        """
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...

    def close(self) -> None:
        ...


class BillingProviderError(Exception):
    """Base exception for billing gateway errors."""
    pass


class GatewayResourceMissing(BillingProviderError):
    """The addressed gateway resource (customer, subscription, price) does not exist."""

    def __init__(self, message: str, resource: str = "resource"):
        super().__init__(message)
        self.resource = resource


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
