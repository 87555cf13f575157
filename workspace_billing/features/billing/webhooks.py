"""
Gateway webhook processing.

1. Verify signature and parse the event
2. Record it in billing_events (unique gateway event id)
3. Skip events already processed; reprocess ones that failed earlier
4. Reconcile the affected user through SubscriptionLifecycle.sync
5. Mark processed, or store the error and re-raise so the gateway redelivers

Sync reads the gateway's current state rather than trusting event payloads,
so out-of-order and duplicate deliveries converge on the same row.
"""
import hashlib
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from workspace_billing.core.database import Database, billing_events, utcnow
from workspace_billing.core.logging import log_event
from workspace_billing.core.metrics import webhook_events_total
from workspace_billing.features.billing.lifecycle import SubscriptionLifecycle
from workspace_billing.features.billing.provider import BillingGateway, BillingWebhookResult

SYNC_EVENT_PREFIXES = (
    "customer.subscription.",
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "invoice.paid",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
)


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    duplicate: bool
    user_id: Optional[str] = None
    action: str = "ignored"  # ignored | synced | unknown_customer | duplicate


class WebhookProcessor:
    def __init__(self, db: Database, gateway: BillingGateway, lifecycle: SubscriptionLifecycle):
        self.db = db
        self.gateway = gateway
        self.lifecycle = lifecycle

    def process(self, headers: Dict[str, str], body: bytes) -> WebhookOutcome:
        result = self.gateway.parse_webhook(headers, body)
        payload_hash = hashlib.sha256(body).hexdigest()

        if not self._claim(result, payload_hash):
            webhook_events_total.inc(labels={"event_type": result.event_type, "outcome": "duplicate"})
            return WebhookOutcome(result.event_id, result.event_type, duplicate=True, action="duplicate")

        try:
            outcome = self._apply(result)
        except Exception as e:
            self._mark(result.event_id, error=str(e))
            webhook_events_total.inc(labels={"event_type": result.event_type, "outcome": "error"})
            log_event("error", "webhook.failed", event_type=result.event_type, error_code="webhook_failed",
                      extra={"event_id": result.event_id, "error": e})
            raise

        self._mark(result.event_id)
        webhook_events_total.inc(labels={"event_type": result.event_type, "outcome": outcome.action})
        return outcome

    def _claim(self, result: BillingWebhookResult, payload_hash: str) -> bool:
        """Record the event; False when it was already processed successfully."""
        with self.db.session() as session:
            existing = session.execute(
                select(billing_events.c.processed).where(billing_events.c.stripe_event_id == result.event_id)
            ).fetchone()
            if existing:
                return not existing.processed

        try:
            with self.db.session() as session:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=result.event_id,
                        event_type=result.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
        except IntegrityError:
            # Another worker recorded this event first
            return False
        return True

    def _mark(self, event_id: str, error: Optional[str] = None) -> None:
        values = {"error": error} if error else {"processed": True, "processed_at": utcnow(), "error": None}
        with self.db.session() as session:
            session.execute(update(billing_events).where(billing_events.c.stripe_event_id == event_id).values(**values))

    def _apply(self, result: BillingWebhookResult) -> WebhookOutcome:
        if not result.event_type.startswith(SYNC_EVENT_PREFIXES):
            return WebhookOutcome(result.event_id, result.event_type, duplicate=False, action="ignored")

        user = None
        if result.customer_id:
            user = self.lifecycle.store.get_user_by_customer(result.customer_id)
        if user is None and result.user_id:
            user = self.lifecycle.store.get_user(result.user_id)
            if user is not None and not user.stripe_customer_id and result.customer_id:
                self.lifecycle.store.set_customer_id(user.user_id, result.customer_id)
        if user is None:
            log_event("warning", "webhook.unknown_customer", event_type=result.event_type,
                      extra={"event_id": result.event_id, "customer_id": result.customer_id})
            return WebhookOutcome(result.event_id, result.event_type, duplicate=False, action="unknown_customer")

        self.lifecycle.sync(user.user_id)
        return WebhookOutcome(result.event_id, result.event_type, duplicate=False, user_id=user.user_id, action="synced")
