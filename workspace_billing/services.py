"""
Service construction.

Builds the database, gateway and billing services from settings. Nothing here
connects on import; open() and close() are called by the app lifespan or the
CLI worker.
"""
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from workspace_billing.core.config import Settings
from workspace_billing.core.database import Database
from workspace_billing.core.logging import LOGGER_NAME
from workspace_billing.features.access.cache import AccessStatusCache
from workspace_billing.features.access.gate import WorkspaceAccessGate
from workspace_billing.features.billing.lifecycle import SubscriptionLifecycle
from workspace_billing.features.billing.proration import ProrationService
from workspace_billing.features.billing.provider import BillingGateway
from workspace_billing.features.billing.store import SubscriptionStore
from workspace_billing.features.billing.stripe_provider import StripeProvider
from workspace_billing.features.billing.webhooks import WebhookProcessor
from workspace_billing.features.plans.catalog import PlanCatalog
from workspace_billing.features.plans.limits import LimitResolver
from workspace_billing.features.plans.prices import PriceResolver
from workspace_billing.features.plans.service import PlanService

logger = logging.getLogger(LOGGER_NAME)


@dataclass
class BillingServices:
    settings: Settings
    db: Database
    gateway: Optional[BillingGateway]
    catalog: PlanCatalog
    plans: PlanService
    store: SubscriptionStore
    lifecycle: SubscriptionLifecycle
    gate: WorkspaceAccessGate
    webhooks: Optional[WebhookProcessor]

    @property
    def billing_enabled(self) -> bool:
        return self.gateway is not None

    def open(self) -> "BillingServices":
        self.db.open()
        self.db.create_all()
        # Fail fast on a malformed plan document
        self.catalog.load()
        return self

    def close(self) -> None:
        if self.gateway is not None:
            self.gateway.close()
        self.db.close()


def build_services(
    settings_obj: Settings,
    *,
    db: Optional[Database] = None,
    gateway: Optional[BillingGateway] = None,
    env: Optional[Mapping[str, str]] = None,
) -> BillingServices:
    env = env if env is not None else os.environ
    database = db or Database(settings_obj.TEST_DATABASE_URL or settings_obj.DATABASE_URL)

    if gateway is None and settings_obj.STRIPE_SECRET_KEY:
        gateway = StripeProvider.from_settings(settings_obj)
    if gateway is None:
        logger.warning("billing.disabled", extra={"event_type": "billing.disabled"})

    catalog = PlanCatalog.from_settings(settings_obj)
    limits = LimitResolver(env)
    prices = PriceResolver(catalog, home_country=settings_obj.HOME_COUNTRY_CODE, env=env)
    plans = PlanService(catalog, prices, limits, gateway)
    store = SubscriptionStore(database)
    cache = AccessStatusCache(ttl_seconds=settings_obj.ACCESS_CACHE_TTL_SECONDS)
    proration = ProrationService(gateway, plans, prices) if gateway is not None else None

    lifecycle = SubscriptionLifecycle(
        store,
        plans,
        gateway,
        proration,
        app_url=settings_obj.APP_URL,
        free_period_days=settings_obj.FREE_PLAN_PERIOD_DAYS,
        trial_days=settings_obj.TRIAL_LENGTH_DAYS,
        incomplete_cleanup_hours=settings_obj.INCOMPLETE_CLEANUP_HOURS,
        access_cache=cache,
    )
    gate = WorkspaceAccessGate(store, cache)
    webhooks = WebhookProcessor(database, gateway, lifecycle) if gateway is not None else None

    return BillingServices(
        settings=settings_obj,
        db=database,
        gateway=gateway,
        catalog=catalog,
        plans=plans,
        store=store,
        lifecycle=lifecycle,
        gate=gate,
        webhooks=webhooks,
    )
