# workspace_billing/conftest.py
import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from workspace_billing.core.config import Settings
from workspace_billing.core.database import Database
from workspace_billing.core.metrics import METRICS
from workspace_billing.features.access.cache import AccessStatusCache
from workspace_billing.features.billing.lifecycle import SubscriptionLifecycle
from workspace_billing.features.billing.proration import ProrationService
from workspace_billing.features.billing.store import SubscriptionStore
from workspace_billing.features.plans.catalog import PlanCatalog
from workspace_billing.features.plans.limits import LimitResolver
from workspace_billing.features.plans.prices import PriceResolver
from workspace_billing.features.plans.service import PlanService
from workspace_billing.tests.mocks import FakeClock, FakeGateway


PLANS_DOCUMENT = {
    "version": "test-1",
    "plans": [
        {
            "id": "free",
            "name": "free",
            "display_name": "Free",
            "pricing": {
                "monthly": {"price": 0, "currency": "USD", "stripe_price_env": None},
                "yearly": {"price": 0, "currency": "USD", "stripe_price_env": None},
            },
            "sort_order": 1,
        },
        {
            "id": "pro",
            "name": "pro",
            "display_name": "Pro",
            "description": "For growing teams",
            "pricing": {
                "monthly": {
                    "price": 19,
                    "currency": "USD",
                    "stripe_price_env": {
                        "default": "STRIPE_PRO_MONTHLY_PRICE_ID",
                        "countries": {"IN": "STRIPE_PRO_MONTHLY_PRICE_ID_IN"},
                    },
                    "stripe_product_env": "STRIPE_PRO_PRODUCT_ID",
                },
                "yearly": {
                    "price": 190,
                    "currency": "USD",
                    "stripe_price_env": {
                        "default": "STRIPE_PRO_YEARLY_PRICE_ID",
                        "countries": {"in": "STRIPE_PRO_YEARLY_PRICE_ID_IN"},
                    },
                    "stripe_product_env": "STRIPE_PRO_PRODUCT_ID",
                    "original_price": 228,
                    "savings": "Save 17%",
                },
            },
            "sort_order": 2,
            "is_popular": True,
            "badges": ["Most popular"],
        },
        {
            "id": "team",
            "name": "team",
            "display_name": "Team",
            "pricing": {
                "monthly": {"price": 49, "currency": "USD", "stripe_price_env": "STRIPE_TEAM_MONTHLY_PRICE_ID"},
                "yearly": {"price": 490, "currency": "USD", "stripe_price_env": None},
            },
            "sort_order": 3,
        },
        {
            "id": "legacy",
            "name": "legacy",
            "display_name": "Legacy",
            "is_active": False,
            "pricing": {
                "monthly": {"price": 9, "currency": "USD", "stripe_price_env": "STRIPE_LEGACY_PRICE_ID"},
                "yearly": {"price": 90, "currency": "USD", "stripe_price_env": None},
            },
            "sort_order": 0,
        },
    ],
}

PRICE_ENV = {
    "STRIPE_PRO_MONTHLY_PRICE_ID": "price_pro_m",
    "STRIPE_PRO_MONTHLY_PRICE_ID_IN": "price_pro_m_in",
    "STRIPE_PRO_YEARLY_PRICE_ID": "price_pro_y",
    "STRIPE_PRO_YEARLY_PRICE_ID_IN": "price_pro_y_in",
    "STRIPE_PRO_PRODUCT_ID": "prod_pro",
    "STRIPE_TEAM_MONTHLY_PRICE_ID": "price_team_m",
    "STRIPE_LEGACY_PRICE_ID": "price_legacy",
}

START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def skip_env_validation(monkeypatch):
    """Startup validation is covered by test_env_validation.py."""
    monkeypatch.setenv("SKIP_ENV_VALIDATION", "1")


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def plans_path(tmp_path):
    path = tmp_path / "plans.json"
    path.write_text(json.dumps(PLANS_DOCUMENT), encoding="utf-8")
    return str(path)


@pytest.fixture
def price_env():
    return dict(PRICE_ENV)


@pytest.fixture
def catalog(plans_path):
    return PlanCatalog(plans_path)


@pytest.fixture
def prices(catalog, price_env):
    return PriceResolver(catalog, home_country="US", env=price_env)


@pytest.fixture
def plan_service(catalog, prices, price_env):
    return PlanService(catalog, prices, LimitResolver(price_env))


@pytest.fixture
def db():
    """Fresh in-memory database per test."""
    database = Database("sqlite://").open()
    database.create_all()
    yield database
    database.close()


@pytest.fixture
def store(db):
    return SubscriptionStore(db)


@pytest.fixture
def gateway():
    gw = FakeGateway()
    gw.add_price("price_pro_m", "USD", 1900, "month")
    gw.add_price("price_pro_m_in", "INR", 149900, "month")
    gw.add_price("price_pro_y", "USD", 19000, "year")
    gw.add_price("price_pro_y_in", "INR", 1499000, "year")
    gw.add_price("price_team_m", "USD", 4900, "month")
    gw.add_price("price_legacy", "USD", 900, "month")
    return gw


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def access_cache():
    return AccessStatusCache(ttl_seconds=60)


@pytest.fixture
def lifecycle(store, plan_service, prices, gateway, clock, access_cache):
    proration = ProrationService(gateway, plan_service, prices)
    return SubscriptionLifecycle(
        store,
        plan_service,
        gateway,
        proration,
        app_url="https://app.example.com/",
        access_cache=access_cache,
        clock=clock,
    )


@pytest.fixture
def user(store):
    return store.upsert_user("user_alice", email="alice@example.com", display_name="Alice")


@pytest.fixture
def app_settings(plans_path):
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL="sqlite://",
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        APP_URL="https://app.example.com",
        PLANS_CONFIG_PATH=plans_path,
    )


@pytest.fixture
def services(app_settings, db, gateway, price_env):
    from workspace_billing.services import build_services

    return build_services(app_settings, db=db, gateway=gateway, env=price_env)


@pytest.fixture
def client(app_settings, services):
    from workspace_billing.main import create_app

    app = create_app(app_settings, services)
    with TestClient(app) as test_client:
        yield test_client
